import httpx
import pytest

from conftest import TOKEN
from taskpilot.domain.models.agent_state import TaskRecord, TaskStatus
from taskpilot.domain.models.results import ErrorKind, Fail, Ok
from taskpilot.infrastructure.clients.record_client import RecordClient, TaskFilter


async def test_create_forwards_credential_unchanged(record_client, task_service):
    result = await record_client.create(TOKEN, {"title": "Write tests", "owner_id": "alice"})

    assert isinstance(result, Ok)
    assert isinstance(result.value, TaskRecord)
    assert result.value.owner_id == "alice"
    assert task_service.auth_headers == [f"Bearer {TOKEN}"]


async def test_get_missing_record_is_not_found(record_client):
    result = await record_client.get(TOKEN, "nope")

    assert isinstance(result, Fail)
    assert result.kind == ErrorKind.NOT_FOUND
    assert result.status_code == 404


async def test_bad_credential_is_unauthorized(record_client):
    result = await record_client.list("wrong-token")

    assert isinstance(result, Fail)
    assert result.kind == ErrorKind.UNAUTHORIZED
    assert not result.retryable


@pytest.mark.parametrize("status_code, kind", [
    (400, ErrorKind.VALIDATION),
    (403, ErrorKind.UNAUTHORIZED),
    (409, ErrorKind.VALIDATION),
    (422, ErrorKind.VALIDATION),
    (500, ErrorKind.UNAVAILABLE),
    (503, ErrorKind.UNAVAILABLE),
])
async def test_status_codes_map_to_error_kinds(record_client, task_service, status_code, kind):
    task_service.fail("GET", status_code)

    result = await record_client.list(TOKEN)

    assert isinstance(result, Fail)
    assert result.kind == kind


async def test_timeout_is_unavailable_and_not_retried_internally(record_client, task_service):
    task_service.fail("GET", httpx.ReadTimeout("timed out"))

    result = await record_client.list(TOKEN)

    assert isinstance(result, Fail)
    assert result.kind == ErrorKind.UNAVAILABLE
    assert result.retryable
    assert task_service.count("GET") == 1


async def test_list_filters_and_skips_malformed_rows(record_client, task_service):
    task_service.add("alice", "Open one", status="open", due_date="2026-10-16")
    task_service.add("alice", "Done one", status="done", due_date="2026-10-15")
    task_service.records["broken"] = {"id": "broken", "title": None}

    everything = await record_client.list(TOKEN)
    assert isinstance(everything, Ok)
    assert sorted(r.title for r in everything.value) == ["Done one", "Open one"]

    result = await record_client.list(TOKEN, TaskFilter(status=TaskStatus.OPEN))
    assert isinstance(result, Ok)
    assert [r.title for r in result.value] == ["Open one"]


async def test_list_accepts_bare_array_payload():
    async def handler(request):
        return httpx.Response(200, json=[{"id": "1", "owner_id": "alice", "title": "Only"}])

    client = RecordClient("http://tasks.test", transport=httpx.MockTransport(handler))
    try:
        result = await client.list(TOKEN)
    finally:
        await client.aclose()

    assert isinstance(result, Ok)
    assert result.value[0].title == "Only"


async def test_update_and_delete(record_client, task_service):
    record_id = task_service.add("alice", "Draft", status="open")

    updated = await record_client.update(TOKEN, record_id, {"status": "done"})
    assert isinstance(updated, Ok)
    assert updated.value.status == TaskStatus.DONE

    deleted = await record_client.delete(TOKEN, record_id)
    assert isinstance(deleted, Ok)
    assert deleted.value == record_id
    assert record_id not in task_service.records
