import asyncio

import httpx
import pytest

from conftest import TODAY, TOKEN
from taskpilot.domain.context.memory.similarity_index import SimilarityIndex
from taskpilot.domain.tool.task_tools import TaskTools
from taskpilot.infrastructure.clients.record_client import RecordClient


@pytest.fixture
def tools(record_client):
    return TaskTools(record_client)


async def test_create_then_repeat_returns_same_task(tools, scope, task_service):
    first = await tools.create_task(scope, "alice", {"title": "Finish report", "due_date": "Friday"}, TODAY)
    second = await tools.create_task(scope, "alice", "Finish report due Friday", TODAY)

    assert first.success and second.success
    assert first.data["created"] is True
    assert second.data["created"] is False
    assert first.data["id"] == second.data["id"]
    assert task_service.count("POST") == 1
    assert len(task_service.records) == 1


async def test_create_matches_existing_task_case_insensitively(tools, scope, task_service):
    existing = task_service.add("alice", "finish report", due_date="2026-10-16")

    result = await tools.create_task(scope, "alice", {"title": "Finish Report ", "due": "2026-10-16"}, TODAY)

    assert result.success
    assert result.data["id"] == existing
    assert result.data["created"] is False
    assert task_service.count("POST") == 0


async def test_same_title_for_another_user_is_created(tools, scope, task_service):
    task_service.add("bob", "Finish report", due_date="2026-10-16")

    result = await tools.create_task(scope, "alice", {"title": "Finish report", "due_date": "2026-10-16"}, TODAY)

    assert result.data["created"] is True
    assert task_service.count("POST") == 1


async def test_concurrent_duplicate_creates_make_one_record(tools, scope, task_service):
    results = await asyncio.gather(*(
        tools.create_task(scope, "alice", {"title": "Finish report", "due_date": "Friday"}, TODAY)
        for _ in range(4)
    ))

    assert all(r.success for r in results)
    assert len({r.data["id"] for r in results}) == 1
    assert sum(r.data["created"] for r in results) == 1
    assert task_service.count("POST") == 1


async def test_failed_lookup_does_not_create(tools, scope, task_service):
    task_service.fail("GET", 503)

    result = await tools.create_task(scope, "alice", {"title": "Finish report"}, TODAY)

    assert not result.success
    assert result.error_kind == "unavailable"
    assert task_service.count("POST") == 0


async def test_timed_out_create_that_landed_is_not_duplicated(scope, task_service):
    async def create_then_time_out(request):
        response = await task_service.handler(request)
        if request.method == "POST":
            raise httpx.ReadTimeout("response lost")
        return response

    client = RecordClient("http://tasks.test", transport=httpx.MockTransport(create_then_time_out))
    try:
        result = await TaskTools(client).create_task(scope, "alice", {"title": "Finish report"}, TODAY)
    finally:
        await client.aclose()

    assert result.success
    assert result.data["created"] is True
    assert len(task_service.records) == 1


async def test_invalid_arguments_are_reported_not_raised(tools, scope, task_service):
    result = await tools.create_task(scope, "alice", {"due_date": "Friday"}, TODAY)

    assert not result.success
    assert result.error_kind == "validation"
    assert task_service.calls == []


async def test_credential_arguments_are_never_forwarded(tools, scope, task_service):
    await tools.create_task(scope, "alice", {"title": "Pay rent", "token": "attacker-token"}, TODAY)

    assert task_service.auth_headers
    assert set(task_service.auth_headers) == {f"Bearer {TOKEN}"}
    assert all("attacker" not in str(r) for r in task_service.records.values())


async def test_get_tasks_returns_only_own_tasks(tools, scope, task_service):
    task_service.add("alice", "Alice open")
    task_service.add("alice", "Alice done", status="done")
    task_service.add("bob", "Bob open")

    result = await tools.get_tasks(scope, "alice", {"status": "open"}, TODAY)

    assert result.success
    assert result.data["count"] == 1
    assert result.data["tasks"][0]["title"] == "Alice open"
    assert "owner_id" not in result.data["tasks"][0]


async def test_get_task_of_another_user_is_not_found(tools, scope, task_service):
    foreign = task_service.add("bob", "Bob secret")

    result = await tools.get_task_by_id(scope, "alice", {"task_id": foreign}, TODAY)

    assert not result.success
    assert result.error_kind == "not_found"


async def test_repeated_update_is_a_no_op(tools, scope, task_service):
    record_id = task_service.add("alice", "Draft", status="open")

    first = await tools.update_task(scope, "alice", {"task_id": record_id, "status": "done"}, TODAY)
    second = await tools.update_task(scope, "alice", {"task_id": record_id, "status": "completed"}, TODAY)

    assert first.data["changed"] is True and first.mutated
    assert second.data["changed"] is False and not second.mutated
    assert task_service.count("PATCH") == 1


async def test_deleting_missing_task_succeeds_without_deleting(tools, scope, task_service):
    record_id = task_service.add("alice", "Temporary")

    first = await tools.delete_task(scope, "alice", record_id, TODAY)
    second = await tools.delete_task(scope, "alice", record_id, TODAY)

    assert first.success and first.data["deleted"] is True
    assert second.success and second.data["deleted"] is False
    assert task_service.count("DELETE") == 1


async def test_mutations_invalidate_the_similarity_index(record_client, scope, task_service, embeddings):
    index = SimilarityIndex(record_client, embeddings)
    tools = TaskTools(record_client, similarity_index=index)
    task_service.add("alice", "Existing task")
    await index.ensure_ready("alice", TOKEN)

    await tools.create_task(scope, "alice", {"title": "Brand new task"}, TODAY)
    count = await index.ensure_ready("alice", TOKEN)

    assert count == 2
    assert embeddings.document_batches == 2


async def test_per_key_state_does_not_grow_with_distinct_creates(record_client, scope, task_service):
    tools = TaskTools(record_client, created_cache_size=10)

    for i in range(50):
        result = await tools.create_task(scope, "alice", {"title": f"Task {i}"}, TODAY)
        assert result.data["created"] is True

    assert len(tools._create_locks) == 0
    assert len(tools._created) == 10
    assert task_service.count("POST") == 50


async def test_evicted_create_is_still_found_by_listing(record_client, scope, task_service):
    tools = TaskTools(record_client, created_cache_size=1)
    first = await tools.create_task(scope, "alice", {"title": "Finish report"}, TODAY)
    await tools.create_task(scope, "alice", {"title": "Pay rent"}, TODAY)

    again = await tools.create_task(scope, "alice", {"title": "Finish report"}, TODAY)

    assert again.data["created"] is False
    assert again.data["id"] == first.data["id"]
    assert task_service.count("POST") == 2
