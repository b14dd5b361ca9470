"""Typed client for the backing task CRUD service.

Every call forwards the caller's bearer credential unchanged and maps the
service's HTTP statuses onto ``Ok`` / ``Fail`` results. Nothing is retried
here; callers decide their own retry policy for ``unavailable`` failures.
"""

from typing import Any, Dict, List, Mapping, Optional
from datetime import date
import time

import httpx
import structlog
from pydantic import ValidationError

from taskpilot.domain.models.agent_state import TaskRecord, TaskStatus
from taskpilot.domain.models.results import ErrorKind, Fail, Ok, Result

logger = structlog.get_logger(__name__)


DEFAULT_TIMEOUT = 10.0
TASKS_PATH = "/tasks"


def _status_to_kind(status_code: int) -> ErrorKind:
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code in (401, 403):
        return ErrorKind.UNAUTHORIZED
    if status_code in (400, 409, 422):
        return ErrorKind.VALIDATION
    return ErrorKind.UNAVAILABLE


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("message") or body.get("error") or body)
    return str(body)[:200]


class TaskFilter:
    """Query filter for list calls"""

    def __init__(
        self,
        status: Optional[TaskStatus] = None,
        due_before: Optional[date] = None,
        due_after: Optional[date] = None,
    ):
        self.status = status
        self.due_before = due_before
        self.due_after = due_after

    def to_params(self) -> Dict[str, str]:
        params: Dict[str, str] = {}
        if self.status:
            params["status"] = self.status.value
        if self.due_before:
            params["due_before"] = self.due_before.isoformat()
        if self.due_after:
            params["due_after"] = self.due_after.isoformat()
        return params

    def matches(self, record: TaskRecord) -> bool:
        """Client-side check, for services that ignore query params"""
        if self.status and record.status != self.status:
            return False
        if self.due_before and (record.due_date is None or record.due_date > self.due_before):
            return False
        if self.due_after and (record.due_date is None or record.due_date < self.due_after):
            return False
        return True


class RecordClient:
    """Async wrapper over the task service's REST API.

    Attributes:
        base_url: Root URL of the task service.
        timeout: Per-call timeout in seconds.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            base_url: Root URL of the task service.
            timeout: Per-call timeout in seconds.
            transport: Optional transport override, used by tests.
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def aclose(self):
        await self._client.aclose()

    async def create(self, credential: str, fields: Mapping[str, Any]) -> Result:
        """Create a task; ``Ok(TaskRecord)`` on success"""
        return await self._request_record("POST", TASKS_PATH, credential, json=dict(fields))

    async def get(self, credential: str, record_id: str) -> Result:
        """Fetch one task by id"""
        return await self._request_record("GET", f"{TASKS_PATH}/{record_id}", credential)

    async def list(self, credential: str, task_filter: Optional[TaskFilter] = None) -> Result:
        """List the caller's tasks; ``Ok(List[TaskRecord])`` on success"""

        params = task_filter.to_params() if task_filter else None
        response = await self._send("GET", TASKS_PATH, credential, params=params)
        if isinstance(response, Fail):
            return response

        try:
            body = response.json()
        except ValueError:
            return Fail(kind=ErrorKind.UNAVAILABLE, message="Task service returned malformed JSON")

        items = body.get("items", []) if isinstance(body, dict) else body
        if not isinstance(items, list):
            return Fail(kind=ErrorKind.UNAVAILABLE, message="Task service returned an unexpected list payload")

        records: List[TaskRecord] = []
        for item in items:
            try:
                records.append(TaskRecord.model_validate(item))
            except ValidationError as e:
                # one bad row should not hide the rest of the user's tasks
                logger.warning("Skipping malformed task record", error=str(e))

        if task_filter:
            records = [record for record in records if task_filter.matches(record)]
        return Ok(value=records)

    async def update(self, credential: str, record_id: str, fields: Mapping[str, Any]) -> Result:
        """Patch fields of a task"""
        return await self._request_record("PATCH", f"{TASKS_PATH}/{record_id}", credential, json=dict(fields))

    async def delete(self, credential: str, record_id: str) -> Result:
        """Delete a task; ``Ok(record_id)`` on success"""

        response = await self._send("DELETE", f"{TASKS_PATH}/{record_id}", credential)
        if isinstance(response, Fail):
            return response
        return Ok(value=record_id)

    async def _request_record(self, method: str, path: str, credential: str, **kwargs) -> Result:
        response = await self._send(method, path, credential, **kwargs)
        if isinstance(response, Fail):
            return response

        try:
            return Ok(value=TaskRecord.model_validate(response.json()))
        except ValueError:
            # ValidationError is a ValueError too
            return Fail(kind=ErrorKind.UNAVAILABLE, message="Task service returned a malformed record")

    async def _send(self, method: str, path: str, credential: str, **kwargs):
        """Execute a request, returning the response or a ``Fail``"""

        headers = {"Authorization": f"Bearer {credential}"}
        started = time.monotonic()
        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException:
            logger.warning("Task service timed out", method=method, path=path, timeout=self.timeout)
            return Fail(kind=ErrorKind.UNAVAILABLE, message="Task service timed out")
        except httpx.HTTPError as e:
            logger.warning("Task service unreachable", method=method, path=path, error=str(e))
            return Fail(kind=ErrorKind.UNAVAILABLE, message="Task service unreachable")

        duration_ms = (time.monotonic() - started) * 1000
        logger.debug(
            "Task service call",
            method=method,
            path=path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )

        if response.is_success:
            return response

        kind = _status_to_kind(response.status_code)
        return Fail(kind=kind, message=_error_detail(response), status_code=response.status_code)
