from typing import Any, Dict, Mapping, Optional, Union, cast
from collections import OrderedDict
from datetime import date

import structlog

from taskpilot.domain.context.memory.similarity_index import SimilarityIndex
from taskpilot.domain.models.agent_state import (
    TaskRecord, TaskStatus, ToolResult, create_idempotency_key,
)
from taskpilot.domain.models.results import ErrorKind, Fail, Result
from taskpilot.domain.tool.tool_validator import (
    CreateTaskArgs, GetTasksArgs, TaskIdArgs, UpdateTaskArgs, parse_tool_arguments,
)
from taskpilot.infrastructure.clients.record_client import RecordClient, TaskFilter
from taskpilot.infrastructure.resilience.keyed_locks import KeyedLocks
from taskpilot.infrastructure.resilience.retry import RetryPolicy
from taskpilot.infrastructure.security.credential_relay import CredentialScope

logger = structlog.get_logger(__name__)

RawArguments = Union[Mapping[str, Any], str, None]

# recently created tasks remembered for the id-first duplicate lookup
CREATED_CACHE_SIZE = 1024


def _record_payload(record: TaskRecord, **extra) -> Dict[str, Any]:
    payload = record.model_dump(mode="json", exclude={"owner_id"})
    payload.update(extra)
    return payload


def _failure(tool_name: str, fail: Fail) -> ToolResult:
    return ToolResult(
        tool_name=tool_name,
        success=False,
        error_kind=fail.kind.value,
        error=fail.message or fail.kind.value,
    )


class TaskTools:
    """
    Defensive wrappers around record operations, one method per tool.
    Tools never raise into the reasoning loop: bad input and service failures come back as failed ToolResults.
    The credential always comes from the request's CredentialScope, never from tool arguments.
    """

    def __init__(
        self,
        record_client: RecordClient,
        similarity_index: Optional[SimilarityIndex] = None,
        retry_policy: Optional[RetryPolicy] = None,
        created_cache_size: int = CREATED_CACHE_SIZE,
    ):
        self.record_client = record_client
        self.similarity_index = similarity_index
        self.retry_policy = retry_policy or RetryPolicy(attempts=1)
        # serializes lookup+create for the same idempotency key within this process
        self._create_locks = KeyedLocks()
        # idempotency key -> record id, least recently used first; the list lookup stays authoritative
        self._created: "OrderedDict[str, str]" = OrderedDict()
        self._created_cache_size = max(1, created_cache_size)

    async def create_task(self, scope: CredentialScope, owner_id: str, raw: RawArguments, today: Optional[date] = None) -> ToolResult:
        """Create a task unless an equivalent one already exists"""

        parsed = parse_tool_arguments("create_task", raw, today)
        if isinstance(parsed, Fail):
            return _failure("create_task", parsed)
        args = cast(CreateTaskArgs, parsed)

        key = create_idempotency_key(owner_id, args.title, args.due_date)
        credential = scope.current()

        async with self._create_locks.hold(key):
            existing = await self._find_existing(credential, owner_id, key)
            if isinstance(existing, Fail):
                # without a lookup there is no duplicate guarantee, so do not create
                return _failure("create_task", existing)
            if existing is not None:
                logger.info("Create skipped, equivalent task exists", record_id=existing.id)
                return ToolResult(
                    tool_name="create_task",
                    success=True,
                    data=_record_payload(existing, created=False),
                )

            fields: Dict[str, Any] = {
                "title": args.title,
                "owner_id": owner_id,
                "status": (args.status or TaskStatus.OPEN).value,
                "description": args.description,
            }
            if args.due_date:
                fields["due_date"] = args.due_date.isoformat()

            # creates are not retried blindly: a timed-out create may have landed
            result = await self.record_client.create(credential, fields)
            if isinstance(result, Fail):
                if result.retryable:
                    found = await self._find_existing(credential, owner_id, key)
                    if isinstance(found, TaskRecord):
                        self._remember_created(key, found.id)
                        self._invalidate(owner_id)
                        return ToolResult(
                            tool_name="create_task",
                            success=True,
                            data=_record_payload(found, created=True),
                            mutated=True,
                        )
                return _failure("create_task", result)

            record: TaskRecord = result.value
            self._remember_created(key, record.id)

        self._invalidate(owner_id)
        return ToolResult(
            tool_name="create_task",
            success=True,
            data=_record_payload(record, created=True),
            mutated=True,
        )

    async def get_tasks(self, scope: CredentialScope, owner_id: str, raw: RawArguments, today: Optional[date] = None) -> ToolResult:
        """List tasks with optional filters"""

        parsed = parse_tool_arguments("get_tasks", raw, today)
        if isinstance(parsed, Fail):
            return _failure("get_tasks", parsed)
        args = cast(GetTasksArgs, parsed)

        task_filter = TaskFilter(status=args.status, due_before=args.due_before, due_after=args.due_after)
        credential = scope.current()
        result = await self.retry_policy.run_result(
            lambda: self.record_client.list(credential, task_filter), name="get_tasks"
        )
        if isinstance(result, Fail):
            return _failure("get_tasks", result)

        records = [r for r in result.value if r.owner_id == owner_id]
        return ToolResult(
            tool_name="get_tasks",
            success=True,
            data={"count": len(records), "tasks": [_record_payload(r) for r in records]},
        )

    async def get_task_by_id(self, scope: CredentialScope, owner_id: str, raw: RawArguments, today: Optional[date] = None) -> ToolResult:
        """Fetch one task"""

        parsed = parse_tool_arguments("get_task_by_id", raw, today)
        if isinstance(parsed, Fail):
            return _failure("get_task_by_id", parsed)
        args = cast(TaskIdArgs, parsed)

        result = await self._get_owned(scope.current(), owner_id, args.task_id)
        if isinstance(result, Fail):
            return _failure("get_task_by_id", result)
        return ToolResult(tool_name="get_task_by_id", success=True, data=_record_payload(result.value))

    async def update_task(self, scope: CredentialScope, owner_id: str, raw: RawArguments, today: Optional[date] = None) -> ToolResult:
        """Patch an existing task"""

        parsed = parse_tool_arguments("update_task", raw, today)
        if isinstance(parsed, Fail):
            return _failure("update_task", parsed)
        args = cast(UpdateTaskArgs, parsed)

        credential = scope.current()
        current = await self._get_owned(credential, owner_id, args.task_id)
        if isinstance(current, Fail):
            return _failure("update_task", current)

        changes = args.changes()
        unchanged = all(
            current.value.model_dump(mode="json").get(field) == value for field, value in changes.items()
        )
        if unchanged:
            # repeated identical update, nothing to apply
            return ToolResult(tool_name="update_task", success=True, data=_record_payload(current.value, changed=False))

        # a PATCH with the same body is idempotent, so retrying it is safe
        result = await self.retry_policy.run_result(
            lambda: self.record_client.update(credential, args.task_id, changes), name="update_task"
        )
        if isinstance(result, Fail):
            return _failure("update_task", result)

        self._invalidate(owner_id)
        return ToolResult(
            tool_name="update_task",
            success=True,
            data=_record_payload(result.value, changed=True),
            mutated=True,
        )

    async def delete_task(self, scope: CredentialScope, owner_id: str, raw: RawArguments, today: Optional[date] = None) -> ToolResult:
        """Delete a task; deleting an already-deleted task reports it as gone"""

        parsed = parse_tool_arguments("delete_task", raw, today)
        if isinstance(parsed, Fail):
            return _failure("delete_task", parsed)
        args = cast(TaskIdArgs, parsed)

        credential = scope.current()
        current = await self._get_owned(credential, owner_id, args.task_id)
        if isinstance(current, Fail):
            if current.kind == ErrorKind.NOT_FOUND:
                return ToolResult(
                    tool_name="delete_task",
                    success=True,
                    data={"id": args.task_id, "deleted": False, "reason": "task does not exist"},
                )
            return _failure("delete_task", current)

        result = await self.retry_policy.run_result(
            lambda: self.record_client.delete(credential, args.task_id), name="delete_task"
        )
        if isinstance(result, Fail) and result.kind != ErrorKind.NOT_FOUND:
            return _failure("delete_task", result)

        self._forget_created(args.task_id)
        self._invalidate(owner_id)
        return ToolResult(
            tool_name="delete_task",
            success=True,
            data={"id": args.task_id, "deleted": True, "title": current.value.title},
            mutated=True,
        )

    async def _find_existing(self, credential: str, owner_id: str, key: str) -> Union[TaskRecord, Fail, None]:
        """Equivalent task of the owner, None if there is none"""

        known_id = self._created.get(key)
        if known_id:
            known = await self.retry_policy.run_result(
                lambda: self.record_client.get(credential, known_id), name="create_lookup_known"
            )
            if isinstance(known, Fail) and known.kind != ErrorKind.NOT_FOUND:
                return known
            if not isinstance(known, Fail):
                record: TaskRecord = known.value
                if create_idempotency_key(owner_id, record.title, record.due_date) == key:
                    return record
            self._created.pop(key, None)

        listed = await self.retry_policy.run_result(
            lambda: self.record_client.list(credential), name="create_lookup"
        )
        if isinstance(listed, Fail):
            return listed

        for record in listed.value:
            if record.owner_id != owner_id:
                continue
            if create_idempotency_key(owner_id, record.title, record.due_date) == key:
                return record
        return None

    async def _get_owned(self, credential: str, owner_id: str, task_id: str) -> Result:
        result = await self.retry_policy.run_result(
            lambda: self.record_client.get(credential, task_id), name="get_task"
        )
        if isinstance(result, Fail):
            return result
        if result.value.owner_id != owner_id:
            # never reveal another user's task
            return Fail(kind=ErrorKind.NOT_FOUND, message=f"Task {task_id} not found")
        return result

    def _remember_created(self, key: str, record_id: str):
        self._created[key] = record_id
        self._created.move_to_end(key)
        while len(self._created) > self._created_cache_size:
            self._created.popitem(last=False)

    def _forget_created(self, record_id: str):
        for key, known_id in list(self._created.items()):
            if known_id == record_id:
                self._created.pop(key, None)

    def _invalidate(self, owner_id: str):
        if self.similarity_index is not None:
            self.similarity_index.invalidate(owner_id)
