from typing import List, Optional
from datetime import date
import time

import structlog

from taskpilot.domain.models.agent_state import TaskRecord, TaskStatus
from taskpilot.domain.models.results import ErrorKind, Fail, user_message_for
from taskpilot.domain.orchestration.router.query_shape import QueryPlan, QueryShape, infer_query_plan
from taskpilot.domain.orchestration.subagent.base_subagent import BaseSubAgent, SubAgentRequest, SubAgentResult
from taskpilot.infrastructure.clients.record_client import RecordClient, TaskFilter
from taskpilot.infrastructure.observability.logging import metrics
from taskpilot.infrastructure.resilience.retry import RetryPolicy

logger = structlog.get_logger(__name__)

MAX_LISTED = 20


class FastPathAgent(BaseSubAgent):
    """
    Answers read-only questions straight from the record service.
    Only list and get are ever called here; the reasoning model and the tool layer are not involved.
    """

    def __init__(self, record_client: RecordClient, retry_policy: Optional[RetryPolicy] = None):
        super().__init__(name="fast_path", description="Deterministic task lookups and summaries")
        self.record_client = record_client
        self.retry_policy = retry_policy or RetryPolicy(attempts=1)

    async def validate_input(self, request: SubAgentRequest) -> bool:
        return bool(request.message.strip()) and request.scope is not None

    async def process(self, request: SubAgentRequest) -> SubAgentResult:
        self.update_activity()
        start_time = time.time()

        today = request.metadata.get("today") or date.today()
        plan: Optional[QueryPlan] = request.metadata.get("plan") or infer_query_plan(request.message, today)
        if plan is None:
            # the router only sends shaped questions here
            return SubAgentResult(
                response="I'm not sure what you'd like to look up. Try asking about your tasks.",
                error_kind=ErrorKind.VALIDATION.value,
            )

        credential = request.scope.current()
        if plan.shape == QueryShape.BY_ID:
            result = await self._lookup(credential, request.user_id, plan)
        else:
            result = await self._summarize(credential, request.user_id, plan, today)

        metrics.record_latency("fast_path", (time.time() - start_time) * 1000, tags={"shape": plan.shape.value})
        result.metadata["shape"] = plan.shape.value
        return result

    async def _lookup(self, credential: str, user_id: str, plan: QueryPlan) -> SubAgentResult:
        result = await self.retry_policy.run_result(
            lambda: self.record_client.get(credential, plan.task_id), name="fast_path_get"
        )
        if isinstance(result, Fail):
            return self._failure(result)

        record: TaskRecord = result.value
        if record.owner_id != user_id:
            return self._failure(Fail(kind=ErrorKind.NOT_FOUND, message="owned by another user"))

        response = f"Task {record.id}: {record.summary_line()}"
        if record.description:
            response += f"\n{record.description}"
        return SubAgentResult(response=response, metadata={"record_count": 1})

    async def _summarize(self, credential: str, user_id: str, plan: QueryPlan, today: date) -> SubAgentResult:
        task_filter = TaskFilter(status=plan.status, due_before=plan.due_before, due_after=plan.due_after)
        result = await self.retry_policy.run_result(
            lambda: self.record_client.list(credential, task_filter), name="fast_path_list"
        )
        if isinstance(result, Fail):
            return self._failure(result)

        records = [r for r in result.value if r.owner_id == user_id and task_filter.matches(r)]
        if plan.shape == QueryShape.OVERDUE:
            records = [
                r for r in records
                if r.due_date is not None and r.due_date < today and r.status != TaskStatus.DONE
            ]

        records.sort(key=lambda r: (r.due_date or date.max, r.title.lower(), r.id))
        return SubAgentResult(
            response=format_summary(plan, records),
            metadata={"record_count": len(records)},
        )

    def _failure(self, fail: Fail) -> SubAgentResult:
        logger.warning("Fast path lookup failed", error_kind=fail.kind.value, detail=fail.message)
        return SubAgentResult(response=user_message_for(fail), error_kind=fail.kind.value)


def describe(plan: QueryPlan, count: int) -> str:
    """Noun phrase such as "3 open tasks due this week" """

    noun = "task" if count == 1 else "tasks"
    words = []
    if plan.shape == QueryShape.OVERDUE:
        words.append("overdue")
    if plan.status:
        words.append(plan.status.value.replace("_", " "))
    words.append(noun)
    if plan.range_label and plan.shape != QueryShape.OVERDUE:
        words.append(plan.range_label)
    return " ".join(words)


def format_summary(plan: QueryPlan, records: List[TaskRecord]) -> str:
    """Deterministic natural-language summary of a record set"""

    count = len(records)
    if count == 0:
        return f"You have no {describe(plan, 2)}."

    headline = f"You have {count} {describe(plan, count)}."
    if plan.count_only or plan.shape == QueryShape.COUNT:
        return headline

    lines = [f"- {record.summary_line()} (id {record.id})" for record in records[:MAX_LISTED]]
    if count > MAX_LISTED:
        lines.append(f"...and {count - MAX_LISTED} more.")
    return headline[:-1] + ":\n" + "\n".join(lines)
