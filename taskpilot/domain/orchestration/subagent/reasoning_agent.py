from typing import Any, List, Optional, Tuple, Type
from datetime import date
import asyncio
import time

import openai
import structlog
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, ToolMessage

from taskpilot.domain.context.context_manager import ContextManager
from taskpilot.domain.models.agent_state import (
    ReasoningStatus, ReasoningTrace, ToolInvocation, create_idempotency_key,
)
from taskpilot.domain.models.errors import ReasoningLimitExceeded, ServiceUnavailable
from taskpilot.domain.models.results import ErrorKind, Fail, USER_FACING_MESSAGES, user_message_for
from taskpilot.domain.orchestration.subagent.base_subagent import BaseSubAgent, SubAgentRequest, SubAgentResult
from taskpilot.domain.tool.task_tools import TaskTools
from taskpilot.domain.tool.tool_executor import ToolExecutor
from taskpilot.domain.tool.tool_registry import ToolRegistry
from taskpilot.domain.tool.tool_validator import CreateTaskArgs, parse_tool_arguments
from taskpilot.infrastructure.observability.logging import agent_logger, metrics
from taskpilot.infrastructure.resilience.retry import RetryPolicy

logger = structlog.get_logger(__name__)

# model errors worth another attempt
TRANSIENT_MODEL_ERRORS: Tuple[Type[BaseException], ...] = (
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
    ConnectionError,
)


def message_text(message: BaseMessage) -> str:
    """Plain text of a model message, content blocks joined"""

    content = message.content
    if isinstance(content, str):
        return content.strip()
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts).strip()


def invocations_from(message: AIMessage) -> List[ToolInvocation]:
    """Tool requests of a model turn; malformed calls keep their raw argument string"""

    invocations = [
        ToolInvocation(tool_name=call["name"], arguments=call.get("args") or {}, call_id=call.get("id"))
        for call in message.tool_calls
    ]
    for call in message.invalid_tool_calls:
        invocations.append(
            ToolInvocation(
                tool_name=call.get("name") or "",
                raw_arguments=call.get("args") or "",
                call_id=call.get("id"),
            )
        )
    return invocations


class ReasoningAgent(BaseSubAgent):
    """
    Tool-using agent driven as a bounded state machine.

    THINKING asks the model for its next move, AWAITING_TOOL runs the requested tools
    and feeds their results back, TERMINAL ends the loop. The loop stops after
    ``max_steps`` model turns or when ``timeout_seconds`` of wall-clock budget is spent.
    """

    def __init__(
        self,
        model: Optional[BaseChatModel],
        tools: TaskTools,
        registry: ToolRegistry,
        context_manager: ContextManager,
        max_steps: int = 6,
        timeout_seconds: float = 45.0,
        retry_policy: Optional[RetryPolicy] = None,
        transient_errors: Tuple[Type[BaseException], ...] = TRANSIENT_MODEL_ERRORS,
    ):
        super().__init__(name="agent", description="Tool-augmented reasoning over the user's tasks")
        self.model = model
        self.tools = tools
        self.registry = registry
        self.context_manager = context_manager
        self.max_steps = max(1, max_steps)
        self.timeout_seconds = timeout_seconds
        self.retry_policy = retry_policy or RetryPolicy(attempts=1)
        self.transient_errors = transient_errors
        self._bound_model = model.bind_tools(registry.to_function_specs()) if model is not None else None

    async def validate_input(self, request: SubAgentRequest) -> bool:
        return bool(request.message.strip()) and request.scope is not None

    async def process(self, request: SubAgentRequest) -> SubAgentResult:
        self.update_activity()
        start_time = time.time()

        if self._bound_model is None:
            logger.warning("No reasoning model configured")
            return SubAgentResult(
                response=user_message_for(Fail(kind=ErrorKind.UNAVAILABLE)),
                error_kind=ErrorKind.UNAVAILABLE.value,
            )

        today = request.metadata.get("today") or date.today()
        context = await self.context_manager.build_context(
            request.user_id,
            request.session_id,
            request.message,
            request.history,
            request.scope,
            today=today,
        )
        executor = ToolExecutor(
            self.tools, self.registry, request.scope, request.user_id, request.session_id, today=today
        )
        trace = ReasoningTrace()
        metadata = {"retrieved": [item.record_id for item in context.retrieved], "degraded": context.degraded}

        try:
            await self.run(context.messages, executor, trace, request.user_id, today)
        except ReasoningLimitExceeded as e:
            metrics.increment_counter("reasoning_limit_exceeded")
            limit_message = USER_FACING_MESSAGES[ErrorKind.REASONING_LIMIT_EXCEEDED]
            response = f"{limit_message}\n{e.partial_answer}" if e.partial_answer else limit_message
            return SubAgentResult(
                response=response,
                error_kind=ErrorKind.REASONING_LIMIT_EXCEEDED.value,
                trace=trace,
                metadata=metadata,
            )
        except ServiceUnavailable as e:
            logger.error("Reasoning model unavailable", error=str(e))
            partial = trace.partial_answer()
            response = user_message_for(Fail(kind=ErrorKind.UNAVAILABLE))
            return SubAgentResult(
                response=f"{response}\n{partial}" if partial else response,
                error_kind=ErrorKind.UNAVAILABLE.value,
                trace=trace,
                metadata=metadata,
            )
        finally:
            metrics.record_latency("agent", (time.time() - start_time) * 1000, tags={"steps": str(trace.steps)})

        return SubAgentResult(response=trace.final_answer, trace=trace, metadata=metadata)

    async def run(
        self,
        messages: List[BaseMessage],
        executor: ToolExecutor,
        trace: ReasoningTrace,
        user_id: str,
        today: date,
    ) -> ReasoningTrace:
        """Drive the loop to TERMINAL, raising ReasoningLimitExceeded when steps or time run out"""

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_seconds
        pending: List[ToolInvocation] = []
        messages = list(messages)

        while trace.status != ReasoningStatus.TERMINAL:
            if trace.status == ReasoningStatus.THINKING:
                if trace.steps >= self.max_steps:
                    raise ReasoningLimitExceeded(trace.steps, trace.partial_answer())

                reply = await self._within_budget(self._think(messages), deadline, trace)
                trace.steps += 1
                messages.append(reply)

                pending = invocations_from(reply)
                if pending:
                    self._transition(trace, ReasoningStatus.AWAITING_TOOL, executor.session_id)
                else:
                    trace.final_answer = message_text(reply) or trace.partial_answer() or "Done."
                    self._transition(trace, ReasoningStatus.TERMINAL, executor.session_id)

            elif trace.status == ReasoningStatus.AWAITING_TOOL:
                for index, invocation in enumerate(pending):
                    invocation.call_id = invocation.call_id or f"call_{trace.steps}_{index}"
                    invocation.idempotency_key = self._idempotency_key(invocation, user_id, today)
                    trace.invocations.append(invocation)

                    result = await self._within_budget(executor.execute(invocation), deadline, trace)
                    trace.results.append(result)
                    messages.append(
                        ToolMessage(content=result.to_model_content(), tool_call_id=invocation.call_id)
                    )
                pending = []
                self._transition(trace, ReasoningStatus.THINKING, executor.session_id)

        return trace

    async def _think(self, messages: List[BaseMessage]) -> AIMessage:
        try:
            return await self.retry_policy.run(
                lambda: self._bound_model.ainvoke(messages),
                retry_on=self.transient_errors,
                name="reasoning_model",
            )
        except self.transient_errors as e:
            raise ServiceUnavailable(f"Reasoning model unavailable: {e}") from e

    async def _within_budget(self, awaitable: Any, deadline: float, trace: ReasoningTrace):
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            _close(awaitable)
            raise ReasoningLimitExceeded(trace.steps, trace.partial_answer())
        try:
            return await asyncio.wait_for(awaitable, timeout=remaining)
        except asyncio.TimeoutError:
            logger.warning("Reasoning budget exhausted", steps=trace.steps, budget=self.timeout_seconds)
            raise ReasoningLimitExceeded(trace.steps, trace.partial_answer())

    def _idempotency_key(self, invocation: ToolInvocation, user_id: str, today: date) -> Optional[str]:
        if invocation.tool_name != "create_task":
            return None
        raw = invocation.raw_arguments if invocation.raw_arguments is not None else invocation.arguments
        args = parse_tool_arguments("create_task", raw, today)
        if not isinstance(args, CreateTaskArgs):
            return None
        return create_idempotency_key(user_id, args.title, args.due_date)

    def _transition(self, trace: ReasoningTrace, status: ReasoningStatus, session_id: str):
        agent_logger.log_workflow_transition(
            session_id=session_id,
            from_node=f"agent.{trace.status.value}",
            to_node=f"agent.{status.value}",
            state_summary={"steps": trace.steps, "tool_calls": len(trace.invocations)},
        )
        trace.transition(status)


def _close(awaitable: Any):
    # an un-awaited coroutine would otherwise warn on garbage collection
    close = getattr(awaitable, "close", None)
    if close is not None:
        close()
