# Tool dispatch with monitoring
from typing import Any, Dict, Optional
from datetime import date
import time

import structlog

from taskpilot.domain.models.agent_state import ToolInvocation, ToolResult
from taskpilot.domain.models.results import ErrorKind
from taskpilot.domain.tool.task_tools import TaskTools
from taskpilot.domain.tool.tool_registry import ToolRegistry
from taskpilot.domain.tool.tool_validator import CREDENTIAL_KEYS, normalize_key
from taskpilot.infrastructure.observability.logging import agent_logger, metrics
from taskpilot.infrastructure.security.credential_relay import CredentialScope

logger = structlog.get_logger(__name__)


class ToolExecutor:
    """
    Executes tool invocations for one request.
    Every invocation produces a ToolResult; nothing here raises into the reasoning loop.
    """

    def __init__(
        self,
        tools: TaskTools,
        registry: ToolRegistry,
        scope: CredentialScope,
        user_id: str,
        session_id: str,
        today: Optional[date] = None,
    ):
        self.tools = tools
        self.registry = registry
        self.scope = scope
        self.user_id = user_id
        self.session_id = session_id
        self.today = today

    async def execute(self, invocation: ToolInvocation) -> ToolResult:
        """Run one invocation and record its outcome"""

        start_time = time.time()
        handler = self._handler_for(invocation.tool_name)

        if handler is None:
            result = ToolResult(
                tool_name=invocation.tool_name,
                success=False,
                error_kind=ErrorKind.VALIDATION.value,
                error=f"Unknown tool '{invocation.tool_name}'. Available: {', '.join(self.registry.tools)}",
            )
        else:
            raw: Any = invocation.raw_arguments if invocation.raw_arguments is not None else invocation.arguments
            try:
                result = await handler(self.scope, self.user_id, raw, self.today)
            except Exception as e:
                # a broken tool is reported to the model like any other failure
                logger.error("Tool raised", tool_name=invocation.tool_name, error=str(e), exc_info=True)
                result = ToolResult(
                    tool_name=invocation.tool_name,
                    success=False,
                    error_kind=ErrorKind.UNAVAILABLE.value,
                    error="The tool failed unexpectedly",
                )

        duration_ms = (time.time() - start_time) * 1000
        result.duration_ms = duration_ms

        agent_logger.log_tool_execution(
            tool_name=invocation.tool_name,
            session_id=self.session_id,
            input_data=_loggable_arguments(invocation),
            output_data={"mutated": result.mutated} if result.success else None,
            duration_ms=duration_ms,
            success=result.success,
            error=result.error,
        )
        metrics.increment_counter(
            "tool_calls",
            tags={"tool": invocation.tool_name, "success": str(result.success).lower()},
        )
        metrics.record_latency("tool_execution", duration_ms, tags={"tool": invocation.tool_name})

        return result

    def _handler_for(self, tool_name: str):
        if self.registry.get_tool_info(tool_name) is None:
            return None
        return getattr(self.tools, tool_name, None)


def _loggable_arguments(invocation: ToolInvocation) -> Dict[str, Any]:
    """Argument keys for logging; credential-like keys are dropped"""

    if invocation.raw_arguments is not None:
        return {"raw_length": len(invocation.raw_arguments)}
    return {
        key: value for key, value in invocation.arguments.items()
        if normalize_key(str(key)) not in CREDENTIAL_KEYS
    }
