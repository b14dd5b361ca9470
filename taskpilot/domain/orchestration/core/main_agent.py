from typing import TypedDict, Annotated, List, Dict, Any, Optional, Literal
from datetime import date
from uuid import uuid4
import operator
import time

from langgraph.graph import StateGraph, END
from pydantic import BaseModel
import structlog

from taskpilot.domain.context.context_manager import ContextManager
from taskpilot.domain.context.memory.conversation_store import ConversationStore
from taskpilot.domain.context.memory.similarity_index import SimilarityIndex
from taskpilot.domain.models.agent_state import ConversationTurn, DecisionOutcome, Role
from taskpilot.domain.models.errors import MemoryUnavailable
from taskpilot.domain.models.results import ErrorKind, Fail, user_message_for
from taskpilot.domain.orchestration.router.decision_router import DecisionRouter, RoutingDecision
from taskpilot.domain.orchestration.subagent.base_subagent import BaseSubAgent, SubAgentRequest, SubAgentResult
from taskpilot.infrastructure.observability.logging import agent_logger, metrics
from taskpilot.infrastructure.security.credential_relay import CredentialRelay, CredentialScope

logger = structlog.get_logger(__name__)


class WorkflowState(TypedDict):
    """State for the workflow graph"""
    request_id: str
    user_id: str
    session_id: str
    message: str
    today: date
    scope: CredentialScope
    history: List[ConversationTurn]
    decision: Optional[RoutingDecision]
    result: Optional[SubAgentResult]
    response: Optional[str]
    error: Optional[str]
    agent_chain_trace: Annotated[List[str], operator.add]


class OrchestrationResult(BaseModel):
    """What one chat request produced"""
    response: str
    path: Optional[DecisionOutcome] = None
    request_id: str
    error: Optional[str] = None


class TaskPilotOrchestrator:
    """Main orchestrator: a fixed LangGraph graph from input to output"""

    def __init__(
        self,
        relay: CredentialRelay,
        router: DecisionRouter,
        fast_path: BaseSubAgent,
        agent: BaseSubAgent,
        context_manager: ContextManager,
        conversation_store: ConversationStore,
        similarity_index: Optional[SimilarityIndex] = None,
    ):
        self.relay = relay
        self.router = router
        self.fast_path = fast_path
        self.agent = agent
        self.context_manager = context_manager
        self.conversation_store = conversation_store
        self.similarity_index = similarity_index
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        """Create the routing workflow graph"""

        workflow = StateGraph(WorkflowState)

        workflow.add_node("input_loader", self.input_loader_node)
        workflow.add_node("decision_router", self.decision_router_node)
        workflow.add_node("fast_path", self.fast_path_node)
        workflow.add_node("agent", self.agent_node)
        workflow.add_node("output", self.output_node)

        workflow.set_entry_point("input_loader")

        workflow.add_conditional_edges(
            "input_loader",
            self.check_input,
            {
                "valid": "decision_router",
                "error": "output",
            }
        )

        workflow.add_conditional_edges(
            "decision_router",
            self.route_on_decision,
            {
                "fast_path": "fast_path",
                "agent_path": "agent",
                "error": "output",
            }
        )

        workflow.add_edge("fast_path", "output")
        workflow.add_edge("agent", "output")
        workflow.add_edge("output", END)

        return workflow.compile()

    async def input_loader_node(self, state: WorkflowState) -> Dict[str, Any]:
        """Validate the message and load prior turns"""
        logger.info("Loading input", session_id=state["session_id"])

        if not state["message"] or not state["message"].strip():
            return {"error": ErrorKind.VALIDATION.value, "agent_chain_trace": ["input_loader"]}

        # never raises: memory failures degrade to an empty history
        history = await self.context_manager.get_conversation_context(state["user_id"], state["session_id"])
        return {"history": history, "agent_chain_trace": ["input_loader"]}

    async def decision_router_node(self, state: WorkflowState) -> Dict[str, Any]:
        """Classify the message"""
        logger.info("Routing message", session_id=state["session_id"])

        try:
            decision = await self.router.route(
                state["message"],
                state["history"],
                session_id=state["session_id"],
                today=state["today"],
            )
        except Exception as e:
            logger.error("Routing failed", error=str(e), exc_info=True)
            return {"error": ErrorKind.UNAVAILABLE.value, "agent_chain_trace": ["decision_router"]}

        return {"decision": decision, "agent_chain_trace": ["decision_router"]}

    async def fast_path_node(self, state: WorkflowState) -> Dict[str, Any]:
        """Answer a read-only question directly"""
        return await self._run_subagent(self.fast_path, state, "fast_path")

    async def agent_node(self, state: WorkflowState) -> Dict[str, Any]:
        """Run the tool-using reasoning agent"""
        return await self._run_subagent(self.agent, state, "agent")

    async def output_node(self, state: WorkflowState) -> Dict[str, Any]:
        """Persist the turn(s), compose the response and release the credential"""
        logger.info("Writing output", session_id=state["session_id"])

        try:
            result = state.get("result")
            error = state.get("error")
            response = result.response if result else None
            if result and result.error_kind:
                error = result.error_kind
            if response is None:
                response = user_message_for(Fail(kind=_error_kind(error)))

            await self._persist(state, result, error)
            return {"response": response, "error": error, "agent_chain_trace": ["output"]}
        finally:
            state["scope"].release()

    def check_input(self, state: WorkflowState) -> Literal["valid", "error"]:
        """Short-circuit invalid input to the output node"""

        return "error" if state.get("error") else "valid"

    def route_on_decision(self, state: WorkflowState) -> Literal["fast_path", "agent_path", "error"]:
        """Branch on the router's decision"""

        decision = state.get("decision")
        if state.get("error") or decision is None:
            return "error"

        agent_logger.log_workflow_transition(
            session_id=state["session_id"],
            from_node="decision_router",
            to_node=decision.outcome.value,
            condition=decision.reason,
        )
        return decision.outcome.value

    async def _run_subagent(self, subagent: BaseSubAgent, state: WorkflowState, node: str) -> Dict[str, Any]:
        logger.info("Running branch", node=node, session_id=state["session_id"])

        decision = state.get("decision")
        request = SubAgentRequest(
            user_id=state["user_id"],
            session_id=state["session_id"],
            message=state["message"],
            scope=state["scope"],
            history=state.get("history") or [],
            metadata={"today": state["today"], "plan": decision.plan if decision else None},
        )

        try:
            if not await subagent.validate_input(request):
                return {"error": ErrorKind.VALIDATION.value, "agent_chain_trace": [node]}
            result = await subagent.process(request)
        except Exception as e:
            # the node fails, the output node still runs
            logger.error("Branch failed", node=node, error=str(e), exc_info=True)
            return {"error": ErrorKind.UNAVAILABLE.value, "agent_chain_trace": [node]}

        return {"result": result, "agent_chain_trace": [node]}

    async def _persist(self, state: WorkflowState, result: Optional[SubAgentResult], error: Optional[str]):
        """Store the user turn and the assistant turn, or an error placeholder; memory failures are non-fatal"""

        user_id, session_id = state["user_id"], state["session_id"]
        try:
            if state["message"].strip():
                await self.conversation_store.append(user_id, session_id, Role.USER, state["message"])
            if result is not None:
                await self.conversation_store.append(user_id, session_id, Role.ASSISTANT, result.response)
            else:
                await self.conversation_store.append(
                    user_id, session_id, Role.SYSTEM, f"[no response: {error or 'unknown error'}]"
                )
        except MemoryUnavailable as e:
            logger.error("Conversation not persisted", session_id=session_id, error=str(e))
            metrics.increment_counter("memory_write_failures")

    async def process_message(
        self,
        user_id: str,
        session_id: str,
        message: str,
        credential: str,
        request_id: Optional[str] = None,
        today: Optional[date] = None,
    ) -> OrchestrationResult:
        """Process a message through the workflow"""

        request_id = request_id or str(uuid4())
        start_time = time.time()

        with structlog.contextvars.bound_contextvars(request_id=request_id, user_id=user_id, session_id=session_id):
            # the relay key is server-generated, client request ids may repeat
            # released by the output node, and again here if the graph never reaches it
            with self.relay.scope(uuid4().hex, credential) as scope:
                initial_state: WorkflowState = {
                    "request_id": request_id,
                    "user_id": user_id,
                    "session_id": session_id,
                    "message": message,
                    "today": today or date.today(),
                    "scope": scope,
                    "history": [],
                    "decision": None,
                    "result": None,
                    "response": None,
                    "error": None,
                    "agent_chain_trace": [],
                }
                final_state = await self.workflow.ainvoke(initial_state)

            decision = final_state.get("decision")
            path = decision.outcome if decision else None
            duration_ms = (time.time() - start_time) * 1000
            metrics.record_latency("request", duration_ms, tags={"path": path.value if path else "none"})
            logger.info(
                "Request completed",
                path=path.value if path else None,
                error=final_state.get("error"),
                trace=final_state.get("agent_chain_trace"),
                duration_ms=duration_ms,
            )

            return OrchestrationResult(
                response=final_state["response"],
                path=path,
                request_id=request_id,
                error=final_state.get("error"),
            )

    async def refresh_index(self, user_id: str, credential: str, request_id: Optional[str] = None) -> int:
        """Explicitly rebuild a user's similarity index"""

        if self.similarity_index is None:
            return 0

        request_id = request_id or str(uuid4())
        with structlog.contextvars.bound_contextvars(request_id=request_id, user_id=user_id):
            with self.relay.scope(uuid4().hex, credential) as scope:
                return await self.similarity_index.refresh(user_id, scope.current())

    async def session_history(self, user_id: str, session_id: str, limit: int = 50) -> List[ConversationTurn]:
        """Stored turns of a session, oldest first"""

        return await self.conversation_store.recent_turns(user_id, session_id, limit)


def _error_kind(error: Optional[str]) -> ErrorKind:
    try:
        return ErrorKind(error)
    except ValueError:
        return ErrorKind.UNAVAILABLE
