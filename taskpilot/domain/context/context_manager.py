from typing import List, Optional
from datetime import date

import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel, Field

from taskpilot.domain.context.memory.conversation_store import ConversationStore
from taskpilot.domain.context.memory.similarity_index import SimilarityIndex
from taskpilot.domain.models.agent_state import ConversationTurn, RetrievedContext, Role
from taskpilot.domain.models.errors import IndexNotReady, MemoryUnavailable
from taskpilot.infrastructure.observability.logging import agent_logger
from taskpilot.infrastructure.security.credential_relay import CredentialScope

logger = structlog.get_logger(__name__)


SYSTEM_PROMPT = """You are a task assistant. You manage the user's tasks only through the provided tools.
Today is {today}.
Use get_tasks or get_task_by_id to look things up before changing them.
Call create_task once per task the user asks for. If a tool returns an error, correct the arguments and try again.
Answer briefly once the request is done."""

CONTEXT_HEADER = "Tasks that may be relevant (most similar first):"


class ReasoningContext(BaseModel):
    """Inputs assembled for one run of the reasoning loop"""
    model_config = {"arbitrary_types_allowed": True}

    messages: List[BaseMessage]
    retrieved: List[RetrievedContext] = Field(default_factory=list)
    degraded: List[str] = Field(default_factory=list)


class ContextManager:
    """Assembles conversation memory and retrieved task context for the agent"""

    def __init__(
        self,
        conversation_store: ConversationStore,
        similarity_index: Optional[SimilarityIndex] = None,
        history_limit: int = 20,
        top_k: int = 5,
    ):
        self.conversation_store = conversation_store
        self.similarity_index = similarity_index
        self.history_limit = history_limit
        self.top_k = top_k

    async def get_conversation_context(self, user_id: str, session_id: str) -> List[ConversationTurn]:
        """Recent turns of the session, empty when memory is unavailable"""

        try:
            turns = await self.conversation_store.recent_turns(user_id, session_id, self.history_limit)
        except MemoryUnavailable as e:
            agent_logger.log_context_update(
                session_id=session_id,
                context_type="conversation",
                action="degraded",
                details={"error": str(e)},
            )
            return []

        agent_logger.log_context_update(
            session_id=session_id,
            context_type="conversation",
            action="loaded",
            details={"turns": len(turns)},
        )
        return turns

    async def retrieve_relevant(self, user_id: str, session_id: str, scope: CredentialScope, query: str) -> Optional[List[RetrievedContext]]:
        """Top-k similar tasks, None when the index cannot be built"""

        if self.similarity_index is None:
            return None

        try:
            await self.similarity_index.ensure_ready(user_id, scope.current())
            retrieved = await self.similarity_index.query(user_id, query, self.top_k)
        except IndexNotReady as e:
            agent_logger.log_context_update(
                session_id=session_id,
                context_type="similarity_index",
                action="degraded",
                details={"reason": e.reason},
            )
            return None

        agent_logger.log_context_update(
            session_id=session_id,
            context_type="similarity_index",
            action="retrieved",
            details={"records": [item.record_id for item in retrieved]},
        )
        return retrieved

    async def build_context(
        self,
        user_id: str,
        session_id: str,
        message: str,
        history: List[ConversationTurn],
        scope: CredentialScope,
        today: Optional[date] = None,
    ) -> ReasoningContext:
        """System prompt, history, retrieved context and the new message, in model order"""

        logger.info("Building reasoning context", session_id=session_id)

        degraded = []
        retrieved = await self.retrieve_relevant(user_id, session_id, scope, message)
        if retrieved is None:
            degraded.append("similarity_index")
            retrieved = []

        system_text = SYSTEM_PROMPT.format(today=(today or date.today()).isoformat())
        if retrieved:
            lines = [f"- (id {item.record_id}) {item.source_text.replace(chr(10), ' ')}" for item in retrieved]
            system_text = f"{system_text}\n\n{CONTEXT_HEADER}\n" + "\n".join(lines)

        messages: List[BaseMessage] = [SystemMessage(content=system_text)]
        messages.extend(self.history_messages(history))
        messages.append(HumanMessage(content=message))

        return ReasoningContext(messages=messages, retrieved=retrieved, degraded=degraded)

    @staticmethod
    def history_messages(history: List[ConversationTurn]) -> List[BaseMessage]:
        messages: List[BaseMessage] = []
        for turn in history:
            if turn.role == Role.USER:
                messages.append(HumanMessage(content=turn.content))
            elif turn.role == Role.ASSISTANT:
                messages.append(AIMessage(content=turn.content))
        return messages
