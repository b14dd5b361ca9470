from typing import List, Optional
import asyncio
import re

import structlog
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, Field, ValidationError

from taskpilot.domain.models.agent_state import ConversationTurn, DecisionOutcome

logger = structlog.get_logger(__name__)


CLASSIFIER_PROMPT = """You route messages for a task assistant.
Answer "fast_path" when the message only asks to look up, count or list the user's tasks.
Answer "agent_path" when it asks to create, change, complete or delete tasks, or needs reasoning.
Reply with JSON only: {"path": "fast_path" | "agent_path", "confidence": <0..1>}"""


class ModelVerdict(BaseModel):
    """Parsed classifier output"""
    path: DecisionOutcome
    confidence: float = Field(ge=0.0, le=1.0)


def _extract_json(content: str) -> str:
    fenced = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", content, re.DOTALL)
    if fenced:
        return fenced.group(1)
    braces = re.search(r"\{.*\}", content, re.DOTALL)
    return braces.group(0) if braces else content


class IntentClassifier:
    """Lightweight model call deciding between the fast path and the agent"""

    def __init__(self, model: BaseChatModel, timeout: float = 5.0, history_turns: int = 4):
        self.model = model
        self.timeout = timeout
        self.history_turns = history_turns

    async def classify(self, message: str, recent_turns: Optional[List[ConversationTurn]] = None) -> Optional[ModelVerdict]:
        """Model verdict, or None when the model errors, times out or answers unparseably"""

        history = "\n".join(
            f"{turn.role.value}: {turn.content}" for turn in (recent_turns or [])[-self.history_turns:]
        )
        prompt = f"Conversation so far:\n{history}\n\nMessage: {message}" if history else f"Message: {message}"

        try:
            reply = await asyncio.wait_for(
                self.model.ainvoke([SystemMessage(content=CLASSIFIER_PROMPT), HumanMessage(content=prompt)]),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Intent classifier timed out", timeout=self.timeout)
            return None
        except Exception as e:
            logger.warning("Intent classifier failed", error=str(e))
            return None

        content = reply.content if isinstance(reply.content, str) else str(reply.content)
        try:
            return ModelVerdict.model_validate_json(_extract_json(content))
        except ValidationError as e:
            logger.warning("Unparseable classifier verdict", error=str(e), content=content[:200])
            return None
