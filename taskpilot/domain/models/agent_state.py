from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field
from datetime import date, datetime
from enum import Enum
import hashlib
import json
import re


class TaskStatus(str, Enum):
    """Task status as exposed by the record service"""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class Role(str, Enum):
    """Author of a conversation turn"""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class DecisionOutcome(str, Enum):
    """Which branch of the graph handles a message"""
    FAST_PATH = "fast_path"
    AGENT_PATH = "agent_path"


class ReasoningStatus(str, Enum):
    """States of the bounded reasoning loop"""
    THINKING = "thinking"
    AWAITING_TOOL = "awaiting_tool"
    TERMINAL = "terminal"


class TaskRecord(BaseModel):
    """A task owned by the backing record service"""
    id: str = Field(description="Opaque identifier assigned by the record service")
    owner_id: str = Field(description="User that owns the task")
    title: str
    status: TaskStatus = Field(default=TaskStatus.OPEN)
    due_date: Optional[date] = None
    description: str = Field(default="", description="Free text used for embedding")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def embedding_text(self) -> str:
        """Text fed to the embedding model"""
        parts = [self.title]
        if self.description:
            parts.append(self.description)
        return "\n".join(parts)

    def summary_line(self) -> str:
        """One-line rendering used in deterministic summaries"""
        line = f"{self.title} [{self.status.value.replace('_', ' ')}]"
        if self.due_date:
            line += f" due {self.due_date.isoformat()}"
        return line


class ConversationTurn(BaseModel):
    """One immutable entry of a session's conversation"""
    model_config = {"frozen": True}

    user_id: str
    session_id: str
    role: Role
    content: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    sequence: int = Field(ge=1, description="Monotonic position within the session")


class IndexEntry(BaseModel):
    """Embedding of one task record for one user"""
    record_id: str
    user_id: str
    source_text: str
    embedding: List[float]
    updated_at: Optional[datetime] = None


class RetrievedContext(BaseModel):
    """Index entry returned by a similarity query"""
    record_id: str
    source_text: str
    score: float


def canonical_title(title: str) -> str:
    """Case-folded, whitespace-collapsed title used for identity checks"""
    collapsed = re.sub(r"\s+", " ", title.strip())
    return collapsed.strip(" .!\"'").casefold()


def create_idempotency_key(owner_id: str, title: str, due_date: Optional[date]) -> str:
    """Key identifying semantically equal create requests"""
    material = "|".join([
        owner_id,
        canonical_title(title),
        due_date.isoformat() if due_date else "",
    ])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class ToolInvocation(BaseModel):
    """Structured tool request produced by the reasoning step"""
    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    raw_arguments: Optional[str] = Field(None, description="Unparsed arguments when the model emitted a string")
    call_id: Optional[str] = None
    idempotency_key: Optional[str] = None


class ToolResult(BaseModel):
    """Outcome of one tool invocation, fed back to the reasoning loop"""
    tool_name: str
    success: bool
    data: Any = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    mutated: bool = False
    duration_ms: Optional[float] = None

    def to_model_content(self) -> str:
        """Serialize for a ToolMessage"""
        if self.success:
            payload = {"ok": True, "result": self.data}
        else:
            payload = {"ok": False, "error_kind": self.error_kind, "error": self.error}
        return _dump_json(payload)


class ReasoningTrace(BaseModel):
    """What the agent node did during one request"""
    status: ReasoningStatus = Field(default=ReasoningStatus.THINKING)
    steps: int = 0
    invocations: List[ToolInvocation] = Field(default_factory=list)
    results: List[ToolResult] = Field(default_factory=list)
    final_answer: Optional[str] = None

    def transition(self, status: ReasoningStatus):
        """Move to the next loop state"""
        self.status = status

    def partial_answer(self) -> str:
        """Best-effort answer from whatever completed before termination"""

        completed = [r for r in self.results if r.success]
        if not completed:
            return ""
        lines = [f"- {r.tool_name}: {_short(r.data)}" for r in completed]
        return "Here is what I completed before stopping:\n" + "\n".join(lines)


def _short(data: Any, limit: int = 160) -> str:
    text = _dump_json(data)
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _dump_json(payload: Any) -> str:
    return json.dumps(payload, default=str, ensure_ascii=False)
