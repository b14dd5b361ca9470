# mixin settings for external services and orchestration tuning
from typing import Optional, Tuple
from pydantic import BaseModel, Field


class RecordAPISettingsMixin(BaseModel):
    """
    Settings for the backing task CRUD service.
    """
    RECORD_API_BASE_URL: str = Field(default="http://localhost:8080", description="Base URL of the task service.")
    RECORD_API_TIMEOUT: float = Field(default=10.0, description="Seconds before a task service call is treated as unavailable.")


class OpenAISettingsMixin(BaseModel):
    """
    Settings for the chat and embedding models.
    NOTE: when no API key is configured the router runs heuristic-only and the agent path reports unavailable.
    """
    OPENAI_API_KEY: Optional[str] = None
    CHAT_MODEL_NAME: str = "gpt-4o-mini"
    ROUTER_MODEL_NAME: str = "gpt-4o-mini"
    EMBEDDING_MODEL_NAME: str = "text-embedding-3-small"
    MODEL_TEMPERATURE: float = 0.0


class RouterSettingsMixin(BaseModel):
    """
    Decision router tuning. Thresholds are configuration, the question/imperative bias is fixed.
    """
    ROUTER_USE_MODEL: bool = True
    ROUTER_CONFIDENCE_THRESHOLD: float = Field(default=0.7, description="Model verdicts below this confidence fall back to the heuristic.")
    ROUTER_MODEL_TIMEOUT: float = Field(default=5.0, description="Seconds allowed for the classification call.")
    ROUTER_FAST_PATH_MIN_SCORE: int = Field(default=1, description="Read-only cue hits required before a non-question goes to the fast path.")
    ROUTER_MUTATING_VERBS: Tuple[str, ...] = (
        "create", "add", "make", "new", "schedule", "remind",
        "update", "change", "edit", "rename", "move", "reschedule", "postpone", "set",
        "mark", "complete", "finish", "close", "reopen", "start",
        "delete", "remove", "cancel", "drop", "clear",
    )
    ROUTER_READ_CUES: Tuple[str, ...] = (
        "how many", "count", "number of", "list", "show", "what", "which",
        "due", "overdue", "pending", "open", "done", "in progress", "tasks",
    )


class AgentSettingsMixin(BaseModel):
    """
    Reasoning loop limits and retrieval sizing.
    """
    AGENT_MAX_STEPS: int = Field(default=6, description="Model turns allowed before the loop is terminated.")
    AGENT_TIMEOUT_SECONDS: float = Field(default=45.0, description="Wall-clock budget for the reasoning loop of one request.")
    INDEX_TOP_K: int = 5
    MEMORY_HISTORY_LIMIT: int = 20


class RetrySettingsMixin(BaseModel):
    """
    Bounded backoff applied by callers of unavailable services.
    """
    RETRY_ATTEMPTS: int = 3
    RETRY_WAIT_MIN: float = 0.2
    RETRY_WAIT_MAX: float = 2.0


class MemorySettingsMixin(BaseModel):
    """
    Conversation memory backend. No path means in-process memory.
    """
    MEMORY_DB_PATH: Optional[str] = None


class LoggingSettingsMixin(BaseModel):
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"
    SERVICE_NAME: str = "taskpilot"
