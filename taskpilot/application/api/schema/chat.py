from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, Field

from taskpilot.domain.models.agent_state import DecisionOutcome, Role


class ChatRequest(BaseModel):
    """Inbound chat message; the credential travels in the Authorization header"""
    user_id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    message: str = Field(min_length=1, max_length=4000)


class ChatResponse(BaseModel):
    response: str
    path: Optional[DecisionOutcome] = Field(None, description="Branch that handled the message")
    request_id: str
    error: Optional[str] = Field(None, description="Failure kind when the response is an error message")


class IndexRefreshRequest(BaseModel):
    user_id: str = Field(min_length=1)


class IndexRefreshResponse(BaseModel):
    user_id: str
    entries: int
    state: str


class TurnView(BaseModel):
    sequence: int
    role: Role
    content: str
    timestamp: datetime


class HistoryResponse(BaseModel):
    user_id: str
    session_id: str
    turns: List[TurnView]
