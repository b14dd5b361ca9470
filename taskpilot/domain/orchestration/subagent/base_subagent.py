from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional
from datetime import datetime

from pydantic import BaseModel, Field

from taskpilot.domain.models.agent_state import ConversationTurn, ReasoningTrace
from taskpilot.infrastructure.security.credential_relay import CredentialScope


class SubAgentRequest(BaseModel):
    """Everything a branch node needs to answer one message"""
    model_config = {"arbitrary_types_allowed": True}

    user_id: str
    session_id: str
    message: str
    scope: CredentialScope
    history: List[ConversationTurn] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SubAgentResult(BaseModel):
    """Answer of a branch node; error_kind is set when the answer is a failure message"""
    response: str
    error_kind: Optional[str] = None
    trace: Optional[ReasoningTrace] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class BaseSubAgent(ABC):
    """Base class for the branch nodes of the orchestration graph"""

    def __init__(self, name: str, description: str):
        self.name = name
        self.description = description
        self.created_at = datetime.utcnow()
        self.last_active = datetime.utcnow()

    @abstractmethod
    async def process(self, request: SubAgentRequest) -> SubAgentResult:
        """Process input and return result"""
        pass

    @abstractmethod
    async def validate_input(self, request: SubAgentRequest) -> bool:
        """Validate input data"""
        pass

    def update_activity(self):
        """Update last activity timestamp"""
        self.last_active = datetime.utcnow()

    def get_info(self) -> Dict[str, Any]:
        """Get agent information"""
        return {
            "name": self.name,
            "description": self.description,
            "created_at": self.created_at.isoformat(),
            "last_active": self.last_active.isoformat()
        }
