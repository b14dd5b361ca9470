from typing import Optional


class TaskPilotError(Exception):
    """Base class for all service errors"""


class ConfigurationError(TaskPilotError):
    """Programmer error: a component was used outside its valid scope"""


class CredentialMissing(TaskPilotError):
    """Inbound request carried no usable bearer credential"""


class IndexNotReady(TaskPilotError):
    """Similarity index has no successful build for the user"""

    def __init__(self, user_id: str, reason: Optional[str] = None):
        self.user_id = user_id
        self.reason = reason
        message = f"Similarity index not ready for user {user_id}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class MemoryUnavailable(TaskPilotError):
    """Conversation memory could not be read or written"""


class ServiceUnavailable(TaskPilotError):
    """A backing service stayed unavailable after bounded retries"""


class ReasoningLimitExceeded(TaskPilotError):
    """Reasoning loop ran out of steps or time"""

    def __init__(self, steps: int, partial_answer: str = ""):
        self.steps = steps
        self.partial_answer = partial_answer
        super().__init__(f"Reasoning stopped after {steps} steps")
