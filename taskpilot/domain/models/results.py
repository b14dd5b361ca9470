from typing import Any, Generic, Optional, TypeVar, Union
from enum import Enum
from pydantic import BaseModel, Field


T = TypeVar("T")


class ErrorKind(str, Enum):
    """Failure categories shared by the record client, tools and graph nodes"""
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    VALIDATION = "validation"
    UNAVAILABLE = "unavailable"
    REASONING_LIMIT_EXCEEDED = "reasoning_limit_exceeded"


class Ok(BaseModel, Generic[T]):
    """Successful outcome carrying a value"""
    value: T
    ok: bool = Field(default=True, frozen=True)


class Fail(BaseModel):
    """Typed failure outcome, never raised"""
    kind: ErrorKind
    message: str = ""
    status_code: Optional[int] = None
    ok: bool = Field(default=False, frozen=True)

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.UNAVAILABLE


Result = Union[Ok[Any], Fail]


# User-facing wording for failures that reach the end of a request
USER_FACING_MESSAGES = {
    ErrorKind.NOT_FOUND: "I couldn't find that task.",
    ErrorKind.UNAUTHORIZED: "I'm not authorized to access your tasks right now. Please sign in again.",
    ErrorKind.VALIDATION: "I couldn't understand the task details. Could you rephrase?",
    ErrorKind.UNAVAILABLE: "The task service is temporarily unavailable. Please try again in a moment.",
    ErrorKind.REASONING_LIMIT_EXCEEDED: "I couldn't finish that request in time.",
}


def user_message_for(fail: Fail) -> str:
    """Map a failure to the sentence shown to the user"""

    return USER_FACING_MESSAGES.get(fail.kind, "Something went wrong while handling your request.")
