# Read-only query shapes the fast path can answer without the reasoning model
from typing import Optional, Tuple
from datetime import date, timedelta
from enum import Enum
import calendar
import re

from pydantic import BaseModel

from taskpilot.domain.models.agent_state import TaskStatus
from taskpilot.domain.tool.tool_validator import WEEKDAYS, parse_due_date


class QueryShape(str, Enum):
    """What a read-only question asks for"""
    COUNT = "count"
    LIST = "list"
    DUE_RANGE = "due_range"
    OVERDUE = "overdue"
    BY_ID = "by_id"


class QueryPlan(BaseModel):
    """Inferred shape plus filters for one fast-path question"""
    shape: QueryShape
    count_only: bool = False
    status: Optional[TaskStatus] = None
    due_after: Optional[date] = None
    due_before: Optional[date] = None
    range_label: Optional[str] = None
    task_id: Optional[str] = None


TASK_NOUNS = ("task", "tasks", "todo", "todos", "to-do", "to-dos", "to do", "items", "item", "assignments")
COUNT_CUES = ("how many", "count", "number of", "total")
LIST_CUES = ("list", "show", "what", "which", "any", "give me", "do i have", "display", "see", "tell me")
OVERDUE_CUES = ("overdue", "past due", "late", "missed")

# status words that are safe to read as a filter in a question
_STATUS_WORDS = {
    "open": TaskStatus.OPEN,
    "pending": TaskStatus.OPEN,
    "todo": TaskStatus.OPEN,
    "outstanding": TaskStatus.OPEN,
    "unfinished": TaskStatus.OPEN,
    "incomplete": TaskStatus.OPEN,
    "doing": TaskStatus.IN_PROGRESS,
    "wip": TaskStatus.IN_PROGRESS,
    "done": TaskStatus.DONE,
    "completed": TaskStatus.DONE,
    "finished": TaskStatus.DONE,
    "closed": TaskStatus.DONE,
}

_BY_ID_PATTERNS = (
    re.compile(r"\btask\s+(?:id\s+)?#?\s*([a-z0-9][\w\-]*\d[\w\-]*|\d+)\b"),
    re.compile(r"\bid\s*[:=#]?\s*([a-z0-9][\w\-]*\d[\w\-]*)\b"),
    re.compile(r"#([\w\-]+)\b"),
)


def _contains(text: str, phrases) -> bool:
    return any(re.search(rf"\b{re.escape(phrase)}\b", text) for phrase in phrases)


def _status_filter(text: str) -> Optional[TaskStatus]:
    if re.search(r"\bin[\s\-]progress\b", text):
        return TaskStatus.IN_PROGRESS
    if re.search(r"\bnot (?:yet )?(?:done|finished|completed)\b", text):
        return TaskStatus.OPEN
    for word in re.findall(r"[a-z]+", text):
        if word in _STATUS_WORDS:
            return _STATUS_WORDS[word]
    return None


def _due_range(text: str, today: date) -> Optional[Tuple[Optional[date], Optional[date], str]]:
    """(due_after, due_before, label) for date phrases, both bounds inclusive"""

    if re.search(r"\btoday\b", text):
        return today, today, "due today"
    if re.search(r"\btomorrow\b", text):
        tomorrow = today + timedelta(days=1)
        return tomorrow, tomorrow, "due tomorrow"
    if re.search(r"\bthis week\b", text):
        return today, today + timedelta(days=6 - today.weekday()), "due this week"
    if re.search(r"\bnext week\b", text):
        start = today + timedelta(days=7 - today.weekday())
        return start, start + timedelta(days=6), "due next week"
    if re.search(r"\bthis month\b", text):
        last_day = calendar.monthrange(today.year, today.month)[1]
        return today, today.replace(day=last_day), "due this month"

    match = re.search(r"\b(?:next|within|in the next)\s+(\d+)\s+(day|days|week|weeks)\b", text)
    if match:
        days = int(match.group(1)) * (7 if match.group(2).startswith("week") else 1)
        return today, today + timedelta(days=days), f"due in the next {match.group(1)} {match.group(2)}"

    match = re.search(r"\bdue\s+(before|by|until|after|on)\s+([\w\-/ ]+?)(?:\?|$|\s+(?:and|or|that|which)\b)", text)
    if match:
        try:
            bound = parse_due_date(match.group(2), today)
        except ValueError:
            bound = None
        if bound:
            keyword = match.group(1)
            if keyword == "after":
                return bound, None, f"due after {bound.isoformat()}"
            if keyword == "on":
                return bound, bound, f"due on {bound.isoformat()}"
            return None, bound, f"due by {bound.isoformat()}"

    match = re.search(r"\bdue\s+(?:on\s+|this\s+|next\s+)?([a-z]+)\b", text)
    if match and match.group(1) in WEEKDAYS:
        day = parse_due_date(match.group(1), today)
        return day, day, f"due {match.group(1).capitalize()}"

    return None


def _task_id(text: str) -> Optional[str]:
    for pattern in _BY_ID_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


def infer_query_plan(message: str, today: Optional[date] = None, previous: Optional[str] = None) -> Optional[QueryPlan]:
    """
    Infer the read-only question a message asks, or None when it has no recognizable shape.
    ``previous`` is the prior user message, used for short follow-ups like "and the done ones?"
    """

    today = today or date.today()
    text = re.sub(r"\s+", " ", message.strip().lower())
    if not text:
        return None

    mentions_tasks = _contains(text, TASK_NOUNS)
    count_only = _contains(text, COUNT_CUES)
    status = _status_filter(text)
    due_range = _due_range(text, today)

    task_id = _task_id(text)
    if task_id and (mentions_tasks or "#" in text or re.search(r"\bid\b", text)):
        return QueryPlan(shape=QueryShape.BY_ID, task_id=task_id)

    if _contains(text, OVERDUE_CUES) and (mentions_tasks or count_only or _contains(text, LIST_CUES)):
        return QueryPlan(shape=QueryShape.OVERDUE, count_only=count_only, status=status, range_label="overdue")

    if due_range and (mentions_tasks or re.search(r"\bdue\b", text)):
        due_after, due_before, label = due_range
        return QueryPlan(
            shape=QueryShape.DUE_RANGE,
            count_only=count_only,
            status=status,
            due_after=due_after,
            due_before=due_before,
            range_label=label,
        )

    if mentions_tasks and count_only:
        return QueryPlan(shape=QueryShape.COUNT, count_only=True, status=status)

    if mentions_tasks and (_contains(text, LIST_CUES) or text.endswith("?") or status):
        return QueryPlan(shape=QueryShape.LIST, status=status)

    if previous and len(text.split()) <= 6 and re.match(r"^(and|what about|how about|only)\b", text):
        base = infer_query_plan(previous, today)
        if base and base.shape != QueryShape.BY_ID and (status or due_range):
            updates = {"status": status or base.status}
            if due_range:
                updates.update(
                    shape=QueryShape.DUE_RANGE,
                    due_after=due_range[0],
                    due_before=due_range[1],
                    range_label=due_range[2],
                )
            return base.model_copy(update=updates)

    return None
