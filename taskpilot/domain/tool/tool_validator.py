# Argument normalization for task tools
# Every tool has exactly one canonical parser: raw mapping-or-string in, typed argument model or Fail out.
from typing import Any, Dict, Mapping, Optional, Tuple, Type, Union
from datetime import date, datetime, timedelta
import json
import re

import structlog
from pydantic import BaseModel, Field, ValidationError, ValidationInfo, field_validator, model_validator

from taskpilot.domain.models.agent_state import TaskStatus
from taskpilot.domain.models.results import ErrorKind, Fail

logger = structlog.get_logger(__name__)


class ArgumentError(ValueError):
    """Raw tool arguments could not be turned into a mapping"""


def normalize_key(key: str) -> str:
    """Collapse casing and separators: dueDate, due_date, "Due Date" -> duedate"""
    return re.sub(r"[^a-z0-9]", "", str(key).lower())


# canonical field -> accepted spellings, compared after normalize_key
FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "task_id": ("taskid", "id", "recordid", "taskidentifier", "identifier", "tid"),
    "title": ("title", "name", "task", "taskname", "tasktitle", "subject", "summary"),
    "due_date": ("duedate", "due", "deadline", "dueon", "dueby", "date", "duedatetime", "duedt"),
    "status": ("status", "state", "taskstatus", "progress"),
    "description": ("description", "desc", "body", "details", "detail", "notes", "note", "content", "text"),
    "due_before": ("duebefore", "before", "until", "dueuntil", "to", "enddate"),
    "due_after": ("dueafter", "after", "since", "duefrom", "from", "startdate"),
}

# never forwarded, the relay's credential is the only one used
CREDENTIAL_KEYS = frozenset({
    "token", "authorization", "auth", "credential", "credentials", "bearer",
    "accesstoken", "apikey", "bearertoken", "password",
})

# wrappers some models put around the real arguments
WRAPPER_KEYS = frozenset({"input", "args", "arguments", "kwargs", "params", "parameters", "arg1", "toolinput"})

_ALIAS_LOOKUP: Dict[str, str] = {
    alias: canonical for canonical, aliases in FIELD_ALIASES.items() for alias in aliases
}

STATUS_SYNONYMS: Dict[str, TaskStatus] = {
    "open": TaskStatus.OPEN,
    "todo": TaskStatus.OPEN,
    "to_do": TaskStatus.OPEN,
    "new": TaskStatus.OPEN,
    "pending": TaskStatus.OPEN,
    "not_started": TaskStatus.OPEN,
    "reopen": TaskStatus.OPEN,
    "reopened": TaskStatus.OPEN,
    "in_progress": TaskStatus.IN_PROGRESS,
    "inprogress": TaskStatus.IN_PROGRESS,
    "progress": TaskStatus.IN_PROGRESS,
    "doing": TaskStatus.IN_PROGRESS,
    "started": TaskStatus.IN_PROGRESS,
    "active": TaskStatus.IN_PROGRESS,
    "wip": TaskStatus.IN_PROGRESS,
    "done": TaskStatus.DONE,
    "complete": TaskStatus.DONE,
    "completed": TaskStatus.DONE,
    "finished": TaskStatus.DONE,
    "closed": TaskStatus.DONE,
    "resolved": TaskStatus.DONE,
}

WEEKDAYS: Dict[str, int] = {
    "monday": 0, "mon": 0,
    "tuesday": 1, "tue": 1, "tues": 1,
    "wednesday": 2, "wed": 2,
    "thursday": 3, "thu": 3, "thur": 3, "thurs": 3,
    "friday": 4, "fri": 4,
    "saturday": 5, "sat": 5,
    "sunday": 6, "sun": 6,
}

_DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%m/%d/%Y", "%d %B %Y", "%d %b %Y", "%B %d %Y", "%b %d %Y")
_DATE_FORMATS_NO_YEAR = ("%B %d", "%b %d", "%d %B", "%d %b")


def parse_status(value: Any) -> Optional[TaskStatus]:
    """Map a status spelling onto TaskStatus"""

    if value is None or value == "":
        return None
    if isinstance(value, TaskStatus):
        return value
    key = re.sub(r"[\s\-]+", "_", str(value).strip().lower())
    if key in ("all", "any", "*"):
        return None
    if key in STATUS_SYNONYMS:
        return STATUS_SYNONYMS[key]
    raise ValueError(f"Unknown status '{value}'. Use one of: open, in_progress, done")


def parse_due_date(value: Any, today: Optional[date] = None) -> Optional[date]:
    """
    Parse a due date given as ISO text, a weekday name, today/tomorrow or "in N days".
    Weekday names resolve to the next occurrence after today.
    """

    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    today = today or date.today()
    text = re.sub(r"\s+", " ", str(value).strip().lower().rstrip("."))
    text = re.sub(r"^(due|by|on)\s+", "", text)
    if text in ("", "none", "null", "no due date", "n/a"):
        return None

    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        pass

    if text == "today":
        return today
    if text == "tomorrow":
        return today + timedelta(days=1)

    match = re.fullmatch(r"(?:(next|this)\s+)?([a-z]+)", text)
    if match and match.group(2) in WEEKDAYS:
        days_ahead = (WEEKDAYS[match.group(2)] - today.weekday()) % 7 or 7
        return today + timedelta(days=days_ahead)

    match = re.fullmatch(r"in (\d+) (day|days|week|weeks)", text)
    if match:
        amount = int(match.group(1))
        return today + timedelta(days=amount * (7 if match.group(2).startswith("week") else 1))

    cleaned = text.replace(",", "")
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    for fmt in _DATE_FORMATS_NO_YEAR:
        try:
            parsed = datetime.strptime(f"{cleaned} {today.year}", f"{fmt} %Y").date()
        except ValueError:
            continue
        return parsed if parsed >= today else parsed.replace(year=today.year + 1)

    raise ValueError(f"Unrecognized due date '{value}'. Use YYYY-MM-DD, a weekday, today or tomorrow")


def _unwrap(mapping: Mapping[str, Any]) -> Any:
    if len(mapping) == 1:
        (key, value), = mapping.items()
        if normalize_key(key) in WRAPPER_KEYS and isinstance(value, (str, Mapping)):
            return value
    return mapping


def coerce_arguments(raw: Union[Mapping[str, Any], str, None], primary_field: Optional[str]) -> Dict[str, Any]:
    """
    Turn a mapping, a JSON string, "key: value" pairs or a bare value into a dict.
    A bare value is assigned to the tool's primary field.
    """

    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        unwrapped = _unwrap(raw)
        if unwrapped is not raw:
            return coerce_arguments(unwrapped, primary_field)
        return dict(raw)
    if not isinstance(raw, str):
        if primary_field:
            return {primary_field: raw}
        raise ArgumentError(f"Unsupported argument type {type(raw).__name__}")

    text = raw.strip()
    if not text:
        return {}

    if text[0] in "{[":
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as e:
            raise ArgumentError(f"Arguments look like JSON but could not be parsed: {e.msg}") from e
        if not isinstance(parsed, dict):
            raise ArgumentError("JSON arguments must be an object")
        return coerce_arguments(parsed, primary_field)

    pairs: Dict[str, Any] = {}
    leftovers = []
    for segment in re.split(r"[,;\n]", text):
        segment = segment.strip()
        if not segment:
            continue
        match = re.match(r"^([A-Za-z_][\w \-]{0,30}?)\s*[:=]\s*(.+)$", segment)
        if match and (
            normalize_key(match.group(1)) in _ALIAS_LOOKUP
            or normalize_key(match.group(1)) in CREDENTIAL_KEYS
        ):
            pairs[match.group(1).strip()] = match.group(2).strip().strip("\"'")
        else:
            leftovers.append(segment)

    if leftovers and primary_field:
        existing = [k for k in pairs if _ALIAS_LOOKUP.get(normalize_key(k)) == primary_field]
        if not existing:
            pairs[primary_field] = ", ".join(leftovers).strip("\"'")

    if not pairs:
        raise ArgumentError("Could not read any arguments from the given text")
    return pairs


def canonicalize(arguments: Mapping[str, Any], allowed: Tuple[str, ...]) -> Dict[str, Any]:
    """Map aliased keys onto canonical field names, dropping credentials and unknown keys"""

    canonical: Dict[str, Any] = {}
    for key, value in arguments.items():
        normalized = normalize_key(key)
        if normalized in CREDENTIAL_KEYS:
            # value intentionally not logged
            logger.warning("Dropped credential-like tool argument", argument=normalized)
            continue
        field = _ALIAS_LOOKUP.get(normalized)
        if field is None or field not in allowed:
            logger.debug("Ignoring unknown tool argument", argument=key)
            continue
        if field in canonical and canonical[field] not in (None, ""):
            continue
        canonical[field] = value.strip() if isinstance(value, str) else value
    return canonical


class _ToolArgs(BaseModel):
    model_config = {"extra": "ignore"}

    @field_validator("due_date", "due_before", "due_after", mode="before", check_fields=False)
    @classmethod
    def _parse_dates(cls, value: Any, info: ValidationInfo) -> Optional[date]:
        today = (info.context or {}).get("today")
        return parse_due_date(value, today)

    @field_validator("status", mode="before", check_fields=False)
    @classmethod
    def _parse_status(cls, value: Any) -> Optional[TaskStatus]:
        return parse_status(value)


class CreateTaskArgs(_ToolArgs):
    title: str = Field(min_length=1, max_length=300)
    due_date: Optional[date] = None
    status: Optional[TaskStatus] = None
    description: str = ""

    @model_validator(mode="before")
    @classmethod
    def _split_inline_due(cls, data: Any, info: ValidationInfo) -> Any:
        # "Finish report due Friday" given as a bare title
        if isinstance(data, dict) and isinstance(data.get("title"), str) and not data.get("due_date"):
            match = re.match(r"^(.*\S)\s+(?:due|by)\s+(.+)$", data["title"], flags=re.IGNORECASE)
            if match:
                try:
                    due = parse_due_date(match.group(2), (info.context or {}).get("today"))
                except ValueError:
                    return data
                return {**data, "title": match.group(1), "due_date": due}
        return data

    @field_validator("title", mode="before")
    @classmethod
    def _clean_title(cls, value: Any) -> Any:
        if isinstance(value, str):
            return re.sub(r"\s+", " ", value).strip().strip("\"'")
        return value

    @field_validator("description", mode="before")
    @classmethod
    def _none_description(cls, value: Any) -> Any:
        return "" if value is None else value


class TaskIdArgs(_ToolArgs):
    task_id: str = Field(min_length=1)

    @field_validator("task_id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(int(value))
        if isinstance(value, str):
            return value.strip().lstrip("#")
        return value


class UpdateTaskArgs(TaskIdArgs):
    title: Optional[str] = Field(None, min_length=1, max_length=300)
    due_date: Optional[date] = None
    status: Optional[TaskStatus] = None
    description: Optional[str] = None

    @model_validator(mode="after")
    def _requires_change(self) -> "UpdateTaskArgs":
        if not self.changes():
            raise ValueError("update_task needs at least one of: title, due_date, status, description")
        return self

    def changes(self) -> Dict[str, Any]:
        """Fields to patch, as JSON-ready values"""
        changes = self.model_dump(exclude={"task_id"}, exclude_none=True, mode="json")
        return changes


class GetTasksArgs(_ToolArgs):
    status: Optional[TaskStatus] = None
    due_before: Optional[date] = None
    due_after: Optional[date] = None


# tool name -> (argument model, primary field for bare string input)
TOOL_ARGUMENT_MODELS: Dict[str, Tuple[Type[_ToolArgs], Optional[str]]] = {
    "create_task": (CreateTaskArgs, "title"),
    "get_tasks": (GetTasksArgs, "status"),
    "get_task_by_id": (TaskIdArgs, "task_id"),
    "update_task": (UpdateTaskArgs, "task_id"),
    "delete_task": (TaskIdArgs, "task_id"),
}


def _format_validation_error(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "arguments"
        message = item.get("msg", "invalid value").removeprefix("Value error, ")
        problems.append(f"{location}: {message}")
    return "; ".join(problems)


def parse_tool_arguments(
    tool_name: str,
    raw: Union[Mapping[str, Any], str, None],
    today: Optional[date] = None,
) -> Union[_ToolArgs, Fail]:
    """Single entry point from raw model output to typed tool arguments"""

    if tool_name not in TOOL_ARGUMENT_MODELS:
        return Fail(kind=ErrorKind.VALIDATION, message=f"Unknown tool '{tool_name}'")

    model, primary_field = TOOL_ARGUMENT_MODELS[tool_name]
    try:
        arguments = coerce_arguments(raw, primary_field)
    except ArgumentError as e:
        return Fail(kind=ErrorKind.VALIDATION, message=f"{tool_name}: {e}")

    canonical = canonicalize(arguments, tuple(model.model_fields))
    try:
        return model.model_validate(canonical, context={"today": today})
    except ValidationError as e:
        return Fail(kind=ErrorKind.VALIDATION, message=f"{tool_name}: {_format_validation_error(e)}")
