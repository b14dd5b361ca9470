from datetime import date

import pytest

from conftest import TODAY
from taskpilot.domain.models.agent_state import TaskStatus
from taskpilot.domain.models.results import ErrorKind, Fail
from taskpilot.domain.tool.tool_validator import (
    CreateTaskArgs, GetTasksArgs, TaskIdArgs, UpdateTaskArgs,
    parse_due_date, parse_status, parse_tool_arguments,
)

FRIDAY = date(2026, 10, 16)


@pytest.mark.parametrize("raw", [
    {"title": "Finish report", "due_date": "2026-10-16"},
    {"Title": "Finish report", "dueDate": "Friday"},
    {"name": "Finish report", "Due Date": "friday"},
    {"task": "Finish report", "deadline": "2026-10-16"},
    {"arguments": {"title": "Finish report", "due": "Friday"}},
    '{"title": "Finish report", "due_date": "2026-10-16"}',
    "title: Finish report, due: Friday",
    "title=Finish report; deadline=2026-10-16",
    "Finish report due Friday",
])
def test_create_arguments_normalize_to_one_shape(raw):
    args = parse_tool_arguments("create_task", raw, TODAY)

    assert isinstance(args, CreateTaskArgs)
    assert args.title == "Finish report"
    assert args.due_date == FRIDAY


def test_missing_title_is_validation_failure():
    result = parse_tool_arguments("create_task", {"due_date": "Friday"}, TODAY)

    assert isinstance(result, Fail)
    assert result.kind == ErrorKind.VALIDATION
    assert "title" in result.message


def test_bad_due_date_is_validation_failure():
    result = parse_tool_arguments("create_task", {"title": "x", "due_date": "someday maybe"}, TODAY)

    assert isinstance(result, Fail)
    assert result.kind == ErrorKind.VALIDATION
    assert "due_date" in result.message


def test_unparseable_json_is_validation_failure():
    result = parse_tool_arguments("create_task", '{"title": "x",', TODAY)

    assert isinstance(result, Fail)
    assert result.kind == ErrorKind.VALIDATION


def test_credential_arguments_are_discarded():
    args = parse_tool_arguments(
        "create_task", {"title": "x", "token": "attacker", "Authorization": "Bearer attacker"}, TODAY
    )

    assert isinstance(args, CreateTaskArgs)
    assert "attacker" not in args.model_dump_json()


@pytest.mark.parametrize("raw, expected", [
    ({"taskId": 42}, "42"),
    ({"id": "#t7"}, "t7"),
    ("t9", "t9"),
    ('{"task_id": "abc"}', "abc"),
])
def test_task_id_forms(raw, expected):
    args = parse_tool_arguments("get_task_by_id", raw, TODAY)

    assert isinstance(args, TaskIdArgs)
    assert args.task_id == expected


def test_update_requires_a_change():
    result = parse_tool_arguments("update_task", {"task_id": "t1"}, TODAY)

    assert isinstance(result, Fail)
    assert result.kind == ErrorKind.VALIDATION


def test_update_changes_are_json_ready():
    args = parse_tool_arguments("update_task", {"ID": "t1", "State": "completed", "dueDate": "tomorrow"}, TODAY)

    assert isinstance(args, UpdateTaskArgs)
    assert args.changes() == {"status": "done", "due_date": "2026-10-15"}


def test_get_tasks_accepts_empty_and_status_only():
    empty = parse_tool_arguments("get_tasks", None, TODAY)
    bare = parse_tool_arguments("get_tasks", "in progress", TODAY)

    assert isinstance(empty, GetTasksArgs) and empty.status is None
    assert isinstance(bare, GetTasksArgs) and bare.status == TaskStatus.IN_PROGRESS


def test_unknown_tool_is_validation_failure():
    result = parse_tool_arguments("drop_database", {}, TODAY)

    assert isinstance(result, Fail)
    assert result.kind == ErrorKind.VALIDATION


@pytest.mark.parametrize("text, expected", [
    ("today", TODAY),
    ("tomorrow", date(2026, 10, 15)),
    ("Wednesday", date(2026, 10, 21)),
    ("next friday", FRIDAY),
    ("in 3 days", date(2026, 10, 17)),
    ("in 2 weeks", date(2026, 10, 28)),
    ("2026-12-01", date(2026, 12, 1)),
    ("December 1, 2026", date(2026, 12, 1)),
    ("due Friday", FRIDAY),
])
def test_parse_due_date(text, expected):
    assert parse_due_date(text, TODAY) == expected


@pytest.mark.parametrize("text, expected", [
    ("todo", TaskStatus.OPEN),
    ("In Progress", TaskStatus.IN_PROGRESS),
    ("in-progress", TaskStatus.IN_PROGRESS),
    ("finished", TaskStatus.DONE),
    ("all", None),
])
def test_parse_status_synonyms(text, expected):
    assert parse_status(text) == expected


def test_parse_status_rejects_unknown():
    with pytest.raises(ValueError):
        parse_status("blocked-ish")
