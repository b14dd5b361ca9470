import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from conftest import TODAY, TOKEN, ScriptedChatModel, tool_call_reply
from taskpilot.domain.context.context_manager import ContextManager
from taskpilot.domain.context.memory.conversation_store import InMemoryConversationStore
from taskpilot.domain.models.agent_state import ConversationTurn, ReasoningStatus, Role
from taskpilot.domain.models.results import USER_FACING_MESSAGES, ErrorKind
from taskpilot.domain.orchestration.subagent.base_subagent import SubAgentRequest
from taskpilot.domain.orchestration.subagent.reasoning_agent import ReasoningAgent
from taskpilot.domain.tool.task_tools import TaskTools
from taskpilot.domain.tool.tool_registry import ToolRegistry


@pytest.fixture
def build_agent(record_client):
    def _build(replies, delay: float = 0.0, **kwargs):
        model = ScriptedChatModel(replies=list(replies), delay=delay)
        agent = ReasoningAgent(
            model,
            TaskTools(record_client),
            ToolRegistry(),
            ContextManager(InMemoryConversationStore()),
            **kwargs,
        )
        return model, agent
    return _build


def request_for(scope, message: str, history=None) -> SubAgentRequest:
    return SubAgentRequest(
        user_id="alice",
        session_id="s1",
        message=message,
        scope=scope,
        history=history or [],
        metadata={"today": TODAY},
    )


def tool_messages(messages):
    return [m for m in messages if isinstance(m, ToolMessage)]


async def test_tool_loop_reaches_final_answer(build_agent, scope, task_service):
    model, agent = build_agent([
        tool_call_reply("create_task", {"title": "Finish report", "due_date": "Friday"}),
        "I created 'Finish report' due Friday.",
    ])

    result = await agent.process(request_for(scope, "Create a task called Finish report due Friday"))

    assert result.error_kind is None
    assert result.response == "I created 'Finish report' due Friday."
    assert result.trace.status == ReasoningStatus.TERMINAL
    assert result.trace.steps == 2
    assert result.trace.invocations[0].idempotency_key
    [record] = task_service.records.values()
    assert (record["title"], record["due_date"]) == ("Finish report", "2026-10-16")

    fed_back = tool_messages(model.received[1])
    assert len(fed_back) == 1
    assert fed_back[0].tool_call_id == "call_1"
    assert '"ok": true' in fed_back[0].content


async def test_context_carries_prompt_history_and_message(build_agent, scope):
    model, agent = build_agent(["Nothing to do."])
    history = [
        ConversationTurn(user_id="alice", session_id="s1", role=Role.USER, content="hi", sequence=1),
        ConversationTurn(user_id="alice", session_id="s1", role=Role.ASSISTANT, content="hello", sequence=2),
        ConversationTurn(user_id="alice", session_id="s1", role=Role.SYSTEM, content="[no response: x]", sequence=3),
    ]

    await agent.process(request_for(scope, "anything new?", history))

    first = model.received[0]
    assert isinstance(first[0], SystemMessage)
    assert "Today is 2026-10-14" in first[0].content
    assert [type(m) for m in first[1:]] == [HumanMessage, AIMessage, HumanMessage]
    assert first[-1].content == "anything new?"


async def test_invalid_tool_call_is_fed_back_for_correction(build_agent, scope, task_service):
    model, agent = build_agent([
        tool_call_reply("create_task", '{"due": "Friday"', call_id="bad"),
        tool_call_reply("create_task", {"title": "Pay rent"}, call_id="good"),
        "Added 'Pay rent'.",
    ])

    result = await agent.process(request_for(scope, "Add pay rent"))

    assert result.response == "Added 'Pay rent'."
    assert [r.success for r in result.trace.results] == [False, True]
    assert result.trace.results[0].error_kind == ErrorKind.VALIDATION.value
    assert task_service.count("POST") == 1
    correction = tool_messages(model.received[1])[0]
    assert correction.tool_call_id == "bad"
    assert '"validation"' in correction.content


async def test_unknown_tool_is_reported_to_the_model(build_agent, scope, task_service):
    model, agent = build_agent([tool_call_reply("drop_all_tasks", {}), "Sorry, I can't do that."])

    result = await agent.process(request_for(scope, "Drop everything"))

    assert result.trace.results[0].error_kind == ErrorKind.VALIDATION.value
    assert "Unknown tool" in tool_messages(model.received[1])[0].content
    assert task_service.calls == []


async def test_duplicate_creates_in_one_turn_make_one_task(build_agent, scope, task_service):
    both = AIMessage(content="", tool_calls=[
        {"name": "create_task", "args": {"title": "Finish report", "due_date": "Friday"}, "id": "call_a"},
        {"name": "create_task", "args": {"title": "finish report", "due": "2026-10-16"}, "id": "call_b"},
    ])
    _, agent = build_agent([both, "Done."])

    result = await agent.process(request_for(scope, "Create Finish report due Friday"))

    first, second = result.trace.results
    assert first.data["id"] == second.data["id"]
    assert (first.data["created"], second.data["created"]) == (True, False)
    assert result.trace.invocations[0].idempotency_key == result.trace.invocations[1].idempotency_key
    assert len(task_service.records) == 1


async def test_step_limit_returns_partial_answer(build_agent, scope, task_service):
    task_service.add("alice", "One")
    _, agent = build_agent([tool_call_reply("get_tasks", {})], max_steps=2)

    result = await agent.process(request_for(scope, "Keep looking"))

    assert result.error_kind == ErrorKind.REASONING_LIMIT_EXCEEDED.value
    assert result.response.startswith(USER_FACING_MESSAGES[ErrorKind.REASONING_LIMIT_EXCEEDED])
    assert "get_tasks" in result.response
    assert result.trace.steps == 2
    assert task_service.count("GET") == 2


async def test_deadline_stops_a_slow_model(build_agent, scope):
    _, agent = build_agent(["too late"], delay=0.5, timeout_seconds=0.05)

    result = await agent.process(request_for(scope, "What should I do?"))

    assert result.error_kind == ErrorKind.REASONING_LIMIT_EXCEEDED.value
    assert result.response == USER_FACING_MESSAGES[ErrorKind.REASONING_LIMIT_EXCEEDED]


async def test_transient_model_error_is_retried(build_agent, scope, fast_retry):
    model, agent = build_agent([ConnectionError("connection reset"), "All done."], retry_policy=fast_retry)

    result = await agent.process(request_for(scope, "Anything?"))

    assert result.response == "All done."
    assert len(model.received) == 2


async def test_model_down_after_retries_is_unavailable(build_agent, scope, fast_retry):
    model, agent = build_agent([ConnectionError("connection refused")], retry_policy=fast_retry)

    result = await agent.process(request_for(scope, "Anything?"))

    assert result.error_kind == ErrorKind.UNAVAILABLE.value
    assert result.response == USER_FACING_MESSAGES[ErrorKind.UNAVAILABLE]
    assert len(model.received) == 3


async def test_missing_model_is_unavailable(record_client, scope):
    agent = ReasoningAgent(None, TaskTools(record_client), ToolRegistry(), ContextManager(InMemoryConversationStore()))

    result = await agent.process(request_for(scope, "Create a task"))

    assert result.error_kind == ErrorKind.UNAVAILABLE.value


async def test_credential_never_reaches_the_model(build_agent, scope):
    model, agent = build_agent([
        tool_call_reply("get_tasks", {"token": "please-use-this"}),
        "You have no tasks.",
    ])

    await agent.process(request_for(scope, "What tasks do I have?"))

    for messages in model.received:
        assert all(TOKEN not in str(m.content) for m in messages)
