import asyncio
import json
import re
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx
import pytest
from langchain_core.embeddings import Embeddings
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage
from langchain_core.outputs import ChatGeneration, ChatResult

from taskpilot.application.api.services import ServiceContainer, build_services
from taskpilot.config.app_config import ServiceSettings
from taskpilot.infrastructure.clients.record_client import RecordClient
from taskpilot.infrastructure.resilience.retry import RetryPolicy
from taskpilot.infrastructure.security.credential_relay import CredentialRelay

# a Wednesday; "Friday" resolves to 2026-10-16
TODAY = date(2026, 10, 14)
TOKEN = "secret-token-123"


class FakeTaskService:
    """In-memory stand-in for the task CRUD API, served through httpx.MockTransport"""

    def __init__(self):
        self.records: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.auth_headers: List[str] = []
        self.fail_next: Dict[str, Any] = {}
        self.list_delay = 0.0
        self._next_id = 1
        self._clock = datetime(2026, 10, 1, 9, 0, 0)

    def add(self, owner_id: str, title: str, status: str = "open", due_date: Optional[str] = None, description: str = "") -> str:
        record_id = f"t{self._next_id}"
        self._next_id += 1
        self._clock += timedelta(minutes=1)
        self.records[record_id] = {
            "id": record_id,
            "owner_id": owner_id,
            "title": title,
            "status": status,
            "due_date": due_date,
            "description": description,
            "created_at": self._clock.isoformat(),
            "updated_at": self._clock.isoformat(),
        }
        return record_id

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    def fail(self, method: str, outcome: Any):
        """Make the next call of `method` return a status code or raise an exception"""
        self.fail_next[method] = outcome

    async def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path
        self.calls.append((method, path))
        self.auth_headers.append(request.headers.get("Authorization", ""))

        if method in self.fail_next:
            outcome = self.fail_next.pop(method)
            if isinstance(outcome, Exception):
                raise outcome
            return httpx.Response(outcome, json={"detail": "injected failure"})

        if request.headers.get("Authorization") != f"Bearer {TOKEN}":
            return httpx.Response(401, json={"detail": "bad credential"})

        match = re.fullmatch(r"/tasks(?:/([^/]+))?", path)
        if not match:
            return httpx.Response(404, json={"detail": "no route"})
        record_id = match.group(1)

        if method == "GET" and record_id is None:
            if self.list_delay:
                await asyncio.sleep(self.list_delay)
            items = list(self.records.values())
            status = request.url.params.get("status")
            if status:
                items = [r for r in items if r.get("status") == status]
            return httpx.Response(200, json={"items": items})

        if method == "POST" and record_id is None:
            body = json.loads(request.content)
            if not body.get("title"):
                return httpx.Response(422, json={"detail": "title required"})
            new_id = self.add(
                body["owner_id"],
                body["title"],
                body.get("status", "open"),
                body.get("due_date"),
                body.get("description", ""),
            )
            return httpx.Response(201, json=self.records[new_id])

        if record_id not in self.records:
            return httpx.Response(404, json={"detail": "not found"})

        if method == "GET":
            return httpx.Response(200, json=self.records[record_id])
        if method == "PATCH":
            self._clock += timedelta(minutes=1)
            self.records[record_id].update(json.loads(request.content))
            self.records[record_id]["updated_at"] = self._clock.isoformat()
            return httpx.Response(200, json=self.records[record_id])
        if method == "DELETE":
            del self.records[record_id]
            return httpx.Response(204)

        return httpx.Response(405)


class ScriptedChatModel(BaseChatModel):
    """Chat model replaying a fixed list of replies; an Exception in the list is raised"""

    replies: List[Any] = []
    received: List[List[BaseMessage]] = []
    delay: float = 0.0
    cursor: int = 0

    @property
    def _llm_type(self) -> str:
        return "scripted"

    def bind_tools(self, tools, **kwargs):
        return self

    def _next_reply(self, messages: List[BaseMessage]) -> ChatResult:
        self.received.append(list(messages))
        reply = self.replies[min(self.cursor, len(self.replies) - 1)]
        self.cursor += 1
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, str):
            reply = AIMessage(content=reply)
        return ChatResult(generations=[ChatGeneration(message=reply)])

    def _generate(self, messages, stop=None, run_manager=None, **kwargs) -> ChatResult:
        return self._next_reply(messages)

    async def _agenerate(self, messages, stop=None, run_manager=None, **kwargs) -> ChatResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        return self._next_reply(messages)


class BagOfWordsEmbeddings(Embeddings):
    """Deterministic word-count vectors, enough to rank by shared words"""

    def __init__(self, dimensions: int = 256, delay: float = 0.0):
        self.dimensions = dimensions
        self.delay = delay
        self.document_batches = 0

    def _vector(self, text: str) -> List[float]:
        vector = [0.0] * self.dimensions
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            vector[sum(ord(c) * (i + 1) for i, c in enumerate(word)) % self.dimensions] += 1.0
        return vector

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        return [self._vector(text) for text in texts]

    def embed_query(self, text: str) -> List[float]:
        return self._vector(text)

    async def aembed_documents(self, texts: List[str]) -> List[List[float]]:
        self.document_batches += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.embed_documents(texts)

    async def aembed_query(self, text: str) -> List[float]:
        return self.embed_query(text)


def tool_call_reply(name: str, args: Any, call_id: str = "call_1") -> AIMessage:
    """Model turn requesting one tool; string args become an invalid tool call"""
    if isinstance(args, str):
        return AIMessage(content="", invalid_tool_calls=[{"name": name, "args": args, "id": call_id, "error": None}])
    return AIMessage(content="", tool_calls=[{"name": name, "args": args, "id": call_id}])


def service_settings(**overrides) -> ServiceSettings:
    values = {
        "RECORD_API_BASE_URL": "http://tasks.test",
        "RETRY_ATTEMPTS": 1,
        "RETRY_WAIT_MIN": 0.0,
        "RETRY_WAIT_MAX": 0.0,
        "LOG_FORMAT": "console",
    }
    values.update(overrides)
    return ServiceSettings(**values)


def build_test_services(
    task_service: FakeTaskService,
    settings: Optional[ServiceSettings] = None,
    chat_model: Optional[BaseChatModel] = None,
    router_model: Optional[BaseChatModel] = None,
    embeddings: Optional[Embeddings] = None,
    conversation_store=None,
) -> ServiceContainer:
    """Full service graph against the fake task service, no real models"""
    return build_services(
        settings or service_settings(),
        chat_model=chat_model,
        router_model=router_model,
        embeddings=embeddings,
        transport=httpx.MockTransport(task_service.handler),
        conversation_store=conversation_store,
    )


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def task_service() -> FakeTaskService:
    return FakeTaskService()


@pytest.fixture
async def record_client(task_service):
    client = RecordClient("http://tasks.test", transport=httpx.MockTransport(task_service.handler))
    yield client
    await client.aclose()


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(attempts=3, wait_min=0.0, wait_max=0.0)


@pytest.fixture
def relay() -> CredentialRelay:
    return CredentialRelay()


@pytest.fixture
def scope(relay):
    with relay.scope("req-test", TOKEN) as handle:
        yield handle


@pytest.fixture
def embeddings() -> BagOfWordsEmbeddings:
    return BagOfWordsEmbeddings()
