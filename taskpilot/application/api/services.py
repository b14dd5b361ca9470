# wiring of the orchestration components, built once per app lifetime
from typing import Optional
from pathlib import Path

import httpx
import structlog
from langchain_core.embeddings import Embeddings
from langchain_core.language_models.chat_models import BaseChatModel

from taskpilot.config.app_config import ServiceSettings
from taskpilot.domain.context.context_manager import ContextManager
from taskpilot.domain.context.memory.conversation_store import (
    ConversationStore, InMemoryConversationStore, SQLiteConversationStore,
)
from taskpilot.domain.context.memory.similarity_index import SimilarityIndex
from taskpilot.domain.orchestration.core.main_agent import TaskPilotOrchestrator
from taskpilot.domain.orchestration.router.decision_router import DecisionRouter
from taskpilot.domain.orchestration.router.intent_classifier import IntentClassifier
from taskpilot.domain.orchestration.subagent.fast_path_agent import FastPathAgent
from taskpilot.domain.orchestration.subagent.reasoning_agent import ReasoningAgent
from taskpilot.domain.tool.task_tools import TaskTools
from taskpilot.domain.tool.tool_registry import ToolRegistry
from taskpilot.infrastructure.clients.record_client import RecordClient
from taskpilot.infrastructure.llm.model_factory import build_chat_model, build_embeddings
from taskpilot.infrastructure.resilience.retry import policy_from_settings
from taskpilot.infrastructure.security.credential_relay import CredentialRelay

logger = structlog.get_logger(__name__)

_FROM_SETTINGS = object()


class ServiceContainer:
    """Long-lived components shared by all requests"""

    def __init__(
        self,
        orchestrator: TaskPilotOrchestrator,
        record_client: RecordClient,
        conversation_store: ConversationStore,
        similarity_index: Optional[SimilarityIndex],
        relay: CredentialRelay,
    ):
        self.orchestrator = orchestrator
        self.record_client = record_client
        self.conversation_store = conversation_store
        self.similarity_index = similarity_index
        self.relay = relay

    async def aclose(self):
        await self.record_client.aclose()
        await self.conversation_store.close()
        logger.info("Service resources closed")


def build_conversation_store(settings: ServiceSettings) -> ConversationStore:
    if settings.MEMORY_DB_PATH:
        logger.info("Using SQLite conversation memory", path=settings.MEMORY_DB_PATH)
        return SQLiteConversationStore(Path(settings.MEMORY_DB_PATH))
    logger.info("Using in-process conversation memory")
    return InMemoryConversationStore()


def build_services(
    settings: ServiceSettings,
    chat_model=_FROM_SETTINGS,
    router_model=_FROM_SETTINGS,
    embeddings=_FROM_SETTINGS,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    conversation_store: Optional[ConversationStore] = None,
) -> ServiceContainer:
    """
    Build every component from settings.
    Models and the HTTP transport can be passed in explicitly; None disables a model.
    """

    if chat_model is _FROM_SETTINGS:
        chat_model = build_chat_model(settings)
    if router_model is _FROM_SETTINGS:
        router_model = build_chat_model(
            settings, model_name=settings.ROUTER_MODEL_NAME, timeout=settings.ROUTER_MODEL_TIMEOUT
        )
    if embeddings is _FROM_SETTINGS:
        embeddings = build_embeddings(settings)

    retry_policy = policy_from_settings(settings)
    record_client = RecordClient(
        settings.RECORD_API_BASE_URL, timeout=settings.RECORD_API_TIMEOUT, transport=transport
    )
    conversation_store = conversation_store or build_conversation_store(settings)

    similarity_index = _build_index(record_client, embeddings, retry_policy)
    registry = ToolRegistry()
    tools = TaskTools(record_client, similarity_index, retry_policy)
    context_manager = ContextManager(
        conversation_store,
        similarity_index,
        history_limit=settings.MEMORY_HISTORY_LIMIT,
        top_k=settings.INDEX_TOP_K,
    )

    classifier = _build_classifier(router_model, settings)
    router = DecisionRouter.from_settings(settings, classifier)

    fast_path = FastPathAgent(record_client, retry_policy)
    agent = ReasoningAgent(
        chat_model,
        tools,
        registry,
        context_manager,
        max_steps=settings.AGENT_MAX_STEPS,
        timeout_seconds=settings.AGENT_TIMEOUT_SECONDS,
        retry_policy=retry_policy,
    )

    relay = CredentialRelay()
    orchestrator = TaskPilotOrchestrator(
        relay=relay,
        router=router,
        fast_path=fast_path,
        agent=agent,
        context_manager=context_manager,
        conversation_store=conversation_store,
        similarity_index=similarity_index,
    )

    logger.info(
        "Services built",
        reasoning_model=chat_model is not None,
        router_model=classifier is not None,
        similarity_index=similarity_index is not None,
    )
    return ServiceContainer(orchestrator, record_client, conversation_store, similarity_index, relay)


def _build_index(record_client: RecordClient, embeddings: Optional[Embeddings], retry_policy) -> Optional[SimilarityIndex]:
    if embeddings is None:
        return None
    return SimilarityIndex(record_client, embeddings, retry_policy)


def _build_classifier(router_model: Optional[BaseChatModel], settings: ServiceSettings) -> Optional[IntentClassifier]:
    if router_model is None or not settings.ROUTER_USE_MODEL:
        return None
    return IntentClassifier(router_model, timeout=settings.ROUTER_MODEL_TIMEOUT)
