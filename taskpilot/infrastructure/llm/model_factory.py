# builds the chat and embedding models from settings
# NOTE: the rest of the service only depends on langchain-core interfaces (BaseChatModel, Embeddings)
from typing import Optional
import structlog
from langchain_core.embeddings import Embeddings
from langchain_core.language_models.chat_models import BaseChatModel

logger = structlog.get_logger(__name__)


def build_chat_model(settings, model_name: Optional[str] = None, timeout: Optional[float] = None) -> Optional[BaseChatModel]:
    """Chat model for reasoning or routing, None when no API key is configured"""

    if not settings.OPENAI_API_KEY:
        logger.warning("No OPENAI_API_KEY configured, chat model disabled")
        return None

    from langchain_openai import ChatOpenAI

    return ChatOpenAI(
        model=model_name or settings.CHAT_MODEL_NAME,
        api_key=settings.OPENAI_API_KEY,
        temperature=settings.MODEL_TEMPERATURE,
        timeout=timeout,
        max_retries=0, # retries are owned by the calling layer
    )


def build_embeddings(settings) -> Optional[Embeddings]:
    """Embedding model for the similarity index, None when no API key is configured"""

    if not settings.OPENAI_API_KEY:
        logger.warning("No OPENAI_API_KEY configured, embeddings disabled")
        return None

    from langchain_openai import OpenAIEmbeddings

    return OpenAIEmbeddings(
        model=settings.EMBEDDING_MODEL_NAME,
        api_key=settings.OPENAI_API_KEY,
    )
