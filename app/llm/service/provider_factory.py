# app/llm/service/provider_factory.py
from enum import Enum
from typing import Optional

import httpx

from app.core.config import Settings
from app.core.logger import get_logger
from app.llm.service.provider.base_provider import BaseProvider
from app.llm.service.provider.gemini import GeminiProvider
from app.llm.service.provider.ollama import OllamaProvider

logger = get_logger("ProviderFactory")


class LLMProviderKind(str, Enum):
    OLLAMA = "ollama"
    GEMINI = "gemini"


def resolve_provider_kind(value: Optional[str]) -> LLMProviderKind:
    """Case-insensitive lookup; unset or unknown values fall back to Ollama."""
    if not value:
        return LLMProviderKind.OLLAMA
    try:
        return LLMProviderKind(value.strip().lower())
    except ValueError:
        logger.warning(f"Unknown LLM_PROVIDER '{value}', falling back to ollama")
        return LLMProviderKind.OLLAMA


def create_provider(settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> BaseProvider:
    """
    Build the provider selected by configuration.

    Raises ConfigurationError when the selected provider lacks its credential,
    which is meant to stop the process at startup.
    """
    kind = resolve_provider_kind(settings.LLM_PROVIDER)

    if kind is LLMProviderKind.GEMINI:
        logger.info(f"Using Gemini provider (default model {settings.GEMINI_MODEL})")
        return GeminiProvider(
            api_key=settings.GEMINI_API_KEY,
            model=settings.GEMINI_MODEL,
            endpoint=settings.GEMINI_ENDPOINT,
            connect_timeout=settings.CONNECT_TIMEOUT_SECONDS,
            request_timeout=settings.REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )

    logger.info(f"Using Ollama provider at {settings.ollama_base_url}")
    return OllamaProvider(
        host=settings.OLLAMA_HOST,
        port=settings.OLLAMA_PORT,
        connect_timeout=settings.CONNECT_TIMEOUT_SECONDS,
        request_timeout=settings.REQUEST_TIMEOUT_SECONDS,
        transport=transport,
    )
