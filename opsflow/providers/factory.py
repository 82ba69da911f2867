from __future__ import annotations

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models.chat_models import BaseChatModel

from opsflow.core.config import Settings


class ProviderConfigurationError(ValueError):
    """Raised when provider env configuration is invalid."""


def build_chat_model(settings: Settings, model_name: str | None = None) -> BaseChatModel:
    api_key = settings.anthropic_api_key.strip()
    resolved_model = (model_name or settings.classification_model).strip()
    if not api_key:
        raise ProviderConfigurationError("Anthropic LLM requires ANTHROPIC_API_KEY")
    if not resolved_model:
        raise ProviderConfigurationError(
            "Model id is required and must be a valid Anthropic model id."
        )

    return ChatAnthropic(
        model=resolved_model,
        temperature=0,
        timeout=settings.llm_timeout_seconds,
        api_key=api_key,
    )
