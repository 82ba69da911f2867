"""Anthropic chat model factory for classification and quote scoring."""

from opsflow.providers.factory import ProviderConfigurationError, build_chat_model

__all__ = ["ProviderConfigurationError", "build_chat_model"]
