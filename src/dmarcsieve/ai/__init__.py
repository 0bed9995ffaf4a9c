"""AI provider factory."""

from __future__ import annotations

from dmarcsieve.ai.base import AIProvider
from dmarcsieve.ai.ollama import OllamaProvider
from dmarcsieve.ai.anthropic_provider import AnthropicProvider
from dmarcsieve.errors import ConfigurationError


def get_provider(model_spec: str, config: dict | None = None) -> tuple[AIProvider, str]:
    """Parse 'provider:model_name' and return (provider_instance, model_name).

    If no colon is present, assumes anthropic as the provider.
    """
    if ":" in model_spec:
        provider_name, model_name = model_spec.split(":", 1)
    else:
        provider_name = "anthropic"
        model_name = model_spec

    config = config or {}

    if provider_name == "anthropic":
        return AnthropicProvider(
            api_key=config.get("anthropic_api_key", ""),
            max_tokens=config.get("max_tokens", 4096),
            temperature=config.get("temperature", 0.3),
            timeout=config.get("timeout", 120.0),
        ), model_name
    elif provider_name == "ollama":
        return OllamaProvider(
            base_url=config.get("ollama_base_url", "http://localhost:11434"),
            api_key=config.get("ollama_api_key", ""),
            temperature=config.get("temperature", 0.3),
            timeout=config.get("timeout", 120.0),
        ), model_name
    else:
        raise ConfigurationError(
            f"Unknown AI provider: {provider_name!r}. Use 'anthropic' or 'ollama'."
        )
