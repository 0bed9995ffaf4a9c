"""Anthropic AI provider: Claude API client."""

from __future__ import annotations

import logging

from dmarcsieve.errors import ConfigurationError, TransportError

logger = logging.getLogger(__name__)


class AnthropicProvider:
    """Anthropic API client for Claude models."""

    def __init__(
        self,
        api_key: str = "",
        max_tokens: int = 4096,
        temperature: float = 0.3,
        timeout: float = 120.0,
    ):
        if not api_key:
            raise ConfigurationError("ANTHROPIC_API_KEY not found in configuration or environment")
        self.api_key = api_key
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self._client = None

    def _get_client(self):
        if self._client is None:
            import anthropic
            self._client = anthropic.Anthropic(api_key=self.api_key, timeout=self.timeout)
        return self._client

    def complete(
        self,
        prompt: str,
        model: str,
        system: str = "",
        response_format: str | None = None,
    ) -> str:
        """Send a prompt to Claude and return the text of its reply."""
        import anthropic

        client = self._get_client()

        kwargs: dict = {
            "model": model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            kwargs["system"] = system

        try:
            response = client.messages.create(**kwargs)
        except (anthropic.APIConnectionError, anthropic.AuthenticationError) as e:
            raise TransportError(f"Failed to reach Anthropic API: {e}") from e

        parts = []
        for block in response.content:
            if getattr(block, "type", "") == "text":
                parts.append(block.text)
        text = "\n".join(parts)
        logger.debug("Claude raw response: %s", text)
        return text
