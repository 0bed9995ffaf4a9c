"""AI provider protocol."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class AIProvider(Protocol):
    """Protocol for AI model providers."""

    def complete(
        self,
        prompt: str,
        model: str,
        system: str = "",
        response_format: str | None = None,
    ) -> str:
        """Send a prompt and return the model's raw text reply.

        Args:
            prompt: the user prompt
            model: model name/identifier
            system: optional system prompt
            response_format: if "json", request JSON output where supported

        Returns:
            The concatenated text of the response. Structural parsing is left
            to the caller so it can log the raw reply when validation fails.

        Raises:
            ConfigurationError: credentials are missing.
            TransportError: the service could not be reached.
        """
        ...
