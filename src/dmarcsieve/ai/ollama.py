"""Ollama AI provider: HTTP client for local LLM inference."""

from __future__ import annotations

import httpx

from dmarcsieve.errors import TransportError


class OllamaProvider:
    """Ollama HTTP API client for local or cloud inference.

    One attempt per call; the pipeline retries a report on its next run.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        api_key: str = "",
        temperature: float = 0.3,
        timeout: float = 120.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.temperature = temperature
        self.timeout = timeout
        self._transport = transport

    def complete(
        self,
        prompt: str,
        model: str,
        system: str = "",
        response_format: str | None = None,
    ) -> str:
        """Send a prompt to Ollama and return the raw response text."""
        payload: dict = {
            "model": model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": self.temperature},
        }

        if system:
            payload["system"] = system

        if response_format == "json":
            payload["format"] = "json"

        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                resp = client.post(
                    f"{self.base_url}/api/generate",
                    json=payload,
                    headers=headers,
                )
                resp.raise_for_status()
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            raise TransportError(
                f"Failed to connect to Ollama at {self.base_url}: {e}"
            ) from e

        data = resp.json()
        return data.get("response", "")
