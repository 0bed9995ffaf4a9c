"""Postal send API client."""

from __future__ import annotations

import httpx

from dmarcsieve.config import PostalConfig
from dmarcsieve.errors import ConfigurationError, NotificationError, TransportError


class PostalClient:
    """Minimal client for Postal's ``/api/v1/send/message`` endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_config(cls, config: PostalConfig, transport: httpx.BaseTransport | None = None) -> PostalClient:
        missing = config.missing_fields()
        if missing:
            raise ConfigurationError(f"Postal configuration incomplete: missing {', '.join(missing)}")
        return cls(config.base_url, config.api_key, config.timeout_seconds, transport=transport)

    def send_message(
        self,
        to: list[str],
        sender: str,
        subject: str,
        html_body: str,
        plain_body: str,
    ) -> str:
        """Send one message and return Postal's message id."""
        payload = {
            "to": to,
            "from": sender,
            "subject": subject,
            "plain_body": plain_body,
            "html_body": html_body,
        }
        headers = {"X-Server-API-Key": self.api_key}

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                resp = client.post(
                    f"{self.base_url}/api/v1/send/message",
                    json=payload,
                    headers=headers,
                )
        except httpx.HTTPError as e:
            raise TransportError(f"Failed to reach Postal at {self.base_url}: {e}") from e

        if resp.status_code >= 400:
            raise NotificationError(
                f"Postal API error: {resp.status_code} - {resp.text}",
                status_code=resp.status_code,
                detail=resp.text,
            )

        result = resp.json()
        if result.get("status") != "success":
            raise NotificationError(
                f"Postal API returned status: {result.get('status')}",
                status_code=resp.status_code,
                detail=str(result.get("data", "")),
            )

        return str(result["data"]["message_id"])
