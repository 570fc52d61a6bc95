"""HTTP client for the outbound messaging gateway.

Email, SMS and WhatsApp providers are configured per deployment behind a
single gateway. The engine only needs "send this, tell me if it worked".
Every request carries an ``Idempotency-Key`` so the gateway can drop
duplicates when a tick is re-delivered.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import requests

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MessagingError(Exception):
    channel: str
    message: str

    def __str__(self) -> str:
        return f"{self.channel} send failed: {self.message}"


@dataclass(frozen=True, slots=True)
class MessageReceipt:
    channel: str
    provider: str | None
    message_id: str | None


class MessagingGateway:
    """Small wrapper around ``requests`` for the gateway's send endpoints."""

    def __init__(
        self,
        *,
        base_url: str,
        token: str = "",
        timeout_seconds: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        if not base_url.strip():
            raise ValueError("Messaging gateway URL is required")
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = session or requests.Session()
        self._session.headers.update(
            {"Accept": "application/json", "User-Agent": "crm-workflow-engine"}
        )
        if token:
            self._session.headers["Authorization"] = f"Bearer {token}"

    def send_email(
        self,
        *,
        to: str,
        to_name: str,
        subject: str,
        html: str,
        idempotency_key: str,
    ) -> MessageReceipt:
        return self._post(
            "email",
            {"to": to, "to_name": to_name, "subject": subject, "html": html},
            idempotency_key=idempotency_key,
        )

    def send_sms(
        self,
        *,
        phone: str,
        message: str,
        dlt_template_id: str | None,
        idempotency_key: str,
    ) -> MessageReceipt:
        payload: dict[str, Any] = {"phone": phone, "message": message}
        if dlt_template_id:
            payload["dlt_template_id"] = dlt_template_id
        return self._post("sms", payload, idempotency_key=idempotency_key)

    def send_whatsapp(
        self,
        *,
        phone: str,
        template_name: str,
        parameters: list[str],
        idempotency_key: str,
    ) -> MessageReceipt:
        return self._post(
            "whatsapp",
            {"phone": phone, "template_name": template_name, "parameters": parameters},
            idempotency_key=idempotency_key,
        )

    def _post(
        self, channel: str, payload: dict[str, Any], *, idempotency_key: str
    ) -> MessageReceipt:
        url = f"{self._base_url}/{channel}"
        try:
            resp = self._session.post(
                url,
                json=payload,
                headers={"Idempotency-Key": idempotency_key},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise MessagingError(channel=channel, message=str(e)) from e

        if resp.status_code >= 400:
            detail = resp.text.strip()[:200] or resp.reason
            raise MessagingError(channel=channel, message=f"HTTP {resp.status_code}: {detail}")

        data: dict[str, Any] = {}
        try:
            body = resp.json()
            if isinstance(body, dict):
                data = body
        except ValueError:
            logger.debug("Gateway returned a non-JSON body", extra={"channel": channel})

        logger.debug("Message accepted by gateway", extra={"channel": channel})
        return MessageReceipt(
            channel=channel,
            provider=data.get("provider") if isinstance(data.get("provider"), str) else None,
            message_id=data.get("id") if isinstance(data.get("id"), str) else None,
        )

    def close(self) -> None:
        self._session.close()
