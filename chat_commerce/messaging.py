"""
Messaging transport adapters.

The engine only needs two outbound capabilities: send a text to a recipient
and mark an inbound message as consumed. WhatsAppMessenger implements them
against the WhatsApp Cloud API; ConsoleMessenger prints to the terminal for
local runs.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from chat_commerce.config import (
    MESSAGING_TIMEOUT_SECONDS,
    WHATSAPP_API_URL,
    WHATSAPP_PHONE_NUMBER_ID,
    WHATSAPP_TOKEN,
)
from chat_commerce.exceptions import ExternalServiceError
from chat_commerce.models import InboundMessage

logger = logging.getLogger(__name__)


class Messenger(Protocol):
    async def send_text(self, recipient: str, text: str) -> None:
        ...

    async def mark_consumed(self, message_id: str) -> None:
        ...


class WhatsAppMessenger:
    """Outbound WhatsApp Cloud API client."""

    def __init__(
        self,
        token: str | None = None,
        phone_number_id: str | None = None,
        api_url: str | None = None,
        request_timeout_seconds: float | None = None,
    ):
        token = token or WHATSAPP_TOKEN or ""
        phone_number_id = phone_number_id or WHATSAPP_PHONE_NUMBER_ID or ""
        if not token.strip() or not phone_number_id.strip():
            raise ValueError("WHATSAPP_TOKEN and WHATSAPP_PHONE_NUMBER_ID are required.")

        self._messages_url = f"{(api_url or WHATSAPP_API_URL).rstrip('/')}/{phone_number_id.strip()}/messages"
        self._headers = {
            "Authorization": f"Bearer {token.strip()}",
            "Content-Type": "application/json",
        }
        self.request_timeout_seconds = float(request_timeout_seconds or MESSAGING_TIMEOUT_SECONDS)

    async def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.request_timeout_seconds) as client:
                response = await client.post(self._messages_url, json=body, headers=self._headers)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPError as e:
            raise ExternalServiceError(code="MESSAGING_ERROR", message=str(e)) from e

    async def send_text(self, recipient: str, text: str) -> None:
        """Send a text message to a WhatsApp user."""
        await self._post({
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": recipient,
            "type": "text",
            "text": {"body": text},
        })

    async def mark_consumed(self, message_id: str) -> None:
        """Mark an inbound message as read."""
        await self._post({
            "messaging_product": "whatsapp",
            "status": "read",
            "message_id": message_id,
        })


class ConsoleMessenger:
    """Prints outbound messages; used by the local CLI."""

    def __init__(self, prefix: str = "Assistant"):
        self.prefix = prefix

    async def send_text(self, recipient: str, text: str) -> None:
        print(f"\n{self.prefix}: {text}")

    async def mark_consumed(self, message_id: str) -> None:
        return None


def parse_webhook_payload(body: dict[str, Any]) -> list[InboundMessage]:
    """
    Normalize a WhatsApp webhook body into inbound messages.

    Non-text messages are returned with their kind and an empty text so the
    caller can skip them.
    """
    messages: list[InboundMessage] = []
    if not isinstance(body, dict):
        return messages

    for entry in body.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            for message in value.get("messages") or []:
                sender_id = str(message.get("from", "")).strip()
                message_id = str(message.get("id", "")).strip()
                if not sender_id or not message_id:
                    logger.warning("Skipping webhook message without sender or id")
                    continue
                kind = str(message.get("type", "")).strip() or "unknown"
                text = ""
                if kind == "text":
                    text = str((message.get("text") or {}).get("body", ""))
                messages.append(InboundMessage(
                    sender_id=sender_id,
                    message_id=message_id,
                    kind=kind,
                    text=text,
                ))
    return messages
