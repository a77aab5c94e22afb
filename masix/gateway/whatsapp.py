"""
WhatsApp ingress — inbound-only bridge for ``whatsapp.v1`` events.

An external bridge POSTs one JSON event per message to ``/whatsapp/ingress``.
When a shared secret is configured the body must carry
``X-Masix-Signature: sha256=<hex>`` (HMAC-SHA256 of the raw body). Invalid,
unsigned or malformed events are dropped with a logged warning; nothing is
ever sent back over WhatsApp.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from masix.config.loader import WhatsappConfig
from masix.gateway.base import ChannelAdapter, DeliveryError, InboundEvent, OutboundResponse
from masix.monitoring.metrics import INBOUND_EVENTS

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Masix-Signature"
WHATSAPP_ACCOUNT_TAG = "whatsapp"


class WhatsappInboundV1(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    version: Literal["whatsapp.v1"] = Field(alias="schema")
    message_id: str
    sender: str = Field(alias="from")
    chat_id: str | None = None
    text: str = ""
    timestamp: int | None = None
    push_name: str | None = None
    is_group: bool = False


def sign_body(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str | None, body: bytes, header: str | None) -> bool:
    """True when no secret is configured, or the header matches the body's HMAC."""
    if not secret:
        return True
    if not header:
        return False
    return hmac.compare_digest(sign_body(secret, body), header.strip())


class WhatsAppIngressAdapter(ChannelAdapter):
    """Queue-backed adapter: the HTTP route feeds it, the worker polls it."""

    channel = "whatsapp"
    persist_offsets = False

    def __init__(self, config: WhatsappConfig, *, poll_timeout: float = 30.0) -> None:
        super().__init__(WHATSAPP_ACCOUNT_TAG)
        self.config = config
        self.poll_timeout = poll_timeout
        self._queue: asyncio.Queue[InboundEvent] = asyncio.Queue(maxsize=1000)
        self._counter = 0

    def accept(self, body: bytes, signature: str | None) -> InboundEvent | None:
        if not verify_signature(self.config.ingress_shared_secret, body, signature):
            INBOUND_EVENTS.labels(channel=self.channel, outcome="bad_signature").inc()
            logger.warning("WhatsApp ingress signature rejected", extra={"channel": self.channel})
            return None
        try:
            payload = WhatsappInboundV1.model_validate(json.loads(body))
        except (ValueError, ValidationError) as exc:
            INBOUND_EVENTS.labels(channel=self.channel, outcome="invalid").inc()
            logger.warning("WhatsApp ingress payload dropped: %s", exc, extra={"channel": self.channel})
            return None

        self._counter += 1
        event = InboundEvent(
            channel=self.channel,
            account_tag=self.account_tag,
            offset=self._counter,
            message_id=payload.message_id,
            chat_id=payload.chat_id or payload.sender,
            chat_type="group" if payload.is_group else "private",
            sender_id=payload.sender,
            sender_name=payload.push_name,
            text=payload.text[: self.config.max_message_chars],
        )
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            INBOUND_EVENTS.labels(channel=self.channel, outcome="overflow").inc()
            logger.warning("WhatsApp ingress queue full; event %s dropped", payload.message_id)
            return None
        return event

    async def poll(self, offset: int | None) -> list[InboundEvent]:
        try:
            first = await asyncio.wait_for(self._queue.get(), timeout=self.poll_timeout)
        except asyncio.TimeoutError:
            return []
        batch = [first]
        while not self._queue.empty():
            batch.append(self._queue.get_nowait())
        return batch

    async def deliver(self, response: OutboundResponse) -> None:
        raise DeliveryError("whatsapp is read-only")
