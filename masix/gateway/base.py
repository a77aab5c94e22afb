"""
Channel adapter contract shared by every gateway.

An adapter turns a channel's native stream into ``InboundEvent`` objects
(``poll``) and sends ``OutboundResponse`` objects back (``deliver``). The
pipeline is written once against this interface; Telegram, WhatsApp and SMS
each provide one implementation.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator


class DeliveryError(RuntimeError):
    """The channel refused or could not accept an outbound message."""


@dataclass(frozen=True)
class MediaRef:
    kind: str
    file_id: str | None = None
    file_name: str | None = None
    mime_type: str | None = None
    size: int | None = None

    def summary(self) -> str:
        parts = [self.kind]
        if self.file_name:
            parts.append(self.file_name)
        if self.mime_type:
            parts.append(self.mime_type)
        if self.size:
            parts.append(f"{self.size} bytes")
        return ", ".join(parts)


@dataclass
class InboundEvent:
    channel: str
    account_tag: str
    offset: int
    chat_id: str
    sender_id: str
    text: str = ""
    message_id: str | None = None
    chat_type: str = "private"
    sender_name: str | None = None
    mentions_bot: bool = False
    media: list[MediaRef] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_private(self) -> bool:
        return self.chat_type == "private"


@dataclass
class OutboundResponse:
    channel: str
    account_tag: str
    chat_id: str
    text: str
    reply_to: str | None = None
    # chunks the channel already accepted; adapters skip them when the response is retried
    delivered_parts: int = 0


class ChannelAdapter(ABC):
    channel: str = "base"
    # Adapters whose offsets mean something across restarts persist them.
    persist_offsets: bool = True

    def __init__(self, account_tag: str) -> None:
        self.account_tag = account_tag

    async def start(self) -> None:
        return None

    @abstractmethod
    async def poll(self, offset: int | None) -> list[InboundEvent]:
        """Next finite batch of events at or after ``offset``."""

    @abstractmethod
    async def deliver(self, response: OutboundResponse) -> None:
        """Send one response. Raises DeliveryError when the channel refuses it."""

    async def fetch_media(self, media: MediaRef) -> bytes | None:
        return None

    @asynccontextmanager
    async def typing(self, chat_id: str) -> AsyncIterator[None]:
        yield

    async def close(self) -> None:
        return None
