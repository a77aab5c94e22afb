"""
Telegram adapter — long-polls the Bot API with python-telegram-bot.

Each configured account gets its own adapter (and its own ``telegram.Bot``).
``update_id`` is the event offset, so the worker can persist ``offset + 1``
after processing and resume from there after a restart.

Outbound text is split into 4096-character chunks on line, word or sentence
boundaries. Markdown is tried first; if Telegram cannot parse the entities the
chunk is resent as plain text.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from telegram import Bot, Message, Update
from telegram.constants import ChatAction, ParseMode
from telegram.error import BadRequest, Forbidden, TelegramError

from masix.config.loader import TelegramAccount
from masix.gateway.base import ChannelAdapter, DeliveryError, InboundEvent, MediaRef, OutboundResponse
from masix.services.permissions import mentions_bot

logger = logging.getLogger(__name__)

TELEGRAM_MAX_MESSAGE_CHARS = 4096
MAX_MEDIA_BYTES = 20 * 1024 * 1024

_SENTENCE_ENDS = ".!?"


def chunk_message(text: str, limit: int = TELEGRAM_MAX_MESSAGE_CHARS) -> list[str]:
    """Split ``text`` into pieces of at most ``limit`` chars, preferring natural breaks."""
    chunks: list[str] = []
    remaining = text.strip()
    while len(remaining) > limit:
        window = remaining[:limit]
        cut = window.rfind("\n")
        if cut <= 0:
            cut = window.rfind(" ")
        if cut <= 0:
            cut = max(window.rfind(mark) for mark in _SENTENCE_ENDS) + 1
        if cut <= 0:
            cut = limit
        chunks.append(remaining[:cut].rstrip())
        remaining = remaining[cut:].lstrip()
    if remaining:
        chunks.append(remaining)
    return chunks


async def _typing_loop(bot: Bot, chat_id: int | str, stop: asyncio.Event) -> None:
    """Send 'typing' action every 4 s until stop is set (Telegram clears it after ~5 s)."""
    while not stop.is_set():
        try:
            await bot.send_chat_action(chat_id=chat_id, action=ChatAction.TYPING)
        except TelegramError as exc:
            logger.debug("typing action failed for %s: %s", chat_id, exc)
        try:
            await asyncio.wait_for(stop.wait(), timeout=4.0)
        except asyncio.TimeoutError:
            pass


def _native_chat_id(chat_id: str) -> int | str:
    try:
        return int(chat_id)
    except ValueError:
        return chat_id


class TelegramAdapter(ChannelAdapter):
    channel = "telegram"

    def __init__(self, account: TelegramAccount, *, poll_timeout: int = 30, bot: Bot | None = None) -> None:
        super().__init__(account.account_tag)
        self.account = account
        self.poll_timeout = poll_timeout
        self.bot = bot or Bot(token=account.bot_token)
        self.bot_username: str | None = account.bot_name
        self._bot_id: int | None = None

    async def start(self) -> None:
        await self.bot.initialize()
        self.bot_username = self.bot.username or self.account.bot_name
        self._bot_id = self.bot.id
        logger.info(
            "Telegram account %s ready as @%s",
            self.account_tag,
            self.bot_username,
            extra={"account_tag": self.account_tag, "channel": self.channel},
        )

    # ── Inbound ────────────────────────────────────────────────────────────

    async def poll(self, offset: int | None) -> list[InboundEvent]:
        updates = await self.bot.get_updates(
            offset=offset,
            timeout=self.poll_timeout,
            allowed_updates=["message"],
        )
        return [self.to_event(update) for update in updates]

    def to_event(self, update: Update) -> InboundEvent:
        """Every update becomes an event so its offset is acknowledged.

        Non-messages, bot senders and chats outside ``allowed_chats`` carry no text.
        """
        message = update.message
        if message is None or message.from_user is None or message.from_user.is_bot:
            return InboundEvent(
                channel=self.channel,
                account_tag=self.account_tag,
                offset=update.update_id,
                chat_id=str(message.chat_id) if message else "",
                sender_id=str(message.from_user.id) if message and message.from_user else "",
            )

        if not self.chat_allowed(message.chat_id):
            logger.info(
                "Skipping message from unauthorized chat %s",
                message.chat_id,
                extra={"account_tag": self.account_tag, "channel": self.channel},
            )
            return InboundEvent(
                channel=self.channel,
                account_tag=self.account_tag,
                offset=update.update_id,
                chat_id=str(message.chat_id),
                sender_id=str(message.from_user.id),
            )

        text = message.text or message.caption or ""
        return InboundEvent(
            channel=self.channel,
            account_tag=self.account_tag,
            offset=update.update_id,
            message_id=str(message.message_id),
            chat_id=str(message.chat_id),
            chat_type=message.chat.type,
            sender_id=str(message.from_user.id),
            sender_name=message.from_user.username or message.from_user.full_name,
            text=text,
            mentions_bot=self._is_addressed(message, text),
            media=self._media_of(message),
        )

    def chat_allowed(self, chat_id: int) -> bool:
        allowed = self.account.allowed_chats
        return allowed is None or chat_id in allowed

    def _is_addressed(self, message: Message, text: str) -> bool:
        if mentions_bot(text, self.bot_username):
            return True
        replied = message.reply_to_message
        return bool(
            replied is not None
            and replied.from_user is not None
            and self._bot_id is not None
            and replied.from_user.id == self._bot_id
        )

    @staticmethod
    def _media_of(message: Message) -> list[MediaRef]:
        media: list[MediaRef] = []
        if message.photo:
            largest = message.photo[-1]
            media.append(
                MediaRef(kind="photo", file_id=largest.file_id, mime_type="image/jpeg", size=largest.file_size)
            )
        if message.document:
            doc = message.document
            media.append(
                MediaRef(
                    kind="document",
                    file_id=doc.file_id,
                    file_name=doc.file_name,
                    mime_type=doc.mime_type,
                    size=doc.file_size,
                )
            )
        if message.voice:
            voice = message.voice
            media.append(MediaRef(kind="voice", file_id=voice.file_id, mime_type=voice.mime_type, size=voice.file_size))
        return media

    async def fetch_media(self, media: MediaRef) -> bytes | None:
        if not media.file_id:
            return None
        if media.size and media.size > MAX_MEDIA_BYTES:
            logger.info("Skipping %s download: %d bytes exceeds the limit", media.kind, media.size)
            return None
        try:
            tg_file = await self.bot.get_file(media.file_id)
            data = await tg_file.download_as_bytearray()
        except TelegramError as exc:
            logger.warning(
                "Could not download %s: %s",
                media.kind,
                exc,
                extra={"account_tag": self.account_tag, "channel": self.channel},
            )
            return None
        return bytes(data)

    # ── Outbound ───────────────────────────────────────────────────────────

    async def deliver(self, response: OutboundResponse) -> None:
        """Send every chunk not yet accepted; a retry of the same response resumes after them."""
        chat_id = _native_chat_id(response.chat_id)
        reply_to = int(response.reply_to) if response.reply_to and response.reply_to.isdigit() else None
        for index, chunk in enumerate(chunk_message(response.text)):
            if index < response.delivered_parts:
                continue
            # only the first chunk is threaded under the original message
            await self._send_chunk(chat_id, chunk, reply_to if index == 0 else None)
            response.delivered_parts = index + 1

    async def _send_chunk(self, chat_id: int | str, text: str, reply_to: int | None) -> None:
        kwargs: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if reply_to is not None:
            kwargs["reply_to_message_id"] = reply_to
        markdown = True
        # each fallback removes one option, so this ends after at most three sends
        while True:
            try:
                if markdown:
                    await self.bot.send_message(parse_mode=ParseMode.MARKDOWN, **kwargs)
                else:
                    await self.bot.send_message(**kwargs)
                return
            except BadRequest as exc:
                message = str(exc).lower()
                if "message to be replied not found" in message and "reply_to_message_id" in kwargs:
                    kwargs.pop("reply_to_message_id")
                elif markdown and "can't parse entities" in message:
                    markdown = False
                else:
                    raise DeliveryError(f"telegram rejected the message: {exc}") from exc
            except Forbidden as exc:
                raise DeliveryError(f"bot cannot write to chat {chat_id}: {exc}") from exc
            except TelegramError as exc:
                raise DeliveryError(f"telegram send failed: {exc}") from exc

    @asynccontextmanager
    async def typing(self, chat_id: str) -> AsyncIterator[None]:
        stop = asyncio.Event()
        task = asyncio.create_task(_typing_loop(self.bot, _native_chat_id(chat_id), stop))
        try:
            yield
        finally:
            stop.set()
            await task

    async def close(self) -> None:
        try:
            await self.bot.shutdown()
        except TelegramError as exc:
            logger.warning("Telegram shutdown for %s failed: %s", self.account_tag, exc)
