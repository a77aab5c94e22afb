"""
SMS watcher — reads the device inbox through an external command.

``source_command`` (``termux-sms-list -l 50`` by default) must print a JSON
array of messages with at least ``_id``, ``number`` and ``body``. The message
``_id`` is the offset. On the very first run there is no stored offset, so the
watcher records the newest id as a baseline instead of replaying the inbox.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from masix.config.loader import SmsConfig
from masix.gateway.base import ChannelAdapter, DeliveryError, InboundEvent, OutboundResponse

logger = logging.getLogger(__name__)

SMS_ACCOUNT_TAG = "sms"
SOURCE_COMMAND_TIMEOUT_SECS = 30


class SmsSourceError(RuntimeError):
    pass


def parse_inbox(output: str) -> list[dict[str, Any]]:
    try:
        items = json.loads(output or "[]")
    except json.JSONDecodeError as exc:
        raise SmsSourceError(f"inbox listing is not JSON: {exc}") from exc
    if not isinstance(items, list):
        raise SmsSourceError("inbox listing must be a JSON array")
    messages = []
    for item in items:
        if not isinstance(item, dict) or "_id" not in item:
            continue
        if item.get("type", "inbox") != "inbox":
            continue
        sender = str(item.get("number") or "").strip()
        if not sender:
            continue
        try:
            message_id = int(item["_id"])
        except (TypeError, ValueError):
            continue
        messages.append({"id": message_id, "sender": sender, "body": str(item.get("body") or "")})
    return sorted(messages, key=lambda m: m["id"])


class SmsWatcherAdapter(ChannelAdapter):
    channel = "sms"

    def __init__(self, config: SmsConfig) -> None:
        super().__init__(SMS_ACCOUNT_TAG)
        self.config = config
        self._polled_once = False

    async def _read_inbox(self) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.config.source_command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise SmsSourceError(f"cannot run {self.config.source_command[0]}: {exc}") from exc
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=SOURCE_COMMAND_TIMEOUT_SECS)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise SmsSourceError("inbox listing timed out") from exc
        if proc.returncode != 0:
            raise SmsSourceError(f"inbox listing exited {proc.returncode}: {stderr.decode(errors='replace')[:200]}")
        return stdout.decode(errors="replace")

    async def poll(self, offset: int | None) -> list[InboundEvent]:
        if self._polled_once:
            await asyncio.sleep(self.config.watch_interval_secs)
        self._polled_once = True

        messages = parse_inbox(await self._read_inbox())
        if offset is None:
            if not messages:
                return []
            newest = messages[-1]["id"]
            logger.info("SMS watcher baseline set at message %d", newest, extra={"channel": self.channel})
            # empty marker event: acknowledged by the worker, ignored by the pipeline
            return [InboundEvent(channel=self.channel, account_tag=self.account_tag, offset=newest, chat_id="", sender_id="")]

        return [
            InboundEvent(
                channel=self.channel,
                account_tag=self.account_tag,
                offset=message["id"],
                message_id=str(message["id"]),
                chat_id=message["sender"],
                sender_id=message["sender"],
                text=message["body"],
            )
            for message in messages
            if message["id"] >= offset
        ]

    async def deliver(self, response: OutboundResponse) -> None:
        raise DeliveryError("sms is read-only")
