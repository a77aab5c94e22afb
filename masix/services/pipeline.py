"""
Event pipeline — one inbound event in, at most one delivered reply out.

``EventPipeline.process`` runs the full turn for a Telegram event:
policy -> permission -> audit -> commands -> profile -> context assembly ->
tool loop -> delivery -> memory. WhatsApp and SMS are read-only: their events
are forwarded to the configured Telegram chat as notifications instead.

``AccountWorker`` owns one adapter. Its poller puts each batch on a queue and
waits for the batch to drain; its processor handles events strictly in order
and persists ``offset + 1`` only after an event is delivered or has failed
terminally, so a crash mid-turn replays that event on restart.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from masix.config.loader import RuntimeConfig, TelegramAccount
from masix.gateway.base import ChannelAdapter, DeliveryError, InboundEvent, OutboundResponse
from masix.mcp.catalog import ToolContext
from masix.monitoring.metrics import INBOUND_EVENTS, TURN_LATENCY
from masix.persistence.models import DEFAULT_ACCOUNT_TAG
from masix.persistence.store import CronJobRecord, PersistenceError, Store
from masix.providers.router import AllProvidersFailed
from masix.services import event_bus as events
from masix.services.acl_service import AclService
from masix.services.chat_commands import ChatCommands, CommandRequest
from masix.services.event_bus import InMemoryEventBus
from masix.services.memory_service import MemoryService
from masix.services.permissions import PermissionDecision
from masix.services.policy import MessagePolicy
from masix.services.profile_resolver import BotProfile, BotProfileResolver, ResolutionError
from masix.services.tool_engine import ToolCallingEngine
from masix.services.vision import VisionService

logger = logging.getLogger(__name__)

GENERIC_FAILURE_TEXT = "Sorry, I can't answer right now. Please try again in a few minutes."
EMPTY_REPLY_TEXT = "I have nothing to add."
REMINDER_PREFIX = "Reminder:"
_FORWARD_PREFIXES = {"whatsapp": "WhatsApp listener", "sms": "SMS listener"}


class EventPipeline:
    def __init__(
        self,
        *,
        config: RuntimeConfig,
        store: Store,
        resolver: BotProfileResolver,
        acl: AclService,
        policy: MessagePolicy,
        commands: ChatCommands,
        memory: MemoryService,
        vision: VisionService,
        engine: ToolCallingEngine,
        bus: InMemoryEventBus,
        delivery_max_attempts: int = 3,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.store = store
        self.resolver = resolver
        self.acl = acl
        self.policy = policy
        self.commands = commands
        self.memory = memory
        self.vision = vision
        self.engine = engine
        self.bus = bus
        self.delivery_max_attempts = max(1, delivery_max_attempts)
        self._sleep = sleep
        self._telegram: dict[str, ChannelAdapter] = {}

    def register_adapter(self, adapter: ChannelAdapter) -> None:
        if adapter.channel == "telegram":
            self._telegram[adapter.account_tag] = adapter

    def telegram_adapter(self, account_tag: str | None) -> ChannelAdapter | None:
        if not account_tag or account_tag == DEFAULT_ACCOUNT_TAG:
            accounts = self.config.telegram_accounts()
            account_tag = accounts[0].account_tag if accounts else None
        return self._telegram.get(account_tag) if account_tag else None

    # ── Inbound ────────────────────────────────────────────────────────────

    async def process(self, event: InboundEvent, adapter: ChannelAdapter) -> None:
        if not event.text.strip() and not event.media:
            INBOUND_EVENTS.labels(channel=event.channel, outcome="ignored").inc()
            return
        if event.channel in _FORWARD_PREFIXES:
            await self._forward_secondary(event)
            return

        account = self.config.telegram_account(event.account_tag)
        if account is None:
            INBOUND_EVENTS.labels(channel=event.channel, outcome="ignored").inc()
            logger.warning("Event for unconfigured account %s ignored", event.account_tag)
            return

        log_extra = {"account_tag": event.account_tag, "channel": event.channel, "chat_id": event.chat_id}
        refusal = self.policy.check(event.account_tag, event.sender_id, event.chat_id)
        if refusal:
            self._deny(event, refusal)
            return

        decision = self.acl.evaluate(
            account,
            sender_id=event.sender_id,
            chat_id=event.chat_id,
            is_private=event.is_private,
            mentioned=event.mentions_bot,
        )
        if not decision.allowed:
            self._deny(event, decision.reason)
            return

        self._audit(event)
        self.bus.publish(
            events.MESSAGE_RECEIVED,
            {"channel": event.channel, "account_tag": event.account_tag, "chat_id": event.chat_id, "role": decision.role.value},
        )

        try:
            profile = self.resolver.resolve(event.account_tag)
        except ResolutionError as exc:
            INBOUND_EVENTS.labels(channel=event.channel, outcome="unresolved").inc()
            logger.error("Cannot resolve a bot profile: %s", exc, extra=log_extra)
            return

        reply_to = None if event.is_private else event.message_id
        command_reply = await self.commands.handle(
            event.text,
            CommandRequest(
                account=account,
                profile=profile,
                chat_id=event.chat_id,
                sender_id=event.sender_id,
                role=decision.role,
            ),
        )
        if command_reply is not None:
            INBOUND_EVENTS.labels(channel=event.channel, outcome="command").inc()
            if command_reply:
                await self.deliver(adapter, self._response(event, command_reply, reply_to))
            return

        with TURN_LATENCY.time():
            await self._conversation_turn(event, adapter, account, profile, decision, reply_to)

    async def _conversation_turn(
        self,
        event: InboundEvent,
        adapter: ChannelAdapter,
        account: TelegramAccount,
        profile: BotProfile,
        decision: PermissionDecision,
        reply_to: str | None,
    ) -> None:
        user_text = await self._compose_user_text(event, profile, adapter)
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": self.memory.system_prompt(profile)},
            *self.memory.get_history(profile, event.account_tag, event.chat_id),
            {"role": "user", "content": user_text},
        ]
        context = ToolContext(
            channel=event.channel,
            account_tag=event.account_tag,
            chat_id=event.chat_id,
            sender_id=event.sender_id,
            role=decision.role,
            workdir=str(profile.workdir),
        )

        failed = False
        async with adapter.typing(event.chat_id):
            try:
                result = await self.engine.run(
                    profile,
                    messages,
                    context=context,
                    access=self.acl.tool_access(account, decision.role),
                    preferred_provider=self.commands.preferred_provider(event.account_tag, event.chat_id),
                )
                reply_text = result.text or EMPTY_REPLY_TEXT
            except AllProvidersFailed as exc:
                failed = True
                reply_text = GENERIC_FAILURE_TEXT
                logger.warning(
                    "Turn failed after %d provider failure(s)",
                    len(exc.failures),
                    extra={"account_tag": event.account_tag, "chat_id": event.chat_id, "event": "turn_failed"},
                )

        delivered = await self.deliver(adapter, self._response(event, reply_text, reply_to))
        INBOUND_EVENTS.labels(channel=event.channel, outcome="failed" if failed else "replied").inc()
        if failed:
            return
        self.memory.save_exchange(profile, event.account_tag, event.chat_id, user_text, reply_text)
        self.bus.publish(
            events.MESSAGE_REPLIED,
            {
                "account_tag": event.account_tag,
                "chat_id": event.chat_id,
                "provider": result.provider,
                "iterations": result.iterations,
                "tools": list(result.used_tools),
                "delivered": delivered,
            },
        )

    async def _compose_user_text(self, event: InboundEvent, profile: BotProfile, adapter: ChannelAdapter) -> str:
        if not event.media:
            return event.text
        notes = []
        for media in event.media:
            data = None
            if profile.vision_provider and self.vision.is_image(media):
                data = await adapter.fetch_media(media)
            notes.append(await self.vision.describe(profile, media, data))
        block = "\n".join(notes)
        if event.text.strip():
            return f"{event.text}\n\n[Media Context]\n{block}"
        return f"[Media message]\n{block}"

    def _deny(self, event: InboundEvent, reason: str) -> None:
        INBOUND_EVENTS.labels(channel=event.channel, outcome="denied").inc()
        logger.info(
            "Message from %s denied: %s",
            event.sender_id,
            reason,
            extra={"account_tag": event.account_tag, "channel": event.channel, "chat_id": event.chat_id, "event": "permission_denied"},
        )
        self.bus.publish(
            events.MESSAGE_DENIED,
            {"channel": event.channel, "account_tag": event.account_tag, "sender_id": event.sender_id, "reason": reason},
        )

    def _audit(self, event: InboundEvent) -> None:
        try:
            self.store.record_inbound_event(
                channel=event.channel,
                account_tag=event.account_tag,
                chat_id=event.chat_id,
                sender=event.sender_id,
                content=event.text,
                message_id=event.message_id,
            )
        except PersistenceError as exc:
            logger.error("Audit record for %s failed: %s", event.account_tag, exc)

    @staticmethod
    def _response(event: InboundEvent, text: str, reply_to: str | None) -> OutboundResponse:
        return OutboundResponse(
            channel=event.channel,
            account_tag=event.account_tag,
            chat_id=event.chat_id,
            text=text,
            reply_to=reply_to,
        )

    # ── Secondary channels ─────────────────────────────────────────────────

    async def _forward_secondary(self, event: InboundEvent) -> None:
        section = self.config.whatsapp if event.channel == "whatsapp" else self.config.sms
        if section is None or not section.enabled:
            INBOUND_EVENTS.labels(channel=event.channel, outcome="ignored").inc()
            return
        if not AclService.secondary_sender_allowed(section, event.sender_id):
            self._deny(event, "sender_not_allowed")
            return
        refusal = self.policy.check(event.account_tag, event.sender_id)
        if refusal:
            self._deny(event, refusal)
            return

        self._audit(event)
        self.bus.publish(
            events.MESSAGE_RECEIVED,
            {"channel": event.channel, "account_tag": event.account_tag, "chat_id": event.chat_id},
        )
        if section.forward_to_telegram_chat_id is None:
            INBOUND_EVENTS.labels(channel=event.channel, outcome="recorded").inc()
            return

        adapter = self.telegram_adapter(section.forward_to_telegram_account_tag)
        if adapter is None:
            INBOUND_EVENTS.labels(channel=event.channel, outcome="failed").inc()
            logger.warning("No telegram adapter to forward %s events to", event.channel)
            return
        prefix = section.forward_prefix or _FORWARD_PREFIXES[event.channel]
        label = f"{event.sender_name} {event.sender_id}" if event.sender_name else event.sender_id
        text = f"{prefix} [{label}]\n{event.text}"
        await self.deliver(
            adapter,
            OutboundResponse(
                channel="telegram",
                account_tag=adapter.account_tag,
                chat_id=str(section.forward_to_telegram_chat_id),
                text=text,
            ),
        )
        INBOUND_EVENTS.labels(channel=event.channel, outcome="forwarded").inc()

    # ── Outbound ───────────────────────────────────────────────────────────

    async def deliver(self, adapter: ChannelAdapter, response: OutboundResponse) -> bool:
        """Bounded retry, then a logged drop. Returns whether the channel accepted the reply."""
        for attempt in range(1, self.delivery_max_attempts + 1):
            try:
                await adapter.deliver(response)
                return True
            except DeliveryError as exc:
                if attempt == self.delivery_max_attempts:
                    logger.error(
                        "Reply to %s dropped after %d delivery attempt(s): %s",
                        response.chat_id,
                        attempt,
                        exc,
                        extra={"account_tag": response.account_tag, "chat_id": response.chat_id, "event": "delivery_dropped"},
                    )
                    return False
                logger.warning("Delivery attempt %d to %s failed: %s", attempt, response.chat_id, exc)
                await self._sleep(float(attempt))
        return False

    async def deliver_cron(self, job: CronJobRecord) -> None:
        """Deliver one reminder. DeliveryError propagates so the scheduler retries next tick."""
        if job.channel != "telegram":
            raise DeliveryError(f"reminders cannot be delivered over {job.channel}")
        adapter = self.telegram_adapter(job.account_tag)
        if adapter is None:
            raise DeliveryError(f"no telegram adapter for account '{job.account_tag}'")
        await adapter.deliver(
            OutboundResponse(
                channel="telegram",
                account_tag=adapter.account_tag,
                chat_id=job.recipient,
                text=f"{REMINDER_PREFIX} {job.message}",
            )
        )
        self.bus.publish(events.CRON_FIRED, {"job_id": job.id, "account_tag": job.account_tag})


class AccountWorker:
    def __init__(
        self,
        adapter: ChannelAdapter,
        pipeline: EventPipeline,
        store: Store,
        *,
        error_backoff: float = 5.0,
    ) -> None:
        self.adapter = adapter
        self.pipeline = pipeline
        self.store = store
        self.error_backoff = error_backoff
        self.offset: int | None = None
        self._queue: asyncio.Queue[InboundEvent] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []

    @property
    def name(self) -> str:
        return f"{self.adapter.channel}:{self.adapter.account_tag}"

    async def start(self) -> None:
        if self.adapter.persist_offsets:
            self.offset = self.store.get_offset(self.adapter.channel, self.adapter.account_tag)
        self._tasks = [
            asyncio.create_task(self._poll_loop(), name=f"poll:{self.name}"),
            asyncio.create_task(self._process_loop(), name=f"process:{self.name}"),
        ]
        logger.info("Worker %s started at offset %s", self.name, self.offset)

    async def _poll_loop(self) -> None:
        while True:
            try:
                batch = await self.adapter.poll(self.offset)
            except Exception as exc:
                logger.warning(
                    "Polling %s failed: %s",
                    self.name,
                    exc,
                    extra={"account_tag": self.adapter.account_tag, "channel": self.adapter.channel},
                )
                await asyncio.sleep(self.error_backoff)
                continue
            for event in batch:
                await self._queue.put(event)
            await self._queue.join()
            if batch:
                self.offset = max(event.offset for event in batch) + 1

    async def _process_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.handle(event)
            finally:
                self._queue.task_done()

    async def handle(self, event: InboundEvent) -> None:
        try:
            await self.pipeline.process(event, self.adapter)
        except Exception as exc:
            INBOUND_EVENTS.labels(channel=event.channel, outcome="error").inc()
            logger.error(
                "Event %s on %s failed: %s",
                event.offset,
                self.name,
                exc,
                exc_info=True,
                extra={"account_tag": event.account_tag, "channel": event.channel},
            )
        if not self.adapter.persist_offsets:
            return
        try:
            self.store.save_offset(event.channel, event.account_tag, event.offset + 1)
        except PersistenceError as exc:
            logger.error("Could not persist offset %d for %s: %s", event.offset + 1, self.name, exc)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.adapter.close()
        logger.info("Worker %s stopped", self.name)
