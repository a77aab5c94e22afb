"""
Runtime — builds every component from the config snapshot and runs them.

One ``AccountWorker`` per Telegram account, one for the WhatsApp ingress
queue and one for the SMS watcher, plus the cron loop. A channel that fails to
start is logged and left out; the rest of the process keeps running.
"""
from __future__ import annotations

import asyncio
import logging

from telegram.error import TelegramError

from masix.config.loader import RuntimeConfig, resolve_timezone
from masix.config.settings import Settings
from masix.gateway.base import ChannelAdapter
from masix.gateway.sms import SmsWatcherAdapter
from masix.gateway.telegram import TelegramAdapter
from masix.gateway.whatsapp import WhatsAppIngressAdapter
from masix.mcp.catalog import ToolCatalog
from masix.mcp.client import McpError
from masix.persistence.store import Store
from masix.providers.registry import ProviderRegistry
from masix.providers.router import ProviderRouter
from masix.services.acl_service import AclService
from masix.services.builtin_tools import register_builtin_tools
from masix.services.chat_commands import ChatCommands
from masix.services.cron_parser import ScheduleParser
from masix.services.cron_service import CronScheduler
from masix.services.event_bus import InMemoryEventBus
from masix.services.exec_service import ExecService
from masix.services.memory_service import MemoryService
from masix.services.pipeline import AccountWorker, EventPipeline
from masix.services.policy import MessagePolicy
from masix.services.profile_resolver import BotProfileResolver
from masix.services.tool_engine import ToolCallingEngine
from masix.services.vision import VisionService

logger = logging.getLogger(__name__)


class Runtime:
    def __init__(
        self,
        config: RuntimeConfig,
        settings: Settings,
        store: Store,
        *,
        registry: ProviderRegistry | None = None,
    ) -> None:
        self.config = config
        self.settings = settings
        self.store = store
        self.bus = InMemoryEventBus()

        self.registry = registry or ProviderRegistry.from_config(config, timeout=settings.provider_timeout_seconds)
        self.router = ProviderRouter(self.registry, attempt_timeout=settings.provider_timeout_seconds)
        self.resolver = BotProfileResolver(config)
        self.acl = AclService(store)
        self.cron = CronScheduler(
            store,
            ScheduleParser(resolve_timezone(config.core.timezone)),
            tick_seconds=settings.cron_tick_seconds,
        )
        self.memory = MemoryService(
            soul_file=config.core.soul_file,
            global_memory_file=config.core.global_memory_file,
        )
        self.exec_service = ExecService(config.exec)
        self.catalog = ToolCatalog(tool_timeout=settings.tool_timeout_seconds)
        self.engine = ToolCallingEngine(self.router, self.catalog)
        self.commands = ChatCommands(
            acl=self.acl,
            cron=self.cron,
            memory=self.memory,
            router=self.router,
            exec_service=self.exec_service,
        )
        self.pipeline = EventPipeline(
            config=config,
            store=store,
            resolver=self.resolver,
            acl=self.acl,
            policy=MessagePolicy(config.policy),
            commands=self.commands,
            memory=self.memory,
            vision=VisionService(self.router),
            engine=self.engine,
            bus=self.bus,
            delivery_max_attempts=settings.delivery_max_attempts,
        )
        self.cron.set_deliverer(self.pipeline.deliver_cron)
        register_builtin_tools(
            self.catalog,
            config=config,
            cron=self.cron,
            acl=self.acl,
            exec_service=self.exec_service,
        )

        whatsapp = config.whatsapp
        self.whatsapp = WhatsAppIngressAdapter(whatsapp) if whatsapp is not None and whatsapp.enabled else None
        self.workers: list[AccountWorker] = []
        self._cron_task: asyncio.Task | None = None

    async def start(self) -> None:
        self.resolver.ensure_workdirs()

        if self.config.mcp is not None and self.config.mcp.enabled:
            try:
                await self.catalog.connect(self.config.mcp.servers)
            except McpError as exc:
                logger.error("MCP catalog failed to load: %s", exc, exc_info=True)

        poll_timeout = (
            self.config.telegram.poll_timeout_secs
            if self.config.telegram and self.config.telegram.poll_timeout_secs
            else self.settings.telegram_poll_timeout_seconds
        )
        for account in self.config.telegram_accounts():
            adapter = TelegramAdapter(account, poll_timeout=poll_timeout)
            try:
                await adapter.start()
            except TelegramError as exc:
                logger.error(
                    "Telegram account %s failed to start: %s",
                    account.account_tag,
                    exc,
                    extra={"account_tag": account.account_tag},
                )
                continue
            self.pipeline.register_adapter(adapter)
            await self._start_worker(adapter)

        if self.whatsapp is not None:
            await self._start_worker(self.whatsapp)
        if self.config.sms is not None and self.config.sms.enabled:
            await self._start_worker(SmsWatcherAdapter(self.config.sms))

        self._cron_task = asyncio.create_task(self.cron.run(), name="cron")
        logger.info(
            "Runtime started: %d worker(s), %d tool(s)",
            len(self.workers),
            len(self.catalog.names()),
        )

    async def _start_worker(self, adapter: ChannelAdapter) -> None:
        worker = AccountWorker(adapter, self.pipeline, self.store)
        await worker.start()
        self.workers.append(worker)

    async def stop(self) -> None:
        self.cron.stop()
        if self._cron_task is not None:
            await self._cron_task
            self._cron_task = None
        for worker in self.workers:
            await worker.stop()
        self.workers = []
        await self.catalog.aclose()
        await self.registry.aclose()
        logger.info("Runtime stopped")
