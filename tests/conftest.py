"""
Shared test fixtures for the MasiX runtime.
"""
import asyncio
import os

import pytest

# Force test settings before any masix import
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///test.db")
os.environ.setdefault("MASIX_CONFIG", "config/masix.example.yaml")

from masix.config.loader import ProviderConfig, parse_config
from masix.gateway.base import ChannelAdapter, DeliveryError, InboundEvent
from masix.persistence.store import Store
from masix.providers.base import ChatProvider, ChatResponse, PermanentProviderError
from masix.providers.registry import ProviderRegistry
from masix.providers.router import ProviderRouter

BOT_TOKEN = "123:AAA-test-token"
OTHER_BOT_TOKEN = "456:BBB-test-token"
ADMIN_ID = 1
USER_ID = 2
ADMIN_GROUP_ID = -100200


class FakeProvider(ChatProvider):
    """Replays a script of replies; the last entry repeats once the script runs out."""

    provider_type = "fake"

    def __init__(self, name, script=None):
        super().__init__(ProviderConfig(name=name, base_url=f"http://{name}.local/v1", model=name))
        self.script = list(script or [])
        self.calls = []

    async def chat(self, messages, tools=None, model=None):
        self.calls.append({"messages": [dict(m) for m in messages], "tools": tools})
        if not self.script:
            raise PermanentProviderError(f"{self.name}: nothing scripted")
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, str):
            return ChatResponse(content=item)
        return item


class FakeAdapter(ChannelAdapter):
    """Records deliveries; the first ``fail_times`` deliveries raise DeliveryError."""

    channel = "telegram"

    def __init__(self, account_tag, *, fail_times=0, batches=None):
        super().__init__(account_tag)
        self.sent = []
        self.fail_times = fail_times
        self.batches = list(batches or [])
        self.polled = []
        self.closed = False

    async def poll(self, offset):
        self.polled.append(offset)
        if self.batches:
            return self.batches.pop(0)
        await asyncio.sleep(0.01)
        return []

    async def deliver(self, response):
        if self.fail_times > 0:
            self.fail_times -= 1
            raise DeliveryError("chat unavailable")
        self.sent.append(response)

    async def close(self):
        self.closed = True


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def telegram_event(text, *, sender=USER_ID, chat=None, offset=1, chat_type="private", mentioned=False, tag="123"):
    return InboundEvent(
        channel="telegram",
        account_tag=tag,
        offset=offset,
        message_id=str(offset * 10),
        chat_id=str(chat if chat is not None else sender),
        chat_type=chat_type,
        sender_id=str(sender),
        text=text,
        mentions_bot=mentioned,
    )


@pytest.fixture()
def config_dict(tmp_path):
    """Raw config mapping with one profile, three providers and one Telegram account."""
    return {
        "core": {"data_dir": str(tmp_path / "data"), "timezone": "Europe/Rome"},
        "providers": {
            "default_provider": "primary",
            "providers": [
                {"name": "primary", "base_url": "http://primary.local/v1", "model": "m1"},
                {"name": "secondary", "base_url": "http://secondary.local/v1", "model": "m2"},
                {"name": "tertiary", "base_url": "http://tertiary.local/v1", "model": "m3"},
            ],
        },
        "bots": {
            "profiles": [
                {
                    "name": "main",
                    "workdir": str(tmp_path / "main"),
                    "memory_file": "MEMORY.md",
                    "provider_primary": "primary",
                    "provider_fallback": ["secondary", "tertiary"],
                    "retry": {
                        "window_secs": 5,
                        "initial_delay_secs": 1,
                        "backoff_factor": 2,
                        "max_delay_secs": 4,
                    },
                }
            ]
        },
        "telegram": {
            "accounts": [
                {
                    "bot_token": BOT_TOKEN,
                    "bot_name": "masix_bot",
                    "bot_profile": "main",
                    "admins": [ADMIN_ID],
                    "users": [USER_ID],
                }
            ]
        },
    }


@pytest.fixture()
def runtime_config(config_dict):
    return parse_config(config_dict)


@pytest.fixture()
def store(tmp_path):
    store = Store.from_url(f"sqlite:///{tmp_path / 'masix.db'}", create_schema=True)
    yield store
    store.engine.dispose()


@pytest.fixture()
def fake_providers():
    return {name: FakeProvider(name) for name in ("primary", "secondary", "tertiary")}


@pytest.fixture()
def sleeps():
    return SleepRecorder()


@pytest.fixture()
def router(fake_providers, sleeps):
    registry = ProviderRegistry([])
    for provider in fake_providers.values():
        registry.register(provider)
    return ProviderRouter(registry, attempt_timeout=5, sleep=sleeps, clock=lambda: 0.0)
