import asyncio
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest
from conftest import ADMIN_ID, USER_ID, FakeAdapter, SleepRecorder, telegram_event

from masix.config.loader import parse_config
from masix.gateway.base import DeliveryError, InboundEvent
from masix.mcp.catalog import ToolCatalog
from masix.persistence.store import NewCronJob
from masix.providers.base import TransientProviderError
from masix.services import event_bus as events
from masix.services.acl_service import AclService
from masix.services.chat_commands import ChatCommands
from masix.services.cron_parser import ScheduleParser
from masix.services.cron_service import CronScheduler
from masix.services.event_bus import InMemoryEventBus
from masix.services.exec_service import ExecService
from masix.services.memory_service import MemoryService
from masix.services.pipeline import GENERIC_FAILURE_TEXT, AccountWorker, EventPipeline
from masix.services.policy import MessagePolicy
from masix.services.profile_resolver import BotProfileResolver
from masix.services.tool_engine import ToolCallingEngine
from masix.services.vision import VisionService


def build_pipeline(config, store, router):
    acl = AclService(store)
    memory = MemoryService()
    commands = ChatCommands(
        acl=acl,
        cron=CronScheduler(store, ScheduleParser(ZoneInfo("Europe/Rome"))),
        memory=memory,
        router=router,
        exec_service=ExecService(config.exec),
    )
    return EventPipeline(
        config=config,
        store=store,
        resolver=BotProfileResolver(config),
        acl=acl,
        policy=MessagePolicy(config.policy),
        commands=commands,
        memory=memory,
        vision=VisionService(router),
        engine=ToolCallingEngine(router, ToolCatalog()),
        bus=InMemoryEventBus(),
        sleep=SleepRecorder(),
    )


@pytest.fixture()
def adapter():
    return FakeAdapter("123")


@pytest.fixture()
def pipeline(runtime_config, store, router, adapter):
    pipeline = build_pipeline(runtime_config, store, router)
    pipeline.register_adapter(adapter)
    return pipeline


@pytest.mark.asyncio
async def test_private_message_gets_one_reply(pipeline, adapter, fake_providers):
    fake_providers["primary"].script = ["Hello!"]

    await pipeline.process(telegram_event("hi"), adapter)

    assert [r.text for r in adapter.sent] == ["Hello!"]
    assert adapter.sent[0].chat_id == str(USER_ID)
    assert adapter.sent[0].reply_to is None
    system_prompt = fake_providers["primary"].calls[0]["messages"][0]
    assert system_prompt["role"] == "system"


@pytest.mark.asyncio
async def test_history_is_saved_and_replayed(pipeline, adapter, fake_providers):
    fake_providers["primary"].script = ["first answer", "second answer"]

    await pipeline.process(telegram_event("first question", offset=1), adapter)
    await pipeline.process(telegram_event("second question", offset=2), adapter)

    messages = fake_providers["primary"].calls[1]["messages"]
    assert [m["content"] for m in messages[1:]] == ["first question", "first answer", "second question"]


@pytest.mark.asyncio
async def test_listen_only_group_answers_only_a_tagging_admin(config_dict, store, router, fake_providers):
    config_dict["telegram"]["accounts"][0]["group_mode"] = "listen_only"
    config = parse_config(config_dict)
    adapter = FakeAdapter("123")
    pipeline = build_pipeline(config, store, router)
    fake_providers["primary"].script = ["At your service"]

    await pipeline.process(telegram_event("@masix_bot hi", sender=USER_ID, chat=-100, chat_type="group", mentioned=True), adapter)
    await pipeline.process(telegram_event("just chatting", sender=ADMIN_ID, chat=-100, chat_type="group", offset=2), adapter)
    assert adapter.sent == []
    assert fake_providers["primary"].calls == []

    await pipeline.process(
        telegram_event("@masix_bot status?", sender=ADMIN_ID, chat=-100, chat_type="group", mentioned=True, offset=3),
        adapter,
    )

    assert [r.text for r in adapter.sent] == ["At your service"]
    assert adapter.sent[0].chat_id == "-100"
    assert adapter.sent[0].reply_to == "30"


@pytest.mark.asyncio
async def test_all_providers_failing_sends_one_generic_message(pipeline, adapter, fake_providers, tmp_path):
    for provider in fake_providers.values():
        provider.script = [TransientProviderError("500", status_code=500)]

    await pipeline.process(telegram_event("hi"), adapter)

    assert [r.text for r in adapter.sent] == [GENERIC_FAILURE_TEXT]
    assert not (tmp_path / "main" / "memory").exists()


@pytest.mark.asyncio
async def test_unknown_sender_is_denied_silently(pipeline, adapter, fake_providers):
    bus = pipeline.bus
    _, queue = bus.subscribe([events.MESSAGE_DENIED])

    await pipeline.process(telegram_event("hi", sender=999), adapter)

    assert adapter.sent == []
    assert fake_providers["primary"].calls == []
    denied = queue.get_nowait()
    assert denied["data"]["reason"] == "not_registered"


@pytest.mark.asyncio
async def test_commands_are_answered_without_the_model(pipeline, adapter, fake_providers):
    await pipeline.process(telegram_event("/whoami"), adapter)

    assert adapter.sent[0].text.startswith("Role: user")
    assert fake_providers["primary"].calls == []


@pytest.mark.asyncio
async def test_denylisted_sender_is_dropped(config_dict, store, router, fake_providers):
    config_dict["policy"] = {"denylist": [str(USER_ID)]}
    adapter = FakeAdapter("123")
    pipeline = build_pipeline(parse_config(config_dict), store, router)

    await pipeline.process(telegram_event("hi"), adapter)

    assert adapter.sent == []


@pytest.mark.asyncio
async def test_rate_limit_drops_excess_messages(config_dict, store, router, fake_providers):
    config_dict["policy"] = {"rate_limit": {"messages_per_minute": 2}}
    adapter = FakeAdapter("123")
    pipeline = build_pipeline(parse_config(config_dict), store, router)
    fake_providers["primary"].script = ["ok"]

    for offset in range(1, 4):
        await pipeline.process(telegram_event("hi", offset=offset), adapter)

    assert len(adapter.sent) == 2


@pytest.mark.asyncio
async def test_empty_events_are_ignored(pipeline, adapter, fake_providers):
    await pipeline.process(telegram_event("   "), adapter)
    assert adapter.sent == []


@pytest.mark.asyncio
async def test_replied_event_is_published(pipeline, adapter, fake_providers):
    fake_providers["primary"].script = ["Hello!"]
    _, queue = pipeline.bus.subscribe([events.MESSAGE_REPLIED])

    await pipeline.process(telegram_event("hi"), adapter)

    replied = queue.get_nowait()
    assert replied["data"]["provider"] == "primary"
    assert replied["data"]["delivered"] is True


@pytest.mark.asyncio
async def test_delivery_is_retried_then_dropped(pipeline, fake_providers):
    flaky = FakeAdapter("123", fail_times=2)
    dead = FakeAdapter("123", fail_times=10)
    fake_providers["primary"].script = ["Hello!"]

    await pipeline.process(telegram_event("hi", offset=1), flaky)
    await pipeline.process(telegram_event("hi again", offset=2), dead)

    assert [r.text for r in flaky.sent] == ["Hello!"]
    assert dead.sent == []
    assert dead.fail_times == 7
    assert pipeline._sleep.delays == [1.0, 2.0, 1.0, 2.0]


@pytest.mark.asyncio
async def test_offset_is_persisted_after_processing(pipeline, adapter, store, fake_providers):
    fake_providers["primary"].script = ["Hello!"]
    worker = AccountWorker(adapter, pipeline, store)

    await worker.handle(telegram_event("hi", offset=41))
    assert store.get_offset("telegram", "123") == 42

    # re-processing an already acknowledged update never rewinds the cursor
    await worker.handle(telegram_event("hi", offset=40))
    assert store.get_offset("telegram", "123") == 42


@pytest.mark.asyncio
async def test_offset_advances_even_when_processing_crashes(adapter, store):
    class ExplodingPipeline:
        async def process(self, event, adapter):
            raise RuntimeError("boom")

    worker = AccountWorker(adapter, ExplodingPipeline(), store)

    await worker.handle(telegram_event("hi", offset=7))

    assert store.get_offset("telegram", "123") == 8


@pytest.mark.asyncio
async def test_worker_resumes_from_the_stored_offset(pipeline, store):
    store.save_offset("telegram", "123", 100)
    adapter = FakeAdapter("123")
    worker = AccountWorker(adapter, pipeline, store)

    await worker.start()
    await asyncio.sleep(0.05)
    await worker.stop()

    assert worker.offset == 100
    assert adapter.polled[0] == 100
    assert adapter.closed is True


@pytest.mark.asyncio
async def test_whatsapp_message_is_forwarded_to_telegram(config_dict, store, router, fake_providers):
    config_dict["whatsapp"] = {"enabled": True, "forward_to_telegram_chat_id": 999}
    pipeline = build_pipeline(parse_config(config_dict), store, router)
    telegram = FakeAdapter("123")
    pipeline.register_adapter(telegram)
    event = InboundEvent(
        channel="whatsapp",
        account_tag="whatsapp",
        offset=1,
        message_id="wamid.1",
        chat_id="+39333",
        sender_id="+39333",
        sender_name="Mario",
        text="ciao",
    )

    await pipeline.process(event, telegram)

    assert [(r.chat_id, r.text) for r in telegram.sent] == [("999", "WhatsApp listener [Mario +39333]\nciao")]
    assert fake_providers["primary"].calls == []


@pytest.mark.asyncio
async def test_sms_from_unlisted_sender_is_not_forwarded(config_dict, store, router):
    config_dict["sms"] = {"enabled": True, "allowed_senders": ["+39111"], "forward_to_telegram_chat_id": 999}
    pipeline = build_pipeline(parse_config(config_dict), store, router)
    telegram = FakeAdapter("123")
    pipeline.register_adapter(telegram)
    stranger = InboundEvent(channel="sms", account_tag="sms", offset=5, chat_id="+39222", sender_id="+39222", text="spam")
    friend = InboundEvent(channel="sms", account_tag="sms", offset=6, chat_id="+39111", sender_id="+39111", text="hi")

    await pipeline.process(stranger, telegram)
    await pipeline.process(friend, telegram)

    assert [r.text for r in telegram.sent] == ["SMS listener [+39111]\nhi"]


@pytest.mark.asyncio
async def test_cron_reminders_use_the_owning_telegram_account(pipeline, adapter, store):
    job_id = store.create_cron_job(
        NewCronJob(
            created_by="2",
            account_tag="__default__",
            channel="telegram",
            recipient="2",
            message="Team sync",
            schedule="0 9 * * *",
            recurring=True,
            timezone="Europe/Rome",
            next_run=datetime(2026, 10, 20, 7, 0, tzinfo=timezone.utc),
        )
    )

    await pipeline.deliver_cron(store.get_cron_job(job_id))

    assert [(r.chat_id, r.text) for r in adapter.sent] == [("2", "Reminder: Team sync")]


@pytest.mark.asyncio
async def test_cron_reminder_for_unknown_account_fails(pipeline, store):
    job_id = store.create_cron_job(
        NewCronJob(
            created_by="2",
            account_tag="777",
            channel="telegram",
            recipient="2",
            message="x",
            schedule="0 9 * * *",
            recurring=True,
            timezone="UTC",
            next_run=datetime(2026, 10, 20, 7, 0, tzinfo=timezone.utc),
        )
    )

    with pytest.raises(DeliveryError):
        await pipeline.deliver_cron(store.get_cron_job(job_id))
