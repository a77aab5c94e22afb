import pytest

from masix.config.loader import parse_config
from masix.config.settings import Settings
from masix.services.runtime import Runtime


@pytest.mark.asyncio
async def test_runtime_starts_and_stops_without_telegram(config_dict, store, tmp_path):
    config_dict.pop("telegram")
    config_dict["whatsapp"] = {"enabled": True}
    runtime = Runtime(parse_config(config_dict), Settings(cron_tick_seconds=0.01), store)

    await runtime.start()
    try:
        assert [worker.name for worker in runtime.workers] == ["whatsapp:whatsapp"]
        assert runtime.whatsapp is not None
        assert (tmp_path / "main").is_dir()
        assert "cron_list" in runtime.catalog.names()
    finally:
        await runtime.stop()

    assert runtime.workers == []


def test_runtime_wires_cron_delivery_through_the_pipeline(runtime_config, store):
    runtime = Runtime(runtime_config, Settings(), store)

    assert runtime.cron._deliver == runtime.pipeline.deliver_cron
    assert runtime.whatsapp is None
    assert runtime.registry.names() == ["primary", "secondary", "tertiary"]
