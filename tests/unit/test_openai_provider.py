import json

import httpx
import pytest

from masix.config.loader import ProviderConfig
from masix.providers.base import PermanentProviderError, TransientProviderError
from masix.providers.openai_compatible import OpenAICompatibleProvider


def _provider(handler, **config):
    cfg = ProviderConfig(name="test", api_key="sk-test", base_url="http://llm.local/v1", model="m1", **config)
    return OpenAICompatibleProvider(cfg, timeout=5, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_text_reply_is_parsed_and_request_is_well_formed():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "model": "m1",
                "choices": [{"message": {"role": "assistant", "content": "ciao"}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 3, "completion_tokens": 1},
            },
        )

    provider = _provider(handler)
    response = await provider.chat([{"role": "user", "content": "hi"}])
    await provider.aclose()

    assert response.content == "ciao"
    assert response.usage == {"input_tokens": 3, "output_tokens": 1}
    assert seen["url"] == "http://llm.local/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["model"] == "m1"
    assert "tools" not in seen["body"]


@pytest.mark.asyncio
async def test_tool_calls_are_parsed():
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["tool_choice"] == "auto"
        return httpx.Response(
            200,
            json={
                "choices": [
                    {
                        "message": {
                            "content": None,
                            "tool_calls": [
                                {"id": "c1", "function": {"name": "cron_list", "arguments": "{}"}},
                                {"id": "c2", "function": {"name": "cron_add", "arguments": {"request": "x"}}},
                                {"id": "c3", "function": {}},
                            ],
                        }
                    }
                ]
            },
        )

    provider = _provider(handler)
    tools = [{"type": "function", "function": {"name": "cron_list", "parameters": {}}}]
    response = await provider.chat([{"role": "user", "content": "hi"}], tools=tools)
    await provider.aclose()

    assert [call.name for call in response.tool_calls] == ["cron_list", "cron_add"]
    assert response.tool_calls[1].parsed_arguments() == {"request": "x"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "error_type"),
    [
        (500, TransientProviderError),
        (503, TransientProviderError),
        (429, TransientProviderError),
        (401, PermanentProviderError),
        (400, PermanentProviderError),
    ],
)
async def test_status_codes_are_classified(status, error_type):
    provider = _provider(lambda request: httpx.Response(status, text="nope"))
    with pytest.raises(error_type) as exc_info:
        await provider.chat([{"role": "user", "content": "hi"}])
    await provider.aclose()
    assert exc_info.value.status_code == status


@pytest.mark.asyncio
async def test_network_error_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = _provider(handler)
    with pytest.raises(TransientProviderError):
        await provider.chat([{"role": "user", "content": "hi"}])
    await provider.aclose()


@pytest.mark.asyncio
async def test_auth_error_payload_is_permanent_and_empty_choices_too():
    provider = _provider(lambda request: httpx.Response(200, json={"error": {"message": "Invalid API key"}}))
    with pytest.raises(PermanentProviderError):
        await provider.chat([{"role": "user", "content": "hi"}])
    await provider.aclose()

    provider = _provider(lambda request: httpx.Response(200, json={"choices": []}))
    with pytest.raises(PermanentProviderError):
        await provider.chat([{"role": "user", "content": "hi"}])
    await provider.aclose()
