import json

import pytest

from masix.config.loader import WhatsappConfig
from masix.gateway.base import DeliveryError, OutboundResponse
from masix.gateway.whatsapp import WhatsAppIngressAdapter, sign_body, verify_signature


def _body(**overrides):
    payload = {"schema": "whatsapp.v1", "message_id": "wamid.1", "from": "+39333", "text": "ciao", "push_name": "Mario"}
    payload.update(overrides)
    return json.dumps(payload).encode()


def test_signature_roundtrip():
    body = _body()
    header = sign_body("s3cret", body)
    assert header.startswith("sha256=")
    assert verify_signature("s3cret", body, header) is True
    assert verify_signature("s3cret", body + b" ", header) is False
    assert verify_signature("s3cret", body, None) is False
    assert verify_signature(None, body, None) is True


def test_signed_event_is_queued():
    adapter = WhatsAppIngressAdapter(WhatsappConfig(enabled=True, ingress_shared_secret="s3cret"))
    body = _body()

    event = adapter.accept(body, sign_body("s3cret", body))

    assert event is not None
    assert event.channel == "whatsapp"
    assert event.chat_id == "+39333"
    assert event.sender_name == "Mario"
    assert event.is_private is True


def test_bad_signature_and_bad_payloads_are_dropped():
    adapter = WhatsAppIngressAdapter(WhatsappConfig(enabled=True, ingress_shared_secret="s3cret"))
    assert adapter.accept(_body(), "sha256=deadbeef") is None

    open_adapter = WhatsAppIngressAdapter(WhatsappConfig(enabled=True))
    assert open_adapter.accept(b"not json", None) is None
    assert open_adapter.accept(_body(schema="whatsapp.v2"), None) is None
    assert open_adapter.accept(json.dumps({"schema": "whatsapp.v1"}).encode(), None) is None


def test_text_is_truncated_and_group_chats_keep_their_id():
    adapter = WhatsAppIngressAdapter(WhatsappConfig(enabled=True, max_message_chars=5))
    event = adapter.accept(_body(text="abcdefghij", chat_id="group-1", is_group=True), None)
    assert event.text == "abcde"
    assert event.chat_id == "group-1"
    assert event.is_private is False


@pytest.mark.asyncio
async def test_poll_drains_the_queue_in_order():
    adapter = WhatsAppIngressAdapter(WhatsappConfig(enabled=True), poll_timeout=0.01)
    adapter.accept(_body(message_id="a"), None)
    adapter.accept(_body(message_id="b"), None)

    batch = await adapter.poll(None)
    empty = await adapter.poll(None)

    assert [event.message_id for event in batch] == ["a", "b"]
    assert [event.offset for event in batch] == [1, 2]
    assert empty == []


@pytest.mark.asyncio
async def test_whatsapp_never_sends():
    adapter = WhatsAppIngressAdapter(WhatsappConfig(enabled=True))
    with pytest.raises(DeliveryError):
        await adapter.deliver(OutboundResponse(channel="whatsapp", account_tag="whatsapp", chat_id="+39333", text="hi"))
