from __future__ import annotations

import os
import sys
from pathlib import Path


TMP = Path(__file__).resolve().parent / ".tmp_fleet"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["FLEET_DB_PATH"] = str(TMP / "fleet_state.db")
os.environ["OPENAI_API_KEY"] = ""
os.environ["DEFAULT_MESSAGING_PROVIDER"] = "log"
os.environ["WEBHOOK_CLIENT_TOKEN"] = "test-webhook-token"

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from driverchat.models.messaging import MessageKind  # noqa: E402
from driverchat.services.normalization import normalize  # noqa: E402


def _sendpulse(message: dict, phone: str = "5511999998888") -> dict:
    return {
        "service": "whatsapp",
        "title": "incoming_message",
        "contact": {"phone": phone},
        "info": {"message": {"channel_data": {"message": message}}},
    }


def test_zapi_text_message():
    message = normalize("zapi", {"phone": "5511999998888", "text": {"message": "delivered 1020"}})

    assert message.kind == MessageKind.TEXT
    assert message.text == "delivered 1020"
    assert message.raw_phone == "5511999998888"
    assert message.provider == "zapi"


def test_zapi_image_audio_and_location():
    image = normalize(
        "zapi",
        {"phone": "5511999998888", "image": {"imageUrl": "https://cdn/x.jpg", "caption": "1020"}},
    )
    assert image.kind == MessageKind.IMAGE
    assert image.media_url == "https://cdn/x.jpg"
    assert image.caption == "1020"

    audio = normalize("zapi", {"phone": "5511999998888", "audio": {"audioUrl": "https://cdn/a.ogg"}})
    assert audio.kind == MessageKind.AUDIO

    location = normalize("zapi", {"phone": "5511999998888", "location": {"latitude": "-23.5", "longitude": -46.6}})
    assert location.kind == MessageKind.LOCATION
    assert location.latitude == -23.5


def test_zapi_ignores_own_and_group_messages():
    assert normalize("zapi", {"phone": "5511999998888", "fromMe": True, "text": {"message": "hi"}}) is None
    assert normalize("zapi", {"phone": "5511999998888", "isGroup": True, "text": {"message": "hi"}}) is None


def test_meta_envelope_relayed_through_whatsapp_endpoint():
    payload = {
        "object": "whatsapp_business_account",
        "entry": [
            {"changes": [{"value": {"messages": [{"from": "5511999998888", "type": "text", "text": {"body": "oi"}}]}}]}
        ],
    }

    message = normalize("zapi", payload)

    assert message.provider == "meta"
    assert message.text == "oi"


def test_sendpulse_shapes_and_list_payload():
    text = normalize("sendpulse", [_sendpulse({"type": "text", "text": {"body": "summary"}})])
    assert text.kind == MessageKind.TEXT
    assert text.text == "summary"
    assert text.provider == "sendpulse"

    voice = normalize("sendpulse", _sendpulse({"type": "voice", "voice": {"url": "https://cdn/v.ogg"}}))
    assert voice.kind == MessageKind.AUDIO
    assert voice.media_url == "https://cdn/v.ogg"

    location = normalize("sendpulse", _sendpulse({"type": "location", "location": {"latitude": 1, "longitude": 2}}))
    assert location.kind == MessageKind.LOCATION
    assert location.longitude == 2.0


def test_tenant_hint_is_attached():
    message = normalize("zapi", {"phone": "5511999998888", "text": {"message": "hi"}}, tenant_id="acme")
    assert message.tenant_id == "acme"


def test_unsupported_payloads_yield_none():
    assert normalize("zapi", {}) is None
    assert normalize("zapi", []) is None
    assert normalize("zapi", "not json") is None
    assert normalize("sendpulse", {"service": "telegram", "title": "incoming_message"}) is None
    assert normalize("sendpulse", _sendpulse({"type": "sticker"})) is None
