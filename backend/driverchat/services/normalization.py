"""Turn provider-specific webhook payloads into :class:`InboundMessage` records."""
from __future__ import annotations

from typing import Any, Dict, Optional

from driverchat.core.logging import logger
from driverchat.models.messaging import InboundMessage, MessageKind


def _get(data: Any, *path: Any) -> Any:
    current = data
    for key in path:
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, list) and isinstance(key, int):
            current = current[key] if -len(current) <= key < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def _float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def normalize_zapi(payload: Dict[str, Any]) -> Optional[InboundMessage]:
    """Z-API payloads, including Meta Cloud API envelopes relayed through it."""
    if payload.get("phone"):
        if payload.get("fromMe") or payload.get("isGroup"):
            return None
        base = {"raw_phone": str(payload["phone"]), "provider": "zapi"}
        text = _get(payload, "text", "message")
        if text:
            return InboundMessage(kind=MessageKind.TEXT, text=str(text), **base)
        audio_url = _get(payload, "audio", "audioUrl")
        if audio_url:
            return InboundMessage(kind=MessageKind.AUDIO, media_url=str(audio_url), **base)
        image_url = _get(payload, "image", "imageUrl")
        if image_url:
            return InboundMessage(
                kind=MessageKind.IMAGE,
                media_url=str(image_url),
                caption=_get(payload, "image", "caption"),
                **base,
            )
        location = payload.get("location")
        if isinstance(location, dict):
            return InboundMessage(
                kind=MessageKind.LOCATION,
                latitude=_float(location.get("latitude")),
                longitude=_float(location.get("longitude")),
                **base,
            )
        return None

    if payload.get("object") == "whatsapp_business_account":
        message = _get(payload, "entry", 0, "changes", 0, "value", "messages", 0)
        if not isinstance(message, dict) or not message.get("from"):
            return None
        if message.get("type") == "text" and _get(message, "text", "body"):
            return InboundMessage(
                raw_phone=str(message["from"]),
                provider="meta",
                kind=MessageKind.TEXT,
                text=str(_get(message, "text", "body")),
            )
    return None


def normalize_sendpulse(event: Dict[str, Any]) -> Optional[InboundMessage]:
    if event.get("service") != "whatsapp" or event.get("title") != "incoming_message":
        return None
    raw_phone = _get(event, "contact", "phone")
    message = _get(event, "info", "message", "channel_data", "message")
    kind = _get(message, "type")
    if not raw_phone or not kind:
        return None

    base = {"raw_phone": str(raw_phone), "provider": "sendpulse"}
    if kind == "text":
        body = _get(message, "text", "body")
        return InboundMessage(kind=MessageKind.TEXT, text=body, **base) if body else None
    if kind == "image":
        return InboundMessage(
            kind=MessageKind.IMAGE,
            media_url=_get(message, "image", "url"),
            caption=_get(message, "image", "caption"),
            **base,
        )
    if kind in {"audio", "voice"}:
        return InboundMessage(
            kind=MessageKind.AUDIO,
            media_url=_get(message, "audio", "url") or _get(message, "voice", "url"),
            **base,
        )
    if kind == "location":
        return InboundMessage(
            kind=MessageKind.LOCATION,
            latitude=_float(_get(message, "location", "latitude")),
            longitude=_float(_get(message, "location", "longitude")),
            **base,
        )
    return None


def normalize(provider: str, payload: Any, tenant_id: Optional[str] = None) -> Optional[InboundMessage]:
    """Normalize ``payload`` from ``provider``; unsupported shapes yield None."""
    if isinstance(payload, list):
        payload = payload[0] if payload else {}
    if not isinstance(payload, dict):
        return None

    name = (provider or "").strip().lower()
    try:
        if name == "sendpulse":
            message = normalize_sendpulse(payload)
        else:
            message = normalize_zapi(payload)
    except (TypeError, ValueError) as exc:
        logger.error("Inbound payload normalization failed", provider=name, error=str(exc))
        return None

    if message is not None and tenant_id:
        message.tenant_id = tenant_id
    return message
