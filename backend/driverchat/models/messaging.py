"""Inbound chat messages, classified intents and dispatch outcomes."""
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class MessageKind(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    AUDIO = "AUDIO"
    LOCATION = "LOCATION"


class InboundMessage(BaseModel):
    """Provider-independent inbound chat message."""

    raw_phone: str
    kind: MessageKind = MessageKind.TEXT
    tenant_id: Optional[str] = None
    provider: Optional[str] = None
    text: Optional[str] = None
    media_url: Optional[str] = None
    caption: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class IntentAction(str, Enum):
    """Closed set of purposes a driver message can be classified into."""

    START_SHIFT = "start-shift"
    DELIVER = "deliver"
    FAIL = "fail"
    PAUSE_BREAK = "pause-break"
    RESUME = "resume"
    SUMMARY = "summary"
    DELAY = "delay"
    NAVIGATE = "navigate"
    CONTACT = "contact"
    UNDO = "undo"
    DETAILS = "details"
    HELP = "help"
    GREETING = "greeting"
    FINISH = "finish"
    ASK_SALESPERSON = "ask-salesperson"
    ASK_SUPERVISOR = "ask-supervisor"
    LIST_PENDING = "list-pending"
    INCIDENT = "incident"
    EXIT_ROUTE = "exit-route"
    ARRIVED = "arrived"
    UNLOADING_STARTED = "unloading-started"
    UNLOADING_ENDED = "unloading-ended"
    OTHER = "other"
    UNKNOWN = "unknown"


class Intent(BaseModel):
    """Structured classifier output."""

    action: IntentAction = IntentAction.UNKNOWN
    identifier: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def unknown(cls) -> "Intent":
        return cls(action=IntentAction.UNKNOWN)


class DispatchOutcome(BaseModel):
    """What happened to one inbound message."""

    status: str
    reply: Optional[str] = None
    action: Optional[IntentAction] = None
    driver_id: Optional[str] = None
    route_id: Optional[str] = None
    delivery_id: Optional[str] = None
    reply_sent: bool = False
