"""Data models shared across the sync engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class ProcessingOrder(str, Enum):
    FIFO = "FIFO"
    LIFO = "LIFO"


class MessageState(str, Enum):
    PENDING = "Pending"
    PROCESSED = "Processed"
    SENT = "Sent"
    DELIVERED = "Delivered"
    FAILED = "Failed"


class EntitySource(str, Enum):
    LOCAL = "Local"
    CLOUD = "Cloud"
    GATEWAY = "Gateway"


class InboxClass(str, Enum):
    SMS = "sms"
    MMS = "mms"


# ---- device identity ----


@dataclass(frozen=True)
class RegistrationInfo:
    device_id: str
    login: str
    password: str
    access_token: str


@dataclass(frozen=True)
class DeviceInfo:
    external_ip: str


@dataclass(frozen=True)
class LoginCode:
    code: str
    valid_until: datetime | None = None


@dataclass(frozen=True)
class RegistrationSucceeded:
    hostname: str
    login: str
    password: str


@dataclass(frozen=True)
class RegistrationFailed:
    hostname: str
    message: str


RegistrationEvent = RegistrationSucceeded | RegistrationFailed


# ---- outbound messages ----


@dataclass(frozen=True)
class TextContent:
    text: str


@dataclass(frozen=True)
class DataContent:
    data: bytes
    port: int


MessageContent = TextContent | DataContent


@dataclass(frozen=True)
class RemoteMessage:
    """A message queued on the server for this device to send."""

    id: str
    content: MessageContent | None
    recipients: list[str]
    is_encrypted: bool | None = None
    created_at: datetime | None = None
    delivery_report_requested: bool | None = None
    sim_slot: int | None = None
    valid_until: datetime | None = None
    priority: int = 0


@dataclass(frozen=True)
class SendParams:
    with_delivery_report: bool = True
    skip_phone_validation: bool = False
    sim_slot: int | None = None
    valid_until: datetime | None = None
    priority: int = 0


@dataclass(frozen=True)
class SendRequest:
    source: EntitySource
    message_id: str
    content: MessageContent
    recipients: list[str]
    is_encrypted: bool
    created_at: datetime
    params: SendParams = field(default_factory=SendParams)


@dataclass
class RecipientState:
    phone_number: str
    state: MessageState
    error: str | None = None


@dataclass
class StateHistoryEntry:
    state: MessageState
    updated_at: datetime


@dataclass
class LocalSendState:
    message_id: str
    state: MessageState
    recipients: list[RecipientState] = field(default_factory=list)
    history: list[StateHistoryEntry] = field(default_factory=list)


# ---- inbox ----


@dataclass(frozen=True)
class InboxItem:
    """Snapshot of a locally received message, ready for the remote inbox."""

    phone_number: str
    body: str
    received_at: int  # epoch milliseconds
    external_id: str


# ---- remote configuration ----


@dataclass
class Webhook:
    id: str
    url: str
    event: str
    raw: dict[str, Any] = field(default_factory=dict)


def utcnow() -> datetime:
    return datetime.now(UTC)
