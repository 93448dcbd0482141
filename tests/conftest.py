"""Shared fixtures for smsgate-sync tests.

Provides an in-memory MessageStore, a stubbed GatewayClient, and
RegistrationStore fixtures backed by pytest's tmp_path.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from smsgate_sync.messages import MessageStore
from smsgate_sync.models import (
    LocalSendState,
    MessageState,
    ProcessingOrder,
    RegistrationInfo,
    SendRequest,
)
from smsgate_sync.settings import RegistrationStore

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeMessageStore(MessageStore):
    """In-memory local message store.

    Enqueued requests are recorded and immediately get a Pending state, the
    way the local sender acknowledges a new message.
    """

    def __init__(self, order: ProcessingOrder = ProcessingOrder.FIFO) -> None:
        self.order = order
        self.requests: list[SendRequest] = []
        self.states: dict[str, LocalSendState] = {}

    def enqueue_send_request(self, request: SendRequest) -> None:
        self.requests.append(request)
        self.states[request.message_id] = LocalSendState(
            message_id=request.message_id, state=MessageState.PENDING
        )

    def get_send_state(self, message_id: str) -> LocalSendState | None:
        return self.states.get(message_id)

    def get_processing_order(self) -> ProcessingOrder:
        return self.order


def make_info(suffix: str = "a", **overrides: Any) -> RegistrationInfo:
    fields = {
        "device_id": f"device-{suffix}",
        "login": f"login-{suffix}",
        "password": f"password-{suffix}",
        "access_token": f"token-{suffix}",
    }
    fields.update(overrides)
    return RegistrationInfo(**fields)


def make_client(**methods: Any) -> MagicMock:
    """Return a GatewayClient stand-in with every remote call as AsyncMock."""
    client = MagicMock()
    client.hostname = "api.test"
    for name in (
        "open",
        "close",
        "register_device",
        "patch_device",
        "get_device",
        "fetch_messages",
        "patch_message_states",
        "push_inbox_batch",
        "change_password",
        "get_user_code",
        "fetch_webhooks",
        "fetch_settings",
    ):
        setattr(client, name, AsyncMock())
    for name, value in methods.items():
        setattr(client, name, value)
    return client


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def store(tmp_path: Path) -> RegistrationStore:
    """An empty RegistrationStore (device not registered)."""
    return RegistrationStore(tmp_path / "registration.json")


@pytest.fixture()
def registered_store(store: RegistrationStore) -> RegistrationStore:
    """A RegistrationStore holding ``make_info("a")``."""
    store.save(make_info("a"))
    return store


@pytest.fixture()
def message_store() -> FakeMessageStore:
    return FakeMessageStore()
