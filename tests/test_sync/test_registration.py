"""Tests for the registration state machine."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from conftest import make_client, make_info

from smsgate_sync.errors import AuthError, ConfigurationError, ServerError
from smsgate_sync.events import RegistrationEvents
from smsgate_sync.models import RegistrationFailed, RegistrationSucceeded
from smsgate_sync.registration import (
    InvalidTransition,
    Outcome,
    RegistrationState,
    RegistrationStateMachine,
    WithCode,
    WithCredentials,
    next_state,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_machine(client, store, *, enabled: bool = True):
    events = RegistrationEvents()
    queue = events.subscribe()
    machine = RegistrationStateMachine(
        client, store, events, device_name="phone", enabled=enabled
    )
    return machine, queue


def _drain(queue: asyncio.Queue) -> list:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------


def test_transitions():
    S, Out = RegistrationState, Outcome
    assert next_state(S.UNREGISTERED, Out.BEGIN) == S.REGISTERING
    assert next_state(S.REGISTERING, Out.REGISTERED) == S.REGISTERED
    assert next_state(S.REGISTERING, Out.FAILED) == S.UNREGISTERED
    assert next_state(S.REGISTERED, Out.UPDATED) == S.REGISTERED
    assert next_state(S.REGISTERED, Out.UNAUTHORIZED) == S.TOKEN_INVALID
    assert next_state(S.TOKEN_INVALID, Out.BEGIN) == S.REGISTERING


def test_invalid_transition():
    with pytest.raises(InvalidTransition):
        next_state(RegistrationState.UNREGISTERED, Outcome.REGISTERED)


# ---------------------------------------------------------------------------
# ensure_registered
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fresh_registration(store):
    client = make_client(register_device=AsyncMock(return_value=make_info("new")))
    machine, queue = _make_machine(client, store)

    info = await machine.ensure_registered("push-1")

    assert info == make_info("new")
    assert store.load() == make_info("new")
    assert store.load_push_token() == "push-1"
    assert machine.state == RegistrationState.REGISTERED
    client.register_device.assert_awaited_once_with("phone", "push-1")
    assert _drain(queue) == [RegistrationSucceeded("api.test", "login-new", "password-new")]


@pytest.mark.asyncio
async def test_existing_token_is_updated(registered_store):
    client = make_client()
    machine, queue = _make_machine(client, registered_store)

    info = await machine.ensure_registered("push-2")

    assert info == make_info("a")
    client.patch_device.assert_awaited_once_with("token-a", "device-a", "push-2")
    client.register_device.assert_not_awaited()
    assert registered_store.load_push_token() == "push-2"
    assert _drain(queue) == [RegistrationSucceeded("api.test", "login-a", "password-a")]


@pytest.mark.asyncio
async def test_null_push_token_skips_device_patch(registered_store):
    client = make_client()
    machine, queue = _make_machine(client, registered_store)

    await machine.ensure_registered(None)

    client.patch_device.assert_not_awaited()
    assert len(_drain(queue)) == 1


@pytest.mark.asyncio
async def test_401_triggers_reregistration(registered_store):
    client = make_client(
        patch_device=AsyncMock(side_effect=AuthError("expired", 401)),
        register_device=AsyncMock(return_value=make_info("b")),
    )
    machine, queue = _make_machine(client, registered_store)

    info = await machine.ensure_registered("push-1")

    assert info == make_info("b")
    assert registered_store.load() == make_info("b")
    assert machine.state == RegistrationState.REGISTERED
    events = _drain(queue)
    assert events == [RegistrationSucceeded("api.test", "login-b", "password-b")]


@pytest.mark.asyncio
async def test_failed_reregistration_keeps_stored_info(registered_store):
    client = make_client(
        patch_device=AsyncMock(side_effect=AuthError("expired", 401)),
        register_device=AsyncMock(side_effect=ServerError("down", 503)),
    )
    machine, queue = _make_machine(client, registered_store)

    with pytest.raises(ServerError):
        await machine.ensure_registered("push-1")

    assert registered_store.load() == make_info("a")
    events = _drain(queue)
    assert len(events) == 1
    assert isinstance(events[0], RegistrationFailed)
    assert events[0].hostname == "api.test"
    assert "down" in events[0].message


@pytest.mark.asyncio
async def test_failed_write_keeps_identity_and_push_token_together(registered_store):
    registered_store.save_push_token("push-0")
    client = make_client(
        patch_device=AsyncMock(side_effect=AuthError("expired", 401)),
        register_device=AsyncMock(return_value=make_info("b")),
    )
    machine, queue = _make_machine(client, registered_store)

    with patch("smsgate_sync.settings.os.replace", side_effect=OSError("disk full")):
        with pytest.raises(OSError):
            await machine.ensure_registered("push-1")

    assert registered_store.load() == make_info("a")
    assert registered_store.load_push_token() == "push-0"
    assert [type(e) for e in _drain(queue)] == [RegistrationFailed]


@pytest.mark.asyncio
async def test_update_failure_other_than_401_propagates(registered_store):
    client = make_client(patch_device=AsyncMock(side_effect=ServerError("down", 500)))
    machine, queue = _make_machine(client, registered_store)

    with pytest.raises(ServerError):
        await machine.ensure_registered("push-1")

    client.register_device.assert_not_awaited()
    assert [type(e) for e in _drain(queue)] == [RegistrationFailed]


@pytest.mark.asyncio
async def test_registration_modes(store):
    client = make_client(register_device=AsyncMock(return_value=make_info("c")))
    machine, _ = _make_machine(client, store)

    await machine.ensure_registered("p", WithCredentials("user", "pw"))
    client.register_device.assert_awaited_with("phone", "p", credentials=("user", "pw"))

    store.clear()
    await machine.ensure_registered("p", WithCode("123456"))
    client.register_device.assert_awaited_with("phone", "p", code="123456")


@pytest.mark.asyncio
async def test_cancellation_emits_nothing(store):
    client = make_client(register_device=AsyncMock(side_effect=asyncio.CancelledError))
    machine, queue = _make_machine(client, store)

    with pytest.raises(asyncio.CancelledError):
        await machine.ensure_registered("push-1")

    assert store.load() is None
    assert _drain(queue) == []
    assert machine.state == RegistrationState.UNREGISTERED


@pytest.mark.asyncio
async def test_disabled_is_noop(store):
    client = make_client()
    machine, queue = _make_machine(client, store, enabled=False)

    assert await machine.ensure_registered("push-1") is None
    client.register_device.assert_not_awaited()
    assert _drain(queue) == []


# ---------------------------------------------------------------------------
# update_device / change_password
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_update_device_unregistered_is_noop(store):
    client = make_client()
    machine, queue = _make_machine(client, store)

    await machine.update_device("push-1")

    client.patch_device.assert_not_awaited()
    assert _drain(queue) == []


@pytest.mark.asyncio
async def test_change_password_replaces_only_password(registered_store):
    client = make_client()
    machine, queue = _make_machine(client, registered_store)

    await machine.change_password("password-a", "fresh")

    client.change_password.assert_awaited_once_with("token-a", "password-a", "fresh")
    assert registered_store.load() == make_info("a", password="fresh")
    assert _drain(queue) == [RegistrationSucceeded("api.test", "login-a", "fresh")]


@pytest.mark.asyncio
async def test_change_password_unregistered(store):
    client = make_client()
    machine, queue = _make_machine(client, store)

    with pytest.raises(ConfigurationError):
        await machine.change_password("old", "new")

    client.change_password.assert_not_awaited()
    assert [type(e) for e in _drain(queue)] == [RegistrationFailed]


@pytest.mark.asyncio
async def test_change_password_remote_failure_keeps_password(registered_store):
    client = make_client(change_password=AsyncMock(side_effect=AuthError("bad", 401)))
    machine, queue = _make_machine(client, registered_store)

    with pytest.raises(AuthError):
        await machine.change_password("wrong", "new")

    assert registered_store.load().password == "password-a"
    assert [type(e) for e in _drain(queue)] == [RegistrationFailed]
