"""Tests for the outbound dispatch pipeline."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest
from conftest import FakeMessageStore, make_client

from smsgate_sync.dispatch import (
    DispatchPipeline,
    ItemStatus,
    build_state_patch,
    to_send_request,
)
from smsgate_sync.errors import MalformedMessageError
from smsgate_sync.logs import LogPriority, LogsService
from smsgate_sync.models import (
    DataContent,
    EntitySource,
    LocalSendState,
    MessageState,
    ProcessingOrder,
    RecipientState,
    RemoteMessage,
    StateHistoryEntry,
    TextContent,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _message(message_id: str, text: str | None = "hi", **kwargs) -> RemoteMessage:
    content = TextContent(text) if text is not None else None
    kwargs.setdefault("recipients", ["+15550001"])
    return RemoteMessage(id=message_id, content=content, **kwargs)


def _wire(message_id: str, text: str | None = "hi", **fields) -> dict:
    entry: dict = {"id": message_id, "phoneNumbers": ["+15550001"], **fields}
    if text is not None:
        entry["textMessage"] = {"text": text}
    return entry


def _make_pipeline(client, store, messages, *, on_resync=None, enabled=True):
    logs = LogsService()
    pipeline = DispatchPipeline(
        client, store, messages, logs, on_resync=on_resync, enabled=enabled
    )
    return pipeline, logs


# ---------------------------------------------------------------------------
# Mapping
# ---------------------------------------------------------------------------


def test_to_send_request_defaults():
    request = to_send_request(_message("m1"))

    assert request.source == EntitySource.CLOUD
    assert request.message_id == "m1"
    assert request.content == TextContent("hi")
    assert request.recipients == ["+15550001"]
    assert request.is_encrypted is False
    assert request.created_at.tzinfo is not None
    assert request.params.with_delivery_report is True
    assert request.params.skip_phone_validation is True


def test_to_send_request_keeps_remote_values():
    created = datetime(2024, 5, 1, 10, 0, tzinfo=UTC)
    message = RemoteMessage(
        id="m2",
        content=DataContent(b"\x00", 53739),
        recipients=["+15550002"],
        is_encrypted=True,
        created_at=created,
        delivery_report_requested=False,
        sim_slot=1,
        priority=100,
    )
    request = to_send_request(message)

    assert request.is_encrypted is True
    assert request.created_at == created
    assert request.params.with_delivery_report is False
    assert request.params.sim_slot == 1
    assert request.params.priority == 100


def test_to_send_request_rejects_missing_content_or_recipients():
    with pytest.raises(MalformedMessageError):
        to_send_request(_message("m1", text=None))
    with pytest.raises(MalformedMessageError):
        to_send_request(_message("m1", recipients=[]))


def test_build_state_patch():
    sent_at = datetime(2024, 5, 1, 10, 0, 5, tzinfo=UTC)
    state = LocalSendState(
        message_id="m1",
        state=MessageState.SENT,
        recipients=[RecipientState("+15550001", MessageState.SENT)],
        history=[StateHistoryEntry(MessageState.SENT, sent_at)],
    )

    assert build_state_patch(state) == {
        "id": "m1",
        "state": "Sent",
        "recipients": [{"phoneNumber": "+15550001", "state": "Sent", "error": None}],
        "states": {"Sent": "2024-05-01T10:00:05+00:00"},
    }


# ---------------------------------------------------------------------------
# pull
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_new_message_is_enqueued_once(registered_store):
    messages = FakeMessageStore()
    resync = AsyncMock()
    client = make_client(fetch_messages=AsyncMock(return_value=[_wire("m1")]))
    pipeline, _ = _make_pipeline(client, registered_store, messages, on_resync=resync)

    first = await pipeline.pull()
    second = await pipeline.pull()

    assert first.enqueued == ["m1"]
    assert len(messages.requests) == 1
    assert messages.requests[0].source == EntitySource.CLOUD
    assert second.enqueued == []
    assert second.resynced == ["m1"]
    resync.assert_awaited_once_with("m1")


@pytest.mark.asyncio
async def test_existing_message_without_resync_callback(registered_store):
    messages = FakeMessageStore()
    messages.states["m1"] = LocalSendState("m1", MessageState.SENT)
    client = make_client(fetch_messages=AsyncMock(return_value=[_wire("m1")]))
    pipeline, _ = _make_pipeline(client, registered_store, messages)

    report = await pipeline.pull()

    assert report.resynced == ["m1"]
    assert messages.requests == []


@pytest.mark.asyncio
async def test_bad_item_does_not_block_batch(registered_store):
    messages = FakeMessageStore()
    remote = [_wire("m1"), _wire("m2", text=None), _wire("m3")]
    client = make_client(fetch_messages=AsyncMock(return_value=remote))
    pipeline, logs = _make_pipeline(client, registered_store, messages)

    report = await pipeline.pull()

    assert report.enqueued == ["m1", "m3"]
    assert report.failed == ["m2"]
    assert [r.message_id for r in messages.requests] == ["m1", "m3"]

    entry = logs.recent[-1]
    assert entry.priority == LogPriority.ERROR
    assert entry.module == "gateway"
    assert entry.message == "Failed to process message"
    assert entry.context["message_id"] == "m2"
    assert "MalformedMessageError" in entry.context["exception"]


@pytest.mark.asyncio
async def test_unparseable_entries_do_not_abort_pull(registered_store):
    messages = FakeMessageStore()
    remote = [
        _wire("m1", priority="high"),
        {"phoneNumbers": ["+15550003"], "textMessage": {"text": "no id"}},
        _wire("m2"),
    ]
    client = make_client(fetch_messages=AsyncMock(return_value=remote))
    pipeline, logs = _make_pipeline(client, registered_store, messages)

    report = await pipeline.pull()

    assert [(r.message_id, r.status) for r in report.results] == [
        ("m1", ItemStatus.FAILED),
        ("<unknown>", ItemStatus.FAILED),
        ("m2", ItemStatus.ENQUEUED),
    ]
    assert [r.message_id for r in messages.requests] == ["m2"]
    assert "priority" in report.results[0].error

    first, second = logs.recent[-2:]
    assert first.context["message_id"] == "m1"
    assert "'high'" in first.context["entry"]
    assert second.context["message_id"] == "<unknown>"
    assert "no id" in second.context["entry"]


@pytest.mark.asyncio
async def test_overlapping_pulls_enqueue_once(registered_store):
    messages = FakeMessageStore()
    resync = AsyncMock()

    async def _fetch(token, order):
        await asyncio.sleep(0)
        return [_wire("m1")]

    client = make_client(fetch_messages=AsyncMock(side_effect=_fetch))
    pipeline, _ = _make_pipeline(client, registered_store, messages, on_resync=resync)

    first, second = await asyncio.gather(pipeline.pull(), pipeline.pull())

    assert len(messages.requests) == 1
    assert sorted(first.enqueued + second.enqueued) == ["m1"]
    assert sorted(first.resynced + second.resynced) == ["m1"]
    resync.assert_awaited_once_with("m1")


@pytest.mark.asyncio
async def test_enqueue_failure_is_isolated(registered_store):
    class _Flaky(FakeMessageStore):
        def enqueue_send_request(self, request):
            if request.message_id == "m1":
                raise RuntimeError("disk full")
            super().enqueue_send_request(request)

    messages = _Flaky()
    client = make_client(
        fetch_messages=AsyncMock(return_value=[_wire("m1"), _wire("m2")])
    )
    pipeline, _ = _make_pipeline(client, registered_store, messages)

    report = await pipeline.pull()

    assert [(r.message_id, r.status) for r in report.results] == [
        ("m1", ItemStatus.FAILED),
        ("m2", ItemStatus.ENQUEUED),
    ]
    assert report.results[0].error == "disk full"


@pytest.mark.asyncio
async def test_pull_uses_store_order(registered_store):
    messages = FakeMessageStore(order=ProcessingOrder.LIFO)
    client = make_client(fetch_messages=AsyncMock(return_value=[]))
    pipeline, _ = _make_pipeline(client, registered_store, messages)

    await pipeline.pull()

    client.fetch_messages.assert_awaited_once_with("token-a", ProcessingOrder.LIFO)


@pytest.mark.asyncio
async def test_pull_unregistered_is_noop(store, message_store):
    client = make_client()
    pipeline, _ = _make_pipeline(client, store, message_store)

    report = await pipeline.pull()

    assert report.results == []
    client.fetch_messages.assert_not_awaited()


@pytest.mark.asyncio
async def test_pull_disabled_is_noop(registered_store, message_store):
    client = make_client()
    pipeline, _ = _make_pipeline(client, registered_store, message_store, enabled=False)

    await pipeline.pull()

    client.fetch_messages.assert_not_awaited()


# ---------------------------------------------------------------------------
# report_state
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_report_state(registered_store, message_store):
    client = make_client()
    pipeline, _ = _make_pipeline(client, registered_store, message_store)
    state = LocalSendState("m1", MessageState.DELIVERED)

    await pipeline.report_state(state)

    client.patch_message_states.assert_awaited_once_with(
        "token-a", [build_state_patch(state)]
    )


@pytest.mark.asyncio
async def test_report_state_unregistered_is_noop(store, message_store):
    client = make_client()
    pipeline, _ = _make_pipeline(client, store, message_store)

    await pipeline.report_state(LocalSendState("m1", MessageState.SENT))

    client.patch_message_states.assert_not_awaited()
