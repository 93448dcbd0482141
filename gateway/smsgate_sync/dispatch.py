"""Outbound dispatch: remote queue -> local sender, and state reports back."""

from __future__ import annotations

import logging
import traceback
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .client import GatewayClient, parse_message
from .errors import MalformedMessageError
from .logs import MODULE_NAME, LogPriority, LogsService
from .messages import MessageStore
from .models import (
    DataContent,
    EntitySource,
    LocalSendState,
    RemoteMessage,
    SendParams,
    SendRequest,
    TextContent,
    utcnow,
)
from .settings import RegistrationStore

logger = logging.getLogger(__name__)

ResyncCallback = Callable[[str], Awaitable[None]]


class ItemStatus(str, Enum):
    ENQUEUED = "enqueued"
    RESYNCED = "resynced"
    FAILED = "failed"


@dataclass
class ItemResult:
    message_id: str
    status: ItemStatus
    error: str | None = None


@dataclass
class BatchReport:
    """Per-message outcomes of one pull, in processing order."""

    results: list[ItemResult] = field(default_factory=list)

    def _ids(self, status: ItemStatus) -> list[str]:
        return [r.message_id for r in self.results if r.status == status]

    @property
    def enqueued(self) -> list[str]:
        return self._ids(ItemStatus.ENQUEUED)

    @property
    def resynced(self) -> list[str]:
        return self._ids(ItemStatus.RESYNCED)

    @property
    def failed(self) -> list[str]:
        return self._ids(ItemStatus.FAILED)


UNKNOWN_MESSAGE_ID = "<unknown>"


def _entry_id(entry: Any) -> str:
    if isinstance(entry, dict) and entry.get("id"):
        return str(entry["id"])
    return UNKNOWN_MESSAGE_ID


def summarize_content(message: RemoteMessage) -> str:
    content = message.content
    if isinstance(content, TextContent):
        return f"text({len(content.text)} chars)"
    if isinstance(content, DataContent):
        return f"data({len(content.data)} bytes, port {content.port})"
    return "unknown"


def to_send_request(message: RemoteMessage) -> SendRequest:
    """Map a cloud-originated message onto a local send request."""
    if not isinstance(message.content, (TextContent, DataContent)):
        raise MalformedMessageError(f"Message {message.id} has no usable content")
    if not message.recipients:
        raise MalformedMessageError(f"Message {message.id} has no recipients")

    return SendRequest(
        source=EntitySource.CLOUD,
        message_id=message.id,
        content=message.content,
        recipients=list(message.recipients),
        is_encrypted=bool(message.is_encrypted),
        created_at=message.created_at or utcnow(),
        params=SendParams(
            with_delivery_report=(
                message.delivery_report_requested
                if message.delivery_report_requested is not None
                else True
            ),
            skip_phone_validation=True,
            sim_slot=message.sim_slot,
            valid_until=message.valid_until,
            priority=message.priority,
        ),
    )


def build_state_patch(send_state: LocalSendState) -> dict[str, Any]:
    """Build one entry of the ``PATCH /message`` body."""
    return {
        "id": send_state.message_id,
        "state": send_state.state.value,
        "recipients": [
            {
                "phoneNumber": r.phone_number,
                "state": r.state.value,
                "error": r.error,
            }
            for r in send_state.recipients
        ],
        "states": {
            h.state.value: h.updated_at.isoformat() for h in send_state.history
        },
    }


class DispatchPipeline:
    """Pulls remote-queued messages and feeds new ones to the local sender."""

    def __init__(
        self,
        client: GatewayClient,
        registration: RegistrationStore,
        messages: MessageStore,
        logs: LogsService,
        *,
        on_resync: ResyncCallback | None = None,
        enabled: bool = True,
    ) -> None:
        self._client = client
        self._registration = registration
        self._messages = messages
        self._logs = logs
        self._on_resync = on_resync
        self._enabled = enabled

    def set_on_resync(self, callback: ResyncCallback) -> None:
        self._on_resync = callback

    async def pull(self) -> BatchReport:
        """Fetch pending messages and enqueue the ones not seen before."""
        report = BatchReport()
        if not self._enabled:
            return report
        info = self._registration.load()
        if info is None:
            logger.debug("Pull skipped: device not registered")
            return report

        order = self._messages.get_processing_order()
        entries = await self._client.fetch_messages(info.access_token, order)
        logger.info("Fetched %d messages (%s)", len(entries), order.value)

        for entry in entries:
            report.results.append(await self._process(entry))

        if report.failed:
            logger.warning(
                "Pull finished with %d failed of %d messages",
                len(report.failed),
                len(report.results),
            )
        return report

    async def _process(self, entry: Any) -> ItemResult:
        message: RemoteMessage | None = None
        try:
            message = parse_message(entry)
            # Lookup and enqueue run without an await in between, so
            # overlapping pulls on the same loop cannot both enqueue an id.
            if self._messages.get_send_state(message.id) is None:
                self._messages.enqueue_send_request(to_send_request(message))
                return ItemResult(message.id, ItemStatus.ENQUEUED)

            if self._on_resync is not None:
                await self._on_resync(message.id)
            return ItemResult(message.id, ItemStatus.RESYNCED)
        except Exception as exc:
            message_id = message.id if message is not None else _entry_id(entry)
            context: dict[str, Any] = {"message_id": message_id}
            if message is not None:
                context["recipients"] = message.recipients
                context["content"] = summarize_content(message)
            else:
                context["entry"] = str(entry)[:500]
            context["exception"] = traceback.format_exc()
            self._logs.insert(
                LogPriority.ERROR, MODULE_NAME, "Failed to process message", context
            )
            return ItemResult(message_id, ItemStatus.FAILED, str(exc) or type(exc).__name__)

    async def report_state(self, send_state: LocalSendState) -> None:
        """Send the local delivery state of one message to the server."""
        if not self._enabled:
            return
        info = self._registration.load()
        if info is None:
            return
        await self._client.patch_message_states(
            info.access_token, [build_state_patch(send_state)]
        )
