"""Paginated, idempotent push of locally received messages to the remote inbox.

Each message class (SMS, MMS) is read in fixed-size pages starting at
offset 0 and pushed one page per request until a read scans no stored rows.
Pages of one class are strictly sequential.  The server deduplicates on
``externalId``, so re-pushing a page is harmless.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from .client import GatewayClient
from .content import ContentProvider, InboxReader
from .errors import ConfigurationError, DuplicateError, ServerError
from .models import InboxClass, InboxItem
from .settings import DEFAULT_PAGE_SIZE, RegistrationStore

logger = logging.getLogger(__name__)

PushFn = Callable[[list[InboxItem]], Awaitable[None]]


class ServerErrorPolicy(str, Enum):
    """What a 5xx answer to a page push means for the sync run."""

    # Some duplicate batches come back as 5xx rather than 409; skipping the
    # page keeps one bad page from stalling the whole run.
    SKIP_PAGE = "skip_page"
    FAIL_RUN = "fail_run"


# TODO: confirm with the inbox API owners whether duplicate batches can
# legitimately answer 5xx; switch the default to FAIL_RUN if not.
DEFAULT_SERVER_ERROR_POLICY = ServerErrorPolicy.SKIP_PAGE


@dataclass
class ClassSyncReport:
    inbox_class: InboxClass
    pages_read: int = 0
    batches_pushed: int = 0
    items_pushed: int = 0
    duplicate_pages: int = 0
    skipped_pages: int = 0


class InboxSyncEngine:
    """Pushes the local SMS and MMS inbox to the server."""

    def __init__(
        self,
        client: GatewayClient,
        registration: RegistrationStore,
        content: ContentProvider,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        server_error_policy: ServerErrorPolicy = DEFAULT_SERVER_ERROR_POLICY,
        enabled: bool = True,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self._client = client
        self._registration = registration
        self._content = content
        self._page_size = page_size
        self._server_error_policy = server_error_policy
        self._enabled = enabled

    async def sync_inbox(self) -> list[ClassSyncReport]:
        """Sync every SMS page, then every MMS page."""
        if not self._enabled:
            return []
        info = self._registration.load()
        if info is None:
            logger.info("Inbox sync skipped: device not registered")
            return []

        token = info.access_token

        async def push(items: list[InboxItem]) -> None:
            await self._client.push_inbox_batch(token, items)

        reports = []
        for inbox_class in (InboxClass.SMS, InboxClass.MMS):
            reports.append(
                await self.sync_class(self._content.reader(inbox_class), push)
            )
        logger.info("Inbox sync done")
        return reports

    async def sync_class(self, reader: InboxReader, push: PushFn) -> ClassSyncReport:
        """Page through one message class until a page scans no rows."""
        report = ClassSyncReport(inbox_class=reader.inbox_class)
        offset = 0
        while True:
            page = await asyncio.to_thread(reader.read_page, self._page_size, offset)
            report.pages_read += 1
            batch = page.items
            logger.info(
                "%s batch offset=%d size=%d",
                reader.inbox_class.value.upper(),
                offset,
                len(batch),
            )
            if page.scanned == 0:
                break
            if not batch:
                # Every row on this page was unaddressable
                offset += self._page_size
                continue

            try:
                await push(batch)
                report.batches_pushed += 1
                report.items_pushed += len(batch)
            except DuplicateError:
                report.duplicate_pages += 1
                logger.info(
                    "%s page at offset %d already delivered",
                    reader.inbox_class.value.upper(),
                    offset,
                )
            except ServerError as exc:
                if self._server_error_policy is ServerErrorPolicy.FAIL_RUN:
                    raise
                report.skipped_pages += 1
                logger.warning("Server error (ignored): %s", exc)

            offset += self._page_size
        return report

    async def push_item(self, item: InboxItem) -> None:
        """Push a single live-received message."""
        if not self._enabled:
            return
        info = self._registration.load()
        if info is None:
            raise ConfigurationError("The device is not registered on the server")
        try:
            await self._client.push_inbox_batch(info.access_token, [item])
        except DuplicateError:
            logger.info("Inbox item %s already delivered", item.external_id)
