"""Read-only access to locally received SMS and MMS.

Both message classes are normalised to :class:`InboxItem`:

* SMS: inbox rows only, ``date`` already in epoch milliseconds, rows
  without an address skipped, missing body becomes ``""``.
* MMS: inbox rows only (``msg_box = 1``), ``date`` in seconds (converted
  to milliseconds), address built from the associated ``addr`` rows,
  body taken from the first non-blank ``text/plain`` part, else
  ``"[MMS: <subject>]"``, else ``"[MMS: media message]"``.

The database follows the layout of the Android telephony provider
(``sms``, ``pdu``, ``addr``, ``part``); see ``CONTENT_SCHEMA_SQL``.
"""

from __future__ import annotations

import logging
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from .models import InboxClass, InboxItem

logger = logging.getLogger(__name__)

CONTENT_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS sms (
    _id     INTEGER PRIMARY KEY,
    address TEXT,
    body    TEXT,
    date    INTEGER NOT NULL,
    type    INTEGER NOT NULL DEFAULT 1
);
CREATE TABLE IF NOT EXISTS pdu (
    _id     INTEGER PRIMARY KEY,
    date    INTEGER NOT NULL,
    sub     TEXT,
    msg_box INTEGER NOT NULL DEFAULT 1
);
CREATE TABLE IF NOT EXISTS addr (
    _id     INTEGER PRIMARY KEY,
    msg_id  INTEGER NOT NULL,
    address TEXT,
    type    INTEGER
);
CREATE TABLE IF NOT EXISTS part (
    _id  INTEGER PRIMARY KEY,
    mid  INTEGER NOT NULL,
    ct   TEXT,
    text TEXT
);
"""

SMS_TYPE_INBOX = 1
MMS_BOX_INBOX = 1
MMS_ADDRESS_PLACEHOLDER = "insert-address-token"
MMS_ADDRESS_SEPARATOR = ";"
MMS_MEDIA_PLACEHOLDER = "[MMS: media message]"


def external_id(inbox_class: InboxClass, row_id: int) -> str:
    """Stable idempotency key for a local record, e.g. ``sms_42``."""
    return f"{inbox_class.value}_{row_id}"


def mms_body(text_parts: list[tuple[str | None, str | None]], subject: str | None) -> str:
    """Pick the reported body of an MMS from its ``(content_type, text)`` parts."""
    for content_type, text in text_parts:
        if content_type == "text/plain" and text and text.strip():
            return text
    if subject is not None:
        return f"[MMS: {subject}]"
    return MMS_MEDIA_PLACEHOLDER


def mms_address(addresses: list[str | None]) -> str | None:
    """Join the distinct real addresses of an MMS, or ``None`` if there are none."""
    distinct: list[str] = []
    for addr in addresses:
        if not addr or not addr.strip() or addr == MMS_ADDRESS_PLACEHOLDER:
            continue
        if addr not in distinct:
            distinct.append(addr)
    if not distinct:
        return None
    return MMS_ADDRESS_SEPARATOR.join(distinct)


@dataclass
class InboxPage:
    """One page of a reader.

    ``scanned`` counts the stored rows the page covered, including rows
    that produced no item.  Paging ends only when it is zero.
    """

    items: list[InboxItem]
    scanned: int


class InboxReader(ABC):
    """Reads one class of locally stored inbound messages page by page."""

    inbox_class: InboxClass

    @abstractmethod
    def read_page(self, limit: int, offset: int) -> InboxPage: ...


class _SqliteReader(InboxReader):
    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path)

    def _ro_connection(self) -> sqlite3.Connection:
        """Open a read-only connection."""
        conn = sqlite3.connect(f"file:{self._db_path}?mode=ro", uri=True)
        conn.row_factory = sqlite3.Row
        return conn


class SmsInboxReader(_SqliteReader):
    inbox_class = InboxClass.SMS

    def read_page(self, limit: int, offset: int) -> InboxPage:
        conn = self._ro_connection()
        try:
            rows = conn.execute(
                "SELECT _id, address, body, date FROM sms"
                " WHERE type = ? AND address IS NOT NULL"
                " ORDER BY date ASC, _id ASC LIMIT ? OFFSET ?",
                (SMS_TYPE_INBOX, limit, offset),
            ).fetchall()
        finally:
            conn.close()

        items = [
            InboxItem(
                phone_number=row["address"],
                body=row["body"] or "",
                received_at=int(row["date"]),
                external_id=external_id(InboxClass.SMS, row["_id"]),
            )
            for row in rows
        ]
        return InboxPage(items, len(rows))


class MmsInboxReader(_SqliteReader):
    inbox_class = InboxClass.MMS

    def read_page(self, limit: int, offset: int) -> InboxPage:
        conn = self._ro_connection()
        try:
            rows = conn.execute(
                "SELECT _id, date, sub FROM pdu WHERE msg_box = ?"
                " ORDER BY date ASC, _id ASC LIMIT ? OFFSET ?",
                (MMS_BOX_INBOX, limit, offset),
            ).fetchall()

            items: list[InboxItem] = []
            for row in rows:
                mms_id = row["_id"]
                addresses = conn.execute(
                    "SELECT address FROM addr WHERE msg_id = ? ORDER BY _id",
                    (mms_id,),
                ).fetchall()
                address = mms_address([a["address"] for a in addresses])
                if address is None:
                    logger.debug("MMS %s has no usable address, skipping", mms_id)
                    continue

                parts = conn.execute(
                    "SELECT ct, text FROM part WHERE mid = ? ORDER BY _id",
                    (mms_id,),
                ).fetchall()
                items.append(
                    InboxItem(
                        phone_number=address,
                        body=mms_body([(p["ct"], p["text"]) for p in parts], row["sub"]),
                        # MMS dates are stored in seconds
                        received_at=int(row["date"]) * 1000,
                        external_id=external_id(InboxClass.MMS, mms_id),
                    )
                )
            return InboxPage(items, len(rows))
        finally:
            conn.close()


class ContentProvider:
    """``read_inbox_page(class, limit, offset)`` over the SMS and MMS readers."""

    def __init__(self, readers: list[InboxReader]) -> None:
        self._readers = {r.inbox_class: r for r in readers}

    @classmethod
    def from_database(cls, db_path: Path | str) -> ContentProvider:
        return cls([SmsInboxReader(db_path), MmsInboxReader(db_path)])

    def reader(self, inbox_class: InboxClass) -> InboxReader:
        return self._readers[inbox_class]

    def read_inbox_page(
        self, inbox_class: InboxClass, limit: int, offset: int
    ) -> list[InboxItem]:
        return self._readers[inbox_class].read_page(limit, offset).items
