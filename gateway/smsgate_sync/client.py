"""Remote gateway API client using aiohttp.

Stateless request/response mapping: every call takes the access token it
should authenticate with, and no call retries.  HTTP failures surface as
the exceptions in :mod:`smsgate_sync.errors` so callers can tell an
invalid token (401) and a duplicate (409) apart from transient trouble.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from datetime import datetime
from typing import Any
from urllib.parse import urlparse

import aiohttp

from .errors import MalformedMessageError, TransientError, error_for_status
from .models import (
    DataContent,
    DeviceInfo,
    InboxItem,
    LoginCode,
    MessageContent,
    ProcessingOrder,
    RegistrationInfo,
    RemoteMessage,
    TextContent,
    Webhook,
)

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "https://api.sms-gate.app/mobile/v1"


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable timestamp from gateway: %r", value)
        return None


def parse_content(data: dict[str, Any]) -> MessageContent | None:
    """Extract the text or data payload of a wire message, if recognisable."""
    text_message = data.get("textMessage")
    if isinstance(text_message, dict) and "text" in text_message:
        return TextContent(str(text_message["text"]))

    data_message = data.get("dataMessage")
    if isinstance(data_message, dict):
        try:
            payload = base64.b64decode(data_message["data"], validate=True)
            return DataContent(payload, int(data_message["port"]))
        except (KeyError, TypeError, ValueError, binascii.Error):
            return None

    # Legacy plain-text field
    if isinstance(data.get("message"), str):
        return TextContent(data["message"])
    return None


def _optional_int(data: dict[str, Any], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MalformedMessageError(f"Invalid {key}: {value!r}") from None


def parse_message(data: Any) -> RemoteMessage:
    """Convert one wire message into a RemoteMessage.

    A missing ``id`` or a non-numeric ``simNumber``/``priority`` raises
    MalformedMessageError; an unrecognised payload yields ``content=None``.
    Either way the dispatch pipeline rejects only that item.
    """
    if not isinstance(data, dict) or not data.get("id"):
        raise MalformedMessageError(f"Message without id: {str(data)[:200]}")

    return RemoteMessage(
        id=str(data["id"]),
        content=parse_content(data),
        recipients=[str(p) for p in data.get("phoneNumbers") or []],
        is_encrypted=data.get("isEncrypted"),
        created_at=_parse_datetime(data.get("createdAt")),
        delivery_report_requested=data.get("withDeliveryReport"),
        sim_slot=_optional_int(data, "simNumber"),
        valid_until=_parse_datetime(data.get("validUntil")),
        priority=_optional_int(data, "priority") or 0,
    )


def serialize_inbox_item(item: InboxItem) -> dict[str, Any]:
    return {
        "phoneNumber": item.phone_number,
        "body": item.body,
        "receivedAt": item.received_at,
        "externalId": item.external_id,
    }


class GatewayClient:
    """HTTP client for the device-facing gateway API.

    The client owns one ``aiohttp.ClientSession``; open it with
    :meth:`open` (or ``async with``) and release it with :meth:`close`.
    """

    def __init__(
        self,
        server_url: str = DEFAULT_SERVER_URL,
        private_token: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._server_url = server_url.rstrip("/")
        self._private_token = private_token
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None

    @property
    def hostname(self) -> str:
        return urlparse(self._server_url).hostname or self._server_url

    # ---- lifecycle ----

    async def open(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> GatewayClient:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ---- transport ----

    @staticmethod
    def _bearer(token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        json: Any = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        await self.open()
        assert self._session is not None
        url = f"{self._server_url}{path}"
        try:
            async with self._session.request(
                method, url, headers=headers, json=json, params=params
            ) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise error_for_status(resp.status, body)
                if resp.status == 204:
                    return None
                text = await resp.text()
                if not text.strip():
                    return None
                return await resp.json(content_type=None)
        except aiohttp.ClientError as exc:
            raise TransientError(f"{method} {path} failed: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise TransientError(f"{method} {path} timed out") from exc

    # ---- device ----

    async def register_device(
        self,
        device_name: str,
        push_token: str | None,
        *,
        credentials: tuple[str, str] | None = None,
        code: str | None = None,
    ) -> RegistrationInfo:
        """Register this device and return its new identity."""
        headers: dict[str, str] = {}
        if credentials is not None:
            login, password = credentials
            headers["Authorization"] = aiohttp.BasicAuth(login, password).encode()
        elif code is not None:
            headers["Authorization"] = f"Code {code}"
        elif self._private_token:
            headers.update(self._bearer(self._private_token))

        data = await self._request(
            "POST",
            "/device",
            headers=headers,
            json={"deviceName": device_name, "pushToken": push_token},
        )
        try:
            return RegistrationInfo(
                device_id=str(data["id"]),
                login=str(data["login"]),
                password=str(data.get("password") or ""),
                access_token=str(data["token"]),
            )
        except (KeyError, TypeError) as exc:
            raise MalformedMessageError(
                f"Unexpected registration response: {str(data)[:200]}"
            ) from exc

    async def patch_device(self, token: str, device_id: str, push_token: str) -> None:
        await self._request(
            "PATCH",
            "/device",
            headers=self._bearer(token),
            json={"id": device_id, "pushToken": push_token},
        )

    async def get_device(self, token: str | None) -> DeviceInfo:
        headers = self._bearer(token) if token else None
        data = await self._request("GET", "/device", headers=headers) or {}
        return DeviceInfo(external_ip=str(data.get("externalIp", "")))

    # ---- messages ----

    async def fetch_messages(
        self, token: str, order: ProcessingOrder = ProcessingOrder.FIFO
    ) -> list[dict[str, Any]]:
        """Return the raw queued entries; see :func:`parse_message`."""
        data = await self._request(
            "GET",
            "/message",
            headers=self._bearer(token),
            params={"order": order.value.lower()},
        )
        if data is None:
            return []
        if not isinstance(data, list):
            raise MalformedMessageError(
                f"Unexpected message list from gateway: {str(data)[:200]}"
            )
        return data

    async def patch_message_states(
        self, token: str, updates: list[dict[str, Any]]
    ) -> None:
        await self._request(
            "PATCH", "/message", headers=self._bearer(token), json=updates
        )

    # ---- inbox ----

    async def push_inbox_batch(self, token: str, items: list[InboxItem]) -> None:
        await self._request(
            "POST",
            "/inbox",
            headers=self._bearer(token),
            json=[serialize_inbox_item(item) for item in items],
        )

    # ---- account ----

    async def change_password(self, token: str, current: str, new: str) -> None:
        await self._request(
            "PATCH",
            "/user/password",
            headers=self._bearer(token),
            json={"currentPassword": current, "newPassword": new},
        )

    async def get_user_code(self, login: str, password: str) -> LoginCode:
        data = await self._request(
            "GET",
            "/user/code",
            headers={"Authorization": aiohttp.BasicAuth(login, password).encode()},
        ) or {}
        return LoginCode(
            code=str(data.get("code", "")),
            valid_until=_parse_datetime(data.get("validUntil")),
        )

    # ---- remote configuration ----

    async def fetch_webhooks(self, token: str) -> list[Webhook]:
        data = await self._request("GET", "/webhooks", headers=self._bearer(token))
        return [
            Webhook(
                id=str(entry.get("id", "")),
                url=str(entry.get("url", "")),
                event=str(entry.get("event", "")),
                raw=entry,
            )
            for entry in data or []
        ]

    async def fetch_settings(self, token: str) -> dict[str, Any]:
        data = await self._request("GET", "/settings", headers=self._bearer(token))
        return dict(data or {})
