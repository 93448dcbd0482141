"""Device registration and access-token lifecycle.

States::

    UNREGISTERED ──begin──▶ REGISTERING ──ok──▶ REGISTERED
         ▲                      │  ▲                 │
         └─────────failed───────┘  └─begin─ TOKEN_INVALID ◀─401─┘

A stored token is first exercised with a push-token update.  A 401 moves
the machine to TOKEN_INVALID, from which it re-registers using the
requested mode.  Every call emits exactly one event: success or failure.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum

from .client import GatewayClient
from .errors import AuthError, ConfigurationError
from .events import RegistrationEvents
from .models import RegistrationFailed, RegistrationInfo, RegistrationSucceeded
from .settings import RegistrationStore

logger = logging.getLogger(__name__)


class RegistrationState(str, Enum):
    UNREGISTERED = "unregistered"
    REGISTERING = "registering"
    REGISTERED = "registered"
    TOKEN_INVALID = "token_invalid"


class Outcome(str, Enum):
    BEGIN = "begin"
    UPDATED = "updated"
    UNAUTHORIZED = "unauthorized"
    REGISTERED = "registered"
    FAILED = "failed"


_TRANSITIONS: dict[tuple[RegistrationState, Outcome], RegistrationState] = {
    (RegistrationState.UNREGISTERED, Outcome.BEGIN): RegistrationState.REGISTERING,
    (RegistrationState.REGISTERED, Outcome.UPDATED): RegistrationState.REGISTERED,
    (RegistrationState.REGISTERED, Outcome.UNAUTHORIZED): RegistrationState.TOKEN_INVALID,
    (RegistrationState.REGISTERED, Outcome.FAILED): RegistrationState.REGISTERED,
    (RegistrationState.TOKEN_INVALID, Outcome.BEGIN): RegistrationState.REGISTERING,
    (RegistrationState.REGISTERING, Outcome.REGISTERED): RegistrationState.REGISTERED,
    (RegistrationState.REGISTERING, Outcome.FAILED): RegistrationState.UNREGISTERED,
}


class InvalidTransition(RuntimeError):
    pass


def next_state(state: RegistrationState, outcome: Outcome) -> RegistrationState:
    """Return the state reached from *state* on *outcome*."""
    try:
        return _TRANSITIONS[(state, outcome)]
    except KeyError:
        raise InvalidTransition(
            f"No transition from {state.value} on {outcome.value}"
        ) from None


# ---- registration modes ----


@dataclass(frozen=True)
class Anonymous:
    pass


@dataclass(frozen=True)
class WithCredentials:
    login: str
    password: str


@dataclass(frozen=True)
class WithCode:
    code: str


RegistrationMode = Anonymous | WithCredentials | WithCode


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class RegistrationStateMachine:
    """Owns the persisted RegistrationInfo and the push token sent upstream."""

    def __init__(
        self,
        client: GatewayClient,
        store: RegistrationStore,
        events: RegistrationEvents,
        *,
        device_name: str,
        enabled: bool = True,
    ) -> None:
        self._client = client
        self._store = store
        self._events = events
        self._device_name = device_name
        self._enabled = enabled
        self._lock = asyncio.Lock()
        self._state = (
            RegistrationState.REGISTERED
            if store.load() is not None
            else RegistrationState.UNREGISTERED
        )

    @property
    def state(self) -> RegistrationState:
        return self._state

    def _advance(self, outcome: Outcome) -> None:
        new = next_state(self._state, outcome)
        if new != self._state:
            logger.info(
                "Registration %s -> %s (%s)",
                self._state.value,
                new.value,
                outcome.value,
            )
        self._state = new

    async def _succeeded(self, info: RegistrationInfo) -> None:
        await self._events.emit(
            RegistrationSucceeded(self._client.hostname, info.login, info.password)
        )

    async def _failed(self, exc: BaseException) -> None:
        await self._events.emit(
            RegistrationFailed(self._client.hostname, _describe(exc))
        )

    # ---- registration ----

    async def ensure_registered(
        self, push_token: str | None, mode: RegistrationMode = Anonymous()
    ) -> RegistrationInfo | None:
        """Make sure the device holds a working access token.

        Returns the RegistrationInfo in use afterwards, or ``None`` when the
        gateway is disabled.
        """
        if not self._enabled:
            return None

        async with self._lock:
            info = self._store.load()
            self._state = (
                RegistrationState.REGISTERED
                if info is not None
                else RegistrationState.UNREGISTERED
            )

            if info is not None:
                try:
                    await self._push_token_update(info, push_token)
                except AuthError:
                    logger.warning("Access token rejected, re-registering device")
                    self._advance(Outcome.UNAUTHORIZED)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    self._advance(Outcome.FAILED)
                    await self._failed(exc)
                    raise
                else:
                    self._advance(Outcome.UPDATED)
                    await self._succeeded(info)
                    return info

            self._advance(Outcome.BEGIN)
            try:
                new_info = await self._register(push_token, mode)
                self._store.save_registration(new_info, push_token)
            except asyncio.CancelledError:
                self._advance(Outcome.FAILED)
                raise
            except Exception as exc:
                self._advance(Outcome.FAILED)
                logger.error("Device registration failed: %s", _describe(exc))
                await self._failed(exc)
                raise

            self._advance(Outcome.REGISTERED)
            logger.info("Device registered as %s", new_info.device_id)
            await self._succeeded(new_info)
            return new_info

    async def _register(
        self, push_token: str | None, mode: RegistrationMode
    ) -> RegistrationInfo:
        if isinstance(mode, WithCredentials):
            return await self._client.register_device(
                self._device_name,
                push_token,
                credentials=(mode.login, mode.password),
            )
        if isinstance(mode, WithCode):
            return await self._client.register_device(
                self._device_name, push_token, code=mode.code
            )
        return await self._client.register_device(self._device_name, push_token)

    async def _push_token_update(
        self, info: RegistrationInfo, push_token: str | None
    ) -> None:
        if push_token is not None:
            await self._client.patch_device(
                info.access_token, info.device_id, push_token
            )
        self._store.save_push_token(push_token)

    async def update_device(self, push_token: str | None) -> None:
        """Send a refreshed push token; no-op when unregistered or disabled."""
        if not self._enabled:
            return
        async with self._lock:
            info = self._store.load()
            if info is None:
                return
            try:
                await self._push_token_update(info, push_token)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                await self._failed(exc)
                raise
            await self._succeeded(info)

    # ---- account ----

    async def change_password(self, current: str, new: str) -> None:
        """Change the account password; only ``password`` is replaced locally."""
        async with self._lock:
            try:
                info = self._store.load()
                if info is None:
                    raise ConfigurationError(
                        "The device is not registered on the server"
                    )
                await self._client.change_password(info.access_token, current, new)
                updated = replace(info, password=new)
                self._store.save(updated)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                await self._failed(exc)
                raise
            await self._succeeded(updated)
