"""Gateway service: owns the client and wires the sync components together."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .backoff import RunOutcome
from .client import GatewayClient
from .content import ContentProvider
from .dispatch import BatchReport, DispatchPipeline
from .errors import ConfigurationError
from .events import RegistrationEvents
from .inbox import ClassSyncReport, InboxSyncEngine
from .logs import LogsService
from .messages import MessageStore
from .models import InboxItem, LoginCode, RegistrationInfo, Webhook
from .registration import Anonymous, RegistrationMode, RegistrationStateMachine
from .settings import DEFAULT_CONFIG_PATH, GatewaySettings, RegistrationStore, load_config
from .workers import (
    JobRunner,
    inbox_push_job,
    inbox_sync_job,
    pull_messages_job,
    send_state_job,
    settings_job,
    spawn_send_state,
    webhooks_job,
)

logger = logging.getLogger(__name__)


class GatewayService:
    """Top-level sync service.

    Everything is constructed explicitly here; nothing is shared through
    module globals.  The local message store and content provider belong
    to the host application and are passed in.
    """

    def __init__(
        self,
        messages: MessageStore | None = None,
        content: ContentProvider | None = None,
        config_path: str = DEFAULT_CONFIG_PATH,
        config: dict[str, Any] | None = None,
        *,
        client: GatewayClient | None = None,
        runner: JobRunner | None = None,
    ) -> None:
        self._config: dict[str, Any] = (
            config if config is not None else load_config(config_path)
        )
        self.settings = GatewaySettings.from_config(self._config)
        self.messages = messages
        self.client = client or GatewayClient(
            self.settings.server_url,
            private_token=self.settings.private_token,
            timeout=self.settings.request_timeout,
        )
        self.store = RegistrationStore(self.settings.state_path)
        self.events = RegistrationEvents()
        self.logs = LogsService(self.settings.log_path)
        self.jobs = runner or JobRunner(self.settings.backoff, self.logs)

        enabled = self.settings.enabled
        self.registration = RegistrationStateMachine(
            self.client,
            self.store,
            self.events,
            device_name=self.settings.device_name,
            enabled=enabled,
        )
        self.dispatch: DispatchPipeline | None = None
        if messages is not None:
            self.dispatch = DispatchPipeline(
                self.client,
                self.store,
                messages,
                self.logs,
                on_resync=self._resync_state,
                enabled=enabled,
            )
        self.inbox: InboxSyncEngine | None = None
        if content is not None:
            self.inbox = InboxSyncEngine(
                self.client,
                self.store,
                content,
                page_size=self.settings.page_size,
                enabled=enabled,
            )
        self._running = False

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    @property
    def running(self) -> bool:
        return self._running

    # ---- lifecycle ----

    async def start(self) -> None:
        if not self.enabled:
            logger.info("Gateway sync disabled, not starting")
            return
        logger.info("Starting gateway sync against %s", self.client.hostname)
        await self.client.open()
        self._running = True

    async def stop(self) -> None:
        """Cancel background jobs and release the HTTP session."""
        logger.info("Stopping gateway sync")
        self._running = False
        await self.jobs.stop()
        await self.client.close()

    # ---- registration ----

    async def ensure_registered(
        self, push_token: str | None = None, mode: RegistrationMode = Anonymous()
    ) -> RegistrationInfo | None:
        if push_token is None:
            push_token = self.store.load_push_token()
        return await self.registration.ensure_registered(push_token, mode)

    async def update_push_token(self, push_token: str) -> None:
        await self.registration.update_device(push_token)

    async def change_password(self, current: str, new: str) -> None:
        if not self.enabled:
            return
        await self.registration.change_password(current, new)

    async def get_login_code(self) -> LoginCode | None:
        if not self.enabled:
            return None
        username, password = self.settings.username, self.settings.password
        if not username or not password:
            raise ConfigurationError("username and password are required for a login code")
        return await self.client.get_user_code(username, password)

    async def get_public_ip(self) -> str | None:
        if not self.enabled:
            return None
        info = self.store.load()
        device = await self.client.get_device(info.access_token if info else None)
        return device.external_ip

    # ---- remote configuration ----

    async def fetch_settings(self) -> dict[str, Any] | None:
        if not self.enabled:
            return None
        info = self.store.load()
        if info is None:
            return None
        return await self.client.fetch_settings(info.access_token)

    async def fetch_webhooks(self) -> list[Webhook]:
        if not self.enabled:
            return []
        info = self.store.load()
        if info is None:
            return []
        return await self.client.fetch_webhooks(info.access_token)

    async def refresh_settings(self) -> RunOutcome:
        return await settings_job(self.jobs, self.fetch_settings)

    async def refresh_webhooks(self) -> RunOutcome:
        return await webhooks_job(self.jobs, self.fetch_webhooks)

    # ---- outbound ----

    def _require_dispatch(self) -> tuple[DispatchPipeline, MessageStore]:
        if self.dispatch is None or self.messages is None:
            raise ConfigurationError("No local message store attached")
        return self.dispatch, self.messages

    async def pull_messages(self) -> BatchReport:
        """Pull queued messages once, retrying transient failures."""
        dispatch, _ = self._require_dispatch()
        outcome = await pull_messages_job(self.jobs, dispatch)
        return outcome.value if outcome.value is not None else BatchReport()

    async def send_state(self, message_id: str) -> RunOutcome:
        dispatch, messages = self._require_dispatch()
        return await send_state_job(self.jobs, dispatch, messages, message_id)

    async def _resync_state(self, message_id: str) -> None:
        dispatch, messages = self._require_dispatch()
        spawn_send_state(self.jobs, dispatch, messages, message_id)

    # ---- inbox ----

    def _require_inbox(self) -> InboxSyncEngine:
        if self.inbox is None:
            raise ConfigurationError("No local content provider attached")
        return self.inbox

    async def sync_inbox(self) -> list[ClassSyncReport]:
        """Run a full inbox sync, replacing one already in progress."""
        task = inbox_sync_job(self.jobs, self._require_inbox())
        try:
            outcome = await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and not (current and current.cancelling()):
                logger.info("Inbox sync superseded by a newer run")
                return []
            raise
        return outcome.value or []

    async def push_inbox_item(self, item: InboxItem) -> RunOutcome:
        return await inbox_push_job(self.jobs, self._require_inbox(), item)
