"""Background job runner.

Each job is an async operation run under the shared backoff policy:
transient failures are retried, duplicates count as success, and giving
up is logged to the structured log sink.  Jobs can run inline (``run``)
or as fire-and-forget tasks (``spawn``), which are cancelled on stop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from .backoff import BackoffPolicy, RunOutcome, RunStatus, run_with_backoff
from .dispatch import DispatchPipeline
from .inbox import InboxSyncEngine
from .logs import MODULE_NAME, LogPriority, LogsService
from .messages import MessageStore
from .models import InboxItem, utcnow

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]

PULL_MESSAGES = "pull-messages"
SEND_STATE = "send-state"
INBOX_SYNC = "inbox-sync"
INBOX_PUSH = "inbox-push"
SETTINGS_UPDATE = "settings-update"
WEBHOOKS_UPDATE = "webhooks-update"


class JobRunner:
    """Runs jobs with retry/backoff and keeps a short execution history."""

    def __init__(
        self,
        policy: BackoffPolicy,
        logs: LogsService,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        history_size: int = 100,
    ) -> None:
        self._policy = policy
        self._logs = logs
        self._sleep = sleep
        self._history_size = history_size
        self._history: list[dict[str, Any]] = []
        self._tasks: dict[str, asyncio.Task[RunOutcome]] = {}

    async def run(self, name: str, operation: Operation) -> RunOutcome:
        """Run *operation* to completion or give-up.

        Non-transient failures (invalid token, bad configuration, rejected
        request) propagate to the caller unchanged.
        """
        start = time.monotonic()
        entry: dict[str, Any] = {
            "job": name,
            "timestamp": utcnow().isoformat(),
            "status": "running",
        }
        try:
            outcome = await run_with_backoff(
                operation, self._policy, name=name, sleep=self._sleep
            )
        except asyncio.CancelledError:
            entry["status"] = "cancelled"
            raise
        except Exception as exc:
            entry["status"] = "error"
            entry["error"] = str(exc)
            self._logs.insert(
                LogPriority.ERROR,
                MODULE_NAME,
                f"Job {name} failed",
                {"error": str(exc), "type": type(exc).__name__},
            )
            raise
        finally:
            entry["duration_ms"] = int((time.monotonic() - start) * 1000)
            self._record(entry)

        entry["status"] = outcome.status.value
        entry["attempts"] = outcome.attempts
        if outcome.status == RunStatus.GAVE_UP:
            self._logs.insert(
                LogPriority.ERROR,
                MODULE_NAME,
                f"Job {name} gave up",
                {"attempts": outcome.attempts, "error": str(outcome.error)},
            )
        return outcome

    def spawn(self, name: str, operation: Operation, *, replace: bool = False) -> asyncio.Task[RunOutcome]:
        """Start *operation* as a background task.

        With ``replace`` an in-flight task of the same name is cancelled
        first; otherwise the running task is returned unchanged.
        """
        existing = self._tasks.get(name)
        if existing is not None and not existing.done():
            if not replace:
                return existing
            existing.cancel()

        task = asyncio.create_task(self.run(name, operation), name=name)
        self._tasks[name] = task
        task.add_done_callback(lambda t: self._finished(name, t))
        return task

    def _finished(self, name: str, task: asyncio.Task[RunOutcome]) -> None:
        if self._tasks.get(name) is task:
            del self._tasks[name]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background job '%s' failed: %s", name, exc)

    async def stop(self) -> None:
        """Cancel every background task and wait for them to finish."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.debug("Job %s ended with error during stop", task.get_name())
        self._tasks.clear()

    def _record(self, entry: dict[str, Any]) -> None:
        if self._history_size > 0:
            self._history.append(entry)
            del self._history[: -self._history_size]

    @property
    def history(self) -> list[dict[str, Any]]:
        """Job execution history (most recent last)."""
        return list(self._history)

    @property
    def active(self) -> list[str]:
        return [name for name, task in self._tasks.items() if not task.done()]


# ---- jobs ----


async def pull_messages_job(runner: JobRunner, dispatch: DispatchPipeline) -> RunOutcome:
    return await runner.run(PULL_MESSAGES, dispatch.pull)


async def report_send_state(
    dispatch: DispatchPipeline, messages: MessageStore, message_id: str
) -> None:
    """Report the current local state of *message_id* upstream."""
    send_state = messages.get_send_state(message_id)
    if send_state is None:
        logger.warning("No local state for message %s", message_id)
        return
    await dispatch.report_state(send_state)


async def send_state_job(
    runner: JobRunner,
    dispatch: DispatchPipeline,
    messages: MessageStore,
    message_id: str,
) -> RunOutcome:
    return await runner.run(
        f"{SEND_STATE}:{message_id}",
        lambda: report_send_state(dispatch, messages, message_id),
    )


def spawn_send_state(
    runner: JobRunner,
    dispatch: DispatchPipeline,
    messages: MessageStore,
    message_id: str,
) -> asyncio.Task[RunOutcome]:
    """Queue a state report in the background; one per message at a time."""
    return runner.spawn(
        f"{SEND_STATE}:{message_id}",
        lambda: report_send_state(dispatch, messages, message_id),
    )


def inbox_sync_job(runner: JobRunner, inbox: InboxSyncEngine) -> asyncio.Task[RunOutcome]:
    """Start a full inbox sync, replacing any sync already in flight."""
    return runner.spawn(INBOX_SYNC, inbox.sync_inbox, replace=True)


async def inbox_push_job(
    runner: JobRunner, inbox: InboxSyncEngine, item: InboxItem
) -> RunOutcome:
    return await runner.run(
        f"{INBOX_PUSH}:{item.external_id}", lambda: inbox.push_item(item)
    )


async def settings_job(
    runner: JobRunner, fetch: Callable[[], Awaitable[Any]]
) -> RunOutcome:
    return await runner.run(SETTINGS_UPDATE, fetch)


async def webhooks_job(
    runner: JobRunner, fetch: Callable[[], Awaitable[Any]]
) -> RunOutcome:
    return await runner.run(WEBHOOKS_UPDATE, fetch)
