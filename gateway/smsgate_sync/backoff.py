"""Retry/backoff policy shared by every remote operation.

``BackoffPolicy.decide`` is pure: given how many attempts have failed so
far it says whether to retry (and after how long) or give up.
``run_with_backoff`` drives an async operation with that policy:

* ``DuplicateError`` counts as success and never consumes an attempt.
* ``TransientError`` is retried until the policy gives up.
* Anything else propagates immediately.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import DuplicateError, TransientError

logger = logging.getLogger(__name__)

DEFAULT_MIN_DELAY = 10.0
DEFAULT_MAX_DELAY = 5 * 60 * 60.0
DEFAULT_MAX_ATTEMPTS = 3


@dataclass(frozen=True)
class Retry:
    delay: float


@dataclass(frozen=True)
class GiveUp:
    attempts: int


Decision = Retry | GiveUp


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff seeded at ``min_delay`` with a capped attempt count."""

    min_delay: float = DEFAULT_MIN_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    max_attempts: int = DEFAULT_MAX_ATTEMPTS

    def decide(self, attempt: int) -> Decision:
        """Decide what to do after *attempt* failed attempts (1-based)."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        if attempt >= self.max_attempts:
            return GiveUp(attempts=attempt)
        delay = self.min_delay * (2 ** (attempt - 1))
        return Retry(delay=min(delay, self.max_delay))

    @classmethod
    def from_config(cls, config: dict[str, Any] | None) -> BackoffPolicy:
        config = config or {}
        return cls(
            min_delay=float(config.get("min_delay", DEFAULT_MIN_DELAY)),
            max_delay=float(config.get("max_delay", DEFAULT_MAX_DELAY)),
            max_attempts=int(config.get("max_attempts", DEFAULT_MAX_ATTEMPTS)),
        )


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    DUPLICATE = "duplicate"
    GAVE_UP = "gave_up"


@dataclass
class RunOutcome:
    status: RunStatus
    attempts: int
    value: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.status != RunStatus.GAVE_UP


async def run_with_backoff(
    operation: Callable[[], Awaitable[Any]],
    policy: BackoffPolicy,
    *,
    name: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RunOutcome:
    """Run *operation* until it succeeds or *policy* gives up."""
    attempt = 0
    while True:
        try:
            value = await operation()
            return RunOutcome(RunStatus.SUCCEEDED, attempts=attempt + 1, value=value)
        except DuplicateError:
            logger.info("%s: server reports duplicate, treating as delivered", name)
            return RunOutcome(RunStatus.DUPLICATE, attempts=attempt + 1)
        except TransientError as exc:
            attempt += 1
            decision = policy.decide(attempt)
            if isinstance(decision, GiveUp):
                logger.error(
                    "%s: giving up after %d attempts: %s", name, attempt, exc
                )
                return RunOutcome(RunStatus.GAVE_UP, attempts=attempt, error=exc)
            logger.warning(
                "%s: attempt %d failed (%s), retrying in %.1fs",
                name,
                attempt,
                exc,
                decision.delay,
            )
            await sleep(decision.delay)
