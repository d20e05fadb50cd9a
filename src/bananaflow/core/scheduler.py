"""
Request Scheduler - Serialized, rate-limited access to the generation service.

Every call to the external service goes through ``RequestScheduler.schedule``.
The scheduler guarantees:
- At most one operation in flight at any time, in submission order
- A minimum gap between consecutive invocations
- Exponential backoff with jitter on transient failures
- A live queue depth for UI polling

Time is read through an injectable clock and waited on through an
injectable sleep so tests can run without real delays.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from bananaflow.providers.base import ResourceExhaustedError, TransientServiceError


logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]

DEFAULT_MIN_GAP = 10.0  # Seconds

TRANSIENT_STATUSES = frozenset({429, 503})
TRANSIENT_MARKERS = (
    "429",
    "503",
    "quota",
    "exhausted",
    "RESOURCE_EXHAUSTED",
    "Overloaded",
    "Too Many Requests",
)


def is_transient(error: BaseException) -> bool:
    """
    Decide whether a failure is worth retrying.

    Typed service errors decide for themselves; anything else is inspected
    for an HTTP status (``status``/``code`` attribute) or an overload/quota
    marker in its message.
    """
    if isinstance(error, TransientServiceError):
        return True
    status = getattr(error, "status", None) or getattr(error, "code", None)
    if status in TRANSIENT_STATUSES:
        return True
    message = str(error)
    return any(marker in message for marker in TRANSIENT_MARKERS)


@dataclass
class RetryPolicy:
    """
    Backoff parameters for transient failures.

    Attributes:
        max_attempts: Total invocations allowed, including the first
        base_delay: Wait after the first failure (seconds)
        growth: Multiplier applied per further failure
        jitter_max: Upper bound of the uniform random jitter (seconds)
    """
    max_attempts: int = 10
    base_delay: float = 5.0
    growth: float = 1.5
    jitter_max: float = 2.0

    def delay(self, attempt: int, rng: random.Random) -> float:
        """Wait before retrying after failure number ``attempt`` (0-based)."""
        jitter = rng.uniform(0, self.jitter_max) if self.jitter_max > 0 else 0.0
        return self.base_delay * (self.growth ** attempt) + jitter


@dataclass
class QueueStatus:
    """Snapshot of scheduler load, polled by the UI."""
    queue_length: int
    is_waiting: bool


@dataclass
class SchedulerEntry:
    """A submitted operation awaiting its turn."""
    operation: Operation
    enqueued_at: float = field(default_factory=time.monotonic)


class RequestScheduler:
    """
    Process-wide serializer for generation service calls.

    Each submission becomes a task chained behind the previous one. A link
    waits for its predecessor to settle without inspecting its outcome, so
    one failed operation never blocks the ones queued after it.
    """

    def __init__(
        self,
        min_gap: float = DEFAULT_MIN_GAP,
        retry: RetryPolicy | None = None,
        clock: Clock | None = None,
        sleep: Sleep | None = None,
        rng: random.Random | None = None,
    ):
        self._min_gap = min_gap
        self._retry = retry or RetryPolicy()
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

        self._tail: asyncio.Task | None = None
        self._last_request_time: float | None = None
        self._queue_length = 0

    @property
    def min_gap(self) -> float:
        return self._min_gap

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry

    def schedule(self, operation: Operation[T]) -> asyncio.Task[T]:
        """
        Submit an operation for serialized execution.

        Must be called from within a running event loop. The queue length
        is incremented before this returns.

        Returns:
            Task resolving to the operation's result, or raising its
            fatal error / ResourceExhaustedError.
        """
        entry = SchedulerEntry(operation=operation, enqueued_at=self._clock())
        self._queue_length += 1
        previous = self._tail
        task = asyncio.get_running_loop().create_task(self._run(entry, previous))
        self._tail = task
        return task

    def get_queue_status(self) -> QueueStatus:
        """Current queue depth; waiting while anything is queued or running."""
        return QueueStatus(
            queue_length=self._queue_length,
            is_waiting=self._queue_length > 0,
        )

    async def _run(self, entry: SchedulerEntry, previous: asyncio.Task | None) -> Any:
        try:
            if previous is not None and not previous.done():
                # asyncio.wait never raises the predecessor's exception
                await asyncio.wait({previous})

            await self._wait_for_gap()
            self._last_request_time = self._clock()
            logger.debug(
                "Invoking request after %.1fs in queue (%d pending)",
                self._last_request_time - entry.enqueued_at,
                self._queue_length,
            )
            return await self._invoke_with_retry(entry.operation)
        finally:
            self._queue_length = max(0, self._queue_length - 1)

    async def _wait_for_gap(self) -> None:
        if self._last_request_time is None:
            return
        elapsed = self._clock() - self._last_request_time
        if elapsed < self._min_gap:
            await self._sleep(self._min_gap - elapsed)

    async def _invoke_with_retry(self, operation: Operation) -> Any:
        policy = self._retry
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as e:
                if not is_transient(e):
                    raise
                attempt += 1
                if attempt >= policy.max_attempts:
                    logger.error("Service still busy after %d attempts: %s", attempt, e)
                    raise ResourceExhaustedError(attempts=attempt) from e

                wait = policy.delay(attempt - 1, self._rng)
                retry_after = getattr(e, "retry_after", None)
                if retry_after:
                    wait = max(wait, float(retry_after))
                logger.warning(
                    "Service busy (%s). Retrying in %.1fs (%d attempts left)",
                    e, wait, policy.max_attempts - attempt,
                )
                # Keep other submissions from firing straight after the backoff.
                self._last_request_time = self._clock() + wait
                await self._sleep(wait)


# Singleton instance
_scheduler: RequestScheduler | None = None


def get_scheduler() -> RequestScheduler:
    """Get the process-wide scheduler."""
    global _scheduler
    if _scheduler is None:
        _scheduler = RequestScheduler()
    return _scheduler


def configure_scheduler(
    min_gap: float = DEFAULT_MIN_GAP,
    retry: RetryPolicy | None = None,
) -> RequestScheduler:
    """Replace the process-wide scheduler with one using new limits."""
    global _scheduler
    _scheduler = RequestScheduler(min_gap=min_gap, retry=retry)
    return _scheduler


def get_queue_status() -> QueueStatus:
    """Queue status of the process-wide scheduler."""
    return get_scheduler().get_queue_status()
