"""
Bounded polling for a track's frame source.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from ..errors import AcquisitionTimeout

LOG = logging.getLogger(__name__)

DEFAULT_INTERVAL = 0.1
DEFAULT_MAX_ATTEMPTS = 100

SleepCallable = Callable[[float], Awaitable[Any]]


class AcquisitionOutcome(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class TrackAcquisitionLoop:
    """
    Wait for ``track.frame_source()`` to return a source and hand it to
    ``sink.set_frame_source`` exactly once.

    The polling task and the per-tick :meth:`check` share the same outcome, so
    whichever sees the source first delivers it and the other becomes a no-op.
    """

    def __init__(
        self,
        track: Any,
        sink: Any,
        *,
        interval: float = DEFAULT_INTERVAL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        on_timeout: Optional[Callable[[AcquisitionTimeout], None]] = None,
        sleep: Optional[SleepCallable] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._track = track
        self._sink = sink
        self.interval = max(0.0, float(interval))
        self.max_attempts = int(max_attempts)
        self._on_timeout = on_timeout
        self._sleep: SleepCallable = sleep or asyncio.sleep
        self._outcome = AcquisitionOutcome.PENDING
        self._attempts = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def outcome(self) -> AcquisitionOutcome:
        return self._outcome

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def budget(self) -> float:
        """Upper bound, in seconds, of the time spent polling."""
        return self.max_attempts * self.interval

    # ------------------------------------------------------------------ driving

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name=f"acquire-{getattr(self._track, 'id', '?')}")
            self._task.add_done_callback(self._log_task_failure)
        return self._task

    async def run(self) -> AcquisitionOutcome:
        for attempt in range(1, self.max_attempts + 1):
            if self._outcome is not AcquisitionOutcome.PENDING:
                return self._outcome
            self._attempts = attempt
            if self._try_deliver():
                LOG.info("Frame source acquired after %d attempt(s)", attempt)
                return self._outcome
            LOG.debug("Frame source not ready, retrying (%d/%d)", attempt, self.max_attempts)
            if attempt < self.max_attempts:
                await self._sleep(self.interval)

        if self._outcome is AcquisitionOutcome.PENDING:
            self._outcome = AcquisitionOutcome.TIMED_OUT
            error = AcquisitionTimeout(
                f"no frame source after {self.max_attempts} attempts ({self.budget:.1f}s)"
            )
            LOG.warning("Failed to set up video display: %s", error)
            if self._on_timeout is not None:
                self._on_timeout(error)
        return self._outcome

    def check(self) -> bool:
        """
        Late detection performed once per tick.

        Returns ``True`` when this call delivered the frame source.
        """

        if self._outcome is not AcquisitionOutcome.PENDING:
            return False
        if self._try_deliver():
            LOG.info("Frame source detected on tick")
            return True
        return False

    def cancel(self) -> None:
        if self._outcome is AcquisitionOutcome.PENDING:
            self._outcome = AcquisitionOutcome.CANCELLED
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    # ---------------------------------------------------------------- helpers

    @staticmethod
    def _log_task_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOG.error("Frame source acquisition failed", exc_info=exc)

    def _try_deliver(self) -> bool:
        source = self._track.frame_source()
        if not source:
            return False
        self._outcome = AcquisitionOutcome.DELIVERED
        self._sink.set_frame_source(source)
        return True


__all__ = [
    "AcquisitionOutcome",
    "DEFAULT_INTERVAL",
    "DEFAULT_MAX_ATTEMPTS",
    "TrackAcquisitionLoop",
]
