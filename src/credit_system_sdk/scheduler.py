"""Renewal scheduling: at most one live timer per session."""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Optional, Set

from .utils import utc_now

DueCallback = Callable[[], Any]


class RefreshScheduler(ABC):
    """Arranges one future callback ahead of a credential's expiry."""

    @abstractmethod
    def arm(self, expires_at: Optional[datetime], buffer: float, on_due: DueCallback) -> None:
        """Replace any live timer with one firing ``buffer`` seconds before ``expires_at``.

        A ``None`` expiry schedules nothing.
        """

    @abstractmethod
    def disarm(self) -> None:
        """Cancel the live timer, if any."""

    @property
    @abstractmethod
    def is_armed(self) -> bool:
        """Whether a timer is currently live."""


class AsyncioRefreshScheduler(RefreshScheduler):
    """Scheduler backed by event loop timer handles.

    ``on_due`` may be a plain callable or return a coroutine; coroutines run as
    tasks the scheduler keeps referenced until they finish. Failures inside
    ``on_due`` are not caught here.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utc_now,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            clock: Returns the current aware UTC time
            logger: Logger to use instead of the module logger
        """
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)
        self._handle: Optional[asyncio.Handle] = None
        self._deadline: Optional[float] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def is_armed(self) -> bool:
        return self._handle is not None

    @property
    def deadline(self) -> Optional[float]:
        """Loop time at which the live timer fires."""
        return self._deadline

    def arm(self, expires_at: Optional[datetime], buffer: float, on_due: DueCallback) -> None:
        if expires_at is None:
            return

        self.disarm()
        loop = asyncio.get_running_loop()
        delay = max(0.0, (expires_at - self._clock()).total_seconds() - buffer)

        if delay == 0:
            self._handle = loop.call_soon(self._fire, on_due)
            self._deadline = loop.time()
            self._logger.debug("Token at or past its renewal point; renewing on next loop turn")
        else:
            self._handle = loop.call_later(delay, self._fire, on_due)
            self._deadline = loop.time() + delay
            self._logger.debug("Token refresh scheduled in %.1fs", delay)

    def disarm(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
            self._deadline = None

    def _fire(self, on_due: DueCallback) -> None:
        self._handle = None
        self._deadline = None
        result = on_due()
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
