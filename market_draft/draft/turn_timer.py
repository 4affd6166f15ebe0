"""
Scheduled callbacks for pick deadlines.

The orchestrator schedules one callback per active turn and cancels it when
the turn advances. A callback that fires anyway is harmless: it carries the
turn generation it was armed for and the orchestrator ignores stale ones.
"""

import logging
import threading
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class TurnTimer(Protocol):
    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        ...


class ThreadingTurnTimer:
    """Turn timer backed by ``threading.Timer`` daemon threads."""

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> threading.Timer:
        timer = threading.Timer(max(delay_seconds, 0.0), callback)
        timer.daemon = True
        timer.start()
        logger.debug(f"Armed turn timer for {delay_seconds:.1f}s")
        return timer
