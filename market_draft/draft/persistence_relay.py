"""
Fire-and-forget delivery of draft mutations (and adopted scoring baselines)
to the persistence collaborator.

The orchestrator only enqueues. A background worker writes each record in
order, retrying with exponential backoff. A record that still fails after all
retries is logged as a PersistenceFailure and counted; the in-memory commit
stands.
"""

import logging
import queue
import threading
import time
from decimal import Decimal
from typing import Callable, Dict, Optional, Protocol

from .. import config
from ..errors import PersistenceFailure
from .draft_event import DraftSession, Pick
from .listeners import DraftListener

logger = logging.getLogger(__name__)

_STOP = object()


class PickRecorder(Protocol):
    """Persistence collaborator contract."""

    def record_pick(self, pick: Pick) -> None:
        ...

    def record_session_state(self, session: DraftSession) -> None:
        ...

    def record_baseline(self, session_id: str, asset_id: str, baseline: Decimal, sequence: int) -> None:
        ...

    def load_baselines(self, session_id: str) -> Dict[str, Decimal]:
        ...


class PersistenceRelay(DraftListener):
    """Queues draft mutations and writes them on a worker thread."""

    def __init__(
        self,
        recorder: PickRecorder,
        max_retries: int = config.PERSIST_MAX_RETRIES,
        retry_base_seconds: float = config.PERSIST_RETRY_BASE_SECONDS,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize the relay and start its worker.

        Args:
            recorder: Persistence collaborator (see PickRecorder)
            max_retries: Attempts per record before giving up
            retry_base_seconds: First backoff delay; doubles per attempt
            sleep: Sleep function (injectable for tests)
        """
        self.recorder = recorder
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self.sleep = sleep

        self.written_count = 0
        self.failure_count = 0
        self.last_failure: Optional[PersistenceFailure] = None

        self._queue: queue.Queue = queue.Queue()
        self._worker = threading.Thread(target=self._run, name='persistence-relay', daemon=True)
        self._worker.start()

    # ===== DraftListener hooks =====

    def on_pick_committed(self, pick: Pick) -> None:
        self._queue.put(('record_pick', (pick,)))

    def on_session_state(self, session: DraftSession) -> None:
        self._queue.put(('record_session_state', (session,)))

    # ===== Scoring baselines =====

    def record_baseline(self, session_id: str, asset_id: str, baseline: Decimal, sequence: int) -> None:
        """Queue the first-tick baseline adopted for an unpriced pick."""
        self._queue.put(('record_baseline', (session_id, asset_id, baseline, sequence)))

    def load_baselines(self, session_id: str) -> Dict[str, Decimal]:
        """Read persisted baselines straight from the recorder."""
        return self.recorder.load_baselines(session_id)

    # ===== Worker =====

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                method, args = item
                self._write_with_retry(method, args)
            finally:
                self._queue.task_done()

    def _write_with_retry(self, method: str, args: tuple) -> None:
        for attempt in range(1, self.max_retries + 1):
            try:
                getattr(self.recorder, method)(*args)
                self.written_count += 1
                return
            except Exception as e:
                logger.warning(f"{method} failed (attempt {attempt}/{self.max_retries}): {e}")
                if attempt == self.max_retries:
                    failure = PersistenceFailure(
                        f"{method} gave up after {self.max_retries} attempts: {e}"
                    )
                    self.failure_count += 1
                    self.last_failure = failure
                    logger.error(str(failure))
                    return
                self.sleep(self.retry_base_seconds * 2 ** (attempt - 1))

    def flush(self) -> None:
        """Block until every queued record has been handled."""
        self._queue.join()

    def close(self) -> None:
        """Drain the queue and stop the worker."""
        self._queue.put(_STOP)
        self._worker.join()

    def get_stats(self) -> dict:
        return {
            'pending': self._queue.qsize(),
            'written': self.written_count,
            'failures': self.failure_count,
            'last_failure': str(self.last_failure) if self.last_failure else None,
        }
