"""
Change-notification delivery for the price cache.

Two strategies:
- InlineDispatcher delivers on the caller's thread, once per applied update.
- CoalescingDispatcher delivers on its own thread so the feed read loop never
  waits on subscribers. If an asset changes again before its notification
  goes out, the two notifications collapse into one carrying the latest tick.

Both deliver notifications for one asset in the order they were applied.
"""

import logging
import threading
from collections import OrderedDict
from typing import Callable

logger = logging.getLogger(__name__)

Deliver = Callable[[str], None]


class InlineDispatcher:
    """Synchronous delivery on the updating thread."""

    def submit(self, asset_id: str, deliver: Deliver) -> None:
        deliver(asset_id)

    def close(self) -> None:
        pass


class CoalescingDispatcher:
    """Background delivery, latest-value-wins per asset."""

    def __init__(self, name: str = 'price-dispatcher'):
        self._pending: 'OrderedDict[str, Deliver]' = OrderedDict()
        self._cond = threading.Condition()
        self._running = True
        self._busy = False
        self.coalesced_count = 0

        self._worker = threading.Thread(target=self._run, name=name, daemon=True)
        self._worker.start()

    def submit(self, asset_id: str, deliver: Deliver) -> None:
        with self._cond:
            if asset_id in self._pending:
                self.coalesced_count += 1
            else:
                self._pending[asset_id] = deliver
            self._cond.notify()

    def _run(self) -> None:
        while True:
            with self._cond:
                while self._running and not self._pending:
                    self._cond.wait()
                if not self._pending:
                    return
                asset_id, deliver = self._pending.popitem(last=False)
                self._busy = True

            try:
                deliver(asset_id)
            except Exception as e:
                logger.error(f"Delivery for {asset_id} failed: {e}", exc_info=True)
            finally:
                with self._cond:
                    self._busy = False
                    self._cond.notify_all()

    def drain(self, timeout: float = 5.0) -> bool:
        """Wait until nothing is pending or being delivered."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._pending and not self._busy, timeout)

    def close(self) -> None:
        """Deliver what is pending, then stop the worker."""
        with self._cond:
            self._running = False
            self._cond.notify_all()
        self._worker.join()
