"""
In-memory latest-price and trailing-history store.

The PriceCache is responsible for:
- Keeping the most-recent-by-sequence tick per asset (out-of-order ticks
  are discarded, not applied)
- Keeping a bounded trailing history per asset
- Notifying change subscribers once per applied update
- Tracking which assets anyone cares about, so the feed subscribes only to
  those (demand listeners)

Only the market feed writes to the cache. Everyone else reads or subscribes.
"""

import logging
import threading
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set

from .. import config
from .dispatcher import InlineDispatcher
from .price_tick import PriceTick

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[PriceTick], None]


class ChangeSubscription:
    """Handle returned by subscribe_changes."""

    def __init__(self, cache: 'PriceCache', asset_id: str, callback: ChangeCallback):
        self.cache = cache
        self.asset_id = asset_id
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        """Stop notifications. Safe to call more than once."""
        self.cache.unsubscribe_changes(self)


class PriceCache:
    """Per-asset latest price, history and change notifications."""

    def __init__(self, history_size: int = config.PRICE_HISTORY_SIZE, dispatcher=None):
        """
        Initialize the cache.

        Args:
            history_size: Ticks retained per asset
            dispatcher: Notification strategy (default: inline delivery)
        """
        self.history_size = history_size
        self.dispatcher = dispatcher or InlineDispatcher()

        self._latest: Dict[str, PriceTick] = {}
        self._history: Dict[str, Deque[PriceTick]] = {}
        self._asset_locks: Dict[str, threading.Lock] = {}
        self._asset_locks_guard = threading.Lock()

        self._subscribers: Dict[str, List[ChangeSubscription]] = {}
        self._subscribers_lock = threading.RLock()
        self._demand_listeners: list = []

        self.applied_count = 0
        self.discarded_count = 0

    # ===== Writes (feed only) =====

    def update(self, tick: PriceTick) -> bool:
        """
        Apply a tick if it is newer than the cached one.

        Args:
            tick: Incoming PriceTick

        Returns:
            True if applied (subscribers will be notified), False if the tick
            was stale or a duplicate
        """
        with self._asset_lock(tick.asset_id):
            cached = self._latest.get(tick.asset_id)
            if cached is not None and tick.sequence <= cached.sequence:
                self.discarded_count += 1
                logger.debug(
                    f"Discarded stale tick for {tick.asset_id}: "
                    f"seq {tick.sequence} <= cached {cached.sequence}"
                )
                return False

            self._latest[tick.asset_id] = tick
            history = self._history.get(tick.asset_id)
            if history is None:
                history = self._history[tick.asset_id] = deque(maxlen=self.history_size)
            history.append(tick)
            self.applied_count += 1

        self.dispatcher.submit(tick.asset_id, self._deliver)
        return True

    # ===== Reads =====

    def latest(self, asset_id: str) -> Optional[PriceTick]:
        return self._latest.get(asset_id)

    def history(self, asset_id: str) -> List[PriceTick]:
        """Trailing ticks, oldest first."""
        with self._asset_lock(asset_id):
            return list(self._history.get(asset_id, ()))

    def known_assets(self) -> Set[str]:
        return set(self._latest)

    # ===== Change subscriptions =====

    def subscribe_changes(self, asset_id: str, callback: ChangeCallback) -> ChangeSubscription:
        """
        Register a callback for applied updates of one asset.

        The first subscriber of an asset tells demand listeners to start
        watching it.
        """
        subscription = ChangeSubscription(self, asset_id, callback)
        with self._subscribers_lock:
            subscribers = self._subscribers.setdefault(asset_id, [])
            subscribers.append(subscription)
            if len(subscribers) == 1:
                logger.debug(f"First subscriber for {asset_id}")
                self._notify_demand('subscribe', {asset_id})
        return subscription

    def unsubscribe_changes(self, subscription: ChangeSubscription) -> None:
        """
        Remove a subscription. Idempotent.

        The last unsubscribe of an asset tells demand listeners to stop
        watching it.
        """
        with self._subscribers_lock:
            if not subscription.active:
                return
            subscription.active = False

            subscribers = self._subscribers.get(subscription.asset_id, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.asset_id, None)
                logger.debug(f"No subscribers left for {subscription.asset_id}")
                self._notify_demand('unsubscribe', {subscription.asset_id})

    def watched_assets(self) -> Set[str]:
        """Assets with at least one change subscriber."""
        with self._subscribers_lock:
            return set(self._subscribers)

    def subscriber_count(self, asset_id: str) -> int:
        with self._subscribers_lock:
            return len(self._subscribers.get(asset_id, []))

    def add_demand_listener(self, listener) -> None:
        """
        Register an object with ``subscribe(asset_ids)`` and
        ``unsubscribe(asset_ids)`` methods (the market feed client).

        It is immediately told about assets already being watched.
        """
        with self._subscribers_lock:
            self._demand_listeners.append(listener)
            if self._subscribers:
                listener.subscribe(set(self._subscribers))

    # ===== Internals =====

    def _asset_lock(self, asset_id: str) -> threading.Lock:
        lock = self._asset_locks.get(asset_id)
        if lock is None:
            with self._asset_locks_guard:
                lock = self._asset_locks.setdefault(asset_id, threading.Lock())
        return lock

    def _notify_demand(self, method: str, asset_ids: Set[str]) -> None:
        for listener in self._demand_listeners:
            try:
                getattr(listener, method)(asset_ids)
            except Exception as e:
                logger.error(f"Demand listener {method} failed for {asset_ids}: {e}", exc_info=True)

    def _deliver(self, asset_id: str) -> None:
        tick = self._latest.get(asset_id)
        if tick is None:
            return

        with self._subscribers_lock:
            subscribers = [s for s in self._subscribers.get(asset_id, []) if s.active]

        for subscription in subscribers:
            try:
                subscription.callback(tick)
            except Exception as e:
                logger.error(f"Price change callback for {asset_id} failed: {e}", exc_info=True)
