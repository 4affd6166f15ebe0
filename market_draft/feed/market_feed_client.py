"""
WebSocket client for the Polymarket CLOB market channel.

Keeps one live subscription covering every asset anyone is watching:
- Reference-counted subscribe/unsubscribe, safe to call from any thread
- Incremental subscribe messages on the live connection
- Auto-reconnect with exponential backoff (full jitter), re-sending the
  full asset set since the upstream has no session memory
- Ticks go straight into the PriceCache; the read loop never waits on
  scoring (the cache's dispatcher handles notification)
"""

import asyncio
import json
import logging
import random
import threading
from collections import Counter
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional, Set

import websockets
from websockets.exceptions import WebSocketException

from .. import config
from ..errors import FeedConnectionError, MalformedMessage
from .message_parser import parse_message
from .price_cache import PriceCache

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    SUBSCRIBED = 'subscribed'


class MarketFeedClient:
    """Live price feed for a dynamic set of assets."""

    def __init__(
        self,
        price_cache: PriceCache,
        url: str = config.FEED_WS_URL,
        channel: str = config.FEED_CHANNEL,
        connect: Optional[Callable] = None,
        ping_interval: Optional[float] = config.FEED_PING_INTERVAL,
        backoff_base: float = config.FEED_BACKOFF_BASE_SECONDS,
        backoff_cap: float = config.FEED_BACKOFF_CAP_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None
    ):
        """
        Initialize the feed client.

        Args:
            price_cache: Cache receiving parsed ticks
            url: Upstream websocket URL
            channel: Channel selector sent with the full subscription
            connect: Connection factory (default: websockets.connect)
            ping_interval: Seconds between PING frames (None disables)
            backoff_base: First reconnect delay ceiling in seconds
            backoff_cap: Maximum reconnect delay ceiling in seconds
            sleep: Async sleep used for backoff (injectable for tests)
            rng: Random source for jitter
        """
        self.price_cache = price_cache
        self.url = url
        self.channel = channel
        self._connect = connect or websockets.connect
        self.ping_interval = ping_interval
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self._sleep = sleep
        self._rng = rng or random.Random()

        self.state = ConnectionState.DISCONNECTED
        self.running = False

        self._refcounts: Counter = Counter()
        self._lock = threading.Lock()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._outbox: Optional[asyncio.Queue] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._websocket = None
        self._attempt = 0

        # Stats
        self.message_count = 0
        self.malformed_count = 0
        self.applied_count = 0
        self.connection_count = 0
        self.reconnection_count = 0
        self.last_message_time: Optional[datetime] = None
        self.last_error: Optional[str] = None

    # ===== Subscription management (any thread) =====

    def subscribe(self, asset_ids: Iterable[str]) -> None:
        """
        Add assets to the subscription. Idempotent per reference.

        Opens the connection if none exists yet; otherwise an incremental
        subscribe message is sent on the live connection.
        """
        with self._lock:
            added = set()
            for asset_id in asset_ids:
                if self._refcounts[asset_id] == 0:
                    added.add(asset_id)
                self._refcounts[asset_id] += 1

        if added:
            logger.info(f"Subscribing to {len(added)} asset(s): {sorted(added)}")
            self._post('subscribe', added)

    def unsubscribe(self, asset_ids: Iterable[str]) -> None:
        """Release assets; they leave the subscription when no reference remains."""
        with self._lock:
            removed = set()
            for asset_id in asset_ids:
                if self._refcounts[asset_id] <= 0:
                    continue
                self._refcounts[asset_id] -= 1
                if self._refcounts[asset_id] == 0:
                    del self._refcounts[asset_id]
                    removed.add(asset_id)

        if removed:
            logger.info(f"Unsubscribing from {len(removed)} asset(s): {sorted(removed)}")
            self._post('unsubscribe', removed)

    def subscribed_assets(self) -> Set[str]:
        with self._lock:
            return {a for a, count in self._refcounts.items() if count > 0}

    def _post(self, operation: str, asset_ids: Set[str]) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            # Not running yet: the full set goes out on connect
            return
        loop.call_soon_threadsafe(self._enqueue, operation, asset_ids)

    def _enqueue(self, operation: str, asset_ids: Set[str]) -> None:
        self._outbox.put_nowait((operation, asset_ids))
        self._wakeup.set()

    # ===== Connection lifecycle =====

    async def run(self) -> None:
        """
        Connection loop; runs until stop() is called.

        Waits while there is nothing to subscribe to, then connects,
        streams, and reconnects with backoff on any failure.
        """
        self._loop = asyncio.get_running_loop()
        self._outbox = asyncio.Queue()
        self._wakeup = asyncio.Event()
        self.running = True

        logger.info(f"Market feed starting ({self.url})")

        while self.running:
            if not self.subscribed_assets():
                self._wakeup.clear()
                logger.debug("No assets to watch - waiting for subscriptions")
                await self._wakeup.wait()
                continue

            try:
                await self._connect_and_stream()
                if self.running:
                    raise FeedConnectionError("Upstream closed the connection")
            except FeedConnectionError as e:
                self.last_error = str(e)
                logger.warning(f"Feed connection lost: {e}")
            except Exception as e:
                self.last_error = str(e)
                logger.error(f"Feed client error: {e}", exc_info=True)

            if not self.running:
                break

            delay = self._backoff_delay(self._attempt)
            self._attempt += 1
            self.reconnection_count += 1
            logger.info(f"Reconnecting in {delay:.2f}s (attempt {self._attempt})")
            await self._sleep(delay)

        self.state = ConnectionState.DISCONNECTED
        logger.info("Market feed stopped")

    async def stop(self) -> None:
        """Stop the loop and close the live connection."""
        self.running = False
        if self._wakeup is not None:
            self._wakeup.set()

        websocket = self._websocket
        if websocket is not None:
            try:
                await websocket.close()
            except Exception as e:
                logger.warning(f"Error closing feed connection: {e}")

    def _backoff_delay(self, attempt: int) -> float:
        ceiling = min(self.backoff_cap, self.backoff_base * 2 ** attempt)
        return self._rng.uniform(0, ceiling)

    async def _connect_and_stream(self) -> None:
        self.state = ConnectionState.CONNECTING
        try:
            async with self._connect(
                self.url,
                ping_interval=None,
                max_size=config.FEED_MAX_MESSAGE_SIZE
            ) as websocket:
                self._websocket = websocket

                # The full subscription supersedes anything queued meanwhile
                self._drain_outbox()
                assets = self.subscribed_assets()
                await websocket.send(json.dumps({
                    'assets_ids': sorted(assets),
                    'type': self.channel,
                }))

                self.state = ConnectionState.SUBSCRIBED
                self.connection_count += 1
                self._attempt = 0
                logger.info(f"Feed connected, subscribed to {len(assets)} asset(s)")

                await self._run_connection_tasks(websocket)

        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise FeedConnectionError(f"{type(e).__name__}: {e}") from e
        finally:
            self._websocket = None
            self.state = ConnectionState.DISCONNECTED

    async def _run_connection_tasks(self, websocket) -> None:
        tasks = {
            asyncio.ensure_future(self._read_loop(websocket)),
            asyncio.ensure_future(self._write_loop(websocket)),
        }
        if self.ping_interval:
            tasks.add(asyncio.ensure_future(self._ping_loop(websocket)))

        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()

    def _drain_outbox(self) -> None:
        while not self._outbox.empty():
            self._outbox.get_nowait()

    async def _read_loop(self, websocket) -> None:
        async for frame in websocket:
            self.message_count += 1
            self.last_message_time = datetime.now()

            try:
                ticks, rejected = parse_message(frame, received_at=self.last_message_time)
            except MalformedMessage as e:
                self.malformed_count += 1
                logger.warning(f"Dropped malformed message: {e}")
                continue

            self.malformed_count += rejected
            for tick in ticks:
                if self.price_cache.update(tick):
                    self.applied_count += 1

    async def _write_loop(self, websocket) -> None:
        while True:
            operation, asset_ids = await self._outbox.get()
            await websocket.send(json.dumps({
                'assets_ids': sorted(asset_ids),
                'operation': operation,
            }))
            logger.debug(f"Sent incremental {operation} for {sorted(asset_ids)}")

    async def _ping_loop(self, websocket) -> None:
        while True:
            await asyncio.sleep(self.ping_interval)
            await websocket.send('PING')

    def get_stats(self) -> dict:
        """Feed client statistics."""
        return {
            'state': self.state.value,
            'running': self.running,
            'subscribed_assets': len(self.subscribed_assets()),
            'message_count': self.message_count,
            'malformed_count': self.malformed_count,
            'applied_count': self.applied_count,
            'connection_count': self.connection_count,
            'reconnection_count': self.reconnection_count,
            'last_message_time': self.last_message_time.isoformat() if self.last_message_time else None,
            'last_error': self.last_error,
        }
