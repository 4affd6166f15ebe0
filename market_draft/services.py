"""
Service wiring for the draft server.

Builds the explicitly owned collaborators and connects them:

    MarketFeedClient -> PriceCache -> ScoringEngine
    SessionOrchestrator -> (ScoringEngine, PersistenceRelay -> DraftEventStore)

The feed follows the cache's watched assets, so nothing else talks to it.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from . import config
from .draft.draft_event import SessionState
from .draft.event_store import DraftEventStore
from .draft.persistence_relay import PersistenceRelay
from .draft.session_orchestrator import SessionOrchestrator
from .draft.turn_timer import TurnTimer
from .errors import InvalidConfig
from .feed.dispatcher import CoalescingDispatcher, InlineDispatcher
from .feed.market_catalog import GammaMarketClient
from .feed.market_feed_client import MarketFeedClient
from .feed.price_cache import PriceCache
from .scoring.scoring_engine import ScoringEngine

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the API and CLI need, owned in one place."""

    price_cache: PriceCache
    feed: MarketFeedClient
    orchestrator: SessionOrchestrator
    scoring: ScoringEngine
    event_store: DraftEventStore
    relay: PersistenceRelay
    catalog: GammaMarketClient

    def close(self) -> None:
        """Stop timers, flush persistence and stop price delivery."""
        self.orchestrator.close()
        self.relay.close()
        self.scoring.close()
        self.price_cache.dispatcher.close()
        logger.info("Services closed")


def build_services(
    events_dir: Path = Path(config.DRAFT_EVENTS_DIR),
    feed_url: str = config.FEED_WS_URL,
    turn_timer: Optional[TurnTimer] = None,
    coalesce_notifications: bool = True,
    restore: bool = True,
    connect: Optional[Callable] = None,
    catalog: Optional[GammaMarketClient] = None
) -> Services:
    """
    Create and wire all services.

    Args:
        events_dir: Directory for the JSONL draft event logs
        feed_url: Upstream market websocket URL
        turn_timer: Pick deadline scheduler (default: threading timers)
        coalesce_notifications: Deliver price changes on a background thread
        restore: Rebuild sessions found in events_dir
        connect: Websocket connection factory override
        catalog: Market catalog client override

    Returns:
        Wired Services
    """
    dispatcher = CoalescingDispatcher() if coalesce_notifications else InlineDispatcher()
    price_cache = PriceCache(history_size=config.PRICE_HISTORY_SIZE, dispatcher=dispatcher)

    feed = MarketFeedClient(price_cache, url=feed_url, connect=connect)
    price_cache.add_demand_listener(feed)

    event_store = DraftEventStore(Path(events_dir))
    relay = PersistenceRelay(event_store)
    scoring = ScoringEngine(price_cache, baseline_store=relay)

    orchestrator = SessionOrchestrator(
        price_source=price_cache,
        listeners=[scoring, relay],
        turn_timer=turn_timer,
    )

    services = Services(
        price_cache=price_cache,
        feed=feed,
        orchestrator=orchestrator,
        scoring=scoring,
        event_store=event_store,
        relay=relay,
        catalog=catalog or GammaMarketClient(),
    )

    if restore:
        restore_sessions(orchestrator, event_store)

    return services


def restore_sessions(orchestrator: SessionOrchestrator, event_store: DraftEventStore) -> int:
    """
    Rebuild sessions from their latest persisted snapshots.

    Aborted sessions are skipped. Sessions that fail validation are logged
    and left on disk untouched.

    Returns:
        Number of sessions restored
    """
    restored = 0
    for session_id in event_store.list_session_ids():
        snapshot = event_store.latest_snapshot(session_id)
        if snapshot is None:
            logger.warning(f"No snapshot for session {session_id}; skipping")
            continue
        if snapshot.state == SessionState.ABORTED:
            continue

        try:
            orchestrator.restore_session(snapshot)
            restored += 1
        except InvalidConfig as e:
            logger.error(f"Could not restore session {session_id}: {e}")

    if restored:
        logger.info(f"Restored {restored} session(s) from {event_store.base_dir}")
    return restored
