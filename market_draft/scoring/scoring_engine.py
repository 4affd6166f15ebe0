"""
Fantasy scoring from live price movement.

The ScoringEngine is responsible for:
- Registering members and draft positions when a session is announced
- Turning each committed pick into a ScoreEntry with a fixed baseline
- Persisting first-tick baselines of unpriced picks so a restart keeps them
- Subscribing to price changes for every drafted asset (once per asset)
- Recomputing contributions and member totals on every applied price change
- Serving leaderboards that reflect the latest applied cache state
- Releasing assets when a session is aborted or released

Scores are a pure function of (baseline, latest price), so replaying the
same tick never changes a total.
"""

import copy
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Protocol, Set

import pandas as pd

from .. import config
from ..draft.draft_event import DraftSession, Pick, SessionState
from ..draft.listeners import DraftListener
from ..errors import SessionNotFound
from ..feed.price_cache import ChangeSubscription, PriceCache
from ..feed.price_tick import PriceTick
from .formulas import get_formula

logger = logging.getLogger(__name__)

ZERO = Decimal(0)


class BaselineStore(Protocol):
    """Where first-tick baselines of unpriced picks are kept across restarts."""

    def record_baseline(self, session_id: str, asset_id: str, baseline: Decimal, sequence: int) -> None:
        ...

    def load_baselines(self, session_id: str) -> Dict[str, Decimal]:
        ...


@dataclass
class ScoreEntry:
    """Points contributed by one drafted asset."""

    session_id: str
    member_id: str
    asset_id: str
    slot: int
    baseline: Optional[Decimal]          # None until an unpriced pick sees its first tick
    baseline_source: Optional[str] = None  # 'pick' or 'first_tick'
    current_price: Optional[Decimal] = None
    points: Decimal = ZERO
    last_sequence: Optional[int] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            'session_id': self.session_id,
            'member_id': self.member_id,
            'asset_id': self.asset_id,
            'slot': self.slot,
            'baseline': None if self.baseline is None else str(self.baseline),
            'baseline_source': self.baseline_source,
            'current_price': None if self.current_price is None else str(self.current_price),
            'points': str(self.points),
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class LeaderboardRow:
    rank: int
    member_id: str
    draft_position: int
    total_points: Decimal
    picks: int

    def to_dict(self) -> dict:
        return {
            'rank': self.rank,
            'member_id': self.member_id,
            'draft_position': self.draft_position,
            'total_points': str(self.total_points),
            'picks': self.picks,
        }


@dataclass
class _SessionScores:
    session_id: str
    state: SessionState
    positions: Dict[str, int]
    entries: Dict[str, ScoreEntry] = field(default_factory=dict)   # asset_id -> entry
    totals: Dict[str, Decimal] = field(default_factory=dict)
    lock: threading.RLock = field(default_factory=threading.RLock)


class ScoringEngine(DraftListener):
    """Keeps fantasy points current for every drafted asset."""

    def __init__(
        self,
        price_cache: PriceCache,
        formula: str = config.SCORING_FORMULA,
        multiplier=config.SCORING_MULTIPLIER,
        clock: Callable[[], datetime] = datetime.now,
        baseline_store: Optional[BaselineStore] = None
    ):
        """
        Initialize the scoring engine.

        Args:
            price_cache: Source of latest prices and change notifications
            formula: Name of the scoring formula (see scoring.formulas)
            multiplier: Points multiplier passed to the formula
            clock: Returns the current time (injectable for tests)
            baseline_store: Persists adopted baselines (None keeps them in memory only)
        """
        self.price_cache = price_cache
        self.formula_name = formula
        self.formula = get_formula(formula)
        self.multiplier = Decimal(str(multiplier))
        self.clock = clock
        self.baseline_store = baseline_store

        self._sessions: Dict[str, _SessionScores] = {}
        self._asset_sessions: Dict[str, Set[str]] = {}
        self._subscriptions: Dict[str, ChangeSubscription] = {}
        self._registry_lock = threading.RLock()

        self.recompute_count = 0

    # ===== DraftListener hooks =====

    def on_session_state(self, session: DraftSession) -> None:
        if session.state == SessionState.ABORTED:
            logger.info(f"Session {session.session_id} aborted - releasing its assets")
            self.release_session(session.session_id)
            return

        scores = self._register_session(session)
        with scores.lock:
            scores.state = session.state

    def on_pick_committed(self, pick: Pick) -> None:
        with self._registry_lock:
            scores = self._sessions.get(pick.session_id)
        if scores is None:
            logger.warning(f"Pick for unannounced session {pick.session_id}; registering on the fly")
            scores = self._ensure_scores(pick.session_id, SessionState.ACTIVE, {})

        self._add_entry(scores, pick)

    def on_session_restored(self, session: DraftSession) -> None:
        if session.state == SessionState.ABORTED:
            return

        baselines = {}
        if self.baseline_store is not None and any(not p.is_priced for p in session.picks):
            baselines = self.baseline_store.load_baselines(session.session_id)

        scores = self._register_session(session)
        with scores.lock:
            scores.state = session.state
        for pick in session.picks:
            self._add_entry(scores, pick, adopted_baseline=baselines.get(pick.asset_id))

        logger.info(f"Rebuilt scores for session {session.session_id}: {len(session.picks)} picks")

    # ===== Queries =====

    def get_leaderboard(self, session_id: str) -> List[LeaderboardRow]:
        """
        Members ranked by total points, ties broken by draft position.

        Entries are refreshed from the cache first, so the result reflects
        the latest applied price even if a notification is still in flight.

        Raises:
            SessionNotFound: Unknown session
        """
        scores = self._get(session_id)
        with scores.lock:
            self._refresh(scores)

            pick_counts: Dict[str, int] = {}
            for entry in scores.entries.values():
                pick_counts[entry.member_id] = pick_counts.get(entry.member_id, 0) + 1

            ordered = sorted(
                scores.positions,
                key=lambda m: (-scores.totals.get(m, ZERO), scores.positions[m])
            )
            return [
                LeaderboardRow(
                    rank=rank,
                    member_id=member_id,
                    draft_position=scores.positions[member_id],
                    total_points=scores.totals.get(member_id, ZERO),
                    picks=pick_counts.get(member_id, 0),
                )
                for rank, member_id in enumerate(ordered, start=1)
            ]

    def get_member_total(self, session_id: str, member_id: str) -> Decimal:
        scores = self._get(session_id)
        with scores.lock:
            self._refresh(scores)
            return scores.totals.get(member_id, ZERO)

    def get_member_scores(self, session_id: str, member_id: str) -> List[ScoreEntry]:
        """
        Per-pick breakdown for one member, ordered by slot.

        Raises:
            SessionNotFound: Unknown session or member
        """
        scores = self._get(session_id)
        with scores.lock:
            if member_id not in scores.positions:
                raise SessionNotFound(f"Member {member_id} is not part of session {session_id}")

            self._refresh(scores)
            entries = [e for e in scores.entries.values() if e.member_id == member_id]
            return [copy.copy(e) for e in sorted(entries, key=lambda e: e.slot)]

    def leaderboard_frame(self, session_id: str) -> pd.DataFrame:
        """
        Leaderboard as a DataFrame.

        Returns:
            DataFrame with rank, member_id, draft_position, total_points,
            picks and is_winner (rank 1 of a completed session)
        """
        rows = self.get_leaderboard(session_id)
        completed = self._get(session_id).state == SessionState.COMPLETED

        df = pd.DataFrame([
            {
                'rank': row.rank,
                'member_id': row.member_id,
                'draft_position': row.draft_position,
                'total_points': float(row.total_points),
                'picks': row.picks,
            }
            for row in rows
        ], columns=['rank', 'member_id', 'draft_position', 'total_points', 'picks'])
        df['is_winner'] = completed & (df['rank'] == 1)
        return df

    def session_ids(self) -> List[str]:
        with self._registry_lock:
            return list(self._sessions)

    def watched_assets(self) -> Set[str]:
        with self._registry_lock:
            return set(self._subscriptions)

    # ===== Release =====

    def release_session(self, session_id: str) -> bool:
        """
        Forget a session and stop watching assets no other session needs.

        Returns:
            True if the session was known
        """
        with self._registry_lock:
            scores = self._sessions.pop(session_id, None)
            if scores is None:
                return False

            released = []
            for asset_id in scores.entries:
                holders = self._asset_sessions.get(asset_id)
                if holders is None:
                    continue
                holders.discard(session_id)
                if not holders:
                    del self._asset_sessions[asset_id]
                    subscription = self._subscriptions.pop(asset_id, None)
                    if subscription is not None:
                        subscription.unsubscribe()
                    released.append(asset_id)

        logger.info(f"Released session {session_id}; stopped watching {len(released)} asset(s)")
        return True

    def close(self) -> None:
        for session_id in self.session_ids():
            self.release_session(session_id)

    def get_stats(self) -> dict:
        with self._registry_lock:
            return {
                'sessions': len(self._sessions),
                'watched_assets': len(self._subscriptions),
                'recompute_count': self.recompute_count,
                'formula': self.formula_name,
                'multiplier': str(self.multiplier),
            }

    # ===== Internals =====

    def _get(self, session_id: str) -> _SessionScores:
        with self._registry_lock:
            scores = self._sessions.get(session_id)
        if scores is None:
            raise SessionNotFound(f"No scores for session: {session_id}")
        return scores

    def _register_session(self, session: DraftSession) -> _SessionScores:
        positions = {m.member_id: m.draft_position for m in session.members.values()}
        scores = self._ensure_scores(session.session_id, session.state, positions)
        with scores.lock:
            scores.positions.update(positions)
            for member_id in positions:
                scores.totals.setdefault(member_id, ZERO)
        return scores

    def _ensure_scores(self, session_id: str, state: SessionState, positions: Dict[str, int]) -> _SessionScores:
        with self._registry_lock:
            scores = self._sessions.get(session_id)
            if scores is None:
                scores = _SessionScores(session_id=session_id, state=state, positions=dict(positions))
                self._sessions[session_id] = scores
                logger.debug(f"Registered session {session_id} with {len(positions)} members")
            return scores

    def _add_entry(self, scores: _SessionScores, pick: Pick, adopted_baseline: Optional[Decimal] = None) -> None:
        with scores.lock:
            if pick.asset_id in scores.entries:
                return

            scores.positions.setdefault(pick.member_id, len(scores.positions))
            scores.totals.setdefault(pick.member_id, ZERO)

            if pick.is_priced:
                baseline, source = pick.price_at_pick, 'pick'
            elif adopted_baseline is not None:
                baseline, source = adopted_baseline, 'first_tick'
            else:
                baseline, source = None, None

            entry = ScoreEntry(
                session_id=pick.session_id,
                member_id=pick.member_id,
                asset_id=pick.asset_id,
                slot=pick.slot,
                baseline=baseline,
                baseline_source=source,
                current_price=baseline,
            )
            scores.entries[pick.asset_id] = entry

        self._watch(pick.asset_id, scores.session_id)

        # A tick may already have been applied between the pick and now
        tick = self.price_cache.latest(pick.asset_id)
        if tick is not None:
            with scores.lock:
                self._apply(scores, entry, tick)

    def _watch(self, asset_id: str, session_id: str) -> None:
        with self._registry_lock:
            self._asset_sessions.setdefault(asset_id, set()).add(session_id)
            if asset_id not in self._subscriptions:
                self._subscriptions[asset_id] = self.price_cache.subscribe_changes(
                    asset_id, self._on_price_change
                )
                logger.debug(f"Watching {asset_id}")

    def _on_price_change(self, tick: PriceTick) -> None:
        with self._registry_lock:
            session_ids = list(self._asset_sessions.get(tick.asset_id, ()))
            sessions = [self._sessions[s] for s in session_ids if s in self._sessions]

        for scores in sessions:
            with scores.lock:
                entry = scores.entries.get(tick.asset_id)
                if entry is not None:
                    self._apply(scores, entry, tick)

    def _refresh(self, scores: _SessionScores) -> None:
        for entry in scores.entries.values():
            tick = self.price_cache.latest(entry.asset_id)
            if tick is not None:
                self._apply(scores, entry, tick)

    def _apply(self, scores: _SessionScores, entry: ScoreEntry, tick: PriceTick) -> bool:
        """Recompute one entry from a tick. Caller holds the session lock."""
        if entry.last_sequence is not None and tick.sequence <= entry.last_sequence:
            return False

        if entry.baseline is None:
            entry.baseline = tick.price
            entry.baseline_source = 'first_tick'
            logger.info(
                f"Adopted first tick {tick.price} as baseline for {entry.asset_id} "
                f"({entry.member_id}, session {entry.session_id})"
            )
            if self.baseline_store is not None:
                self.baseline_store.record_baseline(
                    entry.session_id, entry.asset_id, tick.price, tick.sequence
                )

        points = self.formula(entry.baseline, tick.price, self.multiplier)
        scores.totals[entry.member_id] = scores.totals.get(entry.member_id, ZERO) - entry.points + points

        entry.current_price = tick.price
        entry.points = points
        entry.last_sequence = tick.sequence
        entry.updated_at = self.clock()
        self.recompute_count += 1
        return True
