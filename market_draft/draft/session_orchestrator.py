"""
Turn state machine for draft sessions.

The SessionOrchestrator is responsible for:
- Starting one active session per league
- Validating and committing picks under a per-session lock
- Advancing turns (picks, skips and deadline timeouts)
- Notifying listeners (scoring, persistence) after each committed mutation
- Rebuilding sessions from persisted snapshots after a restart

In-memory state is authoritative for turn correctness. Listener failures are
logged and never roll back a commit.
"""

import copy
import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .. import config
from ..errors import (
    AssetUnavailable,
    InvalidConfig,
    NotYourTurn,
    RosterFull,
    SessionNotActive,
    SessionNotFound,
)
from .draft_event import DraftSession, Pick, SessionState, TurnStatus, build_members
from .listeners import DraftListener
from .turn_order import advance_turn
from .turn_timer import ThreadingTurnTimer, TimerHandle, TurnTimer

logger = logging.getLogger(__name__)


class SessionOrchestrator:
    """Runs turn-based draft sessions."""

    def __init__(
        self,
        price_source,
        listeners: Optional[Iterable[DraftListener]] = None,
        turn_timer: Optional[TurnTimer] = None,
        clock: Callable[[], datetime] = datetime.now,
        allow_late_fill: bool = config.ALLOW_LATE_FILL,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex
    ):
        """
        Initialize the orchestrator.

        Args:
            price_source: Object with ``latest(asset_id)`` returning a tick
                          with a ``price`` attribute, or None (the PriceCache)
            listeners: DraftListeners notified after each committed mutation
            turn_timer: Scheduler for pick deadlines (default: threading timers)
            clock: Returns the current time (injectable for tests)
            allow_late_fill: Default timeout policy for new sessions
            id_factory: Generates session ids
        """
        self.price_source = price_source
        self.listeners: List[DraftListener] = list(listeners or [])
        self.turn_timer = turn_timer or ThreadingTurnTimer()
        self.clock = clock
        self.allow_late_fill = allow_late_fill
        self.id_factory = id_factory

        self._sessions: Dict[str, DraftSession] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._timers: Dict[str, TimerHandle] = {}
        self._active_by_league: Dict[str, str] = {}
        self._registry_lock = threading.Lock()

    def add_listener(self, listener: DraftListener) -> None:
        self.listeners.append(listener)

    # ===== Session lifecycle =====

    def start_session(
        self,
        league_id: str,
        member_order: List[str],
        slots_per_member: int,
        asset_pool: Iterable[str],
        turn_timeout: Optional[float] = None,
        allow_late_fill: Optional[bool] = None,
        identities: Optional[Dict[str, str]] = None
    ) -> str:
        """
        Start a new draft session for a league.

        Args:
            league_id: League identifier
            member_order: Turn sequence; repeat members to encode snake order
            slots_per_member: Roster slots N per member
            asset_pool: Draftable asset ids
            turn_timeout: Seconds per turn (None = no deadline)
            allow_late_fill: Timeout policy override for this session
            identities: Optional member_id -> wallet/account reference

        Returns:
            New session id

        Raises:
            InvalidConfig: Bad setup or league already has an active session
        """
        pool = tuple(asset_pool)

        if not member_order:
            raise InvalidConfig("member_order must not be empty")
        if slots_per_member <= 0:
            raise InvalidConfig(f"slots_per_member must be positive, got {slots_per_member}")
        if not pool:
            raise InvalidConfig("asset_pool must not be empty")
        if len(set(pool)) != len(pool):
            raise InvalidConfig("asset_pool contains duplicate assets")
        if turn_timeout is not None and turn_timeout <= 0:
            raise InvalidConfig(f"turn_timeout must be positive, got {turn_timeout}")

        session = DraftSession(
            session_id=self.id_factory(),
            league_id=league_id,
            turn_order=list(member_order),
            slots_per_member=slots_per_member,
            asset_pool=pool,
            members=build_members(member_order, identities),
            turn_timeout=turn_timeout,
            allow_late_fill=self.allow_late_fill if allow_late_fill is None else allow_late_fill,
            created_at=self.clock(),
        )

        with self._registry_lock:
            if league_id in self._active_by_league:
                raise InvalidConfig(
                    f"League {league_id} already has active session "
                    f"{self._active_by_league[league_id]}"
                )
            self._sessions[session.session_id] = session
            self._locks[session.session_id] = threading.RLock()
            self._active_by_league[league_id] = session.session_id

        with self._locks[session.session_id]:
            session.state = SessionState.ACTIVE
            session.turn_index = advance_turn(
                session.turn_order, session.open_slots_by_member(), None
            )
            self._arm_timer(session)

            logger.info(
                f"Started session {session.session_id} for league {league_id}: "
                f"{len(session.members)} members, {slots_per_member} slots each, "
                f"{len(pool)} assets, timeout={turn_timeout}"
            )
            self._emit_state(session)

        return session.session_id

    def abort_session(self, session_id: str, reason: Optional[str] = None) -> DraftSession:
        """
        Cancel a session (e.g. league disbanded).

        Pending deadline callbacks become no-ops and listeners are told so
        scoring can release the session's assets.

        Raises:
            SessionNotFound: Unknown session
            SessionNotActive: Session already completed or aborted
        """
        session, lock = self._get(session_id)
        with lock:
            if session.state.is_terminal:
                raise SessionNotActive(f"Session {session_id} is {session.state.value}")

            self._cancel_timer(session_id)
            session.turn_generation += 1
            session.state = SessionState.ABORTED
            session.turn_index = None
            session.turn_deadline = None
            session.ended_at = self.clock()
            session.abort_reason = reason
            self._release_league(session)

            logger.warning(f"Aborted session {session_id}: {reason or 'no reason given'}")
            self._emit_state(session)
            return copy.deepcopy(session)

    def restore_session(self, snapshot: DraftSession) -> str:
        """
        Rebuild a session from a persisted snapshot after a restart.

        Active sessions get a fresh deadline for the current turn.

        Args:
            snapshot: Latest persisted DraftSession

        Returns:
            The restored session id

        Raises:
            InvalidConfig: Session id already loaded, or its league is busy
        """
        try:
            snapshot.validate()
        except ValueError as e:
            raise InvalidConfig(f"Snapshot {snapshot.session_id} is inconsistent: {e}") from e

        session = copy.deepcopy(snapshot)

        with self._registry_lock:
            if session.session_id in self._sessions:
                raise InvalidConfig(f"Session {session.session_id} is already loaded")
            if session.state == SessionState.ACTIVE:
                if session.league_id in self._active_by_league:
                    raise InvalidConfig(
                        f"League {session.league_id} already has an active session"
                    )
                self._active_by_league[session.league_id] = session.session_id
            self._sessions[session.session_id] = session
            self._locks[session.session_id] = threading.RLock()

        with self._locks[session.session_id]:
            if session.state == SessionState.ACTIVE:
                self._arm_timer(session)

            logger.info(
                f"Restored session {session.session_id} ({session.state.value}): "
                f"{session.total_picks()} picks, {len(session.remaining_assets())} assets left"
            )
            self._emit('on_session_restored', copy.deepcopy(session))

        return session.session_id

    # ===== Turn actions =====

    def submit_pick(self, session_id: str, member_id: str, asset_id: str) -> Pick:
        """
        Commit a pick for the member whose turn it is.

        Concurrent submissions serialize on the session lock; only the one
        matching the current turn owner commits.

        Returns:
            The committed Pick

        Raises:
            SessionNotFound: Unknown session
            SessionNotActive: Session is not active
            NotYourTurn: member_id is not the current turn owner
            AssetUnavailable: Asset not in the pool or already drafted
            RosterFull: Member has no slot left
        """
        session, lock = self._get(session_id)
        with lock:
            if session.state != SessionState.ACTIVE:
                raise SessionNotActive(f"Session {session_id} is {session.state.value}")

            current = session.current_member_id()
            if member_id != current:
                raise NotYourTurn(f"It is {current}'s turn, not {member_id}'s")

            if asset_id not in session.asset_pool or asset_id in session.drafted_assets:
                raise AssetUnavailable(f"Asset {asset_id} is not available in session {session_id}")

            member = session.members[member_id]
            if member.filled_slots >= session.slots_per_member:
                raise RosterFull(f"Member {member_id} has filled all {session.slots_per_member} slots")

            pick = Pick(
                session_id=session_id,
                member_id=member_id,
                slot=member.filled_slots + 1,
                asset_id=asset_id,
                price_at_pick=self._price_at_pick(asset_id),
                timestamp=self.clock(),
                pick_number=session.total_picks() + 1,
                round=session.current_round(),
            )

            # Commit
            session.drafted_assets.add(asset_id)
            session.picks.append(pick)
            member.filled_slots += 1
            if session.revisit_phase:
                member.skipped_slots -= 1

            self._advance(session)

            logger.info(
                f"Pick {pick.pick_number} (round {pick.round}): {member_id} → {asset_id} "
                f"slot {pick.slot} @ {pick.price_at_pick if pick.is_priced else 'unpriced'} | "
                f"next: {session.current_member_id() or session.state.value}"
            )

            self._emit('on_pick_committed', pick)
            self._emit_state(session)
            return pick

    def skip_or_timeout_turn(self, session_id: str, generation: Optional[int] = None) -> bool:
        """
        Advance past the current turn without a pick.

        Args:
            session_id: Session to advance
            generation: Turn generation the caller armed for; a mismatch
                        means the turn already advanced and nothing happens

        Returns:
            True if the turn advanced, False for a stale generation

        Raises:
            SessionNotFound: Unknown session
            SessionNotActive: Session is not active
        """
        session, lock = self._get(session_id)
        with lock:
            if session.state != SessionState.ACTIVE:
                raise SessionNotActive(f"Session {session_id} is {session.state.value}")

            if generation is not None and generation != session.turn_generation:
                logger.debug(
                    f"Ignoring stale timeout for session {session_id} "
                    f"(generation {generation}, now {session.turn_generation})"
                )
                return False

            member_id = session.current_member_id()
            member = session.members[member_id]
            if session.revisit_phase:
                member.skipped_slots -= 1
                member.forfeited_slots += 1
            elif session.allow_late_fill:
                member.skipped_slots += 1
            else:
                member.forfeited_slots += 1

            self._advance(session)

            logger.info(
                f"Turn skipped for {member_id} in session {session_id} "
                f"({'deferred' if session.allow_late_fill and not session.revisit_phase else 'forfeited'}) | "
                f"next: {session.current_member_id() or session.state.value}"
            )

            self._emit_state(session)
            return True

    # ===== Queries =====

    def get_session(self, session_id: str) -> DraftSession:
        """Snapshot of a session."""
        session, lock = self._get(session_id)
        with lock:
            return copy.deepcopy(session)

    def list_picks(self, session_id: str) -> List[Pick]:
        session, lock = self._get(session_id)
        with lock:
            return list(session.picks)

    def list_sessions(self) -> List[str]:
        with self._registry_lock:
            return list(self._sessions)

    def active_session_for_league(self, league_id: str) -> Optional[str]:
        with self._registry_lock:
            return self._active_by_league.get(league_id)

    def get_turn_status(self, session_id: str) -> TurnStatus:
        """Current turn, remaining assets and time left."""
        session, lock = self._get(session_id)
        with lock:
            seconds_left = None
            if session.turn_deadline is not None:
                remaining = (session.turn_deadline - self.clock()).total_seconds()
                seconds_left = max(remaining, 0.0)

            return TurnStatus(
                session_id=session_id,
                state=session.state,
                current_member_id=session.current_member_id(),
                remaining_assets=session.remaining_assets(),
                seconds_left=seconds_left,
                pick_number=session.total_picks() + 1,
                round=session.current_round(),
                turn_generation=session.turn_generation,
                revisit_phase=session.revisit_phase,
            )

    def close(self) -> None:
        """Cancel all pending deadline timers."""
        with self._registry_lock:
            session_ids = list(self._timers)
        for session_id in session_ids:
            self._cancel_timer(session_id)

    # ===== Internals =====

    def _get(self, session_id: str) -> Tuple[DraftSession, threading.RLock]:
        with self._registry_lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound(f"Unknown session: {session_id}")
            return session, self._locks[session_id]

    def _price_at_pick(self, asset_id: str):
        tick = self.price_source.latest(asset_id) if self.price_source is not None else None
        return tick.price if tick is not None else None

    def _advance(self, session: DraftSession) -> None:
        """Move the turn pointer; complete the session when nobody is left or the pool is empty."""
        self._cancel_timer(session.session_id)
        session.turn_generation += 1

        # An exhausted pool ends the draft; unfilled slots score zero
        pool_left = bool(session.remaining_assets())

        next_index = None
        if pool_left:
            next_index = advance_turn(
                session.turn_order, session.open_slots_by_member(), session.turn_index
            )

        if next_index is None and pool_left and session.allow_late_fill and not session.revisit_phase:
            if any(m.skipped_slots > 0 for m in session.members.values()):
                session.revisit_phase = True
                logger.info(f"Session {session.session_id} entering revisit phase for deferred slots")
                next_index = advance_turn(
                    session.turn_order, session.open_slots_by_member(), session.turn_index
                )

        if next_index is None:
            session.state = SessionState.COMPLETED
            session.turn_index = None
            session.turn_deadline = None
            session.ended_at = self.clock()
            self._release_league(session)
            logger.info(
                f"Session {session.session_id} completed: {session.total_picks()} picks"
                f"{'' if pool_left else ' (asset pool exhausted)'}"
            )
            return

        session.turn_index = next_index
        self._arm_timer(session)

    def _arm_timer(self, session: DraftSession) -> None:
        if session.turn_timeout is None or session.turn_index is None:
            session.turn_deadline = None
            return

        session.turn_deadline = self.clock() + timedelta(seconds=session.turn_timeout)
        session_id = session.session_id
        generation = session.turn_generation

        handle = self.turn_timer.schedule(
            session.turn_timeout,
            lambda: self._on_turn_deadline(session_id, generation)
        )
        with self._registry_lock:
            self._timers[session_id] = handle

    def _cancel_timer(self, session_id: str) -> None:
        with self._registry_lock:
            handle = self._timers.pop(session_id, None)
        if handle is not None:
            handle.cancel()

    def _on_turn_deadline(self, session_id: str, generation: int) -> None:
        try:
            if self.skip_or_timeout_turn(session_id, generation=generation):
                logger.info(f"Pick timer expired in session {session_id}")
        except (SessionNotActive, SessionNotFound) as e:
            logger.debug(f"Deadline fired for finished session {session_id}: {e}")

    def _release_league(self, session: DraftSession) -> None:
        with self._registry_lock:
            if self._active_by_league.get(session.league_id) == session.session_id:
                del self._active_by_league[session.league_id]

    def _emit_state(self, session: DraftSession) -> None:
        self._emit('on_session_state', copy.deepcopy(session))

    def _emit(self, hook: str, payload) -> None:
        for listener in self.listeners:
            try:
                getattr(listener, hook)(payload)
            except Exception as e:
                logger.error(
                    f"Listener {type(listener).__name__}.{hook} failed: {e}",
                    exc_info=True
                )
