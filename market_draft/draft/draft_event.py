"""
Core data structures for draft sessions and picks.

These dataclasses represent the state of a turn-based prediction-market draft,
including individual picks, member rosters, and overall session state.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple
import json


class SessionState(str, Enum):
    """Lifecycle of a draft session."""

    PENDING = 'pending'
    ACTIVE = 'active'
    COMPLETED = 'completed'
    ABORTED = 'aborted'

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.ABORTED)


def _price_to_str(price: Optional[Decimal]) -> Optional[str]:
    return None if price is None else str(price)


def _price_from_str(value) -> Optional[Decimal]:
    return None if value is None else Decimal(str(value))


@dataclass(frozen=True)
class Pick:
    """A committed draft pick. Immutable once created."""

    session_id: str
    member_id: str
    slot: int                          # 1..N, per member
    asset_id: str                      # Outcome token id
    price_at_pick: Optional[Decimal]   # None when the cache had no tick yet
    timestamp: datetime
    pick_number: int                   # Overall pick number within the session
    round: int

    @property
    def is_priced(self) -> bool:
        return self.price_at_pick is not None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'session_id': self.session_id,
            'member_id': self.member_id,
            'slot': self.slot,
            'asset_id': self.asset_id,
            'price_at_pick': _price_to_str(self.price_at_pick),
            'timestamp': self.timestamp.isoformat(),
            'pick_number': self.pick_number,
            'round': self.round,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Pick':
        """Create Pick from dictionary (JSON deserialization)."""
        return cls(
            session_id=data['session_id'],
            member_id=data['member_id'],
            slot=data['slot'],
            asset_id=data['asset_id'],
            price_at_pick=_price_from_str(data.get('price_at_pick')),
            timestamp=datetime.fromisoformat(data['timestamp']),
            pick_number=data['pick_number'],
            round=data['round'],
        )

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, json_str: str) -> 'Pick':
        """Create Pick from JSON string."""
        return cls.from_dict(json.loads(json_str))


@dataclass
class MemberState:
    """Tracks a single member's roster within a session."""

    member_id: str
    draft_position: int                 # Stable for the session's lifetime
    identity: Optional[str] = None      # Opaque wallet/account reference
    filled_slots: int = 0
    skipped_slots: int = 0              # Deferred by a timeout, may be revisited
    forfeited_slots: int = 0            # Lost for good, score zero

    def open_slots(self, slots_per_member: int) -> int:
        """Slots not yet filled, deferred or forfeited."""
        return slots_per_member - self.filled_slots - self.skipped_slots - self.forfeited_slots

    def to_dict(self) -> dict:
        return {
            'member_id': self.member_id,
            'draft_position': self.draft_position,
            'identity': self.identity,
            'filled_slots': self.filled_slots,
            'skipped_slots': self.skipped_slots,
            'forfeited_slots': self.forfeited_slots,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'MemberState':
        return cls(
            member_id=data['member_id'],
            draft_position=data['draft_position'],
            identity=data.get('identity'),
            filled_slots=data.get('filled_slots', 0),
            skipped_slots=data.get('skipped_slots', 0),
            forfeited_slots=data.get('forfeited_slots', 0),
        )


@dataclass
class DraftSession:
    """Complete state of one league's draft."""

    session_id: str
    league_id: str
    turn_order: List[str]                   # May repeat members (snake order)
    slots_per_member: int
    asset_pool: Tuple[str, ...]             # Immutable initial pool
    members: Dict[str, MemberState]
    state: SessionState = SessionState.PENDING
    turn_index: Optional[int] = None
    turn_generation: int = 0
    turn_timeout: Optional[float] = None
    turn_deadline: Optional[datetime] = None
    allow_late_fill: bool = False
    revisit_phase: bool = False
    drafted_assets: Set[str] = field(default_factory=set)
    picks: List[Pick] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    ended_at: Optional[datetime] = None
    abort_reason: Optional[str] = None

    def current_member_id(self) -> Optional[str]:
        """Member whose turn it is, or None when no turn is open."""
        if self.state != SessionState.ACTIVE or self.turn_index is None:
            return None
        return self.turn_order[self.turn_index]

    def remaining_assets(self) -> List[str]:
        """Undrafted assets, in original pool order."""
        return [a for a in self.asset_pool if a not in self.drafted_assets]

    def open_slots_by_member(self) -> Dict[str, int]:
        """
        Slots each member may still be offered in the current phase.

        In the regular phase deferred and forfeited slots are closed. In the
        revisit phase only deferred slots are open.
        """
        if self.revisit_phase:
            return {mid: m.skipped_slots for mid, m in self.members.items()}
        return {
            mid: m.open_slots(self.slots_per_member)
            for mid, m in self.members.items()
        }

    def member_picks(self, member_id: str) -> List[Pick]:
        return [p for p in self.picks if p.member_id == member_id]

    def total_picks(self) -> int:
        return len(self.picks)

    def current_round(self) -> int:
        """1-indexed round of the next pick."""
        return self.total_picks() // len(self.members) + 1

    def validate(self) -> None:
        """
        Validate session consistency.

        Raises:
            ValueError: If state is inconsistent
        """
        seen_assets = set()
        for pick in self.picks:
            if pick.asset_id in seen_assets:
                raise ValueError(f"Asset {pick.asset_id} drafted more than once")
            seen_assets.add(pick.asset_id)

        if seen_assets != self.drafted_assets:
            raise ValueError("drafted_assets set does not match pick history")

        for member_id, member in self.members.items():
            slots = [p.slot for p in self.picks if p.member_id == member_id]
            if slots != list(range(1, len(slots) + 1)):
                raise ValueError(
                    f"Member {member_id} slots {slots} are not a prefix of 1..N"
                )
            if len(slots) != member.filled_slots:
                raise ValueError(
                    f"Member {member_id} filled_slots={member.filled_slots} "
                    f"but has {len(slots)} picks"
                )
            if member.open_slots(self.slots_per_member) < 0:
                raise ValueError(f"Member {member_id} exceeds {self.slots_per_member} slots")

        current = self.current_member_id()
        if current is not None and self.open_slots_by_member()[current] <= 0:
            raise ValueError(f"Turn pointer references settled member {current}")

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'session_id': self.session_id,
            'league_id': self.league_id,
            'turn_order': list(self.turn_order),
            'slots_per_member': self.slots_per_member,
            'asset_pool': list(self.asset_pool),
            'members': [m.to_dict() for m in self.members.values()],
            'state': self.state.value,
            'turn_index': self.turn_index,
            'turn_generation': self.turn_generation,
            'turn_timeout': self.turn_timeout,
            'turn_deadline': self.turn_deadline.isoformat() if self.turn_deadline else None,
            'allow_late_fill': self.allow_late_fill,
            'revisit_phase': self.revisit_phase,
            'drafted_assets': sorted(self.drafted_assets),
            'picks': [p.to_dict() for p in self.picks],
            'created_at': self.created_at.isoformat(),
            'ended_at': self.ended_at.isoformat() if self.ended_at else None,
            'abort_reason': self.abort_reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'DraftSession':
        """Create DraftSession from dictionary."""
        members = [MemberState.from_dict(m) for m in data['members']]
        deadline = data.get('turn_deadline')
        ended_at = data.get('ended_at')
        return cls(
            session_id=data['session_id'],
            league_id=data['league_id'],
            turn_order=list(data['turn_order']),
            slots_per_member=data['slots_per_member'],
            asset_pool=tuple(data['asset_pool']),
            members={m.member_id: m for m in sorted(members, key=lambda m: m.draft_position)},
            state=SessionState(data.get('state', SessionState.PENDING.value)),
            turn_index=data.get('turn_index'),
            turn_generation=data.get('turn_generation', 0),
            turn_timeout=data.get('turn_timeout'),
            turn_deadline=datetime.fromisoformat(deadline) if deadline else None,
            allow_late_fill=data.get('allow_late_fill', False),
            revisit_phase=data.get('revisit_phase', False),
            drafted_assets=set(data.get('drafted_assets', [])),
            picks=[Pick.from_dict(p) for p in data.get('picks', [])],
            created_at=datetime.fromisoformat(data['created_at']),
            ended_at=datetime.fromisoformat(ended_at) if ended_at else None,
            abort_reason=data.get('abort_reason'),
        )

    def to_json(self, indent: int = 2) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_json(cls, json_str: str) -> 'DraftSession':
        """Create DraftSession from JSON string."""
        return cls.from_dict(json.loads(json_str))


@dataclass
class TurnStatus:
    """Read-only view of whose turn it is and what is left."""

    session_id: str
    state: SessionState
    current_member_id: Optional[str]
    remaining_assets: List[str]
    seconds_left: Optional[float]
    pick_number: int
    round: int
    turn_generation: int
    revisit_phase: bool

    def to_dict(self) -> dict:
        return {
            'session_id': self.session_id,
            'state': self.state.value,
            'current_member_id': self.current_member_id,
            'remaining_assets': list(self.remaining_assets),
            'seconds_left': self.seconds_left,
            'pick_number': self.pick_number,
            'round': self.round,
            'turn_generation': self.turn_generation,
            'revisit_phase': self.revisit_phase,
        }


def build_members(turn_order: List[str], identities: Optional[Dict[str, str]] = None) -> Dict[str, MemberState]:
    """
    Create member states from a turn order.

    Draft position is the index of a member's first appearance in the order,
    so a pre-computed snake sequence keeps the original seating.

    Args:
        turn_order: Member ids in turn sequence (repeats allowed)
        identities: Optional mapping of member_id to wallet/account reference

    Returns:
        Ordered mapping of member_id to MemberState
    """
    members: Dict[str, MemberState] = {}
    for member_id in turn_order:
        if member_id not in members:
            members[member_id] = MemberState(
                member_id=member_id,
                draft_position=len(members),
                identity=(identities or {}).get(member_id),
            )
    return members
