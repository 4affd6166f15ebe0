"""
API request and response models.

Transforms internal dataclasses into the JSON shapes served by the draft
API. Prices and points are serialized as decimal strings so no precision is
lost on the wire.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .. import config
from ..feed.market_catalog import MarketAsset
from ..scoring.scoring_engine import LeaderboardRow, ScoreEntry
from .draft_event import DraftSession, Pick, TurnStatus


# ========== Requests ==========

class StartSessionRequest(BaseModel):
    """Request model for starting a draft session."""
    league_id: str = Field(..., description="League identifier")
    member_order: List[str] = Field(..., description="Members in seating order")
    slots_per_member: int = Field(config.DEFAULT_ROUNDS, description="Roster slots per member")
    asset_pool: List[str] = Field(..., description="Draftable outcome token ids")
    turn_timeout: Optional[float] = Field(
        config.DEFAULT_TURN_TIMEOUT_SECONDS,
        description="Seconds per pick; null disables the pick timer"
    )
    snake: bool = Field(False, description="Reverse the order every other round")
    allow_late_fill: Optional[bool] = Field(None, description="Defer timed-out slots instead of forfeiting")
    identities: Optional[Dict[str, str]] = Field(None, description="member_id -> wallet/account reference")


class PickRequest(BaseModel):
    member_id: str
    asset_id: str


class SkipRequest(BaseModel):
    generation: Optional[int] = Field(None, description="Turn generation the caller saw; stale values are ignored")


class AbortRequest(BaseModel):
    reason: Optional[str] = None


# ========== Session / Picks ==========

class PickResponse(BaseModel):
    session_id: str
    member_id: str
    slot: int
    asset_id: str
    price_at_pick: Optional[str] = Field(description="Decimal string; null when unpriced")
    timestamp: str
    pick_number: int
    round: int


class MemberResponse(BaseModel):
    member_id: str
    draft_position: int
    filled_slots: int
    skipped_slots: int
    forfeited_slots: int


class SessionResponse(BaseModel):
    session_id: str
    league_id: str
    state: str
    slots_per_member: int
    turn_order: List[str]
    members: List[MemberResponse]
    current_member_id: Optional[str]
    remaining_assets: List[str]
    picks: List[PickResponse]
    allow_late_fill: bool
    created_at: str
    ended_at: Optional[str]
    abort_reason: Optional[str]


class TurnStatusResponse(BaseModel):
    session_id: str
    state: str
    current_member_id: Optional[str]
    remaining_assets: List[str]
    seconds_left: Optional[float]
    pick_number: int
    round: int
    turn_generation: int
    revisit_phase: bool


class SkipResponse(BaseModel):
    advanced: bool
    turn: TurnStatusResponse


# ========== Scoring ==========

class LeaderboardEntryResponse(BaseModel):
    rank: int
    member_id: str
    draft_position: int
    total_points: str
    picks: int


class LeaderboardResponse(BaseModel):
    session_id: str
    updated_at: str = Field(description="ISO-8601 timestamp")
    entries: List[LeaderboardEntryResponse] = Field(description="Members sorted by total_points descending")


class ScoreEntryResponse(BaseModel):
    asset_id: str
    slot: int
    baseline: Optional[str]
    baseline_source: Optional[str]
    current_price: Optional[str]
    points: str
    updated_at: Optional[str]


class MemberScoresResponse(BaseModel):
    session_id: str
    member_id: str
    total_points: str
    entries: List[ScoreEntryResponse]


# ========== Markets ==========

class MarketAssetResponse(BaseModel):
    asset_id: str
    market_id: str
    question: str
    outcome: str
    price: Optional[str]
    volume_24hr: float
    end_date: Optional[str]


# ========== Serializer Functions ==========

def serialize_pick(pick: Pick) -> PickResponse:
    return PickResponse(**pick.to_dict())


def serialize_session(session: DraftSession) -> SessionResponse:
    return SessionResponse(
        session_id=session.session_id,
        league_id=session.league_id,
        state=session.state.value,
        slots_per_member=session.slots_per_member,
        turn_order=list(session.turn_order),
        members=[
            MemberResponse(
                member_id=m.member_id,
                draft_position=m.draft_position,
                filled_slots=m.filled_slots,
                skipped_slots=m.skipped_slots,
                forfeited_slots=m.forfeited_slots,
            )
            for m in session.members.values()
        ],
        current_member_id=session.current_member_id(),
        remaining_assets=session.remaining_assets(),
        picks=[serialize_pick(p) for p in session.picks],
        allow_late_fill=session.allow_late_fill,
        created_at=session.created_at.isoformat(),
        ended_at=session.ended_at.isoformat() if session.ended_at else None,
        abort_reason=session.abort_reason,
    )


def serialize_turn_status(status: TurnStatus) -> TurnStatusResponse:
    return TurnStatusResponse(**status.to_dict())


def serialize_leaderboard(session_id: str, rows: List[LeaderboardRow]) -> LeaderboardResponse:
    return LeaderboardResponse(
        session_id=session_id,
        updated_at=datetime.now().isoformat(),
        entries=[LeaderboardEntryResponse(**row.to_dict()) for row in rows],
    )


def serialize_member_scores(
    session_id: str,
    member_id: str,
    entries: List[ScoreEntry],
    total: Decimal
) -> MemberScoresResponse:
    return MemberScoresResponse(
        session_id=session_id,
        member_id=member_id,
        total_points=str(total),
        entries=[
            ScoreEntryResponse(
                asset_id=e.asset_id,
                slot=e.slot,
                baseline=None if e.baseline is None else str(e.baseline),
                baseline_source=e.baseline_source,
                current_price=None if e.current_price is None else str(e.current_price),
                points=str(e.points),
                updated_at=e.updated_at.isoformat() if e.updated_at else None,
            )
            for e in entries
        ],
    )


def serialize_market_asset(asset: MarketAsset) -> MarketAssetResponse:
    return MarketAssetResponse(**asset.to_dict())
