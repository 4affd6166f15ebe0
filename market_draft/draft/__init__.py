"""
Draft session subsystem.

Turn-based drafting over a shared pool of market outcomes, with listeners
for scoring and persistence and an append-only event log for recovery.
"""

from .draft_event import DraftSession, MemberState, Pick, SessionState, TurnStatus
from .event_store import DraftEventStore
from .listeners import DraftListener
from .persistence_relay import PersistenceRelay
from .session_orchestrator import SessionOrchestrator
from .turn_order import advance_turn, round_robin_order, snake_order

__all__ = [
    'DraftSession',
    'MemberState',
    'Pick',
    'SessionState',
    'TurnStatus',
    'DraftEventStore',
    'DraftListener',
    'PersistenceRelay',
    'SessionOrchestrator',
    'advance_turn',
    'round_robin_order',
    'snake_order',
]
