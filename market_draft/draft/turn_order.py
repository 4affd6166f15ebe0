"""
Turn sequencing for draft sessions.

Pure functions with no I/O. The turn order array encodes the rotation
pattern (round-robin or snake); advancing simply walks that array.
"""

from typing import Dict, List, Optional, Sequence


def advance_turn(
    turn_order: Sequence[str],
    open_slots: Dict[str, int],
    current: Optional[int]
) -> Optional[int]:
    """
    Find the next turn index.

    Scans the turn order starting just after ``current``, wrapping around,
    and returns the first index whose member still has an open slot. The
    current index itself is considered last, so a lone remaining member
    keeps the turn.

    Args:
        turn_order: Member ids in turn sequence
        open_slots: member_id -> slots that may still be offered
        current: Current turn index, or None to start from the beginning

    Returns:
        Next turn index, or None when no member has an open slot
        (the session is complete)
    """
    size = len(turn_order)
    if size == 0:
        return None

    start = -1 if current is None else current
    for offset in range(1, size + 1):
        index = (start + offset) % size
        if open_slots.get(turn_order[index], 0) > 0:
            return index

    return None


def round_robin_order(members: Sequence[str]) -> List[str]:
    """Same order every lap."""
    return list(members)


def snake_order(members: Sequence[str], rounds: int) -> List[str]:
    """
    Build a snake turn sequence.

    Round 1 goes 1->2->3, round 2 goes 3->2->1, and so on, balancing the
    early-pick advantage across rounds.

    Args:
        members: Member ids in seating order
        rounds: Number of laps to lay out

    Returns:
        Flat turn sequence of len(members) * rounds entries
    """
    order: List[str] = []
    for lap in range(rounds):
        order.extend(members if lap % 2 == 0 else reversed(members))
    return order
