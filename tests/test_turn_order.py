from __future__ import annotations

from market_draft.draft.turn_order import advance_turn, round_robin_order, snake_order


def test_advance_turn_starts_at_first_member_with_open_slots():
    assert advance_turn(["A", "B", "C"], {"A": 1, "B": 1, "C": 1}, None) == 0
    assert advance_turn(["A", "B", "C"], {"A": 0, "B": 1, "C": 1}, None) == 1


def test_advance_turn_wraps_around():
    assert advance_turn(["A", "B", "C"], {"A": 1, "B": 1, "C": 1}, 2) == 0


def test_advance_turn_skips_settled_members():
    open_slots = {"A": 1, "B": 0, "C": 1}
    assert advance_turn(["A", "B", "C"], open_slots, 0) == 2


def test_advance_turn_keeps_lone_remaining_member():
    open_slots = {"A": 0, "B": 2}
    assert advance_turn(["A", "B"], open_slots, 1) == 1


def test_advance_turn_returns_none_when_everyone_is_settled():
    assert advance_turn(["A", "B"], {"A": 0, "B": 0}, 0) is None
    assert advance_turn([], {}, None) is None


def test_snake_order_reverses_every_other_round():
    assert snake_order(["A", "B", "C"], 3) == ["A", "B", "C", "C", "B", "A", "A", "B", "C"]


def test_round_robin_order_is_a_copy():
    members = ["A", "B"]
    order = round_robin_order(members)
    order.append("C")
    assert members == ["A", "B"]


def test_advance_turn_walks_snake_sequence():
    order = snake_order(["A", "B"], 2)  # A B B A
    open_slots = {"A": 2, "B": 2}
    assert advance_turn(order, open_slots, 0) == 1
    assert advance_turn(order, open_slots, 1) == 2
    assert advance_turn(order, open_slots, 2) == 3
