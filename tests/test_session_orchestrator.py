from __future__ import annotations

import threading
from decimal import Decimal

import pytest

from conftest import RecordingListener, make_tick
from market_draft.draft.draft_event import SessionState
from market_draft.draft.session_orchestrator import SessionOrchestrator
from market_draft.draft.turn_order import snake_order
from market_draft.errors import (
    AssetUnavailable,
    InvalidConfig,
    NotYourTurn,
    SessionNotActive,
    SessionNotFound,
)


def _assert_invariants(session):
    session.validate()
    assets = [p.asset_id for p in session.picks]
    assert len(assets) == len(set(assets))
    for member_id in session.members:
        slots = [p.slot for p in session.picks if p.member_id == member_id]
        assert slots == list(range(1, len(slots) + 1))
        assert len(slots) <= session.slots_per_member
    current = session.current_member_id()
    if session.state == SessionState.ACTIVE:
        assert current is not None
        assert session.open_slots_by_member()[current] > 0
    else:
        assert current is None


# ===== start_session =====

@pytest.mark.parametrize(
    "kwargs",
    [
        {"member_order": [], "slots_per_member": 1, "asset_pool": ["X"]},
        {"member_order": ["A"], "slots_per_member": 0, "asset_pool": ["X"]},
        {"member_order": ["A"], "slots_per_member": -1, "asset_pool": ["X"]},
        {"member_order": ["A"], "slots_per_member": 1, "asset_pool": []},
        {"member_order": ["A"], "slots_per_member": 1, "asset_pool": ["X", "X"]},
        {"member_order": ["A"], "slots_per_member": 1, "asset_pool": ["X"], "turn_timeout": 0},
    ],
)
def test_start_session_rejects_invalid_config(orchestrator, kwargs):
    with pytest.raises(InvalidConfig):
        orchestrator.start_session("L1", **kwargs)
    assert orchestrator.list_sessions() == []


def test_start_session_activates_and_points_at_first_member(orchestrator, listener):
    session_id = orchestrator.start_session("L1", ["A", "B"], 1, ["X", "Y"])
    session = orchestrator.get_session(session_id)

    assert session.state == SessionState.ACTIVE
    assert session.current_member_id() == "A"
    assert session.asset_pool == ("X", "Y")
    assert [m.draft_position for m in session.members.values()] == [0, 1]
    assert listener.states[-1].state == SessionState.ACTIVE


def test_one_active_session_per_league(orchestrator):
    orchestrator.start_session("L1", ["A"], 1, ["X"])
    with pytest.raises(InvalidConfig):
        orchestrator.start_session("L1", ["A"], 1, ["Y"])
    # Other leagues are unaffected
    orchestrator.start_session("L2", ["A"], 1, ["Y"])


def test_league_can_start_again_after_completion(orchestrator):
    session_id = orchestrator.start_session("L1", ["A"], 1, ["X"])
    orchestrator.submit_pick(session_id, "A", "X")
    assert orchestrator.active_session_for_league("L1") is None
    orchestrator.start_session("L1", ["A"], 1, ["Y"])


# ===== submit_pick =====

def test_two_member_single_slot_scenario(orchestrator):
    session_id = orchestrator.start_session("L1", ["A", "B"], 1, ["X", "Y"])

    pick = orchestrator.submit_pick(session_id, "A", "X")
    assert pick.slot == 1
    assert orchestrator.get_turn_status(session_id).current_member_id == "B"

    with pytest.raises(AssetUnavailable):
        orchestrator.submit_pick(session_id, "B", "X")

    orchestrator.submit_pick(session_id, "B", "Y")
    session = orchestrator.get_session(session_id)
    assert session.state == SessionState.COMPLETED
    assert session.remaining_assets() == []
    _assert_invariants(session)


def test_exhausted_pool_completes_session(orchestrator):
    session_id = orchestrator.start_session("L1", ["A", "B"], 2, ["X", "Y", "Z"])

    orchestrator.submit_pick(session_id, "A", "X")
    orchestrator.submit_pick(session_id, "B", "Y")
    orchestrator.submit_pick(session_id, "A", "Z")

    status = orchestrator.get_turn_status(session_id)
    assert status.state == SessionState.COMPLETED
    assert status.current_member_id is None
    assert status.remaining_assets == []
    assert orchestrator.active_session_for_league("L1") is None
    with pytest.raises(SessionNotActive):
        orchestrator.submit_pick(session_id, "B", "X")
    _assert_invariants(orchestrator.get_session(session_id))


def test_exhausted_pool_skips_revisit_phase(orchestrator, timer):
    session_id = orchestrator.start_session(
        "L1", ["A", "B"], 1, ["X"], turn_timeout=30, allow_late_fill=True
    )

    timer.latest.fire()  # A deferred
    orchestrator.submit_pick(session_id, "B", "X")

    session = orchestrator.get_session(session_id)
    assert session.state == SessionState.COMPLETED
    assert not session.revisit_phase
    assert session.members["A"].skipped_slots == 1
    assert timer.pending() == []


def test_not_your_turn_leaves_state_unchanged(orchestrator, listener):
    session_id = orchestrator.start_session("L1", ["A", "B"], 2, ["X", "Y", "Z"])
    before = orchestrator.get_session(session_id)
    events_before = len(listener.states)

    for _ in range(3):
        with pytest.raises(NotYourTurn):
            orchestrator.submit_pick(session_id, "B", "X")

    after = orchestrator.get_session(session_id)
    assert after.turn_index == before.turn_index
    assert after.remaining_assets() == before.remaining_assets()
    assert after.picks == before.picks
    assert len(listener.states) == events_before


def test_unknown_asset_is_unavailable(orchestrator):
    session_id = orchestrator.start_session("L1", ["A"], 1, ["X"])
    with pytest.raises(AssetUnavailable):
        orchestrator.submit_pick(session_id, "A", "NOPE")


def test_pick_records_price_from_cache(orchestrator, cache):
    cache.update(make_tick("X", "0.42", 1))
    session_id = orchestrator.start_session("L1", ["A", "B"], 1, ["X", "Y"])

    priced = orchestrator.submit_pick(session_id, "A", "X")
    unpriced = orchestrator.submit_pick(session_id, "B", "Y")

    assert priced.price_at_pick == Decimal("0.42")
    assert priced.is_priced
    assert unpriced.price_at_pick is None
    assert not unpriced.is_priced


def test_pick_number_and_round(orchestrator):
    session_id = orchestrator.start_session("L1", ["A", "B"], 2, ["W", "X", "Y", "Z"])
    picks = [
        orchestrator.submit_pick(session_id, "A", "W"),
        orchestrator.submit_pick(session_id, "B", "X"),
        orchestrator.submit_pick(session_id, "A", "Y"),
        orchestrator.submit_pick(session_id, "B", "Z"),
    ]
    assert [p.pick_number for p in picks] == [1, 2, 3, 4]
    assert [p.round for p in picks] == [1, 1, 2, 2]
    assert [p.slot for p in picks] == [1, 1, 2, 2]


def test_snake_sequence_is_followed(orchestrator):
    order = ["A", "B", "B", "A"]
    session_id = orchestrator.start_session("L1", order, 2, ["W", "X", "Y", "Z"])

    owners = []
    for asset in ["W", "X", "Y", "Z"]:
        owner = orchestrator.get_turn_status(session_id).current_member_id
        owners.append(owner)
        orchestrator.submit_pick(session_id, owner, asset)

    assert owners == ["A", "B", "B", "A"]
    assert orchestrator.get_session(session_id).state == SessionState.COMPLETED


def test_listeners_receive_pick_then_state(orchestrator, listener):
    session_id = orchestrator.start_session("L1", ["A", "B"], 1, ["X", "Y"])
    pick = orchestrator.submit_pick(session_id, "A", "X")

    assert listener.picks == [pick]
    assert listener.states[-1].current_member_id() == "B"
    assert listener.states[-1].picks == [pick]


def test_failing_listener_does_not_roll_back(cache, timer, clock):
    class Broken:
        def on_session_state(self, session):
            raise RuntimeError("db down")

        def on_pick_committed(self, pick):
            raise RuntimeError("db down")

    orch = SessionOrchestrator(cache, listeners=[Broken()], turn_timer=timer, clock=clock)
    session_id = orch.start_session("L1", ["A", "B"], 1, ["X", "Y"])
    orch.submit_pick(session_id, "A", "X")

    assert [p.asset_id for p in orch.list_picks(session_id)] == ["X"]


def test_concurrent_submissions_commit_exactly_once(orchestrator):
    session_id = orchestrator.start_session("L1", ["A", "B"], 1, ["X", "Y"])
    workers = 8
    barrier = threading.Barrier(workers)
    results = []
    lock = threading.Lock()

    def _submit():
        barrier.wait()
        try:
            orchestrator.submit_pick(session_id, "A", "X")
            outcome = "ok"
        except NotYourTurn:
            outcome = "not_your_turn"
        except AssetUnavailable:
            outcome = "unavailable"
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=_submit) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count("ok") == 1
    assert results.count("not_your_turn") == workers - 1
    session = orchestrator.get_session(session_id)
    assert len(session.picks) == 1
    assert session.current_member_id() == "B"


def test_unknown_session(orchestrator):
    with pytest.raises(SessionNotFound):
        orchestrator.submit_pick("missing", "A", "X")
    with pytest.raises(SessionNotFound):
        orchestrator.get_turn_status("missing")


# ===== Timeouts =====

def test_turn_timer_is_armed_and_reports_seconds_left(orchestrator, timer, clock):
    session_id = orchestrator.start_session("L1", ["A", "B"], 1, ["X", "Y"], turn_timeout=45)
    assert timer.latest.delay == 45

    clock.advance(10)
    assert orchestrator.get_turn_status(session_id).seconds_left == pytest.approx(35)


def test_no_timer_without_timeout(orchestrator, timer):
    session_id = orchestrator.start_session("L1", ["A"], 1, ["X"])
    assert timer.handles == []
    assert orchestrator.get_turn_status(session_id).seconds_left is None


def test_timeout_forfeits_slot_by_default(orchestrator, timer):
    session_id = orchestrator.start_session("L1", ["A", "B"], 2, ["W", "X", "Y", "Z"], turn_timeout=30)

    timer.latest.fire()  # A times out
    status = orchestrator.get_turn_status(session_id)
    assert status.current_member_id == "B"

    orchestrator.submit_pick(session_id, "B", "W")
    orchestrator.submit_pick(session_id, "A", "X")
    orchestrator.submit_pick(session_id, "B", "Y")

    session = orchestrator.get_session(session_id)
    assert session.state == SessionState.COMPLETED
    assert session.members["A"].forfeited_slots == 1
    assert len(session.member_picks("A")) == 1
    assert session.remaining_assets() == ["Z"]
    _assert_invariants(session)


def test_timeout_defers_slot_with_late_fill(orchestrator, timer):
    session_id = orchestrator.start_session(
        "L1", ["A", "B"], 2, ["W", "X", "Y", "Z"], turn_timeout=30, allow_late_fill=True
    )

    timer.latest.fire()  # A's first turn times out, slot deferred
    orchestrator.submit_pick(session_id, "B", "W")
    orchestrator.submit_pick(session_id, "A", "X")
    orchestrator.submit_pick(session_id, "B", "Y")

    status = orchestrator.get_turn_status(session_id)
    assert status.revisit_phase
    assert status.current_member_id == "A"

    pick = orchestrator.submit_pick(session_id, "A", "Z")
    assert pick.slot == 2

    session = orchestrator.get_session(session_id)
    assert session.state == SessionState.COMPLETED
    assert session.members["A"].filled_slots == 2
    assert session.members["A"].skipped_slots == 0
    _assert_invariants(session)


def test_timeout_during_revisit_forfeits(orchestrator, timer):
    session_id = orchestrator.start_session(
        "L1", ["A", "B"], 1, ["X", "Y"], turn_timeout=30, allow_late_fill=True
    )

    timer.latest.fire()  # A deferred
    orchestrator.submit_pick(session_id, "B", "X")
    assert orchestrator.get_turn_status(session_id).revisit_phase

    timer.latest.fire()  # A times out again
    session = orchestrator.get_session(session_id)
    assert session.state == SessionState.COMPLETED
    assert session.members["A"].forfeited_slots == 1
    assert session.members["A"].skipped_slots == 0


def test_stale_timeout_after_pick_is_noop(orchestrator, timer):
    session_id = orchestrator.start_session("L1", ["A", "B"], 2, ["W", "X", "Y"], turn_timeout=30)
    stale = timer.latest

    orchestrator.submit_pick(session_id, "A", "W")
    assert stale.cancelled

    stale.fire()  # fired anyway (race)

    session = orchestrator.get_session(session_id)
    assert session.current_member_id() == "B"
    assert session.members["A"].forfeited_slots == 0
    assert session.members["B"].forfeited_slots == 0


def test_skip_with_stale_generation_returns_false(orchestrator):
    session_id = orchestrator.start_session("L1", ["A", "B"], 1, ["X", "Y"])
    generation = orchestrator.get_turn_status(session_id).turn_generation
    orchestrator.submit_pick(session_id, "A", "X")

    assert orchestrator.skip_or_timeout_turn(session_id, generation=generation) is False
    assert orchestrator.get_turn_status(session_id).current_member_id == "B"


def test_mixed_snake_run_keeps_roster_invariants(orchestrator, timer):
    session_id = orchestrator.start_session(
        "L1",
        snake_order(["A", "B", "C"], 2),
        2,
        ["P", "Q", "R", "S", "T", "U", "V"],
        turn_timeout=30,
        allow_late_fill=True,
    )

    def pick(member, asset):
        return lambda: orchestrator.submit_pick(session_id, member, asset)

    def timeout():
        timer.latest.fire()

    def rejected(action, error):
        def _run():
            before = orchestrator.get_session(session_id).to_dict()
            with pytest.raises(error):
                action()
            assert orchestrator.get_session(session_id).to_dict() == before
        return _run

    steps = [
        ("A", timeout),                                  # A deferred
        ("B", rejected(pick("A", "P"), NotYourTurn)),
        ("B", rejected(pick("B", "NOPE"), AssetUnavailable)),
        ("B", pick("B", "P")),
        ("C", pick("C", "Q")),
        ("C", rejected(pick("C", "P"), AssetUnavailable)),
        ("C", timeout),                                  # C deferred
        ("B", pick("B", "R")),
        ("A", pick("A", "S")),
        ("A", rejected(pick("C", "T"), NotYourTurn)),    # revisit phase
        ("A", pick("A", "T")),
        ("C", timeout),                                  # revisit timeout forfeits
    ]

    for expected_owner, action in steps:
        assert orchestrator.get_turn_status(session_id).current_member_id == expected_owner
        action()
        _assert_invariants(orchestrator.get_session(session_id))

    session = orchestrator.get_session(session_id)
    assert session.state == SessionState.COMPLETED
    assert [p.slot for p in session.member_picks("A")] == [1, 2]
    assert [p.slot for p in session.member_picks("B")] == [1, 2]
    assert [p.slot for p in session.member_picks("C")] == [1]
    assert session.members["C"].forfeited_slots == 1
    assert session.remaining_assets() == ["U", "V"]


# ===== Terminal states =====

def test_completed_session_rejects_actions(orchestrator):
    session_id = orchestrator.start_session("L1", ["A"], 1, ["X", "Y"])
    orchestrator.submit_pick(session_id, "A", "X")

    with pytest.raises(SessionNotActive):
        orchestrator.submit_pick(session_id, "A", "Y")
    with pytest.raises(SessionNotActive):
        orchestrator.skip_or_timeout_turn(session_id)


def test_abort_session(orchestrator, timer, listener):
    session_id = orchestrator.start_session("L1", ["A", "B"], 1, ["X", "Y"], turn_timeout=30)
    handle = timer.latest

    session = orchestrator.abort_session(session_id, "league disbanded")

    assert session.state == SessionState.ABORTED
    assert session.abort_reason == "league disbanded"
    assert handle.cancelled
    assert listener.states[-1].state == SessionState.ABORTED

    handle.fire()  # late timer is harmless
    with pytest.raises(SessionNotActive):
        orchestrator.submit_pick(session_id, "A", "X")
    with pytest.raises(SessionNotActive):
        orchestrator.abort_session(session_id)

    # League is free again
    orchestrator.start_session("L1", ["A"], 1, ["X"])


# ===== Restore =====

def test_restore_session_resumes_turns(cache, timer, clock, orchestrator):
    session_id = orchestrator.start_session("L1", ["A", "B"], 2, ["W", "X", "Y", "Z"], turn_timeout=30)
    orchestrator.submit_pick(session_id, "A", "W")
    snapshot = orchestrator.get_session(session_id)

    restored_listener = RecordingListener()
    fresh = SessionOrchestrator(cache, listeners=[restored_listener], turn_timer=timer, clock=clock)
    fresh.restore_session(snapshot)

    assert restored_listener.restored[0].session_id == session_id
    assert fresh.get_turn_status(session_id).current_member_id == "B"
    assert fresh.active_session_for_league("L1") == session_id

    timer.latest.fire()  # timer re-armed on restore
    assert fresh.get_turn_status(session_id).current_member_id == "A"

    pick = fresh.submit_pick(session_id, "A", "X")
    assert pick.slot == 2
    fresh.close()


def test_restore_rejects_inconsistent_snapshot(cache, timer, orchestrator):
    session_id = orchestrator.start_session("L1", ["A", "B"], 1, ["X", "Y"])
    orchestrator.submit_pick(session_id, "A", "X")
    snapshot = orchestrator.get_session(session_id)
    snapshot.drafted_assets = set()

    fresh = SessionOrchestrator(cache, turn_timer=timer)
    with pytest.raises(InvalidConfig):
        fresh.restore_session(snapshot)
