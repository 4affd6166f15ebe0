from __future__ import annotations

from decimal import Decimal

from market_draft.draft.persistence_relay import PersistenceRelay
from market_draft.draft.session_orchestrator import SessionOrchestrator


class FakeRecorder:
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.picks = []
        self.states = []
        self.baselines = {}
        self.attempts = 0

    def record_pick(self, pick):
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise IOError("disk unavailable")
        self.picks.append(pick)

    def record_session_state(self, session):
        self.states.append(session.state.value)

    def record_baseline(self, session_id, asset_id, baseline, sequence):
        self.baselines[(session_id, asset_id)] = baseline

    def load_baselines(self, session_id):
        return {a: b for (s, a), b in self.baselines.items() if s == session_id}


def test_relay_records_picks_and_states_in_order(cache, timer, clock):
    recorder = FakeRecorder()
    relay = PersistenceRelay(recorder, sleep=lambda s: None)
    orch = SessionOrchestrator(cache, listeners=[relay], turn_timer=timer, clock=clock)

    session_id = orch.start_session("L1", ["A", "B"], 1, ["X", "Y"])
    orch.submit_pick(session_id, "A", "X")
    orch.submit_pick(session_id, "B", "Y")
    relay.flush()

    assert [p.asset_id for p in recorder.picks] == ["X", "Y"]
    assert recorder.states == ["active", "active", "completed"]
    assert relay.get_stats()["written"] == 5
    relay.close()


def test_relay_retries_with_backoff(cache, timer, clock):
    sleeps = []
    recorder = FakeRecorder(failures=2)
    relay = PersistenceRelay(recorder, max_retries=5, retry_base_seconds=0.5, sleep=sleeps.append)
    orch = SessionOrchestrator(cache, listeners=[relay], turn_timer=timer, clock=clock)

    session_id = orch.start_session("L1", ["A"], 1, ["X"])
    orch.submit_pick(session_id, "A", "X")
    relay.flush()

    assert [p.asset_id for p in recorder.picks] == ["X"]
    assert sleeps == [0.5, 1.0]
    assert relay.failure_count == 0
    relay.close()


def test_exhausted_retries_never_roll_back_the_pick(cache, timer, clock):
    recorder = FakeRecorder(failures=100)
    relay = PersistenceRelay(recorder, max_retries=3, sleep=lambda s: None)
    orch = SessionOrchestrator(cache, listeners=[relay], turn_timer=timer, clock=clock)

    session_id = orch.start_session("L1", ["A", "B"], 1, ["X", "Y"])
    pick = orch.submit_pick(session_id, "A", "X")
    relay.flush()

    assert recorder.attempts == 3
    assert relay.failure_count == 1
    assert "record_pick" in str(relay.last_failure)
    assert orch.list_picks(session_id) == [pick]
    assert orch.get_turn_status(session_id).current_member_id == "B"
    relay.close()


def test_relay_records_and_loads_baselines():
    recorder = FakeRecorder()
    relay = PersistenceRelay(recorder, sleep=lambda s: None)

    relay.record_baseline("s1", "X", Decimal("0.40"), 7)
    relay.flush()

    assert relay.load_baselines("s1") == {"X": Decimal("0.40")}
    assert relay.load_baselines("s2") == {}
    assert relay.get_stats()["written"] == 1
    relay.close()
