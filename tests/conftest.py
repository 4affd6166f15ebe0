from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from market_draft.draft.session_orchestrator import SessionOrchestrator
from market_draft.feed.price_cache import PriceCache
from market_draft.feed.price_tick import PriceTick


class ManualHandle:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        # Fires even when cancelled, like a threading.Timer that already started
        self.callback()


class ManualTurnTimer:
    """Turn timer that only fires when a test tells it to."""

    def __init__(self):
        self.handles: list[ManualHandle] = []

    def schedule(self, delay_seconds, callback):
        handle = ManualHandle(delay_seconds, callback)
        self.handles.append(handle)
        return handle

    @property
    def latest(self) -> ManualHandle:
        return self.handles[-1]

    def pending(self) -> list[ManualHandle]:
        return [h for h in self.handles if not h.cancelled]


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 5, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingListener:
    def __init__(self):
        self.states = []
        self.picks = []
        self.restored = []

    def on_session_state(self, session):
        self.states.append(session)

    def on_pick_committed(self, pick):
        self.picks.append(pick)

    def on_session_restored(self, session):
        self.restored.append(session)


def make_tick(asset_id: str, price, sequence: int) -> PriceTick:
    return PriceTick(
        asset_id=asset_id,
        price=Decimal(str(price)),
        sequence=sequence,
        received_at=datetime(2026, 1, 5, 12, 0, 0),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timer():
    return ManualTurnTimer()


@pytest.fixture
def cache():
    return PriceCache(history_size=5)


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def orchestrator(cache, timer, clock, listener):
    counter = iter(range(1, 1000))
    orch = SessionOrchestrator(
        price_source=cache,
        listeners=[listener],
        turn_timer=timer,
        clock=clock,
        id_factory=lambda: f"s{next(counter)}",
    )
    yield orch
    orch.close()
