from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal

import pytest

from market_draft.errors import MalformedMessage
from market_draft.feed.message_parser import parse_message

NOW = datetime(2026, 1, 5, 12, 0, 0)


def test_book_event_uses_bid_ask_midpoint():
    raw = json.dumps({
        "event_type": "book",
        "asset_id": "tok1",
        "market": "0xabc",
        "timestamp": "1767614400000",
        "bids": [{"price": "0.48", "size": "100"}, {"price": "0.50", "size": "20"}],
        "asks": [{"price": "0.54", "size": "10"}, {"price": "0.52", "size": "5"}],
        "hash": "ignored",
    })

    ticks, rejected = parse_message(raw, received_at=NOW)

    assert rejected == 0
    assert len(ticks) == 1
    tick = ticks[0]
    assert tick.asset_id == "tok1"
    assert tick.price == Decimal("0.51")
    assert tick.best_bid == Decimal("0.50")
    assert tick.best_ask == Decimal("0.52")
    assert tick.sequence == 1767614400000
    assert tick.event_type == "book"
    assert tick.received_at == NOW


def test_book_with_one_side_uses_that_side():
    raw = json.dumps({
        "event_type": "book",
        "asset_id": "tok1",
        "timestamp": 5,
        "buys": [{"price": "0.30"}],
        "sells": [],
    })
    ticks, _ = parse_message(raw, received_at=NOW)
    assert ticks[0].price == Decimal("0.30")


def test_price_change_batch_inherits_timestamp():
    raw = json.dumps({
        "event_type": "price_change",
        "market": "0xabc",
        "timestamp": "1000",
        "price_changes": [
            {"asset_id": "yes", "price": "0.6", "best_bid": "0.59", "best_ask": "0.61"},
            {"asset_id": "no", "price": "0.4"},
        ],
    })

    ticks, rejected = parse_message(raw, received_at=NOW)

    assert rejected == 0
    assert [(t.asset_id, t.price, t.sequence) for t in ticks] == [
        ("yes", Decimal("0.60"), 1000),
        ("no", Decimal("0.4"), 1000),
    ]


def test_flat_price_change_and_last_trade():
    raw = json.dumps([
        {"event_type": "price_change", "asset_id": "a", "price": "0.25", "timestamp": 7},
        {"event_type": "last_trade_price", "asset_id": "b", "price": "0.75", "timestamp": 8, "side": "BUY"},
    ])

    ticks, rejected = parse_message(raw, received_at=NOW)

    assert rejected == 0
    assert [(t.asset_id, t.price, t.event_type) for t in ticks] == [
        ("a", Decimal("0.25"), "price_change"),
        ("b", Decimal("0.75"), "last_trade_price"),
    ]


def test_unknown_event_types_are_ignored():
    raw = json.dumps({"event_type": "tick_size_change", "asset_id": "a", "timestamp": 1})
    assert parse_message(raw, received_at=NOW) == ([], 0)


@pytest.mark.parametrize("frame", ["PONG", "PING", b"PONG"])
def test_heartbeat_frames_yield_nothing(frame):
    assert parse_message(frame, received_at=NOW) == ([], 0)


@pytest.mark.parametrize(
    "event",
    [
        {"event_type": "last_trade_price", "price": "0.5", "timestamp": 1},
        {"event_type": "last_trade_price", "asset_id": "a", "timestamp": 1},
        {"event_type": "last_trade_price", "asset_id": "a", "price": "0.5"},
        {"event_type": "last_trade_price", "asset_id": "a", "price": "abc", "timestamp": 1},
        {"event_type": "last_trade_price", "asset_id": "a", "price": "-1", "timestamp": 1},
        {"event_type": "last_trade_price", "asset_id": "a", "price": "0.5", "timestamp": "soon"},
        {"event_type": "book", "asset_id": "a", "timestamp": 1, "bids": [], "asks": []},
        "not an object",
    ],
)
def test_malformed_events_are_rejected_individually(event):
    good = {"event_type": "last_trade_price", "asset_id": "ok", "price": "0.1", "timestamp": 1}
    ticks, rejected = parse_message(json.dumps([event, good]), received_at=NOW)

    assert rejected == 1
    assert [t.asset_id for t in ticks] == ["ok"]


@pytest.mark.parametrize("frame", ["", "   ", "{not json", "42", "null", b"\xff\xfe", None])
def test_malformed_frames_raise(frame):
    with pytest.raises(MalformedMessage):
        parse_message(frame, received_at=NOW)
