"""
Defensive parsing of Polymarket CLOB market-channel messages.

Turns one raw websocket frame into zero or more PriceTicks. The upstream
schema is treated as an opaque, versioned contract:
- unknown fields are ignored
- unknown event types produce no ticks
- an event missing its asset id, price or timestamp is rejected

Supported event types:
- book              full order book; price is the bid/ask midpoint
- price_change      either a flat event or a ``price_changes`` list;
                    price is the best bid/ask midpoint, else ``price``
- last_trade_price  last traded price
"""

import json
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple

from ..errors import MalformedMessage
from .price_tick import PriceTick

logger = logging.getLogger(__name__)

HEARTBEAT_FRAMES = {'PONG', 'PING'}
TWO = Decimal(2)


def parse_message(raw, received_at: Optional[datetime] = None) -> Tuple[List[PriceTick], int]:
    """
    Parse one websocket frame.

    Args:
        raw: Text (or bytes) frame as received
        received_at: Receipt time stamped on every tick (default: now)

    Returns:
        (ticks, rejected_events): ticks parsed from the frame and the number
        of events inside it that were dropped as malformed

    Raises:
        MalformedMessage: The frame is not JSON or not an object/array
    """
    received_at = received_at or datetime.now()

    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise MalformedMessage(f"Frame is not UTF-8: {e}") from e

    if not isinstance(raw, str) or not raw.strip():
        raise MalformedMessage(f"Empty or non-text frame: {raw!r:.100}")

    if raw.strip() in HEARTBEAT_FRAMES:
        return [], 0

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedMessage(f"Frame is not JSON: {e}") from e

    if isinstance(data, dict):
        events = [data]
    elif isinstance(data, list):
        events = data
    else:
        raise MalformedMessage(f"Unexpected JSON type {type(data).__name__}")

    ticks: List[PriceTick] = []
    rejected = 0
    for event in events:
        try:
            ticks.extend(parse_event(event, received_at))
        except MalformedMessage as e:
            rejected += 1
            logger.warning(f"Dropped malformed event: {e}")

    return ticks, rejected


def parse_event(event, received_at: datetime) -> List[PriceTick]:
    """
    Parse a single event object.

    Raises:
        MalformedMessage: Required fields missing or invalid
    """
    if not isinstance(event, dict):
        raise MalformedMessage(f"Event is not an object: {event!r:.100}")

    event_type = event.get('event_type')
    if event_type == 'book':
        return [_parse_book(event, received_at)]
    if event_type == 'price_change':
        return _parse_price_change(event, received_at)
    if event_type == 'last_trade_price':
        return [_parse_last_trade(event, received_at)]

    logger.debug(f"Ignoring event type {event_type!r}")
    return []


def _parse_book(event: dict, received_at: datetime) -> PriceTick:
    asset_id = _require_asset_id(event)
    sequence = _require_sequence(event)

    bids = _levels(event.get('bids', event.get('buys')))
    asks = _levels(event.get('asks', event.get('sells')))
    best_bid = max(bids) if bids else None
    best_ask = min(asks) if asks else None

    price = _midpoint(best_bid, best_ask)
    if price is None:
        raise MalformedMessage(f"Book for {asset_id} has no levels")

    return PriceTick(
        asset_id=asset_id,
        price=price,
        sequence=sequence,
        received_at=received_at,
        event_type='book',
        best_bid=best_bid,
        best_ask=best_ask,
    )


def _parse_price_change(event: dict, received_at: datetime) -> List[PriceTick]:
    changes = event.get('price_changes')
    if changes is None:
        changes = [event]
    elif not isinstance(changes, list):
        raise MalformedMessage("price_changes is not a list")

    ticks = []
    for change in changes:
        if not isinstance(change, dict):
            raise MalformedMessage(f"price change entry is not an object: {change!r:.100}")

        asset_id = _require_asset_id(change)
        # Entries in a batch inherit the batch timestamp
        sequence = _require_sequence(change if 'timestamp' in change else event)

        best_bid = _optional_decimal(change.get('best_bid'))
        best_ask = _optional_decimal(change.get('best_ask'))
        price = _midpoint(best_bid, best_ask)
        if price is None:
            price = _require_decimal(change, 'price')

        ticks.append(PriceTick(
            asset_id=asset_id,
            price=price,
            sequence=sequence,
            received_at=received_at,
            event_type='price_change',
            best_bid=best_bid,
            best_ask=best_ask,
        ))
    return ticks


def _parse_last_trade(event: dict, received_at: datetime) -> PriceTick:
    return PriceTick(
        asset_id=_require_asset_id(event),
        price=_require_decimal(event, 'price'),
        sequence=_require_sequence(event),
        received_at=received_at,
        event_type='last_trade_price',
    )


# ===== Field helpers =====

def _require_asset_id(event: dict) -> str:
    asset_id = event.get('asset_id')
    if not isinstance(asset_id, str) or not asset_id.strip():
        raise MalformedMessage(f"Missing asset_id in {event.get('event_type')} event")
    return asset_id.strip()


def _require_sequence(event: dict) -> int:
    value = event.get('timestamp')
    if value is None or isinstance(value, bool):
        raise MalformedMessage("Missing timestamp")
    try:
        return int(Decimal(str(value)))
    except (InvalidOperation, ValueError, OverflowError) as e:
        raise MalformedMessage(f"Invalid timestamp {value!r}") from e


def _require_decimal(event: dict, key: str) -> Decimal:
    value = _optional_decimal(event.get(key))
    if value is None:
        raise MalformedMessage(f"Missing {key}")
    return value


def _optional_decimal(value) -> Optional[Decimal]:
    if value is None or value == '' or isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value))
    except InvalidOperation as e:
        raise MalformedMessage(f"Invalid number {value!r}") from e
    if not result.is_finite() or result < 0:
        raise MalformedMessage(f"Invalid price {value!r}")
    return result


def _levels(levels) -> List[Decimal]:
    if levels is None:
        return []
    if not isinstance(levels, list):
        raise MalformedMessage("Order book side is not a list")

    prices = []
    for level in levels:
        if not isinstance(level, dict):
            raise MalformedMessage(f"Order book level is not an object: {level!r:.100}")
        prices.append(_require_decimal(level, 'price'))
    return prices


def _midpoint(best_bid: Optional[Decimal], best_ask: Optional[Decimal]) -> Optional[Decimal]:
    if best_bid is not None and best_ask is not None:
        return (best_bid + best_ask) / TWO
    return best_bid if best_bid is not None else best_ask
