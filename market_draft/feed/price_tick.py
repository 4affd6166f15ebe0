"""
Normalized price observation for one asset.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional


@dataclass(frozen=True)
class PriceTick:
    """A sequenced price observation from the upstream feed."""

    asset_id: str
    price: Decimal                      # Fixed point, never float
    sequence: int                       # Exchange timestamp (ms); higher is newer
    received_at: datetime = field(default_factory=datetime.now)
    event_type: str = 'price_change'
    best_bid: Optional[Decimal] = None
    best_ask: Optional[Decimal] = None

    def to_dict(self) -> dict:
        return {
            'asset_id': self.asset_id,
            'price': str(self.price),
            'sequence': self.sequence,
            'received_at': self.received_at.isoformat(),
            'event_type': self.event_type,
            'best_bid': None if self.best_bid is None else str(self.best_bid),
            'best_ask': None if self.best_ask is None else str(self.best_ask),
        }
