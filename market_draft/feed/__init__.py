"""
Live market data: websocket feed client, message parsing and price cache.
"""

from .market_catalog import GammaMarketClient, MarketAsset
from .market_feed_client import ConnectionState, MarketFeedClient
from .price_cache import ChangeSubscription, PriceCache
from .price_tick import PriceTick

__all__ = [
    'GammaMarketClient',
    'MarketAsset',
    'ConnectionState',
    'MarketFeedClient',
    'ChangeSubscription',
    'PriceCache',
    'PriceTick',
]
