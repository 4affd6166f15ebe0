"""
Polymarket Gamma API client for building draft asset pools.

Lists open markets and expands each into its outcome tokens. Each outcome
token id is a draftable asset and the id the market feed subscribes with.
"""

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

import requests

from .. import config

logger = logging.getLogger(__name__)


@dataclass
class MarketAsset:
    """One outcome token of a market."""

    asset_id: str
    market_id: str
    question: str
    outcome: str
    price: Optional[Decimal]
    volume_24hr: float
    end_date: Optional[str]

    def to_dict(self) -> dict:
        return {
            'asset_id': self.asset_id,
            'market_id': self.market_id,
            'question': self.question,
            'outcome': self.outcome,
            'price': None if self.price is None else str(self.price),
            'volume_24hr': self.volume_24hr,
            'end_date': self.end_date,
        }


def _json_list(value) -> list:
    """Gamma encodes some list fields as JSON strings."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return []
        return parsed if isinstance(parsed, list) else []
    return []


def _to_float(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _to_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _parse_end_date(market: Dict) -> Optional[datetime]:
    raw = market.get('endTime') or market.get('endDateIso') or market.get('endDate')
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(str(raw).replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class GammaMarketClient:
    """Client for the Gamma markets endpoint."""

    def __init__(
        self,
        base_url: str = config.GAMMA_API_URL,
        page_limit: int = config.CATALOG_PAGE_LIMIT,
        timeout: int = config.CATALOG_REQUEST_TIMEOUT,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize Gamma client.

        Args:
            base_url: Gamma API root
            page_limit: Markets requested per page
            timeout: Request timeout in seconds
            session: requests.Session to reuse (default: new session)
        """
        self.base_url = base_url.rstrip('/')
        self.page_limit = page_limit
        self.timeout = timeout

        # Session for connection pooling
        self.session = session or requests.Session()
        self.session.headers['User-Agent'] = 'market-draft/1.0'

    def fetch_markets(self, max_pages: int = 10) -> List[Dict]:
        """
        Fetch open markets, following pagination.

        Args:
            max_pages: Upper bound on pages requested

        Returns:
            Raw market dicts, deduplicated by id

        Raises:
            requests.RequestException: If the first page cannot be fetched
        """
        endpoint = f"{self.base_url}/markets"
        markets: List[Dict] = []
        seen_ids = set()

        for page in range(max_pages):
            params = {
                'closed': 'false',
                'limit': self.page_limit,
                'offset': page * self.page_limit,
            }

            try:
                data = self._make_request(endpoint, params)
            except requests.RequestException:
                if not markets:
                    raise
                logger.warning(f"Stopping pagination at page {page + 1}; keeping {len(markets)} markets")
                break

            if not isinstance(data, list):
                logger.error(f"Gamma API returned {type(data).__name__}, expected a list")
                break

            for market in data:
                market_id = str(market.get('id'))
                if market_id not in seen_ids:
                    seen_ids.add(market_id)
                    markets.append(market)

            if len(data) < self.page_limit:
                break

        logger.info(f"Fetched {len(markets)} open markets from Gamma")
        return markets

    def list_assets(
        self,
        ending_within_days: Optional[int] = None,
        max_pages: int = 10,
        now: Optional[datetime] = None
    ) -> List[MarketAsset]:
        """
        Draftable outcome tokens of active markets, busiest markets first.

        Args:
            ending_within_days: Keep only markets resolving within this many days
            max_pages: Upper bound on pages requested
            now: Reference time for the end-date window (default: now, UTC)

        Returns:
            List of MarketAsset sorted by 24h volume (descending)
        """
        now = now or datetime.now(timezone.utc)
        horizon = now + timedelta(days=ending_within_days) if ending_within_days is not None else None

        assets: List[MarketAsset] = []
        for market in self.fetch_markets(max_pages=max_pages):
            if market.get('active') is False or market.get('closed') is True:
                continue

            end_date = _parse_end_date(market)
            if horizon is not None:
                if end_date is None or not (now < end_date <= horizon):
                    continue

            token_ids = _json_list(market.get('clobTokenIds'))
            outcomes = _json_list(market.get('outcomes'))
            prices = _json_list(market.get('outcomePrices'))

            if not token_ids:
                logger.debug(f"Market {market.get('id')} has no outcome tokens")
                continue

            for i, token_id in enumerate(token_ids):
                assets.append(MarketAsset(
                    asset_id=str(token_id),
                    market_id=str(market.get('id')),
                    question=market.get('question', ''),
                    outcome=str(outcomes[i]) if i < len(outcomes) else f"Outcome {i + 1}",
                    price=_to_decimal(prices[i]) if i < len(prices) else None,
                    volume_24hr=_to_float(market.get('volume24hr')),
                    end_date=end_date.isoformat() if end_date else None,
                ))

        assets.sort(key=lambda a: a.volume_24hr, reverse=True)
        logger.info(f"Catalog: {len(assets)} draftable assets")
        return assets

    def _make_request(
        self,
        endpoint: str,
        params: Dict,
        max_retries: int = 3
    ):
        """
        Make HTTP request to the Gamma API with retries.

        Args:
            endpoint: Full URL endpoint
            params: Query parameters
            max_retries: Maximum retry attempts on failure

        Returns:
            Parsed JSON response

        Raises:
            requests.RequestException: After all retries exhausted
        """
        for attempt in range(1, max_retries + 1):
            try:
                logger.debug(f"GET {endpoint} (attempt {attempt}/{max_retries})")
                response = self.session.get(endpoint, params=params, timeout=self.timeout)
                response.raise_for_status()
                return response.json()

            except requests.Timeout:
                logger.warning(f"Request timeout (attempt {attempt}/{max_retries})")
                if attempt == max_retries:
                    raise
                time.sleep(2 ** attempt)  # Exponential backoff

            except requests.RequestException as e:
                logger.error(f"Request failed (attempt {attempt}/{max_retries}): {e}")
                if attempt == max_retries:
                    raise
                time.sleep(2 ** attempt)
