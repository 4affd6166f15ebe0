"""
Configuration constants for the prediction-market fantasy draft service.
"""

# ===== DRAFT SESSION CONFIGURATION =====

# Pick timer (seconds per turn) applied when a request does not set one.
DEFAULT_TURN_TIMEOUT_SECONDS = 45

# What happens to a slot whose turn timed out:
#   False -> slot is forfeited and scores zero
#   True  -> slot is deferred and revisited once every other slot is settled
ALLOW_LATE_FILL = False

# Default rounds per draft (used by the API when building snake orders)
DEFAULT_ROUNDS = 6

# ===== MARKET FEED CONFIGURATION =====

# Polymarket CLOB market channel
FEED_WS_URL = "wss://ws-subscriptions-clob.polymarket.com/ws/market"
FEED_CHANNEL = "market"

# Heartbeat (upstream drops idle sockets without a PING every ~10s)
FEED_PING_INTERVAL = 10

# Reconnect backoff: full jitter in [0, min(cap, base * 2**attempt)]
FEED_BACKOFF_BASE_SECONDS = 1.0
FEED_BACKOFF_CAP_SECONDS = 30.0

# Maximum inbound message size (bytes)
FEED_MAX_MESSAGE_SIZE = 10 * 1024 * 1024

# ===== PRICE CACHE CONFIGURATION =====

# Trailing ticks kept per asset
PRICE_HISTORY_SIZE = 50

# ===== SCORING CONFIGURATION =====

# 'percent_change' -> signed % change since pick * multiplier
# 'price_delta'    -> (current - baseline) * multiplier
SCORING_FORMULA = 'percent_change'
SCORING_MULTIPLIER = 1

# Decimal places kept on point contributions
SCORE_DECIMAL_PLACES = 4

# ===== PERSISTENCE CONFIGURATION =====

DRAFT_EVENTS_DIR = 'data/draft_events'
PERSIST_MAX_RETRIES = 5
PERSIST_RETRY_BASE_SECONDS = 0.5

# ===== MARKET CATALOG CONFIGURATION =====

GAMMA_API_URL = "https://gamma-api.polymarket.com"
CATALOG_PAGE_LIMIT = 100
CATALOG_REQUEST_TIMEOUT = 10

# ===== API SERVER CONFIGURATION =====

API_HOST = '127.0.0.1'
API_PORT = 8000

# Logging
LOG_LEVEL = 'INFO'
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
