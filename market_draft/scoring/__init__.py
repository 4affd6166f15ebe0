"""
Fantasy scoring from price movement of drafted assets.
"""

from .formulas import get_formula, percent_change, price_delta
from .scoring_engine import LeaderboardRow, ScoreEntry, ScoringEngine

__all__ = [
    'get_formula',
    'percent_change',
    'price_delta',
    'LeaderboardRow',
    'ScoreEntry',
    'ScoringEngine',
]
