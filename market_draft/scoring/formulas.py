"""
Scoring formulas: (baseline, current, multiplier) -> points contribution.

Every formula is a pure, monotonic-in-current-price function, so re-applying
the same tick always produces the same score.
"""

from decimal import Decimal, ROUND_HALF_EVEN
from typing import Callable, Dict

from .. import config

Formula = Callable[[Decimal, Decimal, Decimal], Decimal]

HUNDRED = Decimal(100)
ZERO = Decimal(0)


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(Decimal(1).scaleb(-config.SCORE_DECIMAL_PLACES), rounding=ROUND_HALF_EVEN)


def percent_change(baseline: Decimal, current: Decimal, multiplier: Decimal) -> Decimal:
    """
    Signed percentage change since the pick.

    A zero baseline has no defined percentage; it scores zero.

    Examples:
        >>> percent_change(Decimal('100'), Decimal('110'), Decimal('1'))
        Decimal('10.0000')
    """
    if baseline == ZERO:
        return _quantize(ZERO)
    return _quantize((current - baseline) / baseline * HUNDRED * multiplier)


def price_delta(baseline: Decimal, current: Decimal, multiplier: Decimal) -> Decimal:
    """Absolute price movement since the pick."""
    return _quantize((current - baseline) * multiplier)


FORMULAS: Dict[str, Formula] = {
    'percent_change': percent_change,
    'price_delta': price_delta,
}


def get_formula(name: str) -> Formula:
    """
    Look up a formula by name.

    Raises:
        ValueError: Unknown formula name
    """
    try:
        return FORMULAS[name]
    except KeyError:
        raise ValueError(f"Unknown scoring formula {name!r}; choose from {sorted(FORMULAS)}") from None
