"""
Expected value and banker offer.

Everything here is pure and deterministic: the same layout, opened set,
personality and round always price to the same offer, so an offer can be
recomputed during an audit.
"""
from enum import Enum
from math import floor
from typing import Dict, Iterable, List, Sequence, Tuple


class Personality(str, Enum):
    conservative = "conservative"
    fair = "fair"
    aggressive = "aggressive"


# 佔 EV 的比例區間：progress=0 取 min，progress=1 取 max
EV_BANDS: Dict[Personality, Tuple[float, float]] = {
    Personality.conservative: (0.75, 0.85),
    Personality.fair: (0.85, 0.95),
    Personality.aggressive: (0.90, 1.05),
}


def remaining_values(values: Sequence[float], opened: Iterable[int]) -> List[float]:
    """Values of every closed case, the player's own included. Case n is values[n-1]."""
    opened_set = set(opened)
    return [v for n, v in enumerate(values, start=1) if n not in opened_set]


def expected_value(values: Sequence[float], opened: Iterable[int]) -> float:
    rest = remaining_values(values, opened)
    if not rest:
        return 0.0
    return sum(rest) / len(rest)


def progress(round_index: int, total_rounds: int) -> float:
    if total_rounds <= 0:
        return 1.0
    return min(1.0, max(0.0, round_index / total_rounds))


def offer_ratio(personality: Personality, round_index: int, total_rounds: int) -> float:
    low, high = EV_BANDS[Personality(personality)]
    return low + (high - low) * progress(round_index, total_rounds)


def banker_offer(
    values: Sequence[float],
    opened: Iterable[int],
    personality: Personality,
    round_index: int,
    total_rounds: int,
) -> int:
    """Offer = floor(EV * ratio). `values` must already be scaled to the buy-in."""
    ev = expected_value(values, opened)
    return floor(ev * offer_ratio(personality, round_index, total_rounds))


def offer_percentage(offer: int, ev: float) -> int:
    if ev <= 0:
        return 0
    return round(offer / ev * 100)
