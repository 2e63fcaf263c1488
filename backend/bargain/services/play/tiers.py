from typing import Optional, Sequence

from .config import Tier


def resolve_tier(score: int, tiers: Sequence[Tier]) -> Optional[Tier]:
    """Pick the tier with the largest min_score that the score reaches.

    Tiers arrive validated (strictly increasing min_score), so the last
    match wins. Scores below the first threshold earn nothing.
    """
    chosen = None
    for tier in tiers:
        if score >= tier.min_score:
            chosen = tier
        else:
            break
    return chosen


def next_tier_score(score: int, tiers: Sequence[Tier]) -> Optional[int]:
    """Threshold of the next paying tier above ``score``, if any."""
    for tier in tiers:
        if tier.discount_percent > 0 and tier.min_score > score:
            return tier.min_score
    return None


def score_message(score: int, tier: Optional[Tier], tiers: Sequence[Tier]) -> str:
    if tier is not None and tier.discount_percent > 0:
        return tier.message or f'You earned {tier.discount_percent}% off!'
    upcoming = next_tier_score(score, tiers)
    if upcoming is not None:
        return f'Score {upcoming} points to earn your first discount!'
    return 'Keep hunting for better scores!'
