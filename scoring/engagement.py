"""Engagement score: weighted post score, comments and trade volume."""
from typing import Optional

from common.models import EngagementSignal
from config.settings import ENGAGEMENT_WEIGHTS, MIN_ENGAGEMENT_SCORE


def engagement_score(signal: Optional[EngagementSignal], trade_volume: float,
                     fallback: float) -> float:
    """Return the fresh engagement score, or *fallback* when no signal was observed."""
    if signal is None:
        return fallback
    raw = (
        signal.score * ENGAGEMENT_WEIGHTS["score"]
        + signal.comment_count * ENGAGEMENT_WEIGHTS["comments"]
        + trade_volume * ENGAGEMENT_WEIGHTS["trade_volume"]
    )
    return max(MIN_ENGAGEMENT_SCORE, raw)
