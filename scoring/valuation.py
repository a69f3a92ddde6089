"""Valuation algorithm: engagement delta -> bounded price move.

Pure and deterministic. A single tick can never move the price by more than
MAX_TICK_CHANGE in either direction, and the price never drops below MIN_PRICE.
"""
import math
from datetime import datetime

import numpy as np

from common.models import MemeAsset, Valuation
from config.settings import (
    MAX_TICK_CHANGE,
    MAX_VOLUME_FACTOR,
    MIN_ENGAGEMENT_SCORE,
    MIN_PRICE,
    MIN_VOLATILITY,
    VOLATILITY_DECAY_PER_DAY,
    VOLUME_SCALE,
)

SECONDS_PER_DAY = 86_400


def volatility_factor(age_days: float) -> float:
    """Decays linearly with age, floored so movement is never fully silenced."""
    return max(MIN_VOLATILITY, 1 - max(0.0, age_days) * VOLATILITY_DECAY_PER_DAY)


def volume_factor(trade_volume: float) -> float:
    return min(MAX_VOLUME_FACTOR, 1 + max(0.0, trade_volume) / VOLUME_SCALE)


def price_change_percent(prev_score: float, new_score: float,
                         age_days: float, trade_volume: float) -> float:
    prev = max(MIN_ENGAGEMENT_SCORE, prev_score)
    score_change = (new_score - prev) / prev
    raw = score_change * volatility_factor(age_days) * volume_factor(trade_volume)
    if math.isnan(raw):
        return 0.0
    return float(np.clip(raw, -MAX_TICK_CHANGE, MAX_TICK_CHANGE))


def next_price(current_price: float, change_percent: float) -> float:
    return max(MIN_PRICE, current_price * (1 + change_percent))


def age_in_days(created_at: datetime, now: datetime) -> float:
    return (now - created_at).total_seconds() / SECONDS_PER_DAY


def compute_valuation(asset: MemeAsset, engagement_score: float, now: datetime) -> Valuation:
    change = price_change_percent(
        prev_score=asset.engagement_score,
        new_score=engagement_score,
        age_days=age_in_days(asset.created_at, now),
        trade_volume=asset.trade_volume,
    )
    price = next_price(asset.current_share_price, change)
    return Valuation(
        asset_id=asset.id,
        previous_price=asset.current_share_price,
        current_price=price,
        price_change_percent=change,
        market_cap=asset.total_shares * price,
        engagement_score=max(MIN_ENGAGEMENT_SCORE, engagement_score),
        timestamp=now,
    )
