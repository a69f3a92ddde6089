"""Trending ranking and marketplace sort orders."""
from typing import Optional

from common.errors import InvalidArgument
from common.logger import get_logger
from common.models import MemeAsset
from storage import database
from storage.repository import ASSET_INDEX, category_key, load_assets

logger = get_logger("ranking")


def last_tick_change(asset: MemeAsset) -> float:
    """Percent change between the last two history samples; 0 with fewer than two."""
    if len(asset.price_history) < 2:
        return 0.0
    current = asset.price_history[-1].price
    previous = asset.price_history[-2].price
    if previous <= 0:
        return 0.0
    return (current - previous) / previous


async def get_trending(limit: int = 10, category: Optional[str] = None) -> list[MemeAsset]:
    """Assets ordered by most recent single-tick change, descending.

    The sort is stable, so ties keep index order; callers should not rely on that.
    """
    if limit <= 0:
        return []
    index_key = category_key(category) if category else ASSET_INDEX
    asset_ids = await database.list_members(index_key)
    assets = await load_assets(asset_ids)
    ranked = sorted(assets, key=last_tick_change, reverse=True)
    logger.debug(f"Ranked {len(ranked)} memes from {index_key}")
    return ranked[:limit]


SORT_ORDERS = {
    "trending": None,
    "new": (lambda m: m.created_at, True),
    "price-high": (lambda m: m.current_share_price, True),
    "price-low": (lambda m: m.current_share_price, False),
    "volume": (lambda m: m.trade_volume, True),
}


def sort_memes(memes: list[MemeAsset], sort_by: str = "trending") -> list[MemeAsset]:
    """Re-order an already ranked page; "trending" keeps the ranking order."""
    if sort_by not in SORT_ORDERS:
        raise InvalidArgument(f"Unknown sort order: {sort_by}")
    order = SORT_ORDERS[sort_by]
    if order is None:
        return list(memes)
    key, descending = order
    return sorted(memes, key=key, reverse=descending)
