"""Typed access to the logical key space on top of storage.database."""
from typing import Optional

from pydantic import ValidationError

from common.logger import get_logger
from common.models import Holding, MemeAsset, Portfolio, ScheduleRecord
from storage import database

logger = get_logger("repository")

ASSET_INDEX = "asset_index"
SCHEDULE_PREFIX = "schedule:"


def asset_key(asset_id: str) -> str:
    return f"asset:{asset_id}"


def category_key(category: str) -> str:
    return f"category:{category}"


def portfolio_key(user_id: str) -> str:
    return f"portfolio:{user_id}"


def schedule_key(asset_id: str) -> str:
    return f"{SCHEDULE_PREFIX}{asset_id}"


async def load_asset(asset_id: str) -> Optional[tuple[MemeAsset, int]]:
    """Return (asset, store version) or None when the id has no record."""
    entry = await database.get_versioned(asset_key(asset_id))
    if entry is None:
        return None
    value, version = entry
    return MemeAsset.model_validate(value), version


async def load_assets(asset_ids: list[str]) -> list[MemeAsset]:
    """Load assets in *asset_ids* order, skipping dangling ids and unreadable records."""
    values = await database.get_many([asset_key(i) for i in asset_ids])
    assets = []
    for asset_id in asset_ids:
        value = values.get(asset_key(asset_id))
        if value is None:
            logger.debug(f"Skipping dangling index entry {asset_id}")
            continue
        try:
            assets.append(MemeAsset.model_validate(value))
        except ValidationError as e:
            logger.warning(f"Skipping corrupt asset record {asset_id}: {e.error_count()} errors")
    return assets


async def index_asset(asset: MemeAsset) -> None:
    """Register *asset* in the global and category indexes. Safe to repeat."""
    await database.append_member(ASSET_INDEX, asset.id)
    for category in dict.fromkeys(asset.categories):
        await database.append_member(category_key(category), asset.id)


async def load_portfolio_versioned(user_id: str) -> tuple[dict, Optional[int]]:
    entry = await database.get_versioned(portfolio_key(user_id))
    if entry is None:
        return {}, None
    return entry


async def load_portfolio(user_id: str) -> Portfolio:
    holdings, _ = await load_portfolio_versioned(user_id)
    return Portfolio(
        user_id=user_id,
        holdings={asset_id: Holding(**h) for asset_id, h in holdings.items()},
    )


async def load_schedule_versioned(asset_id: str) -> Optional[tuple[ScheduleRecord, int]]:
    entry = await database.get_versioned(schedule_key(asset_id))
    if entry is None:
        return None
    value, version = entry
    return ScheduleRecord.model_validate(value), version


async def load_schedule(asset_id: str) -> Optional[ScheduleRecord]:
    entry = await load_schedule_versioned(asset_id)
    return entry[0] if entry else None


async def load_schedules() -> list[ScheduleRecord]:
    """Every schedule record in the store, ordered by key."""
    keys = await database.list_keys(SCHEDULE_PREFIX)
    values = await database.get_many(keys)
    records = []
    for key in keys:
        if key not in values:
            continue
        try:
            records.append(ScheduleRecord.model_validate(values[key]))
        except ValidationError as e:
            logger.warning(f"Skipping corrupt schedule record {key}: {e.error_count()} errors")
    return records
