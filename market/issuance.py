"""Issuance: create a meme asset, grant the founder allocation, index it and arm its valuation loop."""
import math
import secrets
from datetime import datetime
from typing import Callable

from common.errors import InvalidArgument, TransientStoreFailure
from common.logger import get_logger
from common.models import MemeAsset, MemeContent, PricePoint, ScheduleRecord, utcnow
from config.settings import (
    FOUNDER_SHARE_PCT,
    INITIAL_ENGAGEMENT_SCORE,
    TOTAL_SHARES,
    VALUATION_INTERVAL_SECONDS,
    VALUATION_JOB,
)
from storage import database
from storage.repository import (
    asset_key,
    index_asset,
    load_portfolio_versioned,
    portfolio_key,
    schedule_key,
)

logger = get_logger("issuance")


def new_meme_id(now: datetime) -> str:
    # Best-effort unique; a collision is caught by the insert-if-absent commit.
    return f"meme_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}"


def founder_shares(total_shares: int = TOTAL_SHARES) -> int:
    return int(total_shares * FOUNDER_SHARE_PCT)


class IssuanceService:
    def __init__(self, scheduler, clock: Callable[[], datetime] = utcnow,
                 interval_seconds: int = VALUATION_INTERVAL_SECONDS, max_attempts: int = 5):
        self.scheduler = scheduler
        self.clock = clock
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts

    def _build_asset(self, content: MemeContent, initial_price: float,
                     creator_id: str, creator_name: str, now: datetime) -> MemeAsset:
        grant = founder_shares()
        return MemeAsset(
            id=new_meme_id(now),
            creator_id=creator_id,
            creator_name=creator_name,
            created_at=now,
            **content.model_dump(),
            initial_share_price=initial_price,
            current_share_price=initial_price,
            total_shares=TOTAL_SHARES,
            available_shares=TOTAL_SHARES - grant,
            trade_volume=0,
            engagement_score=INITIAL_ENGAGEMENT_SCORE,
            price_history=[PricePoint(timestamp=now, price=initial_price)],
            last_updated=now,
        )

    async def _commit_issuance(self, content: MemeContent, initial_price: float,
                               creator_id: str, creator_name: str) -> MemeAsset:
        """Write asset, founder grant and schedule record as one atomic commit."""
        for attempt in range(1, self.max_attempts + 1):
            now = self.clock()
            asset = self._build_asset(content, initial_price, creator_id, creator_name, now)
            holdings, version = await load_portfolio_versioned(creator_id)
            holdings[asset.id] = {"shares": founder_shares(asset.total_shares),
                                  "average_buy_price": 0.0}
            schedule = ScheduleRecord(asset_id=asset.id, interval_seconds=self.interval_seconds,
                                      created_at=now)
            writes = {
                asset_key(asset.id): asset.model_dump(mode="json"),
                portfolio_key(creator_id): holdings,
                schedule_key(asset.id): schedule.model_dump(mode="json"),
            }
            expected = {
                asset_key(asset.id): None,
                portfolio_key(creator_id): version,
                schedule_key(asset.id): None,
            }
            if await database.commit(writes, expected):
                return asset
            logger.warning(f"Issuance commit conflict for {creator_id} (attempt {attempt}), retrying")
        raise TransientStoreFailure(
            f"Could not commit issuance for {creator_id} after {self.max_attempts} attempts"
        )

    async def _publish(self, asset: MemeAsset) -> None:
        """Index the committed asset and arm its first tick. Every step is safe to repeat."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                await index_asset(asset)
                self.scheduler.schedule(VALUATION_JOB, self.interval_seconds,
                                        {"asset_id": asset.id, "seq": 0})
                return
            except TransientStoreFailure as e:
                logger.warning(f"Publishing {asset.id} failed (attempt {attempt}), retrying: {e}")
        # The schedule record is committed, so rearm_active() indexes and arms it on restart.
        raise TransientStoreFailure(
            f"Could not publish {asset.id} after {self.max_attempts} attempts"
        )

    async def create_meme(self, content: MemeContent, initial_price: float,
                          creator_id: str, creator_name: str) -> MemeAsset:
        if not isinstance(initial_price, (int, float)) or not math.isfinite(initial_price) \
                or initial_price <= 0:
            raise InvalidArgument(f"initial price must be a positive number, got {initial_price!r}")

        asset = await self._commit_issuance(content, float(initial_price), creator_id, creator_name)
        await self._publish(asset)
        logger.info(
            f"🚀 IPO {asset.id} '{asset.title}' by {creator_name} at {asset.current_share_price:.2f}"
        )
        return asset
