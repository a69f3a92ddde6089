"""Recompute loop: the self-rescheduling valuation job, one chain per asset.

Each run performs one tick (load, valuate, compare-and-set commit, record) and then
re-arms itself. A tick never raises: every failure becomes a TickOutcome. The chain
stops only when the asset's schedule record is retired.

Each armed payload carries the schedule record's ``seq``. Re-arming bumps it with a
compare-and-set, so a redelivered job arriving later finds a newer seq and is dropped
instead of starting a second chain.
"""
from datetime import datetime
from typing import Awaitable, Callable, Optional

from common.errors import NotFound, UpstreamUnavailable
from common.logger import get_logger, new_trace_id
from common.models import MemeAsset, ScheduleRecord, TickOutcome, Valuation, utcnow
from config.settings import VALUATION_INTERVAL_SECONDS, VALUATION_JOB
from ingest.base import BaseEngagementSource
from scoring.engagement import engagement_score
from scoring.valuation import compute_valuation
from storage import database
from storage.repository import (
    asset_key,
    index_asset,
    load_asset,
    load_schedule_versioned,
    load_schedules,
    schedule_key,
)

logger = get_logger("recompute")

ALREADY_RUNNING = "tick already running"
STALE_DELIVERY = "stale delivery"


class RecomputeLoop:
    def __init__(self, scheduler, engagement_source: Optional[BaseEngagementSource] = None,
                 clock: Callable[[], datetime] = utcnow,
                 interval_seconds: int = VALUATION_INTERVAL_SECONDS,
                 on_commit: Optional[Callable[[Valuation], Awaitable[None]]] = None):
        self.scheduler = scheduler
        self.engagement_source = engagement_source
        self.clock = clock
        self.interval_seconds = interval_seconds
        self.on_commit = on_commit
        self._running: set[str] = set()

    # ── Valuation ──────────────────────────────────────────────────────────────

    async def _engagement_for(self, asset: MemeAsset) -> float:
        if self.engagement_source is None:
            return asset.engagement_score
        try:
            signal = await self.engagement_source.fetch(asset)
        except UpstreamUnavailable as e:
            logger.warning(f"Engagement unavailable for {asset.id}, keeping score: {e}")
            return asset.engagement_score
        return engagement_score(signal, asset.trade_volume, fallback=asset.engagement_score)

    async def _valuate(self, asset: MemeAsset) -> Valuation:
        score = await self._engagement_for(asset)
        return compute_valuation(asset, score, self.clock())

    async def valuate(self, asset_id: str) -> Valuation:
        """Compute a fresh valuation for *asset_id* without committing it."""
        loaded = await load_asset(asset_id)
        if loaded is None:
            raise NotFound(f"Meme not found: {asset_id}")
        asset, _ = loaded
        return await self._valuate(asset)

    # ── Tick ───────────────────────────────────────────────────────────────────

    async def tick(self, asset_id: str) -> TickOutcome:
        if asset_id in self._running:
            logger.info(f"Tick for {asset_id} already running, skipping duplicate")
            return TickOutcome.skipped(asset_id, ALREADY_RUNNING)
        self._running.add(asset_id)
        try:
            return await self._tick(asset_id)
        except Exception as e:
            logger.exception(f"❌ Tick failed for {asset_id}: {e}")
            return TickOutcome.failed(asset_id, str(e))
        finally:
            self._running.discard(asset_id)

    async def _tick(self, asset_id: str) -> TickOutcome:
        loaded = await load_asset(asset_id)
        if loaded is None:
            logger.warning(f"Meme not found: {asset_id}")
            return TickOutcome.skipped(asset_id, "not found")
        asset, version = loaded

        valuation = await self._valuate(asset)
        asset.apply_valuation(valuation)
        committed = await database.commit(
            {asset_key(asset_id): asset.model_dump(mode="json")},
            expected={asset_key(asset_id): version},
        )
        if not committed:
            logger.warning(f"Version conflict committing {asset_id}, leaving it to the next tick")
            return TickOutcome.skipped(asset_id, "version conflict")

        logger.info(
            f"✅ {asset_id}: {valuation.previous_price:.2f} → {valuation.current_price:.2f} "
            f"({valuation.price_change_percent:+.1%}) engagement={valuation.engagement_score:.1f}"
        )
        await self._record(valuation)
        return TickOutcome.committed(asset_id, valuation)

    async def _record(self, valuation: Valuation) -> None:
        try:
            await database.save_valuations([valuation])
        except Exception as e:
            logger.warning(f"Market history sink failed for {valuation.asset_id}: {e}")
        if self.on_commit is None:
            return
        try:
            await self.on_commit(valuation)
        except Exception as e:
            logger.warning(f"on_commit listener failed for {valuation.asset_id}: {e}")

    # ── Scheduling ─────────────────────────────────────────────────────────────

    def arm(self, asset_id: str, delay_seconds: Optional[int] = None,
            seq: Optional[int] = None) -> None:
        delay = self.interval_seconds if delay_seconds is None else delay_seconds
        payload = {"asset_id": asset_id}
        if seq is not None:
            payload["seq"] = seq
        self.scheduler.schedule(VALUATION_JOB, delay, payload)

    async def _is_stale(self, asset_id: str, seq: Optional[int]) -> bool:
        if seq is None:
            return False
        try:
            entry = await load_schedule_versioned(asset_id)
        except Exception as e:
            logger.warning(f"Could not read schedule for {asset_id}, running delivery: {e}")
            return False
        return entry is not None and entry[0].seq != seq

    async def _rearm(self, asset_id: str, seq: Optional[int]) -> None:
        """Advance the schedule token and arm the next run; at most one delivery per token wins."""
        try:
            entry = await load_schedule_versioned(asset_id)
        except Exception as e:
            logger.warning(f"Could not read schedule for {asset_id}, re-arming anyway: {e}")
            self.arm(asset_id, seq=seq)
            return
        if entry is None:
            self.arm(asset_id, seq=seq)
            return

        record, version = entry
        if record.status == "retired":
            logger.info(f"Schedule for {asset_id} retired, not re-arming")
            return
        if seq is not None and record.seq != seq:
            logger.info(f"Schedule for {asset_id} moved past seq {seq}, not re-arming")
            return
        advanced = record.model_copy(update={"seq": record.seq + 1})
        committed = await database.commit(
            {schedule_key(asset_id): advanced.model_dump(mode="json")},
            expected={schedule_key(asset_id): version},
        )
        if not committed:
            logger.info(f"Schedule for {asset_id} re-armed concurrently, not re-arming")
            return
        self.arm(asset_id, record.interval_seconds, seq=advanced.seq)

    async def run(self, payload: dict) -> TickOutcome:
        """Scheduled job handler: one tick, then re-arm with the same interval and id."""
        new_trace_id()
        asset_id = payload["asset_id"]
        seq = payload.get("seq")
        if await self._is_stale(asset_id, seq):
            logger.info(f"Stale delivery for {asset_id} (seq {seq}), skipping")
            return TickOutcome.skipped(asset_id, STALE_DELIVERY)
        outcome = await self.tick(asset_id)
        if outcome.reason == ALREADY_RUNNING:
            # The running invocation owns the chain and re-arms it.
            return outcome
        try:
            await self._rearm(asset_id, seq)
        except Exception as e:
            logger.exception(f"Failed to re-arm valuation for {asset_id}: {e}")
        return outcome

    async def retire(self, asset_id: str) -> None:
        """Stop the chain for *asset_id* at its next run."""
        entry = await load_schedule_versioned(asset_id)
        if entry is None:
            record = ScheduleRecord(asset_id=asset_id, status="retired",
                                    interval_seconds=self.interval_seconds, created_at=self.clock())
        else:
            record = entry[0].model_copy(update={"status": "retired"})
        await database.put(schedule_key(asset_id), record.model_dump(mode="json"))
        logger.info(f"Retired valuation schedule for {asset_id}")

    async def rearm_active(self) -> int:
        """Index and arm every active schedule.

        Used at startup: pending jobs do not survive a restart, and an issuance that
        failed after its commit left a schedule record but possibly no index entries.
        """
        armed = 0
        for schedule in await load_schedules():
            if schedule.status == "retired":
                continue
            loaded = await load_asset(schedule.asset_id)
            if loaded is None:
                logger.warning(f"Schedule for {schedule.asset_id} has no asset, skipping")
                continue
            await index_asset(loaded[0])
            self.arm(schedule.asset_id, schedule.interval_seconds, seq=schedule.seq)
            armed += 1
        logger.info(f"Re-armed {armed} valuation schedules")
        return armed
