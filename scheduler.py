#!/usr/bin/env python3
"""
In-process job scheduler, plus a standalone one-shot revaluation of every meme.

JobScheduler is the "run this job after N seconds" facility the API uses to drive
the recompute loop. Delivery is fire-and-forget; pending jobs live in memory and
are re-armed from schedule records at startup.

Run: python scheduler.py
Or add to cron: 0 * * * * cd /srv/meme-market && ./venv/bin/python scheduler.py
"""
import asyncio
from typing import Awaitable, Callable

from common.logger import get_logger, new_trace_id
from ingest.sources import make_engagement_source
from market.recompute import RecomputeLoop
from storage import database
from storage.repository import ASSET_INDEX

logger = get_logger("scheduler")

JobHandler = Callable[[dict], Awaitable[object]]


class JobScheduler:
    def __init__(self):
        self._handlers: dict[str, JobHandler] = {}
        self._tasks: set[asyncio.Task] = set()

    def register(self, job_name: str, handler: JobHandler) -> None:
        self._handlers[job_name] = handler

    def schedule(self, job_name: str, delay_seconds: float, payload: dict) -> None:
        """Run *job_name* with *payload* after *delay_seconds*. Requires a running loop."""
        if job_name not in self._handlers:
            raise ValueError(f"No handler registered for job {job_name!r}")
        task = asyncio.create_task(self._run_after(max(0.0, delay_seconds), job_name, dict(payload)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_after(self, delay_seconds: float, job_name: str, payload: dict) -> None:
        await asyncio.sleep(delay_seconds)
        try:
            await self._handlers[job_name](payload)
        except Exception as e:
            logger.exception(f"Job {job_name} failed for {payload}: {e}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Scheduler stopped, {len(tasks)} pending jobs dropped")


async def revalue_all() -> list:
    """Run one valuation tick for every indexed meme without re-arming."""
    await database.init_db()
    loop = RecomputeLoop(JobScheduler(), engagement_source=make_engagement_source())
    outcomes = []
    for asset_id in await database.list_members(ASSET_INDEX):
        outcome = await loop.tick(asset_id)
        outcomes.append(outcome)
        change = f"{outcome.valuation.price_change_percent:+.1%}" if outcome.valuation else ""
        print(f"{asset_id:<32} {outcome.status:<10} {change:>8}  {outcome.reason or ''}")
    return outcomes


def main():
    new_trace_id()
    logger.info("🚀 Revaluation cycle started")
    outcomes = asyncio.run(revalue_all())
    done = sum(1 for o in outcomes if o.status == "committed")
    logger.info(f"✅ Done: {done}/{len(outcomes)} memes revalued")


if __name__ == "__main__":
    main()
