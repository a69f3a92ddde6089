"""
MEME MARKET v0.1: demo entry point
Issues a handful of sample memes, runs simulated valuation ticks and prints the trending board.
Run: python run.py [ticks]
"""
import asyncio
import sys

from common.logger import get_logger, new_trace_id
from common.models import MemeContent
from config.settings import VALUATION_JOB
from ingest.simulated import SimulatedEngagementSource
from market.issuance import IssuanceService
from market.ranking import get_trending, last_tick_change
from market.recompute import RecomputeLoop
from scheduler import JobScheduler
from storage.database import init_db

logger = get_logger("run")

SAMPLE_MEMES = [
    (MemeContent(template_id="drake", template_url="https://i.imgur.com/dZLQxdu.png",
                 title="Tabs vs spaces", categories=["tech"]), 10.0),
    (MemeContent(template_id="distracted", template_url="https://i.imgur.com/tpLdFRn.png",
                 title="Me and the new console", categories=["gaming", "tech"]), 25.0),
    (MemeContent(template_id="button", template_url="https://i.imgur.com/sYkuXlX.png",
                 title="Cat or dog", categories=["animals"]), 5.0),
    (MemeContent(template_id="change", template_url="https://i.imgur.com/tKDx1uo.jpeg",
                 title="Sequels are better", categories=["movies"]), 40.0),
]


async def simulate(ticks: int) -> None:
    await init_db()
    scheduler = JobScheduler()
    recompute = RecomputeLoop(scheduler, engagement_source=SimulatedEngagementSource(seed=7))
    scheduler.register(VALUATION_JOB, recompute.run)
    issuance = IssuanceService(scheduler)

    memes = []
    for content, price in SAMPLE_MEMES:
        memes.append(await issuance.create_meme(content, price, "demo", "demo_user"))

    for _ in range(ticks):
        for meme in memes:
            await recompute.tick(meme.id)

    board = await get_trending(limit=len(memes))
    await scheduler.shutdown()

    print("\n" + "="*78)
    print("  📈  MEME MARKET v0.1  |  Trending board")
    print("="*78)
    print(f"{'Title':<28} {'Price':>9} {'Change':>9} {'Engagement':>11} {'Mkt Cap':>12}")
    print("-"*78)
    for meme in board:
        change = last_tick_change(meme)
        arrow = "🟢" if change > 0 else "🔴" if change < 0 else "🟡"
        print(
            f"{meme.title:<28}"
            f" {meme.current_share_price:>9.2f}"
            f" {change:>+9.1%}"
            f" {meme.engagement_score:>11.1f}"
            f" {meme.market_cap:>12.0f}"
            f"  {arrow}"
        )
    print("="*78 + "\n")


def main():
    new_trace_id()
    ticks = int(sys.argv[1]) if len(sys.argv) > 1 else 5
    asyncio.run(simulate(ticks))


if __name__ == "__main__":
    main()
