"""Tests for meme issuance."""
import asyncio

import pytest

from common.errors import InvalidArgument, TransientStoreFailure
from common.models import MemeContent
from config.settings import VALUATION_JOB
from market import issuance as issuance_module
from market.issuance import IssuanceService, founder_shares
from market.recompute import RecomputeLoop
from storage import database
from storage.repository import (
    ASSET_INDEX,
    category_key,
    load_asset,
    load_portfolio,
    load_schedule,
)


def make_content(categories=("tech",), title="Tabs vs spaces") -> MemeContent:
    return MemeContent(template_id="drake", template_url="https://i.imgur.com/dZLQxdu.png",
                       title=title, top_text="tabs", bottom_text="spaces",
                       categories=list(categories))


@pytest.fixture
def service(fake_scheduler, clock) -> IssuanceService:
    return IssuanceService(fake_scheduler, clock=clock)


@pytest.mark.asyncio
class TestCreateMeme:
    async def test_initial_market_state(self, service, clock):
        meme = await service.create_meme(make_content(), 12.5, "u1", "alice")
        assert meme.total_shares == 1000
        assert meme.available_shares == 900
        assert meme.available_shares == meme.total_shares - founder_shares(meme.total_shares)
        assert meme.current_share_price == meme.initial_share_price == 12.5
        assert meme.trade_volume == 0
        assert meme.engagement_score == 10
        assert [(p.timestamp, p.price) for p in meme.price_history] == [(clock.now, 12.5)]
        assert meme.created_at == meme.last_updated == clock.now
        assert meme.id.startswith("meme_")

    async def test_asset_is_persisted(self, service):
        meme = await service.create_meme(make_content(), 10, "u1", "alice")
        stored, version = await load_asset(meme.id)
        assert stored == meme
        assert version == 1

    async def test_founder_grant_is_free(self, service):
        meme = await service.create_meme(make_content(), 10, "u1", "alice")
        portfolio = await load_portfolio("u1")
        holding = portfolio.holdings[meme.id]
        assert holding.shares == 100
        assert holding.average_buy_price == 0

    async def test_grants_accumulate_per_creator(self, service):
        first = await service.create_meme(make_content(), 10, "u1", "alice")
        second = await service.create_meme(make_content(), 20, "u1", "alice")
        portfolio = await load_portfolio("u1")
        assert set(portfolio.holdings) == {first.id, second.id}

    async def test_registered_in_indexes(self, service):
        meme = await service.create_meme(make_content(["tech", "gaming"]), 10, "u1", "alice")
        assert await database.list_members(ASSET_INDEX) == [meme.id]
        assert await database.list_members(category_key("tech")) == [meme.id]
        assert await database.list_members(category_key("gaming")) == [meme.id]

    async def test_duplicate_categories_indexed_once(self, service):
        meme = await service.create_meme(make_content(["tech", "tech"]), 10, "u1", "alice")
        assert await database.list_members(category_key("tech")) == [meme.id]

    async def test_arms_first_valuation(self, service, fake_scheduler):
        meme = await service.create_meme(make_content(), 10, "u1", "alice")
        assert fake_scheduler.calls == [(VALUATION_JOB, 3600, {"asset_id": meme.id, "seq": 0})]

    async def test_schedule_record_active(self, service):
        meme = await service.create_meme(make_content(), 10, "u1", "alice")
        schedule = await load_schedule(meme.id)
        assert schedule.status == "active"
        assert schedule.interval_seconds == 3600

    @pytest.mark.parametrize("price", [0, -5, float("nan"), float("inf")])
    async def test_rejects_bad_price(self, service, fake_scheduler, price):
        with pytest.raises(InvalidArgument):
            await service.create_meme(make_content(), price, "u1", "alice")
        assert await database.list_members(ASSET_INDEX) == []
        assert (await load_portfolio("u1")).holdings == {}
        assert fake_scheduler.calls == []


@pytest.mark.asyncio
class TestIssuanceConsistency:
    async def test_id_collision_regenerates(self, service, monkeypatch):
        ids = iter(["meme_dup", "meme_dup", "meme_other"])
        monkeypatch.setattr(issuance_module, "new_meme_id", lambda now: next(ids))
        first = await service.create_meme(make_content(), 10, "u1", "alice")
        second = await service.create_meme(make_content(), 10, "u2", "bob")
        assert (first.id, second.id) == ("meme_dup", "meme_other")
        assert (await load_asset("meme_dup"))[0].creator_id == "u1"

    async def test_exhausted_retries_raise(self, service, fake_scheduler, monkeypatch):
        async def always_conflict(writes, expected=None):
            return False
        monkeypatch.setattr(database, "commit", always_conflict)
        with pytest.raises(TransientStoreFailure):
            await service.create_meme(make_content(), 10, "u1", "alice")
        assert fake_scheduler.calls == []
        assert await database.list_members(ASSET_INDEX) == []

    async def test_concurrent_creations_lose_no_grant(self, fake_scheduler, clock, monkeypatch):
        original = issuance_module.load_portfolio_versioned

        async def interleaving_load(user_id):
            result = await original(user_id)
            await asyncio.sleep(0)
            return result

        monkeypatch.setattr(issuance_module, "load_portfolio_versioned", interleaving_load)
        service = IssuanceService(fake_scheduler, clock=clock, max_attempts=10)
        memes = await asyncio.gather(*[
            service.create_meme(make_content(title=f"meme {i}"), 10, "u1", "alice")
            for i in range(8)
        ])
        ids = {m.id for m in memes}
        assert len(ids) == 8
        assert set((await load_portfolio("u1")).holdings) == ids
        assert set(await database.list_members(ASSET_INDEX)) == ids
        assert set(await database.list_members(category_key("tech"))) == ids
        assert len(fake_scheduler.calls) == 8


@pytest.mark.asyncio
class TestIssuancePublishing:
    @staticmethod
    def flaky_append(monkeypatch, failures: int):
        """Make the next *failures* index appends raise, then delegate to the real store."""
        original = database.append_member
        state = {"left": failures}

        async def append_member(index_key, member):
            if state["left"] > 0:
                state["left"] -= 1
                raise TransientStoreFailure("connection reset")
            return await original(index_key, member)

        monkeypatch.setattr(database, "append_member", append_member)
        return state

    async def test_index_failure_is_retried(self, service, fake_scheduler, monkeypatch):
        self.flaky_append(monkeypatch, failures=1)
        meme = await service.create_meme(make_content(), 10, "u1", "alice")
        assert await database.list_members(ASSET_INDEX) == [meme.id]
        assert await database.list_members(category_key("tech")) == [meme.id]
        assert fake_scheduler.calls == [(VALUATION_JOB, 3600, {"asset_id": meme.id, "seq": 0})]

    async def test_unpublished_meme_recovered_by_rearm_active(self, service, fake_scheduler,
                                                              clock, monkeypatch):
        outage = self.flaky_append(monkeypatch, failures=1000)
        with pytest.raises(TransientStoreFailure):
            await service.create_meme(make_content(["tech", "gaming"]), 10, "u1", "alice")

        [meme_id] = (await load_portfolio("u1")).holdings
        assert await database.list_members(ASSET_INDEX) == []
        assert fake_scheduler.calls == []

        outage["left"] = 0
        assert await RecomputeLoop(fake_scheduler, None, clock=clock).rearm_active() == 1
        assert await database.list_members(ASSET_INDEX) == [meme_id]
        assert await database.list_members(category_key("gaming")) == [meme_id]
        assert fake_scheduler.calls == [(VALUATION_JOB, 3600, {"asset_id": meme_id, "seq": 0})]

    async def test_scheduler_failure_is_retried(self, service, fake_scheduler, monkeypatch):
        original = fake_scheduler.schedule
        state = {"left": 2}

        def schedule(job_name, delay_seconds, payload):
            if state["left"] > 0:
                state["left"] -= 1
                raise TransientStoreFailure("queue unavailable")
            original(job_name, delay_seconds, payload)

        monkeypatch.setattr(fake_scheduler, "schedule", schedule)
        meme = await service.create_meme(make_content(), 10, "u1", "alice")
        assert fake_scheduler.calls == [(VALUATION_JOB, 3600, {"asset_id": meme.id, "seq": 0})]
        assert await database.list_members(ASSET_INDEX) == [meme.id]
