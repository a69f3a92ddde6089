"""Pytest configuration and shared fixtures."""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Ensure project root is importable regardless of where pytest is invoked
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest  # noqa: E402

from common.models import MemeAsset, PricePoint  # noqa: E402
from storage import database  # noqa: E402

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeScheduler:
    """Records schedule() calls instead of running anything."""

    def __init__(self):
        self.calls: list[tuple[str, float, dict]] = []
        self.handlers: dict = {}

    def register(self, job_name, handler):
        self.handlers[job_name] = handler

    def schedule(self, job_name, delay_seconds, payload):
        self.calls.append((job_name, delay_seconds, dict(payload)))


class FrozenClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def memory_store(tmp_path: Path, monkeypatch) -> database.MemoryStore:
    """Every test gets a fresh in-memory store and a private history directory."""
    store = database.MemoryStore()
    monkeypatch.setattr(database, "USE_POSTGRES", False)
    monkeypatch.setattr(database, "_memory", store)
    monkeypatch.setattr(database, "DATA_DIR", tmp_path)
    return store


@pytest.fixture
def fake_scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


def build_asset(**overrides) -> MemeAsset:
    fields = dict(
        id="meme_test",
        creator_id="u1",
        creator_name="alice",
        created_at=T0,
        template_id="drake",
        title="Test meme",
        categories=["tech"],
        initial_share_price=10.0,
        current_share_price=10.0,
        total_shares=1000,
        available_shares=900,
        trade_volume=0.0,
        engagement_score=10.0,
        price_history=[PricePoint(timestamp=T0, price=10.0)],
        last_updated=T0,
    )
    fields.update(overrides)
    return MemeAsset(**fields)


@pytest.fixture
def make_asset():
    return build_asset
