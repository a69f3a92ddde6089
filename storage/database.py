"""Key-value store and market-history sink.

Backend is selected at startup via the DATABASE_URL environment variable:
  - DATABASE_URL=none (or unset) → in-process key-value store + CSV market history
    in data/market_history.csv (default / fallback)
  - DATABASE_URL=postgresql://... → PostgreSQL via SQLAlchemy async + asyncpg

Writes go through two concurrency-safe primitives:
  - commit(writes, expected): atomic multi-key write with per-key compare-and-set.
    expected[key] is None for "must not exist yet" or the version last read.
  - append_member(index_key, member): set-add append to an ordered index.

All public functions are async so they integrate seamlessly with FastAPI.
"""
import asyncio
import json
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import pandas as pd
from sqlalchemy.exc import SQLAlchemyError

from common.errors import TransientStoreFailure
from common.logger import get_logger
from common.models import Valuation
from config.settings import DATABASE_URL

logger = get_logger("database")

DATA_DIR = Path(__file__).parent.parent / "data"
DATA_DIR.mkdir(exist_ok=True)
HISTORY_FILE = "market_history.csv"


def normalize_db_url(url: str) -> str:
    """Normalise URL scheme for the asyncpg driver."""
    if url.startswith("postgres://"):
        return "postgresql+asyncpg://" + url[len("postgres://"):]
    if url.startswith("postgresql://") and "+asyncpg" not in url:
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


# ── Backend detection ──────────────────────────────────────────────────────────
USE_POSTGRES: bool = DATABASE_URL.lower() not in ("none", "", "null")

# PostgreSQL objects, populated only when USE_POSTGRES is True
_engine = None
_SessionFactory = None

if USE_POSTGRES:
    from sqlalchemy.dialects.postgresql import insert as pg_insert
    from sqlalchemy.ext.asyncio import (
        AsyncSession,
        async_sessionmaker,
        create_async_engine,
    )
    from sqlalchemy import select, update
    from storage.models import Base, IndexEntryDB, KVEntryDB, MarketHistoryDB

    _db_url = normalize_db_url(DATABASE_URL)
    _engine = create_async_engine(
        _db_url,
        echo=False,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
    )
    _SessionFactory = async_sessionmaker(_engine, expire_on_commit=False)
    logger.info(f"[PG] Backend: {_db_url.split('@')[-1]}")
else:
    logger.info("[MEM] Backend: in-process store, history in %s/%s", DATA_DIR, HISTORY_FILE)


# ── In-memory backend ──────────────────────────────────────────────────────────

class MemoryStore:
    """Process-local store. Values are kept JSON-encoded so callers never share state."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[str, int]] = {}
        self._indexes: dict[str, list[str]] = {}

    def get(self, key: str) -> Optional[tuple[Any, int]]:
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        raw, version = entry
        return json.loads(raw), version

    def get_many(self, keys: list[str]) -> dict[str, Any]:
        found = {}
        for key in keys:
            entry = self.get(key)
            if entry is not None:
                found[key] = entry[0]
        return found

    def commit(self, writes: dict[str, Any], expected: dict[str, Optional[int]]) -> bool:
        encoded = {key: json.dumps(value) for key, value in writes.items()}
        with self._lock:
            for key, version in expected.items():
                current = self._entries.get(key)
                if version is None and current is not None:
                    return False
                if version is not None and (current is None or current[1] != version):
                    return False
            for key, raw in encoded.items():
                current = self._entries.get(key)
                self._entries[key] = (raw, current[1] + 1 if current else 1)
        return True

    def list_keys(self, prefix: str) -> list[str]:
        with self._lock:
            return sorted(key for key in self._entries if key.startswith(prefix))

    def list_members(self, index_key: str) -> list[str]:
        with self._lock:
            return list(self._indexes.get(index_key, []))

    def append_member(self, index_key: str, member: str) -> bool:
        with self._lock:
            members = self._indexes.setdefault(index_key, [])
            if member in members:
                return False
            members.append(member)
            return True


_memory = MemoryStore()


# ── CSV helpers (sync; run via asyncio.to_thread) ─────────────────────────────

# Ticks finish independently, so appends from worker threads must not interleave.
_csv_lock = threading.Lock()


def _csv_save_valuations(valuations: list[Valuation], data_dir: Path) -> None:
    rows = [
        {
            "timestamp": v.timestamp.isoformat(),
            "asset_id": v.asset_id,
            "previous_price": v.previous_price,
            "current_price": v.current_price,
            "price_change_percent": v.price_change_percent,
            "market_cap": v.market_cap,
            "engagement_score": v.engagement_score,
        }
        for v in valuations
    ]
    df = pd.DataFrame(rows)
    path = data_dir / HISTORY_FILE
    with _csv_lock:
        df.to_csv(path, mode="a", header=not path.exists(), index=False)
    logger.info("[CSV] Saved %d valuations → %s", len(rows), path)


def _csv_load_history(asset_id: str, days: int, data_dir: Path) -> pd.DataFrame:
    path = data_dir / HISTORY_FILE
    if not path.exists():
        return pd.DataFrame()
    df = pd.read_csv(path)
    df = df[df["asset_id"] == asset_id]
    if df.empty:
        return df
    df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
    cutoff = pd.Timestamp.now(tz="UTC") - pd.Timedelta(days=days)
    return df[df["timestamp"] >= cutoff].sort_values("timestamp")


# ── PostgreSQL helpers (async) ─────────────────────────────────────────────────

class _VersionConflict(Exception):
    pass


async def _pg_get(key: str) -> Optional[tuple[Any, int]]:
    async with _SessionFactory() as session:
        stmt = select(KVEntryDB.value, KVEntryDB.version).where(KVEntryDB.key == key)
        row = (await session.execute(stmt)).first()
    return (row.value, row.version) if row else None


async def _pg_get_many(keys: list[str]) -> dict[str, Any]:
    if not keys:
        return {}
    async with _SessionFactory() as session:
        stmt = select(KVEntryDB.key, KVEntryDB.value).where(KVEntryDB.key.in_(keys))
        rows = (await session.execute(stmt)).all()
    return {row.key: row.value for row in rows}


async def _pg_write_one(session: "AsyncSession", key: str, value: Any,
                        expected: dict[str, Optional[int]]) -> None:
    if key not in expected:
        stmt = (
            pg_insert(KVEntryDB)
            .values(key=key, value=value, version=1)
            .on_conflict_do_update(
                index_elements=["key"],
                set_={"value": value, "version": KVEntryDB.version + 1},
            )
        )
        await session.execute(stmt)
        return
    version = expected[key]
    if version is None:
        stmt = (
            pg_insert(KVEntryDB)
            .values(key=key, value=value, version=1)
            .on_conflict_do_nothing(index_elements=["key"])
            .returning(KVEntryDB.key)
        )
    else:
        stmt = (
            update(KVEntryDB)
            .where(KVEntryDB.key == key, KVEntryDB.version == version)
            .values(value=value, version=version + 1)
            .returning(KVEntryDB.key)
        )
    if (await session.execute(stmt)).first() is None:
        raise _VersionConflict(key)


async def _pg_commit(writes: dict[str, Any], expected: dict[str, Optional[int]]) -> bool:
    try:
        async with _SessionFactory() as session:
            async with session.begin():
                for key, value in writes.items():
                    await _pg_write_one(session, key, value, expected)
    except _VersionConflict as e:
        logger.info("[PG] Commit rejected, version conflict on %s", e)
        return False
    return True


async def _pg_list_keys(prefix: str) -> list[str]:
    async with _SessionFactory() as session:
        stmt = (
            select(KVEntryDB.key)
            .where(KVEntryDB.key.startswith(prefix, autoescape=True))
            .order_by(KVEntryDB.key)
        )
        return list((await session.execute(stmt)).scalars().all())


async def _pg_list_members(index_key: str) -> list[str]:
    async with _SessionFactory() as session:
        stmt = (
            select(IndexEntryDB.member)
            .where(IndexEntryDB.index_key == index_key)
            .order_by(IndexEntryDB.id)
        )
        return list((await session.execute(stmt)).scalars().all())


async def _pg_append_member(index_key: str, member: str) -> bool:
    async with _SessionFactory() as session:
        async with session.begin():
            stmt = (
                pg_insert(IndexEntryDB)
                .values(index_key=index_key, member=member)
                .on_conflict_do_nothing(constraint="uq_index_member")
                .returning(IndexEntryDB.id)
            )
            return (await session.execute(stmt)).first() is not None


async def _pg_save_valuations(valuations: list[Valuation]) -> None:
    async with _SessionFactory() as session:
        async with session.begin():
            for v in valuations:
                stmt = (
                    pg_insert(MarketHistoryDB)
                    .values(
                        asset_id=v.asset_id,
                        timestamp=v.timestamp,
                        previous_price=v.previous_price,
                        current_price=v.current_price,
                        price_change_percent=v.price_change_percent,
                        market_cap=v.market_cap,
                        engagement_score=v.engagement_score,
                    )
                    .on_conflict_do_nothing(constraint="uq_history_asset_time")
                )
                await session.execute(stmt)
    logger.info("[PG] Saved %d valuations", len(valuations))


def _to_float(val) -> Optional[float]:
    return float(val) if val is not None else None


async def _pg_load_history(asset_id: str, days: int) -> pd.DataFrame:
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    async with _SessionFactory() as session:
        stmt = (
            select(MarketHistoryDB)
            .where(MarketHistoryDB.asset_id == asset_id)
            .where(MarketHistoryDB.timestamp >= cutoff)
            .order_by(MarketHistoryDB.timestamp)
        )
        rows = (await session.execute(stmt)).scalars().all()
    if not rows:
        return pd.DataFrame()
    return pd.DataFrame([
        {
            "timestamp": r.timestamp,
            "asset_id": r.asset_id,
            "previous_price": _to_float(r.previous_price),
            "current_price": _to_float(r.current_price),
            "price_change_percent": _to_float(r.price_change_percent),
            "market_cap": _to_float(r.market_cap),
            "engagement_score": _to_float(r.engagement_score),
        }
        for r in rows
    ])


async def _pg_call(fn, *args):
    try:
        return await fn(*args)
    except (SQLAlchemyError, OSError) as e:
        name = getattr(fn, "__name__", "store call")
        raise TransientStoreFailure(f"{name} failed: {e}") from e


# ── Public async API ───────────────────────────────────────────────────────────

async def get_versioned(key: str) -> Optional[tuple[Any, int]]:
    """Return (value, version) for *key*, or None when absent."""
    if USE_POSTGRES:
        return await _pg_call(_pg_get, key)
    return _memory.get(key)


async def get(key: str) -> Optional[Any]:
    entry = await get_versioned(key)
    return entry[0] if entry else None


async def get_many(keys: list[str]) -> dict[str, Any]:
    """Return the values present among *keys*; absent keys are omitted."""
    if USE_POSTGRES:
        return await _pg_call(_pg_get_many, keys)
    return _memory.get_many(keys)


async def commit(writes: dict[str, Any],
                 expected: Optional[dict[str, Optional[int]]] = None) -> bool:
    """Atomically apply *writes*; False (nothing written) if any expectation fails."""
    expected = expected or {}
    if USE_POSTGRES:
        return await _pg_call(_pg_commit, writes, expected)
    return _memory.commit(writes, expected)


async def put(key: str, value: Any) -> None:
    await commit({key: value})


async def list_keys(prefix: str) -> list[str]:
    """Return every stored key starting with *prefix*, sorted."""
    if USE_POSTGRES:
        return await _pg_call(_pg_list_keys, prefix)
    return _memory.list_keys(prefix)


async def list_members(index_key: str) -> list[str]:
    if USE_POSTGRES:
        return await _pg_call(_pg_list_members, index_key)
    return _memory.list_members(index_key)


async def append_member(index_key: str, member: str) -> bool:
    """Add *member* to the index once; returns False if it was already present."""
    if USE_POSTGRES:
        return await _pg_call(_pg_append_member, index_key, member)
    return _memory.append_member(index_key, member)


async def save_valuations(valuations: list[Valuation]) -> None:
    """Append valuations to the market history (PostgreSQL or CSV)."""
    if not valuations:
        return
    if USE_POSTGRES:
        await _pg_call(_pg_save_valuations, valuations)
    else:
        await asyncio.to_thread(_csv_save_valuations, valuations, DATA_DIR)


async def load_history(asset_id: str, days: int = 30) -> pd.DataFrame:
    """Return market history for *asset_id* over the last *days* days."""
    if USE_POSTGRES:
        return await _pg_call(_pg_load_history, asset_id, days)
    return await asyncio.to_thread(_csv_load_history, asset_id, days, DATA_DIR)


async def init_db() -> None:
    """Create all tables (idempotent). Prefer Alembic for production migrations."""
    if not USE_POSTGRES:
        return
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("[PG] Tables ensured")
