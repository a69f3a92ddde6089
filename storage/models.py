"""SQLAlchemy ORM models for the PostgreSQL backend of the key-value store."""
from sqlalchemy import (
    BigInteger, Column, Index, Integer, String, DECIMAL, TIMESTAMP, UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    pass


class KVEntryDB(Base):
    """One logical key (asset:{id}, portfolio:{user}, schedule:{id}) with its JSON value."""
    __tablename__ = "kv_entries"

    key = Column(String(200), primary_key=True)
    value = Column(JSONB, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(
        TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class IndexEntryDB(Base):
    """Membership row of an append-only index (asset_index, category:{name})."""
    __tablename__ = "index_entries"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    index_key = Column(String(200), nullable=False)
    member = Column(String(100), nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("index_key", "member", name="uq_index_member"),
        Index("idx_index_key", "index_key", "id"),
    )


class MarketHistoryDB(Base):
    __tablename__ = "market_history"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    asset_id = Column(String(100), nullable=False)
    timestamp = Column(TIMESTAMP(timezone=True), nullable=False)
    previous_price = Column(DECIMAL(20, 8))
    current_price = Column(DECIMAL(20, 8), nullable=False)
    price_change_percent = Column(DECIMAL(10, 6))
    market_cap = Column(DECIMAL(30, 8))
    engagement_score = Column(DECIMAL(20, 4))

    __table_args__ = (
        UniqueConstraint("asset_id", "timestamp", name="uq_history_asset_time"),
        Index("idx_history_asset", "asset_id", "timestamp"),
    )
