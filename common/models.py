"""Core Pydantic models for the meme market."""
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator

from config.settings import MIN_ENGAGEMENT_SCORE, PRICE_HISTORY_LIMIT


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PricePoint(BaseModel):
    timestamp: datetime
    price: float


class MemeContent(BaseModel):
    template_id: str
    template_url: str = ""
    title: str
    top_text: str = ""
    bottom_text: str = ""
    categories: list[str] = []
    post_id: Optional[str] = None   # external post whose engagement drives price


class MemeAsset(BaseModel):
    id: str
    creator_id: str
    creator_name: str
    created_at: datetime

    template_id: str
    template_url: str = ""
    title: str
    top_text: str = ""
    bottom_text: str = ""
    categories: list[str] = []
    post_id: Optional[str] = None

    initial_share_price: float = Field(gt=0)
    current_share_price: float = Field(gt=0)
    total_shares: int = Field(gt=0)
    available_shares: int = Field(ge=0)
    trade_volume: float = Field(default=0.0, ge=0)
    engagement_score: float = Field(default=MIN_ENGAGEMENT_SCORE, ge=MIN_ENGAGEMENT_SCORE)
    price_history: list[PricePoint] = []
    last_updated: datetime

    @model_validator(mode="after")
    def _check_market_state(self) -> "MemeAsset":
        if self.available_shares > self.total_shares:
            raise ValueError(
                f"available_shares {self.available_shares} exceeds total_shares {self.total_shares}"
            )
        if len(self.price_history) > PRICE_HISTORY_LIMIT:
            raise ValueError(f"price_history longer than {PRICE_HISTORY_LIMIT} samples")
        return self

    @property
    def market_cap(self) -> float:
        return self.total_shares * self.current_share_price

    def apply_valuation(self, valuation: "Valuation") -> None:
        """Write a committed valuation into the market state, evicting the oldest sample on overflow."""
        self.current_share_price = valuation.current_price
        self.engagement_score = valuation.engagement_score
        self.last_updated = valuation.timestamp
        self.price_history.append(
            PricePoint(timestamp=valuation.timestamp, price=valuation.current_price)
        )
        if len(self.price_history) > PRICE_HISTORY_LIMIT:
            self.price_history = self.price_history[-PRICE_HISTORY_LIMIT:]


class Holding(BaseModel):
    shares: int
    average_buy_price: float


class Portfolio(BaseModel):
    user_id: str
    holdings: dict[str, Holding] = {}


class EngagementSignal(BaseModel):
    score: float
    comment_count: int = 0


class Valuation(BaseModel):
    asset_id: str
    previous_price: float
    current_price: float
    price_change_percent: float
    market_cap: float
    engagement_score: float
    timestamp: datetime


class ScheduleRecord(BaseModel):
    asset_id: str
    status: Literal["active", "retired"] = "active"
    interval_seconds: int
    created_at: datetime
    # Token of the one job allowed to re-arm; deliveries carrying an older seq are stale.
    seq: int = Field(default=0, ge=0)


class TickOutcome(BaseModel):
    asset_id: str
    status: Literal["committed", "skipped", "failed"]
    reason: Optional[str] = None
    valuation: Optional[Valuation] = None
    finished_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def committed(cls, asset_id: str, valuation: Valuation) -> "TickOutcome":
        return cls(asset_id=asset_id, status="committed", valuation=valuation)

    @classmethod
    def skipped(cls, asset_id: str, reason: str) -> "TickOutcome":
        return cls(asset_id=asset_id, status="skipped", reason=reason)

    @classmethod
    def failed(cls, asset_id: str, reason: str) -> "TickOutcome":
        return cls(asset_id=asset_id, status="failed", reason=reason)
