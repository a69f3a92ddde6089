"""Tests for the valuation algorithm and engagement scoring."""
from datetime import timedelta

import numpy as np
import pytest

from common.models import EngagementSignal
from scoring.engagement import engagement_score
from scoring.valuation import (
    compute_valuation,
    next_price,
    price_change_percent,
    volatility_factor,
    volume_factor,
)


class TestPriceChangePercent:
    def test_no_engagement_change_is_flat(self):
        assert price_change_percent(10, 10, age_days=0, trade_volume=0) == 0.0

    def test_large_gain_is_clamped(self):
        change = price_change_percent(10, 20, age_days=0, trade_volume=0)
        assert change == pytest.approx(0.3)
        assert next_price(10.0, change) == pytest.approx(13.0)

    def test_large_loss_is_clamped(self):
        change = price_change_percent(100, 10, age_days=0, trade_volume=0)
        assert change == pytest.approx(-0.3)

    def test_small_move_passes_through(self):
        assert price_change_percent(10, 11, age_days=0, trade_volume=0) == pytest.approx(0.1)

    def test_age_dampens_move(self):
        assert price_change_percent(10, 11, age_days=5, trade_volume=0) == pytest.approx(0.05)

    def test_volume_amplifies_move(self):
        assert price_change_percent(10, 11, age_days=0, trade_volume=500) == pytest.approx(0.15)

    def test_zero_prev_score_is_floored(self):
        # (20 - 10) / 10 = 1.0 -> clamped, no ZeroDivisionError
        assert price_change_percent(0, 20, age_days=0, trade_volume=0) == pytest.approx(0.3)
        assert price_change_percent(-5, 10, age_days=0, trade_volume=0) == 0.0

    def test_nan_score_is_flat(self):
        assert price_change_percent(10, float("nan"), age_days=0, trade_volume=0) == 0.0

    def test_bounded_for_random_inputs(self):
        np.random.seed(42)
        for _ in range(500):
            prev = 10 + np.random.exponential(500)
            new = np.random.uniform(-1e4, 1e5)
            age = np.random.exponential(10)
            volume = np.random.exponential(3000)
            price = np.random.uniform(0.1, 500)
            change = price_change_percent(prev, new, age, volume)
            assert -0.3 <= change <= 0.3
            assert next_price(price, change) >= 0.1


class TestFactors:
    def test_volatility_decays_with_age(self):
        assert volatility_factor(0) == pytest.approx(1.0)
        assert volatility_factor(5) == pytest.approx(0.5)

    def test_volatility_floor(self):
        assert volatility_factor(20) == pytest.approx(0.1)
        assert volatility_factor(365) == pytest.approx(0.1)

    def test_negative_age_treated_as_new(self):
        assert volatility_factor(-3) == pytest.approx(1.0)

    def test_volume_factor_capped(self):
        assert volume_factor(0) == pytest.approx(1.0)
        assert volume_factor(500) == pytest.approx(1.5)
        assert volume_factor(5000) == pytest.approx(2.0)

    def test_price_floor(self):
        assert next_price(0.1, -0.3) == pytest.approx(0.1)
        assert next_price(0.12, -0.3) == pytest.approx(0.1)


class TestComputeValuation:
    def test_spec_example(self, make_asset):
        asset = make_asset()
        v = compute_valuation(asset, 20.0, asset.created_at)
        assert v.asset_id == asset.id
        assert v.previous_price == pytest.approx(10.0)
        assert v.current_price == pytest.approx(13.0)
        assert v.price_change_percent == pytest.approx(0.3)
        assert v.market_cap == pytest.approx(13_000.0)
        assert v.engagement_score == pytest.approx(20.0)
        assert v.timestamp == asset.created_at

    def test_age_measured_from_creation(self, make_asset):
        asset = make_asset()
        v = compute_valuation(asset, 11.0, asset.created_at + timedelta(days=5))
        assert v.price_change_percent == pytest.approx(0.05)

    def test_engagement_never_below_floor(self, make_asset):
        v = compute_valuation(make_asset(), 2.0, make_asset().created_at)
        assert v.engagement_score == pytest.approx(10.0)


class TestEngagementScore:
    def test_missing_signal_keeps_fallback(self):
        assert engagement_score(None, trade_volume=50, fallback=42.0) == 42.0

    def test_weighted_combination(self):
        signal = EngagementSignal(score=100, comment_count=10)
        # 100*0.5 + 10*2 + 5*3
        assert engagement_score(signal, trade_volume=5, fallback=10) == pytest.approx(85.0)

    def test_floor(self):
        signal = EngagementSignal(score=-40, comment_count=0)
        assert engagement_score(signal, trade_volume=0, fallback=50) == pytest.approx(10.0)
