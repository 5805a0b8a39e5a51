"""
Tests for trend-reversal detection and the score tiers.
"""
from decimal import Decimal

import pytest

from riskgate.config.config import ReversalConfig
from riskgate.domain.models import MarketStateSnapshot, Position, Side
from riskgate.exceptions import TransientIOError
from riskgate.risk.reversal import (
    ExitAction,
    ReversalClassifier,
    ReversalPolicy,
    ReversalTier,
    has_reversed,
    trend_alignment,
)


class TestHasReversed:

    def test_long_uptrend_to_downtrend(self):
        assert has_reversed("long", "uptrend_x", "downtrend_y") is True

    def test_long_stays_uptrend(self):
        assert has_reversed("long", "uptrend_x", "uptrend_y") is False

    def test_unknown_entry_state(self):
        assert has_reversed("long", None, "downtrend_y") is False
        assert has_reversed("long", "", "downtrend_y") is False

    def test_short_downtrend_to_uptrend(self):
        assert has_reversed(Side.SHORT, "downtrend_overbought", "uptrend_continuation") is True

    def test_short_entered_in_uptrend_is_not_a_reversal(self):
        assert has_reversed(Side.SHORT, "uptrend_x", "uptrend_y") is False

    def test_range_current_state(self):
        assert has_reversed("long", "uptrend_x", "range_bound") is False

    def test_accepts_snapshots(self):
        entry = MarketStateSnapshot(state="uptrend_oversold")
        current = MarketStateSnapshot(state="downtrend_continuation")
        assert has_reversed(Side.LONG, entry, current) is True


class TestTrendAlignment:

    def test_alignment(self):
        assert trend_alignment("long", "uptrend_x") == "aligned"
        assert trend_alignment("short", "uptrend_x") == "opposed"
        assert trend_alignment(Side.SHORT, "downtrend_x") == "aligned"
        assert trend_alignment("long", "range_tight") == "neutral"
        assert trend_alignment("long", None) == "neutral"


class TestReversalPolicy:

    @pytest.fixture
    def policy(self):
        return ReversalPolicy(ReversalConfig())

    @pytest.mark.parametrize(
        "score,tier",
        [
            (100, ReversalTier.IMMEDIATE_EXIT),
            (60, ReversalTier.IMMEDIATE_EXIT),
            (59.9, ReversalTier.ADVISORY_EXIT),
            (40, ReversalTier.ADVISORY_EXIT),
            (39, ReversalTier.EARLY_WARNING),
            (25, ReversalTier.EARLY_WARNING),
            (24.9, ReversalTier.NONE),
            (0, ReversalTier.NONE),
        ],
    )
    def test_current_thresholds(self, policy, score, tier):
        assert policy.classify(score) == tier

    def test_legacy_preset(self):
        policy = ReversalPolicy(ReversalConfig(preset="legacy"))
        assert policy.classify(65) == ReversalTier.ADVISORY_EXIT
        assert policy.classify(70) == ReversalTier.IMMEDIATE_EXIT
        assert policy.classify(45) == ReversalTier.EARLY_WARNING
        assert policy.classify(29) == ReversalTier.NONE

    def test_immediate_exit_ignores_pnl(self, policy):
        assert policy.decide(75, pnl_percent=-30) == ExitAction.CLOSE

    def test_advisory_closes_profitable_position(self, policy):
        assert policy.decide(50, pnl_percent=3.0) == ExitAction.CLOSE

    def test_advisory_closes_small_loss(self, policy):
        assert policy.decide(50, pnl_percent=-4.9) == ExitAction.CLOSE

    def test_advisory_holds_deep_loss(self, policy):
        assert policy.decide(50, pnl_percent=-5.0) == ExitAction.HOLD
        assert policy.decide(50, pnl_percent=-12.0) == ExitAction.HOLD

    def test_early_warning_freezes_trailing(self, policy):
        assert policy.decide(30, pnl_percent=8.0) == ExitAction.FREEZE_TRAILING

    def test_below_low_no_action(self, policy):
        assert policy.decide(10, pnl_percent=-20.0) == ExitAction.NONE


class TestReversalClassifier:

    def _position(self, side=Side.LONG, entry_state="uptrend_oversold"):
        return Position(
            symbol="ETH/USDT",
            side=side,
            quantity=Decimal("1"),
            entry_order_id="entry-1",
            entry_market_state=MarketStateSnapshot(state=entry_state) if entry_state else None,
        )

    @pytest.mark.asyncio
    async def test_assess_reversed_position(self, market):
        market.states["ETH"] = "downtrend_continuation"
        classifier = ReversalClassifier(market)

        result = await classifier.assess(self._position(), reversal_score=72, pnl_percent=-2.0)

        assert result.symbol == "ETH"
        assert result.reversed is True
        assert result.tier == ReversalTier.IMMEDIATE_EXIT
        assert result.should_close is True
        assert result.alignment == "opposed"

    @pytest.mark.asyncio
    async def test_assess_without_entry_state(self, market):
        market.states["ETH"] = "downtrend_continuation"
        classifier = ReversalClassifier(market)

        result = await classifier.assess(self._position(entry_state=None), reversal_score=10, pnl_percent=1.0)

        assert result.reversed is False
        assert result.action == ExitAction.NONE

    @pytest.mark.asyncio
    async def test_provider_failure_keeps_score_tier(self, market):
        market.error = TransientIOError("analyzer down")
        classifier = ReversalClassifier(market)

        result = await classifier.assess(self._position(), reversal_score=90, pnl_percent=-1.0)

        assert result.reversed is False
        assert result.current_state is None
        assert result.alignment == "neutral"
        assert result.tier == ReversalTier.IMMEDIATE_EXIT
        assert result.action == ExitAction.CLOSE
        assert result.should_close is True

    @pytest.mark.asyncio
    async def test_provider_failure_with_low_score_takes_no_action(self, market):
        market.error = TransientIOError("analyzer down")
        classifier = ReversalClassifier(market)

        result = await classifier.assess(self._position(), reversal_score=10, pnl_percent=-1.0)

        assert result.tier == ReversalTier.NONE
        assert result.action == ExitAction.NONE


class TestMarketStateSnapshot:

    def test_from_dict_nested_alignment(self):
        snap = MarketStateSnapshot.from_dict(
            {
                "state": "uptrend_continuation",
                "trendStrength": "strong",
                "momentumState": "accelerating",
                "confidence": 0.8,
                "timeframeAlignment": {"alignmentScore": 0.75},
            }
        )
        assert snap.state == "uptrend_continuation"
        assert snap.trend_strength == "strong"
        assert snap.timeframe_alignment == 0.75

    def test_from_dict_flat_snake_case(self):
        snap = MarketStateSnapshot.from_dict({"state": "range_bound", "timeframe_alignment": 0.4})
        assert snap.timeframe_alignment == 0.4
        assert snap.confidence == 0.0
