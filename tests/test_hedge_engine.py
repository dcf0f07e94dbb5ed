"""
Tests for hedge decisions.

Uses a $1,000 exposure, 50% target and 15% band unless stated otherwise:
- short $450 (45%) -> IN_RANGE
- short $300 (30%) -> OPEN_HEDGE $200
- short $800 (80%) -> CLOSE_HEDGE $300
"""

import math

import pytest

from core.exceptions import DecisionConfigInvalid
from core.hedge_engine import HedgeConfig, HedgeDecisionEngine, decide, short_notional_by_asset
from core.models import HedgeAction, HedgePosition, HedgeSide, TreasuryExposure


def _exposure(symbol="SOL", value=1000.0, listed=True):
    return TreasuryExposure(symbol=symbol, value_usd=value, hl_listed=listed)


def _short(coin="SOL", size=0.0):
    return HedgePosition(coin=coin, side=HedgeSide.SHORT, size_usd=size)


class TestDecide:
    def setup_method(self):
        self.config = HedgeConfig(target_ratio=0.5, rebalance_threshold=0.15, min_exposure_usd=100.0)

    def test_within_band_is_in_range(self):
        [decision] = decide([_exposure()], [_short(size=450.0)], self.config)

        assert decision.action == HedgeAction.IN_RANGE
        assert decision.delta_usd == 0.0
        assert decision.current_ratio == pytest.approx(0.45)

    def test_under_hedged_opens_short(self):
        [decision] = decide([_exposure()], [_short(size=300.0)], self.config)

        assert decision.action == HedgeAction.OPEN_HEDGE
        assert decision.delta_usd == pytest.approx(200.0)

    def test_over_hedged_closes_short(self):
        [decision] = decide([_exposure()], [_short(size=800.0)], self.config)

        assert decision.action == HedgeAction.CLOSE_HEDGE
        assert decision.delta_usd == pytest.approx(300.0)

    def test_no_short_opens_full_target(self):
        [decision] = decide([_exposure()], [], self.config)

        assert decision.action == HedgeAction.OPEN_HEDGE
        assert decision.delta_usd == pytest.approx(500.0)
        assert decision.short_usd == 0.0

    def test_unlisted_and_small_exposures_skipped(self):
        exposures = [
            _exposure("JUP", listed=False),
            _exposure("BONK", value=50.0),
            _exposure("ETH", value=100.0),
        ]

        decisions = decide(exposures, [], self.config)

        assert [d.symbol for d in decisions] == ["ETH"]

    def test_whitelist_restricts_assets(self):
        config = HedgeConfig(whitelist=("sol", "btc"))

        decisions = decide([_exposure("SOL"), _exposure("ETH"), _exposure("BTC")], [], config)

        assert [d.symbol for d in decisions] == ["SOL", "BTC"]

    def test_output_follows_input_order(self):
        exposures = [_exposure("ETH"), _exposure("BTC"), _exposure("SOL")]

        assert [d.symbol for d in decide(exposures, [], self.config)] == ["ETH", "BTC", "SOL"]

    def test_shorts_matched_by_canonical_symbol(self):
        hedges = [
            _short("SOL-PERP", 200.0),
            _short("sol", 100.0),
            HedgePosition(coin="SOL", side=HedgeSide.LONG, size_usd=999.0),
        ]

        [decision] = decide([_exposure("jitoSOL")], hedges, self.config)

        assert decision.symbol == "SOL"
        assert decision.short_usd == pytest.approx(300.0)
        assert decision.action == HedgeAction.OPEN_HEDGE

    def test_max_short_caps_open_delta(self):
        config = HedgeConfig(max_short_usd=350.0)

        [decision] = decide([_exposure()], [_short(size=300.0)], config)

        assert decision.action == HedgeAction.OPEN_HEDGE
        assert decision.delta_usd == pytest.approx(50.0)

    def test_max_short_reached_holds(self):
        config = HedgeConfig(max_short_usd=300.0)

        [decision] = decide([_exposure()], [_short(size=300.0)], config)

        assert decision.action == HedgeAction.IN_RANGE

    def test_small_adjustments_below_min_action_held(self):
        config = HedgeConfig(target_ratio=0.5, rebalance_threshold=0.01, min_action_usd=25.0)

        [decision] = decide([_exposure()], [_short(size=480.0)], config)

        assert decision.action == HedgeAction.IN_RANGE

    def test_pure_function(self):
        exposures = [_exposure()]
        hedges = [_short(size=300.0)]

        first = decide(exposures, hedges, self.config)
        second = decide(exposures, hedges, self.config)

        assert first == second
        assert hedges[0].size_usd == 300.0

    def test_engine_binds_config(self):
        engine = HedgeDecisionEngine(self.config)

        [decision] = engine.decide([_exposure()], [_short(size=800.0)])

        assert decision.action == HedgeAction.CLOSE_HEDGE


class TestHedgeConfig:
    @pytest.mark.parametrize("kwargs", [
        {"target_ratio": 1.5},
        {"target_ratio": -0.1},
        {"target_ratio": math.nan},
        {"rebalance_threshold": 0.0},
        {"rebalance_threshold": -0.2},
        {"min_exposure_usd": -1.0},
        {"max_short_usd": -5.0},
        {"min_action_usd": -1.0},
    ])
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(DecisionConfigInvalid):
            HedgeConfig(**kwargs)

    def test_from_policy(self):
        config = HedgeConfig.from_policy({"hedge": {
            "target_ratio": 0.6,
            "rebalance_threshold": 0.1,
            "min_exposure_usd": 250,
            "whitelist": ["wSOL", "ETH"],
            "max_short_usd": 5000,
        }})

        assert config.target_ratio == 0.6
        assert config.whitelist == ("SOL", "ETH")
        assert config.max_short_usd == 5000.0
        assert config.min_action_usd == 0.0

    def test_from_policy_defaults(self):
        assert HedgeConfig.from_policy({}) == HedgeConfig()

    def test_from_policy_malformed(self):
        with pytest.raises(DecisionConfigInvalid):
            HedgeConfig.from_policy({"hedge": {"target_ratio": "half"}})


def test_short_notional_ignores_longs_and_sums_by_asset():
    hedges = [
        _short("ETH", -120.0),
        _short("ETH-PERP", 80.0),
        HedgePosition(coin="BTC", side=HedgeSide.LONG, size_usd=50.0),
    ]

    assert short_notional_by_asset(hedges) == {"ETH": pytest.approx(200.0)}
