"""Tests for adaptive risk limits (Kelly, position caps, stress test, deleveraging)."""

from __future__ import annotations

import pytest

from src.risk.adaptive_limits import (
    BASE_LIMITS,
    KellyContext,
    compute_adaptive_kelly,
    get_adaptive_position_limits,
    get_adaptive_risk_status,
    get_deleveraging_plan,
    run_live_stress_test,
)
from tests.helpers import days_ago, insert_closed_execution


def insert_market(db_path, market_id: str, pnls: list[float], **fields) -> None:
    for pnl in pnls:
        insert_closed_execution(db_path, pnl, market_id=market_id, **fields)


class TestComputeAdaptiveKelly:
    def test_defaults(self):
        result = compute_adaptive_kelly()
        assert result.base_fraction == 0.25
        assert result.adaptive_multiplier == 1.0
        assert result.recommended_fraction == 0.25
        assert result.rationale == ["Regime: RANGE (base mult: 1.0x)"]

    def test_compounding_reductions_floor(self):
        result = compute_adaptive_kelly(
            KellyContext(
                regime="CHOP",
                recent_drawdown=40,
                volatility_percentile=95,
                model_accuracy=0.3,
            )
        )
        assert result.adaptive_multiplier == pytest.approx(0.045)
        assert result.recommended_fraction == pytest.approx(0.0125)
        assert len(result.rationale) == 4
        assert result.rationale[1].startswith("Severe drawdown")

    def test_trend_with_high_accuracy(self):
        result = compute_adaptive_kelly(
            KellyContext(
                regime="TREND_UP",
                recent_drawdown=10,
                volatility_percentile=80,
                model_accuracy=0.7,
            )
        )
        assert result.adaptive_multiplier == pytest.approx(0.88, abs=1e-3)
        assert result.recommended_fraction == pytest.approx(0.2199, abs=1e-4)
        assert "High accuracy (70%) → 15% boost" in result.rationale

    def test_drawdown_sign_ignored(self):
        result = compute_adaptive_kelly(KellyContext(recent_drawdown=-20))
        assert result.adaptive_multiplier == pytest.approx(0.6)

    def test_unknown_regime(self):
        result = compute_adaptive_kelly(KellyContext(regime="SIDEWAYS"))
        assert result.adaptive_multiplier == pytest.approx(0.7)


class TestAdaptivePositionLimits:
    def test_no_data(self, db_path):
        result = get_adaptive_position_limits(db_path=db_path)
        assert result.limits == []
        assert result.global_limits == BASE_LIMITS
        assert result.regime == "unknown"
        assert result.message == "no_data"

    def test_regime_and_caps(self, db_path):
        insert_market(db_path, "mkt-a", [2, 2, 2, -1], regime="CHOP")
        insert_market(db_path, "mkt-b", [-3, -1], regime="CHOP")
        insert_market(db_path, "mkt-c", [1, -0.5], regime="TREND_UP")

        result = get_adaptive_position_limits(db_path=db_path)
        assert result.regime == "CHOP"
        assert result.markets_tracked == 3
        assert [m.market_id for m in result.limits] == ["mkt-a", "mkt-c", "mkt-b"]

        a, c, b = result.limits
        assert a.reason == "outperforming"
        assert a.cap_multiplier == 1.3
        assert a.max_position_pct == pytest.approx(0.117)
        assert a.max_daily_loss == pytest.approx(10.83)
        assert a.win_rate == 0.75
        assert c.reason == "standard"
        assert c.max_position_pct == pytest.approx(0.09)
        assert b.reason == "underperforming"
        assert b.max_position_pct == pytest.approx(0.045)
        assert b.max_daily_loss == pytest.approx(4.17)

        g = result.global_limits
        assert g.max_daily_loss == 25.0
        assert g.max_drawdown_pct == pytest.approx(0.12)
        assert g.max_open_positions == 6
        assert g.kelly_fraction == 0.125

    def test_position_pct_capped(self, db_path):
        insert_market(db_path, "mkt-a", [1, 1, 1], regime="TREND_UP")
        limit = get_adaptive_position_limits(db_path=db_path).limits[0]
        # 0.15 × 1.1 × 1.3 = 0.2145 (< 0.30)
        assert limit.max_position_pct == pytest.approx(0.215, abs=1e-3)
        assert limit.max_position_pct <= 0.30

    def test_lookback_clamped(self, db_path):
        insert_closed_execution(db_path, 1.0, market_id="recent", closed_at=days_ago(2))
        insert_closed_execution(db_path, 1.0, market_id="old", closed_at=days_ago(60))
        insert_closed_execution(db_path, 1.0, market_id="ancient", closed_at=days_ago(120))

        assert get_adaptive_position_limits(days=0, db_path=db_path).limits == []
        ids = {m.market_id for m in get_adaptive_position_limits(days=500, db_path=db_path).limits}
        assert ids == {"recent", "old"}

    def test_open_executions_ignored(self, db_path, manager):
        manager.reserve_trade(market_id="open-1", amount=1.0, side="UP")
        assert get_adaptive_position_limits(db_path=db_path).message == "no_data"


class TestLiveStressTest:
    def test_no_data(self, db_path):
        result = run_live_stress_test(db_path=db_path)
        assert result.scenarios == []
        assert result.portfolio_risk == 0
        assert result.risk_level == "normal"

    def test_scenarios(self, db_path):
        insert_market(db_path, "m1", [-2, -2], category="sports", regime="RANGE")
        insert_market(db_path, "m2", [3], category="sports", regime="TREND_UP")
        insert_market(db_path, "m3", [-1], category="politics", regime="TREND_DOWN")

        result = run_live_stress_test(db_path=db_path)
        by_name = {s.name: s for s in result.scenarios}

        uniform = by_name["uniform_shock"]
        assert uniform.expected_loss == pytest.approx(0.8)
        assert uniform.affected_markets == 3
        assert uniform.probability == "low"

        concentration = by_name["category_concentration"]
        assert concentration.expected_loss == pytest.approx(1.4)
        assert concentration.affected_markets == 2
        assert "sports" in concentration.description

        flip = by_name["regime_flip"]
        assert flip.expected_loss == pytest.approx(1.2)
        assert flip.affected_markets == 2

        assert result.alerts == []
        assert result.portfolio_risk == 1
        assert result.risk_level == "normal"

    def test_alerts_and_risk_level(self, db_path):
        insert_market(db_path, "big", [-100, -100, -100], category="crypto")

        result = run_live_stress_test(db_path=db_path)
        assert [a.scenario for a in result.alerts] == ["category_concentration"]
        assert result.alerts[0].severity == "warning"
        assert result.portfolio_risk == 60
        assert result.risk_level == "elevated"

        severe = run_live_stress_test(shock_pct=0.5, db_path=db_path)
        assert {a.scenario: a.severity for a in severe.alerts} == {
            "uniform_shock": "critical",
            "category_concentration": "critical",
        }
        assert severe.portfolio_risk == 100
        assert severe.risk_level == "critical"


class TestDeleveragingPlan:
    @pytest.fixture()
    def history(self, db_path):
        insert_market(db_path, "d1", [-3, -3], confidence=0.6)
        insert_market(db_path, "d2", [2, 2], confidence=0.4)
        insert_market(db_path, "d3", [10], confidence=0.8)
        insert_market(db_path, "d4", [-0.5], confidence=0.7)
        return db_path

    def test_no_data(self, db_path):
        plan = get_deleveraging_plan(db_path=db_path)
        assert plan.actions == []
        assert plan.current_exposure == 0.0

    def test_closes_worst_first(self, history):
        plan = get_deleveraging_plan(max_acceptable_loss=5, db_path=history)
        assert plan.current_exposure == pytest.approx(20.5)
        assert plan.target_exposure == 5.0
        assert [a.market_id for a in plan.actions] == ["d1", "d4", "d2"]

        d1, d4, d2 = plan.actions
        assert d1.priority == "immediate"
        assert d1.rationale == "Losing market (avg P&L: -3.00)"
        assert d4.priority == "soon"
        assert d2.rationale == "Low confidence (0.40)"
        assert plan.total_risk_reduction == pytest.approx(10.5)
        assert plan.sufficient_reduction is False

    def test_stops_once_reduction_is_enough(self, history):
        plan = get_deleveraging_plan(max_acceptable_loss=15, db_path=history)
        assert [a.market_id for a in plan.actions] == ["d1"]
        assert plan.sufficient_reduction is True

    def test_within_budget(self, history):
        plan = get_deleveraging_plan(db_path=history)
        assert plan.actions == []
        assert plan.sufficient_reduction is True

    def test_at_most_ten_actions(self, db_path):
        for i in range(12):
            insert_market(db_path, f"loser-{i:02d}", [-5])
        plan = get_deleveraging_plan(max_acceptable_loss=0, db_path=db_path)
        assert len(plan.actions) == 10
        assert plan.total_risk_reduction == pytest.approx(60.0)


class TestAdaptiveRiskStatus:
    def test_bundle(self, db_path):
        insert_market(db_path, "m1", [-2, -2], category="sports", regime="TREND_UP")

        status = get_adaptive_risk_status(db_path=db_path)
        assert status.regime == "TREND_UP"
        assert status.global_limits.max_daily_loss == 65.0
        assert status.worst_scenario.name == "uniform_shock"
        assert status.kelly.rationale[0] == "Regime: TREND_UP (base mult: 1.2x)"
        assert status.alert_count == 0
        assert len(status.top_markets) == 1


class TestAccountScoping:
    @pytest.fixture()
    def two_accounts(self, db_path):
        insert_market(db_path, "mine", [5.0], account_id="test")
        insert_market(db_path, "theirs", [-400.0], account_id="other")
        return db_path

    def test_position_limits(self, two_accounts):
        mine = get_adaptive_position_limits(db_path=two_accounts, account_id="test")
        assert [m.market_id for m in mine.limits] == ["mine"]
        assert mine.limits[0].reason == "outperforming"

        store_wide = get_adaptive_position_limits(db_path=two_accounts)
        assert {m.market_id for m in store_wide.limits} == {"mine", "theirs"}

    def test_stress_test(self, two_accounts):
        mine = run_live_stress_test(db_path=two_accounts, account_id="test")
        assert mine.alerts == []
        assert mine.risk_level == "normal"
        assert mine.scenarios[0].affected_markets == 1

        theirs = run_live_stress_test(db_path=two_accounts, account_id="other")
        assert [a.scenario for a in theirs.alerts] == ["category_concentration"]

    def test_deleveraging_plan(self, two_accounts):
        mine = get_deleveraging_plan(max_acceptable_loss=10, db_path=two_accounts, account_id="test")
        assert mine.actions == []
        assert mine.current_exposure == pytest.approx(5.0)

        theirs = get_deleveraging_plan(
            max_acceptable_loss=10, db_path=two_accounts, account_id="other"
        )
        assert [a.market_id for a in theirs.actions] == ["theirs"]

    def test_status_bundle(self, two_accounts):
        status = get_adaptive_risk_status(db_path=two_accounts, account_id="test")
        assert status.alert_count == 0
        assert [m.market_id for m in status.top_markets] == ["mine"]
