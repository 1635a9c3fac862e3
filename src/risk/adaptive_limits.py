"""Adaptive risk limits derived from regime and recent closed-trade history.

Replaces static risk budgets with regime-scaled ones:
- adaptive Kelly fraction (regime / drawdown / volatility / accuracy)
- per-market position caps from recent performance
- live stress test (uniform, category and regime-flip shocks)
- deleveraging recommendations

Stateless: every function reads trade_executions and writes nothing. Pass
account_id to scope the history to one account; None reads the whole store.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from src.risk.models import RegimeThresholds
from src.store.db import get_market_performance
from src.store.models import MarketPerformance
from src.store.schema import DEFAULT_DB_PATH

logger = logging.getLogger(__name__)

# PredictiveBreaker の閾値テーブル (レジーム別)
REGIME_THRESHOLDS: dict[str, RegimeThresholds] = {
    "TREND_UP": RegimeThresholds(daily_loss_limit=30, breach_prob_halt=0.45, vol_gate_percent=95),
    "TREND_DOWN": RegimeThresholds(daily_loss_limit=25, breach_prob_halt=0.40, vol_gate_percent=90),
    "RANGE": RegimeThresholds(daily_loss_limit=20, breach_prob_halt=0.35, vol_gate_percent=90),
    "CHOP": RegimeThresholds(daily_loss_limit=12, breach_prob_halt=0.25, vol_gate_percent=80),
}
DEFAULT_THRESHOLDS = RegimeThresholds(daily_loss_limit=20, breach_prob_halt=0.35, vol_gate_percent=90)


@dataclass(frozen=True)
class RegimeMultiplier:
    kelly: float
    position_cap: float
    loss_limit: float


REGIME_MULTIPLIERS: dict[str, RegimeMultiplier] = {
    "TREND_UP": RegimeMultiplier(kelly=1.2, position_cap=1.1, loss_limit=1.3),
    "TREND_DOWN": RegimeMultiplier(kelly=0.8, position_cap=0.9, loss_limit=0.8),
    "RANGE": RegimeMultiplier(kelly=1.0, position_cap=1.0, loss_limit=1.0),
    "CHOP": RegimeMultiplier(kelly=0.5, position_cap=0.6, loss_limit=0.5),
    "unknown": RegimeMultiplier(kelly=0.7, position_cap=0.8, loss_limit=0.7),
}


@dataclass(frozen=True)
class GlobalLimits:
    max_daily_loss: float
    max_drawdown_pct: float
    max_open_positions: int
    kelly_fraction: float


BASE_LIMITS = GlobalLimits(
    max_daily_loss=50.0,
    max_drawdown_pct=0.20,
    max_open_positions=10,
    kelly_fraction=0.25,
)
BASE_MAX_POSITION_PCT = 0.15
MAX_POSITION_PCT_CAP = 0.30
TOP_MARKETS = 20
MAX_DELEVERAGE_ACTIONS = 10


def thresholds_for_regime(regime: str | None) -> RegimeThresholds:
    return REGIME_THRESHOLDS.get(regime or "", DEFAULT_THRESHOLDS)


def multiplier_for_regime(regime: str | None) -> RegimeMultiplier:
    return REGIME_MULTIPLIERS.get(regime or "unknown", REGIME_MULTIPLIERS["unknown"])


# ---------------------------------------------------------------------------
# Adaptive Kelly
# ---------------------------------------------------------------------------


@dataclass
class KellyContext:
    regime: str | None = None
    recent_drawdown: float | None = None  # USD, sign ignored
    volatility_percentile: float | None = None  # 0-100
    model_accuracy: float | None = None  # 0-1


@dataclass
class AdaptiveKelly:
    base_fraction: float
    adaptive_multiplier: float
    recommended_fraction: float
    rationale: list[str] = field(default_factory=list)


def compute_adaptive_kelly(context: KellyContext | None = None) -> AdaptiveKelly:
    """Regime-scaled Kelly fraction.

    Missing context values default to regime RANGE, drawdown 0, volatility
    percentile 50 and accuracy 0.5.
    """
    context = context or KellyContext()
    regime = context.regime or "RANGE"
    drawdown = abs(context.recent_drawdown or 0.0)
    vol_pct = context.volatility_percentile if context.volatility_percentile is not None else 50.0
    accuracy = context.model_accuracy if context.model_accuracy is not None else 0.5

    regime_mult = multiplier_for_regime(regime)
    multiplier = regime_mult.kelly
    rationale = [f"Regime: {regime} (base mult: {regime_mult.kelly}x)"]

    if drawdown > 30:
        multiplier *= 0.3
        rationale.append(f"Severe drawdown (${drawdown:g}) → 70% reduction")
    elif drawdown > 15:
        multiplier *= 0.6
        rationale.append(f"Moderate drawdown (${drawdown:g}) → 40% reduction")
    elif drawdown > 5:
        multiplier *= 0.85
        rationale.append(f"Minor drawdown (${drawdown:g}) → 15% reduction")

    if vol_pct > 90:
        multiplier *= 0.5
        rationale.append(f"Extreme volatility (p{vol_pct:g}) → 50% reduction")
    elif vol_pct > 75:
        multiplier *= 0.75
        rationale.append(f"High volatility (p{vol_pct:g}) → 25% reduction")

    if accuracy > 0.65:
        multiplier *= 1.15
        rationale.append(f"High accuracy ({accuracy * 100:.0f}%) → 15% boost")
    elif accuracy < 0.45:
        multiplier *= 0.6
        rationale.append(f"Low accuracy ({accuracy * 100:.0f}%) → 40% reduction")

    recommended = BASE_LIMITS.kelly_fraction * min(2.0, max(0.05, multiplier))
    return AdaptiveKelly(
        base_fraction=BASE_LIMITS.kelly_fraction,
        adaptive_multiplier=round(multiplier, 3),
        recommended_fraction=round(recommended, 4),
        rationale=rationale,
    )


# ---------------------------------------------------------------------------
# Position limits
# ---------------------------------------------------------------------------


@dataclass
class MarketLimit:
    market_id: str
    category: str
    max_position_pct: float
    max_daily_loss: float
    win_rate: float
    avg_pnl: float
    trades: int
    cap_multiplier: float
    reason: str  # outperforming | standard | underperforming


@dataclass
class PositionLimits:
    limits: list[MarketLimit]
    global_limits: GlobalLimits
    regime: str
    regime_multiplier: RegimeMultiplier | None = None
    markets_tracked: int = 0
    message: str | None = None


def _dominant_regime(rows: list[MarketPerformance]) -> str:
    counts: dict[str, int] = {}
    for r in rows:
        key = r.regime or "unknown"
        counts[key] = counts.get(key, 0) + r.trades
    # 同数の場合は先に現れたレジーム
    return max(counts.items(), key=lambda kv: kv[1])[0] if counts else "RANGE"


def _cap_multiplier(win_rate: float, avg_pnl: float) -> float:
    if win_rate > 0.65 and avg_pnl > 0:
        return 1.3
    if win_rate < 0.4 or avg_pnl < 0:
        return 0.5
    if win_rate < 0.5:
        return 0.7
    return 1.0


def get_adaptive_position_limits(
    days: int = 7,
    db_path: Path | str = DEFAULT_DB_PATH,
    *,
    account_id: str | None = None,
) -> PositionLimits:
    """Per-market and global limits scaled by the dominant regime of recent trades."""
    rows = get_market_performance(days, db_path=db_path, account_id=account_id)
    if not rows:
        return PositionLimits(limits=[], global_limits=BASE_LIMITS, regime="unknown", message="no_data")

    regime = _dominant_regime(rows)
    regime_mult = multiplier_for_regime(regime)

    limits = []
    for r in rows:
        win_rate = r.wins / r.trades if r.trades > 0 else 0.5
        avg_pnl = r.total_pnl / r.trades if r.trades > 0 else 0.0
        cap_mult = _cap_multiplier(win_rate, avg_pnl)

        max_pct = round(BASE_MAX_POSITION_PCT * regime_mult.position_cap * cap_mult, 3)
        max_loss = BASE_LIMITS.max_daily_loss * regime_mult.loss_limit * cap_mult / max(1, len(rows))
        if cap_mult > 1:
            reason = "outperforming"
        elif cap_mult < 0.7:
            reason = "underperforming"
        else:
            reason = "standard"

        limits.append(
            MarketLimit(
                market_id=r.market_id,
                category=r.category or "unknown",
                max_position_pct=min(MAX_POSITION_PCT_CAP, max_pct),
                max_daily_loss=round(max_loss, 2),
                win_rate=round(win_rate, 3),
                avg_pnl=round(avg_pnl, 2),
                trades=r.trades,
                cap_multiplier=round(cap_mult, 3),
                reason=reason,
            )
        )

    limits.sort(key=lambda m: m.max_position_pct, reverse=True)

    global_limits = GlobalLimits(
        max_daily_loss=round(BASE_LIMITS.max_daily_loss * regime_mult.loss_limit, 2),
        max_drawdown_pct=round(
            BASE_LIMITS.max_drawdown_pct * (0.6 if regime == "CHOP" else 1.0), 3
        ),
        max_open_positions=round(BASE_LIMITS.max_open_positions * regime_mult.position_cap),
        kelly_fraction=round(BASE_LIMITS.kelly_fraction * regime_mult.kelly, 4),
    )
    logger.debug("Adaptive limits: regime=%s markets=%d", regime, len(rows))
    return PositionLimits(
        limits=limits[:TOP_MARKETS],
        global_limits=global_limits,
        regime=regime,
        regime_multiplier=regime_mult,
        markets_tracked=len(rows),
    )


# ---------------------------------------------------------------------------
# Stress test
# ---------------------------------------------------------------------------


@dataclass
class StressScenario:
    name: str
    description: str
    expected_loss: float
    affected_markets: int
    probability: str  # "low" | "medium"


@dataclass
class StressAlert:
    scenario: str
    severity: str  # "critical" | "warning"
    expected_loss: float
    limit: float
    type: str = "stress_breach"
    action: str = "Consider reducing exposure"


@dataclass
class StressTestResult:
    scenarios: list[StressScenario]
    portfolio_risk: int
    risk_level: str
    alerts: list[StressAlert]
    shock_magnitude: float
    global_daily_limit: float


def run_live_stress_test(
    days: int = 14,
    shock_pct: float = 0.10,
    db_path: Path | str = DEFAULT_DB_PATH,
    *,
    account_id: str | None = None,
) -> StressTestResult:
    """Expected loss of recent markets under three shock scenarios."""
    limit = BASE_LIMITS.max_daily_loss
    rows = get_market_performance(days, db_path=db_path, account_id=account_id)
    if not rows:
        return StressTestResult(
            scenarios=[],
            portfolio_risk=0,
            risk_level="normal",
            alerts=[],
            shock_magnitude=shock_pct,
            global_daily_limit=limit,
        )

    uniform_total = sum(abs(r.avg_pnl) * r.trades * shock_pct for r in rows)

    by_category: dict[str, list[float]] = {}
    for r in rows:
        by_category.setdefault(r.category or "unknown", []).append(abs(r.total_pnl))
    worst_cat, worst_exposures = max(by_category.items(), key=lambda kv: sum(kv[1]))

    trend_rows = [r for r in rows if r.regime and "TREND" in r.regime]
    regime_flip_loss = sum(abs(r.avg_pnl) * r.trades * 0.3 for r in trend_rows)

    scenarios = [
        StressScenario(
            name="uniform_shock",
            description=f"{shock_pct * 100:.0f}% adverse move across all markets",
            expected_loss=round(uniform_total, 2),
            affected_markets=len(rows),
            probability="low",
        ),
        StressScenario(
            name="category_concentration",
            description=f"Worst category ({worst_cat}) collapses",
            expected_loss=round(sum(worst_exposures) * shock_pct * 2, 2),
            affected_markets=len(worst_exposures),
            probability="medium",
        ),
        StressScenario(
            name="regime_flip",
            description="Trend regime flips to chop, trend-following positions impaired",
            expected_loss=round(regime_flip_loss, 2),
            affected_markets=len(trend_rows),
            probability="medium",
        ),
    ]

    alerts = [
        StressAlert(
            scenario=s.name,
            severity="critical" if s.expected_loss > limit * 2 else "warning",
            expected_loss=s.expected_loss,
            limit=limit,
        )
        for s in scenarios
        if s.expected_loss > limit
    ]

    max_loss = max(s.expected_loss for s in scenarios)
    portfolio_risk = min(100, round(max_loss / limit * 50))
    if portfolio_risk > 70:
        risk_level = "critical"
    elif portfolio_risk > 40:
        risk_level = "elevated"
    else:
        risk_level = "normal"

    if alerts:
        logger.warning(
            "Stress test: %d scenario(s) exceed $%.0f daily limit (risk=%d %s)",
            len(alerts), limit, portfolio_risk, risk_level,
        )
    return StressTestResult(
        scenarios=scenarios,
        portfolio_risk=portfolio_risk,
        risk_level=risk_level,
        alerts=alerts,
        shock_magnitude=shock_pct,
        global_daily_limit=limit,
    )


# ---------------------------------------------------------------------------
# Deleveraging
# ---------------------------------------------------------------------------


@dataclass
class DeleverageAction:
    market_id: str
    action: str  # "close"
    priority: str  # "immediate" | "soon"
    rationale: str
    risk_reduction: float


@dataclass
class DeleveragingPlan:
    actions: list[DeleverageAction]
    total_risk_reduction: float
    current_exposure: float
    target_exposure: float
    sufficient_reduction: bool


def get_deleveraging_plan(
    max_acceptable_loss: float = 50.0,
    days: int = 7,
    db_path: Path | str = DEFAULT_DB_PATH,
    *,
    account_id: str | None = None,
) -> DeleveragingPlan:
    """Close recommendations, worst performers first, until exposure fits the budget.

    Exposure is the sum of |realized P&L| per market over the lookback.
    """
    rows = get_market_performance(days, db_path=db_path, account_id=account_id)
    # 損益の悪い順、同額なら確信度の低い順
    rows.sort(key=lambda r: (r.total_pnl, r.avg_confidence or 0.0))

    total_exposure = sum(abs(r.total_pnl) for r in rows)
    needed = total_exposure - max_acceptable_loss
    actions: list[DeleverageAction] = []
    reduced = 0.0

    for r in rows:
        if reduced >= needed:
            break
        avg_pnl = r.total_pnl / r.trades if r.trades > 0 else 0.0
        avg_conf = r.avg_confidence or 0.0
        if avg_pnl >= 0 and avg_conf >= 0.5:
            continue

        risk = abs(r.total_pnl)
        if avg_pnl < 0:
            rationale = f"Losing market (avg P&L: {avg_pnl:.2f})"
        else:
            rationale = f"Low confidence ({avg_conf:.2f})"
        actions.append(
            DeleverageAction(
                market_id=r.market_id,
                action="close",
                priority="immediate" if avg_pnl < -1 else "soon",
                rationale=rationale,
                risk_reduction=round(risk, 2),
            )
        )
        reduced += risk

    return DeleveragingPlan(
        actions=actions[:MAX_DELEVERAGE_ACTIONS],
        total_risk_reduction=round(reduced, 2),
        current_exposure=round(total_exposure, 2),
        target_exposure=round(max_acceptable_loss, 2),
        sufficient_reduction=reduced >= needed,
    )


# ---------------------------------------------------------------------------
# Bundle
# ---------------------------------------------------------------------------


@dataclass
class AdaptiveRiskStatus:
    kelly: AdaptiveKelly
    global_limits: GlobalLimits
    top_markets: list[MarketLimit]
    regime: str
    portfolio_risk: int
    risk_level: str
    worst_scenario: StressScenario | None
    alert_count: int


def get_adaptive_risk_status(
    db_path: Path | str = DEFAULT_DB_PATH,
    *,
    account_id: str | None = None,
) -> AdaptiveRiskStatus:
    """Position limits + stress test, with a Kelly fraction fed by both."""
    limits = get_adaptive_position_limits(db_path=db_path, account_id=account_id)
    stress = run_live_stress_test(db_path=db_path, account_id=account_id)
    worst = stress.scenarios[0] if stress.scenarios else None
    kelly = compute_adaptive_kelly(
        KellyContext(
            regime=limits.regime,
            recent_drawdown=worst.expected_loss if worst else 0.0,
            volatility_percentile=50,
            model_accuracy=0.55,
        )
    )
    return AdaptiveRiskStatus(
        kelly=kelly,
        global_limits=limits.global_limits,
        top_markets=limits.limits[:5],
        regime=limits.regime,
        portfolio_risk=stress.portfolio_risk,
        risk_level=stress.risk_level,
        worst_scenario=worst,
        alert_count=len(stress.alerts),
    )
