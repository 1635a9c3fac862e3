"""Kelly criterion sizing for binary prediction-market outcomes.

Buying an outcome at price p pays 1.0 if it resolves true, so the net odds
are b = (1 - p) / p and the full-Kelly fraction is f* = (b·p_model - q) / b.
The fractional Kelly actually used depends on the historical win rate of
settled trades (sizing tier) and on signal confidence.

Errors are returned, not raised: compute_signal_kelly() yields a SizingResult
whose `error` branch the caller handles explicitly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from src.store.models import CloseStats

logger = logging.getLogger(__name__)

# Sizing tiers: (min win rate, fraction, label). 決済数が不足する間は CONSERVATIVE
SIZING_TIERS = [
    (0.60, 0.5, "AGGRESSIVE"),
    (0.50, 0.25, "MODERATE"),
    (0.0, 0.125, "CONSERVATIVE"),
]
DEFAULT_FRACTION = 0.125
DEFAULT_TIER = "CONSERVATIVE"
CONFIDENCE_FULL_SIZE = 70.0  # confidence (0-100) below this scales the fraction down


@dataclass
class Recommendation:
    side: str  # "UP" | "DOWN"
    action: str  # "ENTER" | "WAIT" | ...


@dataclass
class SidePair:
    up: float | None = None
    down: float | None = None


@dataclass
class SignalTick:
    """Scored market snapshot produced by the upstream signal engine."""

    rec: Recommendation | None
    prices: SidePair = field(default_factory=SidePair)  # market price per side
    time_aware: SidePair = field(default_factory=SidePair)  # adjusted model probability
    edge: SidePair = field(default_factory=SidePair)
    confidence: float | None = None  # 0-100
    regime: str | None = None
    market_id: str = ""
    category: str | None = None

    def side_value(self, pair: SidePair) -> float | None:
        if self.rec is None:
            return None
        return pair.up if self.rec.side == "UP" else pair.down


@dataclass
class KellyEstimate:
    kelly_full: float = 0.0
    kelly_fraction: float = 0.0
    bet_pct: float = 0.0
    edge: float = 0.0
    odds: float = 0.0
    reason: str = "ok"


@dataclass
class SizingResult:
    """Either an estimate (with its tier) or an error description."""

    estimate: KellyEstimate | None = None
    sizing_tier: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.estimate is not None


def compute_kelly(
    model_prob: float | None,
    market_price: float | None,
    fraction: float = 0.25,
    max_bet_pct: float = 0.05,
    min_edge: float = 0.02,
) -> KellyEstimate:
    """Fractional Kelly for buying one side of a binary market.

    Args:
        model_prob: Model's probability that the bought side wins (0-1).
        market_price: Price paid for the side (0-1 exclusive).
        fraction: Kelly multiplier (1.0 full, 0.25 quarter).
        max_bet_pct: Cap on bet as a fraction of bankroll.
        min_edge: Minimum model_prob - market_price to bet at all.
    """
    if model_prob is None or market_price is None:
        return KellyEstimate(reason="missing_data")
    if market_price <= 0 or market_price >= 1:
        return KellyEstimate(reason="invalid_price")

    odds = (1 - market_price) / market_price
    edge = model_prob - market_price
    if edge < min_edge:
        return KellyEstimate(edge=edge, odds=odds, reason="insufficient_edge")

    kelly_full = (odds * model_prob - (1 - model_prob)) / odds
    if kelly_full <= 0:
        return KellyEstimate(edge=edge, odds=odds, reason="negative_kelly")

    kelly_frac = kelly_full * fraction
    bet_pct = min(max(kelly_frac, 0.0), max_bet_pct)
    return KellyEstimate(
        kelly_full=round(kelly_full, 4),
        kelly_fraction=round(kelly_frac, 4),
        bet_pct=round(bet_pct, 4),
        edge=round(edge, 4),
        odds=round(odds, 2),
        reason="ok",
    )


def select_sizing_tier(stats: CloseStats | None, min_settled: int = 20) -> tuple[float, str]:
    """Kelly fraction and tier label from historical win rate."""
    if stats is None or stats.settled < min_settled:
        return DEFAULT_FRACTION, DEFAULT_TIER
    for min_rate, fraction, label in SIZING_TIERS:
        if stats.win_rate >= min_rate:
            return fraction, label
    return DEFAULT_FRACTION, DEFAULT_TIER


def compute_signal_kelly(
    tick: SignalTick,
    stats: CloseStats | None = None,
    max_bet_pct: float = 0.05,
    min_edge: float = 0.02,
    min_settled: int = 20,
) -> SizingResult:
    """Kelly sizing for a signal tick, tiered by historical performance."""
    if tick.rec is None or tick.rec.action != "ENTER":
        return SizingResult(estimate=KellyEstimate(reason="no_signal"), sizing_tier="NONE")
    if tick.rec.side not in ("UP", "DOWN"):
        return SizingResult(error=f"unknown_side:{tick.rec.side}")

    fraction, tier = select_sizing_tier(stats, min_settled)

    confidence = tick.confidence
    if confidence is not None and confidence < CONFIDENCE_FULL_SIZE:
        fraction *= max(confidence, 0.0) / CONFIDENCE_FULL_SIZE

    estimate = compute_kelly(
        tick.side_value(tick.time_aware),
        tick.side_value(tick.prices),
        fraction=fraction,
        max_bet_pct=max_bet_pct,
        min_edge=min_edge,
    )
    logger.debug(
        "Kelly %s: tier=%s fraction=%.4f bet_pct=%.4f reason=%s",
        tick.market_id or "?", tier, fraction, estimate.bet_pct, estimate.reason,
    )
    return SizingResult(estimate=estimate, sizing_tier=tier)
