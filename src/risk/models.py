"""Risk management data models.

BreakerTier, RiskState (durable), admission / sizing results, and the
PredictiveBreaker evaluation types.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import IntEnum, StrEnum

from src.sizing.kelly import KellyEstimate


class RiskStateUnavailable(Exception):
    """Durable risk state could not be read or written."""


class StaleStateError(RiskStateUnavailable):
    """risk_state row was modified by another writer (version mismatch)."""


class BreakerTier(IntEnum):
    NONE = 0
    WARNING = 1  # 日次上限の 50%
    CAUTION = 2  # 75%: 最大ポジション数を半減
    TRIPPED = 3  # 100% 超 or ベロシティ: 翌日まで停止

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def from_label(cls, label: str | None) -> "BreakerTier":
        if not label:
            return cls.NONE
        return cls[label.upper()]


@dataclass
class RiskState:
    """The single durable risk record of an account."""

    daily_pnl: float = 0.0
    daily_reset_date: str = ""
    open_positions: int = 0
    circuit_broken: bool = False
    breaker_tier: BreakerTier = BreakerTier.NONE
    # (ISO timestamp, loss): 負けトレードのみ、古い順
    velocity_window: list[tuple[str, float]] = field(default_factory=list)
    recovery_mode: bool = False
    recovery_wins: int = 0
    total_trades: int = 0
    total_pnl: float = 0.0
    version: int = 0
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: dict) -> "RiskState":
        window = json.loads(row.get("velocity_window") or "[]")
        return cls(
            daily_pnl=float(row["daily_pnl"]),
            daily_reset_date=row["daily_reset_date"] or "",
            open_positions=int(row["open_positions"]),
            circuit_broken=bool(row["circuit_broken"]),
            breaker_tier=BreakerTier.from_label(row.get("breaker_tier")),
            velocity_window=[(ts, float(loss)) for ts, loss in window],
            recovery_mode=bool(row.get("recovery_mode") or 0),
            recovery_wins=int(row.get("recovery_wins") or 0),
            total_trades=int(row["total_trades"]),
            total_pnl=float(row["total_pnl"]),
            version=int(row["version"]),
            updated_at=row["updated_at"] or "",
        )

    def to_row(self) -> dict:
        """Column values for persistence (version / updated_at are managed by the store)."""
        return {
            "daily_pnl": self.daily_pnl,
            "daily_reset_date": self.daily_reset_date,
            "open_positions": self.open_positions,
            "circuit_broken": int(self.circuit_broken),
            "breaker_tier": self.breaker_tier.label,
            "velocity_window": json.dumps([[ts, loss] for ts, loss in self.velocity_window]),
            "recovery_mode": int(self.recovery_mode),
            "recovery_wins": self.recovery_wins,
            "total_trades": self.total_trades,
            "total_pnl": self.total_pnl,
        }

    @property
    def velocity_loss(self) -> float:
        """Sum of losses currently in the velocity window (<= 0)."""
        return round(sum(loss for _, loss in self.velocity_window), 2)


@dataclass
class AdmissionDecision:
    allowed: bool
    reason: str | None = None  # machine-readable: circuit_breaker, daily_loss_limit, ...
    detail: str = ""


@dataclass
class Reservation:
    """Outcome of an atomic check-and-reserve."""

    decision: AdmissionDecision
    execution_id: int | None = None

    @property
    def allowed(self) -> bool:
        return self.decision.allowed


@dataclass
class StreakInfo:
    streak: int
    direction: str  # "win" | "loss" | "none"
    multiplier: float


@dataclass
class BetSizing:
    amount: float
    method: str  # "kelly" | "naive"
    kelly: KellyEstimate | None
    sizing_tier: str | None
    streak_mult: float
    recovery_mult: float = 1.0
    error: str | None = None  # sizing collaborator error that forced the naive branch


@dataclass
class ExposureSnapshot:
    total_exposure: float
    max_exposure: float
    by_category: dict[str, float] = field(default_factory=dict)
    warnings: list[dict] = field(default_factory=list)


@dataclass
class RiskStatus:
    """Read-only snapshot for dashboards / CLI."""

    account_id: str
    daily_pnl: float
    daily_loss_limit: float
    daily_reset_date: str
    open_positions: int
    max_positions: int
    effective_max_positions: int
    max_bet: float
    circuit_broken: bool
    breaker_tier: str
    velocity_loss: float
    recovery_mode: bool
    recovery_wins: int
    total_trades: int
    total_pnl: float
    degraded: bool
    exposure: ExposureSnapshot


# ---------------------------------------------------------------------------
# PredictiveBreaker
# ---------------------------------------------------------------------------


class BreakerStatus(StrEnum):
    NORMAL = "normal"
    CAUTIOUS = "cautious"
    HALTED = "halted"


@dataclass
class BreakerContext:
    """Live inputs from upstream forecasters. None → neutral default."""

    regime: str | None = None
    breach_prob_4h: float | None = None  # Monte Carlo 4h breach probability (0-1)
    vol_percentile: float | None = None  # 0-100
    unrealized_pnl: float | None = None
    realized_pnl_today: float | None = None


@dataclass(frozen=True)
class RegimeThresholds:
    daily_loss_limit: float
    breach_prob_halt: float
    vol_gate_percent: float


@dataclass
class Trigger:
    type: str
    severity: str  # "critical" | "warning"
    value: float
    threshold: float


@dataclass
class BreakerAction:
    action: str
    reason: str
    trim_pct: float | None = None
    size_mult: float | None = None


@dataclass
class BreakerEvaluation:
    status: BreakerStatus
    can_trade: bool
    can_open_new: bool
    regime: str
    thresholds: RegimeThresholds
    triggers: list[Trigger]
    actions: list[BreakerAction]
    metrics: dict[str, float]
    evaluated_at: str = ""
