"""Predictive circuit breaker.

Halts or scales back before the static daily-loss limit is hit:
- regime-aware thresholds (tighter in CHOP, looser in TREND)
- 4h breach-probability gate from the upstream Monte Carlo forecaster
- volatility-gated entry
- position heat (unrealized drawdown) and combined realized+unrealized stress

evaluate() is a pure function of its context; the breaker keeps only a small
cache of the last evaluation for inspection.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from src.risk.adaptive_limits import DEFAULT_THRESHOLDS, thresholds_for_regime
from src.risk.models import (
    BreakerAction,
    BreakerContext,
    BreakerEvaluation,
    BreakerStatus,
    Trigger,
)
from src.store.db import count_audit_events, get_daily_pnl, log_audit_event

logger = logging.getLogger(__name__)

HEAT_RATIO = 0.6  # 含み損がリミットの 60% を超えたら trim
COMBINED_RATIO = 0.8
BREACH_CRITICAL = 0.6  # レジームに関係なく絶対値
TRIM_PCT = 0.30
STRESS_SIZE_MULT = 0.5
HALT_ACTIONS = ("halt_trading", "halt_and_trim")
STATUS_LOOKBACK_DAYS = 7


def evaluate_context(context: BreakerContext, now: str = "") -> BreakerEvaluation:
    """Evaluate triggers and derive the breaker status for one context."""
    regime = context.regime or "RANGE"
    thresholds = thresholds_for_regime(regime)
    limit = thresholds.daily_loss_limit

    realized = context.realized_pnl_today if context.realized_pnl_today is not None else 0.0
    unrealized = context.unrealized_pnl if context.unrealized_pnl is not None else 0.0
    breach = context.breach_prob_4h if context.breach_prob_4h is not None else 0.0
    vol_pct = context.vol_percentile if context.vol_percentile is not None else 50.0

    triggers: list[Trigger] = []
    actions: list[BreakerAction] = []

    # 1. 実現損失
    if realized < -limit:
        triggers.append(Trigger("realized_loss", "critical", round(realized, 2), -limit))
        actions.append(BreakerAction("halt_trading", "Daily loss limit exceeded"))

    # 2. ブリーチ確率
    if breach > thresholds.breach_prob_halt:
        critical = breach > BREACH_CRITICAL
        triggers.append(
            Trigger(
                "breach_probability",
                "critical" if critical else "warning",
                round(breach, 3),
                thresholds.breach_prob_halt,
            )
        )
        if critical:
            actions.append(
                BreakerAction("halt_and_trim", "High breach probability, halt and reduce positions")
            )
        else:
            actions.append(
                BreakerAction("block_new_entries", "Elevated breach probability, no new positions")
            )

    # 3. ボラティリティ
    if vol_pct > thresholds.vol_gate_percent:
        triggers.append(Trigger("volatility_gate", "warning", vol_pct, thresholds.vol_gate_percent))
        actions.append(BreakerAction("block_new_entries", "Volatility exceeds regime threshold"))

    # 4. ポジションヒート
    heat_threshold = limit * HEAT_RATIO
    if unrealized < -heat_threshold:
        triggers.append(
            Trigger(
                "position_heat",
                "critical" if unrealized < -limit else "warning",
                round(unrealized, 2),
                -heat_threshold,
            )
        )
        actions.append(
            BreakerAction(
                "trim_positions", "Unrealized losses exceeding heat threshold", trim_pct=TRIM_PCT
            )
        )

    # 5. 実現 + 含み損
    combined = realized + min(0.0, unrealized)
    if combined < -limit * COMBINED_RATIO:
        triggers.append(
            Trigger(
                "combined_stress",
                "warning",
                round(combined, 2),
                round(-limit * COMBINED_RATIO, 2),
            )
        )
        actions.append(
            BreakerAction("reduce_size", "Combined P&L approaching limit", size_mult=STRESS_SIZE_MULT)
        )

    # critical な position_heat 単独では halt/caution にならない
    if any(a.action in HALT_ACTIONS for a in actions):
        status = BreakerStatus.HALTED
    elif any(a.action == "block_new_entries" for a in actions) or any(
        t.severity == "warning" for t in triggers
    ):
        status = BreakerStatus.CAUTIOUS
    else:
        status = BreakerStatus.NORMAL

    return BreakerEvaluation(
        status=status,
        can_trade=status != BreakerStatus.HALTED,
        can_open_new=status == BreakerStatus.NORMAL,
        regime=regime,
        thresholds=thresholds,
        triggers=triggers,
        actions=actions,
        metrics={
            "realized_today": round(realized, 2),
            "unrealized_pnl": round(unrealized, 2),
            "combined_pnl": round(combined, 2),
            "breach_prob_4h": round(breach, 3),
            "vol_percentile": vol_pct,
            "daily_budget_used": round(abs(realized) / limit, 3) if limit > 0 else 0.0,
        },
        evaluated_at=now,
    )


@dataclass
class BreakerSnapshot:
    status: BreakerStatus
    reason: str | None
    halted_at: str | None
    last_check: str | None
    trim_count: int


@dataclass
class BreakerDay:
    date: str
    pnl: float
    trades: int
    would_halt: bool


@dataclass
class BreakerReport:
    current: BreakerSnapshot
    halts_last_7_days: int
    loss_days_last_7: int
    total_days: int
    avg_daily_pnl: float
    recent_days: list[BreakerDay]


class PredictiveBreaker:
    """Stateless evaluator with a last-evaluation cache.

    With a db_path, transitions into `halted` are written to the audit log
    and get_breaker_status() can report 7-day history. With an account_id
    both are scoped to that account; without one the whole store is read.
    """

    def __init__(
        self,
        db_path: Path | str | None = None,
        *,
        account_id: str | None = None,
    ) -> None:
        self.db_path = db_path
        self.account_id = account_id
        self._lock = threading.Lock()
        self._status = BreakerStatus.NORMAL
        self._reason: str | None = None
        self._halted_at: str | None = None
        self._last_check: str | None = None
        self._trims = 0
        self._last: BreakerEvaluation | None = None

    @property
    def last_evaluation(self) -> BreakerEvaluation | None:
        return self._last

    @property
    def status(self) -> BreakerStatus:
        return self._status

    def evaluate(self, context: BreakerContext | None = None) -> BreakerEvaluation:
        now = datetime.now(timezone.utc).isoformat()
        result = evaluate_context(context or BreakerContext(), now)

        with self._lock:
            prev = self._status
            self._last_check = now
            self._status = result.status
            self._last = result
            if result.status == BreakerStatus.HALTED:
                halt = next(a for a in result.actions if a.action in HALT_ACTIONS)
                self._reason = halt.reason
                if prev != BreakerStatus.HALTED:
                    self._halted_at = now
            elif result.status == BreakerStatus.CAUTIOUS:
                self._reason = result.triggers[0].type if result.triggers else "elevated_risk"
            else:
                self._reason = None
            # 遷移はロック内で確定させる (並行 evaluate で二重記録しない)
            transition = (prev, self._reason) if result.status != prev else None

        if transition is not None:
            prev, reason = transition
            logger.warning(
                "Predictive breaker %s → %s (regime=%s, triggers=%s)",
                prev,
                result.status,
                result.regime,
                ",".join(t.type for t in result.triggers) or "-",
            )
            if result.status == BreakerStatus.HALTED and self.db_path is not None:
                log_audit_event(
                    "HALT_TRADING",
                    f"{reason} (regime={result.regime})",
                    db_path=self.db_path,
                    account_id=self.account_id,
                )
        return result

    def record_trim(self) -> int:
        """Count an executed trim_positions action."""
        with self._lock:
            self._trims += 1
            return self._trims

    def reset(self, reason: str = "manual_reset") -> BreakerStatus:
        with self._lock:
            self._status = BreakerStatus.NORMAL
            self._reason = None
            self._halted_at = None
        logger.info("Predictive breaker reset: %s", reason)
        return self._status

    def snapshot(self) -> BreakerSnapshot:
        with self._lock:
            return BreakerSnapshot(
                status=self._status,
                reason=self._reason,
                halted_at=self._halted_at,
                last_check=self._last_check,
                trim_count=self._trims,
            )

    def get_breaker_status(self) -> BreakerReport:
        """Current state plus 7-day halt count and daily realized P&L."""
        if self.db_path is None:
            raise ValueError("get_breaker_status requires a db_path")
        halts = count_audit_events(
            ["CIRCUIT_BREAK", "VELOCITY_BREAK", "HALT_TRADING"],
            days=STATUS_LOOKBACK_DAYS,
            db_path=self.db_path,
            account_id=self.account_id,
        )
        days = get_daily_pnl(
            STATUS_LOOKBACK_DAYS, db_path=self.db_path, account_id=self.account_id
        )
        avg = sum(d.pnl for d in days) / len(days) if days else 0.0
        return BreakerReport(
            current=self.snapshot(),
            halts_last_7_days=halts,
            loss_days_last_7=sum(1 for d in days if d.pnl < 0),
            total_days=len(days),
            avg_daily_pnl=round(avg, 2),
            recent_days=[
                BreakerDay(
                    date=d.day,
                    pnl=round(d.pnl, 2),
                    trades=d.trades,
                    would_halt=d.pnl < -DEFAULT_THRESHOLDS.daily_loss_limit,
                )
                for d in days[:STATUS_LOOKBACK_DAYS]
            ],
        )
