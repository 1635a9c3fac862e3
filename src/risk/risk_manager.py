"""Durable admission control: circuit breaker tiers, loss velocity, recovery mode.

RiskManager owns the account's RiskState (one SQLite row), loaded once at
construction. can_trade() is the read-only gate every trade proposal passes;
reserve_trade() is the atomic check-and-reserve; record_trade_close() and
release_reservation() report committed facts back.

Every state change is computed on a copy, written with a version
compare-and-swap inside BEGIN IMMEDIATE, and only then swapped in. A failed
write leaves the in-memory state at the last persisted version and puts the
manager in degraded mode, where admission answers `state_unavailable`.
"""

from __future__ import annotations

import copy
import logging
import sqlite3
import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TypeVar

from src.config import settings
from src.risk.models import (
    AdmissionDecision,
    BetSizing,
    BreakerTier,
    ExposureSnapshot,
    Reservation,
    RiskState,
    RiskStateUnavailable,
    RiskStatus,
    StaleStateError,
    StreakInfo,
)
from src.risk.trading_config import TradingConfig
from src.sizing.kelly import SignalTick, SizingResult, compute_signal_kelly
from src.store.db import (
    append_trade_close,
    close_execution,
    fail_execution,
    fetch_open_executions,
    get_close_stats,
    get_open_executions,
    get_recent_closes,
    insert_audit_event,
    insert_execution,
    load_risk_state_row,
    save_risk_state_row,
    transaction,
)
from src.store.db_path import resolve_db_path
from src.store.models import TradeExecution

logger = logging.getLogger(__name__)

T = TypeVar("T")

# --- ハードコード定数 ---
WARNING_RATIO = 0.50
CAUTION_RATIO = 0.75
TRIP_RATIO = 1.00  # strictly greater than → TRIPPED
STREAK_LOOKBACK = 10
LOSS_STREAK_SEVERE = 5
LOSS_STREAK_MILD = 3
WIN_STREAK_MIN = 3
WIN_STREAK_STEP = 0.05
WIN_STREAK_CAP = 1.2
MIN_BET_USD = 0.1
NAIVE_EDGE_SCALE = 10.0
NAIVE_DEFAULT_EDGE = 0.1


def tier_for_loss_ratio(ratio: float) -> BreakerTier:
    """Pure function: breaker tier from |daily loss| / daily loss limit."""
    if ratio > TRIP_RATIO:
        return BreakerTier.TRIPPED
    if ratio >= CAUTION_RATIO:
        return BreakerTier.CAUTION
    if ratio >= WARNING_RATIO:
        return BreakerTier.WARNING
    return BreakerTier.NONE


def streak_multiplier(pnls: list[float]) -> StreakInfo:
    """Pure function: current same-direction run over closes ordered newest first.

    Loss run >= 5 → 0.25, >= 3 → 0.5. Win run >= 3 → 1.0 + 0.05 per win
    beyond 2, capped at 1.2. A zero-P&L close ends a run.
    """
    if not pnls or pnls[0] == 0:
        return StreakInfo(streak=0, direction="none", multiplier=1.0)

    winning = pnls[0] > 0
    streak = 0
    for pnl in pnls:
        if (pnl > 0) != winning or pnl == 0:
            break
        streak += 1

    if not winning:
        if streak >= LOSS_STREAK_SEVERE:
            mult = 0.25
        elif streak >= LOSS_STREAK_MILD:
            mult = 0.5
        else:
            mult = 1.0
        return StreakInfo(streak=streak, direction="loss", multiplier=mult)

    mult = 1.0
    if streak >= WIN_STREAK_MIN:
        mult = min(WIN_STREAK_CAP, 1.0 + WIN_STREAK_STEP * (streak - 2))
    return StreakInfo(streak=streak, direction="win", multiplier=round(mult, 4))


def prune_velocity_window(
    window: list[tuple[str, float]],
    now: datetime,
    minutes: int,
) -> list[tuple[str, float]]:
    """Keep losses younger than `minutes`."""
    cutoff = now - timedelta(minutes=minutes)
    return [(ts, loss) for ts, loss in window if datetime.fromisoformat(ts) > cutoff]


def _clamp(value: float, lo: float, hi: float) -> float:
    return min(hi, max(lo, value))


def compute_exposure(
    executions: list[TradeExecution],
    max_exposure: float,
    concentration_limit_pct: float,
) -> ExposureSnapshot:
    by_category: dict[str, float] = {}
    total = 0.0
    for ex in executions:
        total += ex.amount
        cat = ex.category or "other"
        by_category[cat] = by_category.get(cat, 0.0) + ex.amount

    warnings = []
    for cat, amount in by_category.items():
        pct = amount / total * 100 if total > 0 else 0.0
        if pct >= concentration_limit_pct:
            warnings.append(
                {"category": cat, "exposure_usd": amount, "concentration_pct": round(pct)}
            )
    return ExposureSnapshot(
        total_exposure=total,
        max_exposure=max_exposure,
        by_category=by_category,
        warnings=warnings,
    )


class RiskManager:
    """Admission-control authority for one account."""

    def __init__(
        self,
        db_path: Path | str | None = None,
        *,
        account_id: str | None = None,
        config: TradingConfig | None = None,
        kelly_sizer: Callable[[SignalTick], SizingResult] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.db_path = db_path or resolve_db_path()
        self.account_id = account_id or settings.account_id
        self.config = config or TradingConfig(self.db_path)
        self._kelly_sizer = kelly_sizer or self._default_kelly_sizer
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.RLock()
        self._state = RiskState()
        self._degraded = False
        self._pending_trip: tuple[str, str] | None = None
        try:
            self._load()
        except RiskStateUnavailable:
            logger.error("Risk state unavailable at startup: admission denied until reload")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        try:
            with transaction(self.db_path) as conn:
                row = load_risk_state_row(conn, self.account_id)
        except sqlite3.Error as e:
            self._degraded = True
            logger.error("Risk state load failed for %s: %s", self.account_id, e)
            raise RiskStateUnavailable(str(e)) from e
        self._state = RiskState.from_row(row)
        self._degraded = False
        logger.info(
            "Risk state loaded: account=%s daily_pnl=%.2f open=%d tier=%s v%d",
            self.account_id,
            self._state.daily_pnl,
            self._state.open_positions,
            self._state.breaker_tier.label,
            self._state.version,
        )

    def _apply(self, mutate: Callable[[sqlite3.Connection, RiskState], T]) -> T:
        """Run `mutate` on a copy of the state inside one transaction and persist it.

        The copy replaces the in-memory state only after commit.
        """
        new = copy.deepcopy(self._state)
        try:
            with transaction(self.db_path) as conn:
                result = mutate(conn, new)
                if new != self._state:
                    if not save_risk_state_row(
                        conn, self.account_id, new.to_row(), self._state.version
                    ):
                        raise StaleStateError(
                            f"risk_state v{self._state.version} for {self.account_id} "
                            "was modified by another writer"
                        )
                    new.version = self._state.version + 1
        except StaleStateError:
            self._degraded = True
            logger.error("Stale risk state for %s: reload required", self.account_id)
            raise
        except sqlite3.Error as e:
            self._degraded = True
            logger.error("Risk state write failed for %s: %s", self.account_id, e)
            raise RiskStateUnavailable(str(e)) from e
        self._state = new
        self._degraded = False
        return result

    def _try_recover(self) -> bool:
        """Reload the persisted state after a failure. Returns True if healthy again.

        A manual trip that could not be written is re-applied after the
        reload, following any rollover that is due.
        """
        try:
            self._load()
            self.roll_over_day()
            if self._pending_trip is not None:
                reason, actor = self._pending_trip
                self._apply(lambda conn, s: self._trip(conn, s, reason, actor))
                self._pending_trip = None
        except RiskStateUnavailable:
            if self._pending_trip is not None:
                self._state.circuit_broken = True
            return False
        return True

    def _today(self) -> str:
        return self._clock().astimezone(timezone.utc).date().isoformat()

    @property
    def state(self) -> RiskState:
        """Copy of the current in-memory state."""
        with self._lock:
            return copy.deepcopy(self._state)

    @property
    def degraded(self) -> bool:
        return self._degraded

    # ------------------------------------------------------------------
    # Day rollover
    # ------------------------------------------------------------------

    def roll_over_day(self, today: str | None = None) -> bool:
        """Reset the daily counters once per UTC day. Idempotent.

        Called by DailyRolloverTimer at midnight and, as a backstop, by every
        entry point. Returns True if a rollover happened.
        """
        with self._lock:
            today = today or self._today()
            if self._state.daily_reset_date == today:
                return False

            def mutate(conn: sqlite3.Connection, s: RiskState) -> bool:
                was_tripped = s.breaker_tier == BreakerTier.TRIPPED
                prev_date, prev_pnl = s.daily_reset_date, s.daily_pnl
                s.daily_pnl = 0.0
                s.daily_reset_date = today
                s.circuit_broken = False
                s.breaker_tier = BreakerTier.NONE
                s.velocity_window = []
                if was_tripped:
                    s.recovery_mode = True
                    s.recovery_wins = 0
                insert_audit_event(
                    conn,
                    "DAY_ROLLOVER",
                    f"{prev_date or '-'} → {today} daily_pnl={prev_pnl:.2f} "
                    f"recovery={was_tripped}",
                    account_id=self.account_id,
                )
                return was_tripped

            entered_recovery = self._apply(mutate)
            logger.info(
                "Day rollover → %s (account=%s)%s",
                today,
                self.account_id,
                ", entering recovery mode" if entered_recovery else "",
            )
            return True

    def _ensure_ready(self) -> AdmissionDecision | None:
        """Backstop rollover + degraded-mode handling. Returns a denial or None."""
        if self._degraded and not self._try_recover():
            return AdmissionDecision(False, "state_unavailable", "risk state store unreachable")
        try:
            self.roll_over_day()
        except RiskStateUnavailable as e:
            return AdmissionDecision(False, "state_unavailable", str(e))
        return None

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def effective_max_positions(self) -> int:
        max_positions = self.config.max_open_positions
        if self._state.breaker_tier == BreakerTier.CAUTION:
            return max(1, max_positions // 2)
        return max_positions

    def _check_admission(
        self,
        executions: list[TradeExecution],
        category: str | None,
    ) -> AdmissionDecision:
        s = self._state
        limit = self.config.daily_loss_limit_usd

        if s.circuit_broken:
            return AdmissionDecision(False, "circuit_breaker", f"tier={s.breaker_tier.label}")
        if s.daily_pnl <= -limit:
            return AdmissionDecision(
                False, "daily_loss_limit", f"daily_pnl={s.daily_pnl:.2f}<=-{limit:.2f}"
            )

        max_positions = self.effective_max_positions()
        if s.open_positions >= max_positions:
            reason = (
                "max_positions_caution"
                if s.breaker_tier == BreakerTier.CAUTION
                else "max_positions"
            )
            return AdmissionDecision(False, reason, f"open={s.open_positions}>={max_positions}")

        exposure = compute_exposure(
            executions,
            self.config.max_total_exposure_usd,
            self.config.max_category_concentration_pct,
        )
        if exposure.total_exposure >= exposure.max_exposure:
            return AdmissionDecision(
                False,
                "total_exposure_limit",
                f"${exposure.total_exposure:.2f}/${exposure.max_exposure:.2f}",
            )

        if category and exposure.total_exposure > 0:
            cat_exposure = exposure.by_category.get(category, 0.0)
            cat_pct = cat_exposure / exposure.total_exposure * 100
            if cat_exposure > 0 and cat_pct >= self.config.max_category_concentration_pct:
                return AdmissionDecision(
                    False, "category_concentration", f"{category}: {cat_pct:.0f}%"
                )

        return AdmissionDecision(True)

    def can_trade(self, category: str | None = None) -> AdmissionDecision:
        """Main gate: may a new position be opened? No persisted mutation beyond rollover."""
        with self._lock:
            if not settings.risk_check_enabled:
                return AdmissionDecision(True, None, "risk checks disabled")
            denial = self._ensure_ready()
            if denial is not None:
                return denial
            try:
                executions = get_open_executions(self.account_id, db_path=self.db_path)
            except sqlite3.Error as e:
                logger.error("Exposure read failed: %s", e)
                return AdmissionDecision(False, "state_unavailable", str(e))
            return self._check_admission(executions, category)

    def reserve_trade(
        self,
        *,
        market_id: str,
        amount: float,
        side: str,
        category: str | None = None,
        **context,
    ) -> Reservation:
        """Atomic can_trade + record_trade_open.

        Runs the admission checks and, if allowed, logs an open execution and
        takes a position slot in the same transaction. `context` is stored on
        the execution row (token_id, entry_price, edge, confidence, regime, ...).
        """
        with self._lock:
            if not settings.risk_check_enabled:
                logger.warning("Risk checks disabled: reserving without admission control")
            denial = self._ensure_ready()
            if denial is not None:
                return Reservation(denial)

            def mutate(conn: sqlite3.Connection, s: RiskState) -> Reservation:
                if settings.risk_check_enabled:
                    decision = self._check_admission(
                        fetch_open_executions(conn, self.account_id), category
                    )
                    if not decision.allowed:
                        return Reservation(decision)
                execution_id = insert_execution(
                    conn,
                    account_id=self.account_id,
                    market_id=market_id,
                    side=side,
                    amount=amount,
                    category=category,
                    **context,
                )
                s.open_positions += 1
                s.total_trades += 1
                return Reservation(AdmissionDecision(True), execution_id)

            try:
                reservation = self._apply(mutate)
            except RiskStateUnavailable as e:
                return Reservation(AdmissionDecision(False, "state_unavailable", str(e)))

            if reservation.allowed:
                logger.info(
                    "Reserved slot: market=%s amount=$%.2f exec=%s open=%d",
                    market_id,
                    amount,
                    reservation.execution_id,
                    self._state.open_positions,
                )
            else:
                logger.info(
                    "Reservation denied: market=%s reason=%s (%s)",
                    market_id,
                    reservation.decision.reason,
                    reservation.decision.detail,
                )
            return reservation

    def release_reservation(self, execution_id: int, error: str = "not_filled") -> bool:
        """Give back a reserved slot whose order never filled. Returns False if not open."""
        with self._lock:
            self._ensure_day_for_event()

            def mutate(conn: sqlite3.Connection, s: RiskState) -> bool:
                released = fail_execution(conn, execution_id, error)
                if released:
                    s.open_positions = max(0, s.open_positions - 1)
                return released

            released = self._apply(mutate)
            if released:
                logger.info("Released reservation exec=%d (%s)", execution_id, error)
            else:
                logger.warning("Release of exec=%d ignored: not open", execution_id)
            return released

    # ------------------------------------------------------------------
    # Lifecycle events
    # ------------------------------------------------------------------

    def record_trade_open(self) -> None:
        with self._lock:
            self._ensure_day_for_event()

            def mutate(conn: sqlite3.Connection, s: RiskState) -> None:
                s.open_positions += 1
                s.total_trades += 1

            self._apply(mutate)

    def record_trade_close(
        self,
        pnl: float,
        execution_id: int | None = None,
        *,
        exit_price: float | None = None,
        close_reason: str | None = None,
    ) -> RiskState:
        """Apply a settled trade. Must be called in settlement order.

        Returns a copy of the resulting state.
        """
        with self._lock:
            self._ensure_day_for_event()
            now = self._clock()
            now_iso = now.isoformat()

            def mutate(conn: sqlite3.Connection, s: RiskState) -> None:
                if execution_id is not None and not close_execution(
                    conn,
                    execution_id,
                    pnl_usd=pnl,
                    exit_price=exit_price,
                    close_reason=close_reason,
                    closed_at=now_iso,
                ):
                    logger.warning("Close for exec=%s: execution was not open", execution_id)
                append_trade_close(conn, self.account_id, pnl, execution_id, now_iso)

                s.open_positions = max(0, s.open_positions - 1)
                # セント単位に丸める (float 誤差で -10.00 が上限超過にならないように)
                s.daily_pnl = round(s.daily_pnl + pnl, 2)
                s.total_pnl = round(s.total_pnl + pnl, 2)
                if pnl < 0:
                    s.velocity_window.append((now_iso, pnl))
                s.velocity_window = prune_velocity_window(
                    s.velocity_window, now, settings.velocity_window_min
                )
                self._update_breaker(conn, s)
                self._update_recovery(conn, s, pnl)

            self._apply(mutate)
            return copy.deepcopy(self._state)

    def _ensure_day_for_event(self) -> None:
        if self._degraded and not self._try_recover():
            raise RiskStateUnavailable(f"risk state for {self.account_id} unavailable")
        self.roll_over_day()

    def _update_breaker(self, conn: sqlite3.Connection, s: RiskState) -> None:
        limit = self.config.daily_loss_limit_usd
        prev = s.breaker_tier
        ratio = max(0.0, -s.daily_pnl) / limit if limit > 0 else 0.0
        tier = tier_for_loss_ratio(ratio)
        velocity_trip = s.velocity_loss <= -(limit * settings.velocity_loss_ratio)
        # TRIPPED は日次リセットまで維持
        if velocity_trip or prev == BreakerTier.TRIPPED:
            tier = BreakerTier.TRIPPED
        s.breaker_tier = tier

        if tier == BreakerTier.TRIPPED and not s.circuit_broken:
            s.circuit_broken = True
            if velocity_trip and ratio <= TRIP_RATIO:
                action = "VELOCITY_BREAK"
                detail = (
                    f"velocity_loss={s.velocity_loss:.2f} in {settings.velocity_window_min}min "
                    f"<= -{limit * settings.velocity_loss_ratio:.2f}"
                )
            else:
                action = "CIRCUIT_BREAK"
                detail = f"daily_pnl={s.daily_pnl:.2f} ratio={ratio:.3f}"
            insert_audit_event(conn, action, detail, account_id=self.account_id)
            logger.warning("Circuit breaker tripped (%s): %s", action, detail)
        elif tier != prev:
            logger.info("Breaker tier %s → %s (ratio=%.3f)", prev.label, tier.label, ratio)

    def _update_recovery(self, conn: sqlite3.Connection, s: RiskState, pnl: float) -> None:
        if not s.recovery_mode:
            return
        if pnl > 0:
            s.recovery_wins += 1
        elif pnl < 0:
            s.recovery_wins = 0
        if s.recovery_wins >= settings.recovery_wins_required:
            s.recovery_mode = False
            s.recovery_wins = 0
            insert_audit_event(
                conn,
                "RECOVERY_EXIT",
                f"after {settings.recovery_wins_required} wins",
                account_id=self.account_id,
            )
            logger.info("Recovery mode exited (account=%s)", self.account_id)

    def _trip(self, conn: sqlite3.Connection, s: RiskState, reason: str, actor: str) -> None:
        s.circuit_broken = True
        insert_audit_event(conn, "MANUAL_TRIP", reason, actor=actor, account_id=self.account_id)

    def trip_circuit_breaker(self, reason: str, actor: str = "operator") -> None:
        """Operator halt. Always takes effect in memory, even if the write fails."""
        with self._lock:
            try:
                self._ensure_day_for_event()
                self._apply(lambda conn, s: self._trip(conn, s, reason, actor))
            except RiskStateUnavailable:
                self._state.circuit_broken = True
                self._pending_trip = (reason, actor)
                logger.error("Circuit breaker tripped in memory only (persist failed): %s", reason)
                return
            logger.warning("Circuit breaker tripped: %s", reason)

    def sync_open_positions(self, count: int | None = None) -> int:
        """Reconcile open_positions with open executions (or an explicit count)."""
        with self._lock:
            self._ensure_day_for_event()

            def mutate(conn: sqlite3.Connection, s: RiskState) -> int:
                n = count if count is not None else len(fetch_open_executions(conn, self.account_id))
                if n != s.open_positions:
                    logger.info("Sync open positions: %d → %d", s.open_positions, n)
                s.open_positions = max(0, n)
                return s.open_positions

            return self._apply(mutate)

    # ------------------------------------------------------------------
    # Sizing
    # ------------------------------------------------------------------

    def get_streak_multiplier(self) -> StreakInfo:
        try:
            closes = get_recent_closes(self.account_id, STREAK_LOOKBACK, db_path=self.db_path)
        except sqlite3.Error as e:
            raise RiskStateUnavailable(str(e)) from e
        return streak_multiplier([c.pnl for c in closes])

    def _default_kelly_sizer(self, tick: SignalTick) -> SizingResult:
        try:
            stats = get_close_stats(self.account_id, db_path=self.db_path)
        except sqlite3.Error as e:
            return SizingResult(error=f"close_stats_unavailable: {e}")
        return compute_signal_kelly(
            tick,
            stats,
            max_bet_pct=settings.kelly_max_bet_pct,
            min_edge=settings.kelly_min_edge,
            min_settled=settings.kelly_min_settled,
        )

    def get_kelly_bet_size(self, tick: SignalTick, bankroll: float | None = None) -> BetSizing:
        """Kelly-aware bet size, scaled by loss/win streak and recovery mode.

        Falls back to edge-proportional sizing when the Kelly estimate is zero
        or the sizing collaborator reports an error.
        """
        bankroll = settings.default_bankroll_usd if bankroll is None else bankroll
        streak = self.get_streak_multiplier()
        with self._lock:
            recovery_mult = settings.recovery_sizing_mult if self._state.recovery_mode else 1.0
        scale = streak.multiplier * recovery_mult
        max_bet = self.config.max_bet_usd

        edge = tick.side_value(tick.edge)
        if edge is None:
            edge = NAIVE_DEFAULT_EDGE
        naive_amount = _clamp(abs(edge) * NAIVE_EDGE_SCALE * scale, MIN_BET_USD, max_bet)

        result = self._kelly_sizer(tick)
        if not result.ok:
            logger.warning(
                "Kelly sizing unavailable for %s (%s): naive $%.2f",
                tick.market_id or "?",
                result.error,
                naive_amount,
            )
            return BetSizing(
                amount=naive_amount,
                method="naive",
                kelly=None,
                sizing_tier=None,
                streak_mult=streak.multiplier,
                recovery_mult=recovery_mult,
                error=result.error,
            )

        kelly = result.estimate
        if kelly.reason == "ok" and kelly.bet_pct > 0:
            amount = _clamp(kelly.bet_pct * bankroll * scale, MIN_BET_USD, max_bet)
            return BetSizing(
                amount=amount,
                method="kelly",
                kelly=kelly,
                sizing_tier=result.sizing_tier,
                streak_mult=streak.multiplier,
                recovery_mult=recovery_mult,
            )
        return BetSizing(
            amount=naive_amount,
            method="naive",
            kelly=kelly,
            sizing_tier=result.sizing_tier,
            streak_mult=streak.multiplier,
            recovery_mult=recovery_mult,
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_exposure(self) -> ExposureSnapshot:
        try:
            executions = get_open_executions(self.account_id, db_path=self.db_path)
        except sqlite3.Error as e:
            logger.error("Exposure read failed for %s: %s", self.account_id, e)
            raise RiskStateUnavailable(str(e)) from e
        return compute_exposure(
            executions,
            self.config.max_total_exposure_usd,
            self.config.max_category_concentration_pct,
        )

    def get_risk_status(self) -> RiskStatus:
        """Snapshot for dashboards. Never raises on a store outage: reports degraded instead."""
        with self._lock:
            degraded = self._ensure_ready() is not None
            try:
                exposure = self.get_exposure()
            except RiskStateUnavailable:
                degraded = True
                exposure = ExposureSnapshot(
                    total_exposure=0.0, max_exposure=self.config.max_total_exposure_usd
                )
            s = self._state
            return RiskStatus(
                account_id=self.account_id,
                daily_pnl=s.daily_pnl,
                daily_loss_limit=self.config.daily_loss_limit_usd,
                daily_reset_date=s.daily_reset_date,
                open_positions=s.open_positions,
                max_positions=self.config.max_open_positions,
                effective_max_positions=self.effective_max_positions(),
                max_bet=self.config.max_bet_usd,
                circuit_broken=s.circuit_broken,
                breaker_tier=s.breaker_tier.label,
                velocity_loss=s.velocity_loss,
                recovery_mode=s.recovery_mode,
                recovery_wins=s.recovery_wins,
                total_trades=s.total_trades,
                total_pnl=s.total_pnl,
                degraded=degraded,
                exposure=exposure,
            )
