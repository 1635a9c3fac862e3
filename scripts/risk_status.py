#!/usr/bin/env python3
"""Risk engine operator CLI.

Usage:
    # Current risk state, breaker tier and exposure
    python scripts/risk_status.py

    # Halt trading for the rest of the day
    python scripts/risk_status.py --trip "manual halt: exchange outage"

    # Change runtime limits (validated, audited)
    python scripts/risk_status.py --set daily_loss_limit_usd=15 --set max_open_positions=4

    # Evaluate the predictive breaker for a context
    python scripts/risk_status.py --breaker --regime CHOP --breach-prob 0.3 --vol 85

    # Adaptive limits: stress test + deleveraging plan
    python scripts/risk_status.py --stress --deleverage 20

    # Recent audit log
    python scripts/risk_status.py --audit 20
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
log = logging.getLogger(__name__)


def print_status(manager) -> None:
    status = manager.get_risk_status()
    print(f"Account:        {status.account_id}")
    print(f"Day:            {status.daily_reset_date or '-'}")
    print(f"Daily P&L:      ${status.daily_pnl:+.2f} / -${status.daily_loss_limit:.2f}")
    print(f"Breaker tier:   {status.breaker_tier}{' (BROKEN)' if status.circuit_broken else ''}")
    print(f"Velocity loss:  ${status.velocity_loss:+.2f}")
    print(
        f"Positions:      {status.open_positions}/{status.effective_max_positions}"
        f" (configured {status.max_positions})"
    )
    print(f"Max bet:        ${status.max_bet:.2f}")
    if status.recovery_mode:
        print(f"Recovery:       ON ({status.recovery_wins} wins)")
    print(f"Lifetime:       {status.total_trades} trades, ${status.total_pnl:+.2f}")
    if status.degraded:
        print("WARNING: risk store unavailable, admission is denied")

    exposure = status.exposure
    print(f"\nExposure:       ${exposure.total_exposure:.2f} / ${exposure.max_exposure:.2f}")
    for cat, amount in sorted(exposure.by_category.items(), key=lambda kv: -kv[1]):
        print(f"  {cat:<14} ${amount:.2f}")
    for w in exposure.warnings:
        print(f"  ! {w['category']} concentration {w['concentration_pct']}%")

    decision = manager.can_trade()
    verdict = "ALLOWED" if decision.allowed else f"DENIED ({decision.reason}: {decision.detail})"
    print(f"\ncan_trade:      {verdict}")


def parse_updates(pairs: list[str]) -> dict[str, str]:
    updates = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep:
            raise ValueError(f"expected key=value, got {pair!r}")
        updates[key.strip()] = value.strip()
    return updates


def run_breaker(args: argparse.Namespace, db_path: str, account_id: str) -> None:
    from src.risk.models import BreakerContext
    from src.risk.predictive_breaker import PredictiveBreaker

    breaker = PredictiveBreaker(db_path, account_id=account_id)
    result = breaker.evaluate(
        BreakerContext(
            regime=args.regime,
            breach_prob_4h=args.breach_prob,
            vol_percentile=args.vol,
            unrealized_pnl=args.unrealized,
            realized_pnl_today=args.realized,
        )
    )
    print(f"Regime {result.regime}: status={result.status} "
          f"can_trade={result.can_trade} can_open_new={result.can_open_new}")
    for t in result.triggers:
        print(f"  [{t.severity}] {t.type}: {t.value} (threshold {t.threshold})")
    for a in result.actions:
        print(f"  -> {a.action}: {a.reason}")

    report = breaker.get_breaker_status()
    print(
        f"\nLast 7 days: {report.halts_last_7_days} halts, "
        f"{report.loss_days_last_7}/{report.total_days} loss days, "
        f"avg ${report.avg_daily_pnl:+.2f}/day"
    )
    for d in report.recent_days:
        print(f"  {d.date}  ${d.pnl:+.2f}  {d.trades} trades{'  (would halt)' if d.would_halt else ''}")


def run_adaptive(args: argparse.Namespace, db_path: str, account_id: str) -> None:
    from src.config import settings
    from src.risk.adaptive_limits import (
        get_adaptive_risk_status,
        get_deleveraging_plan,
        run_live_stress_test,
    )

    status = get_adaptive_risk_status(db_path=db_path, account_id=account_id)
    g = status.global_limits
    print(f"Regime {status.regime}: kelly {status.kelly.recommended_fraction:.4f} "
          f"(x{status.kelly.adaptive_multiplier})")
    for line in status.kelly.rationale:
        print(f"  - {line}")
    print(f"Global: daily loss ${g.max_daily_loss:.2f}, drawdown {g.max_drawdown_pct:.1%}, "
          f"{g.max_open_positions} positions")

    if args.stress:
        stress = run_live_stress_test(
            settings.stress_lookback_days,
            settings.stress_shock_pct,
            db_path=db_path,
            account_id=account_id,
        )
        print(f"\nStress: risk {stress.portfolio_risk}/100 ({stress.risk_level})")
        for s in stress.scenarios:
            print(f"  {s.name:<24} ${s.expected_loss:.2f}  ({s.affected_markets} markets)")
        for alert in stress.alerts:
            print(f"  ! [{alert.severity}] {alert.scenario} > ${alert.limit:.0f}")

    if args.deleverage is not None:
        plan = get_deleveraging_plan(
            args.deleverage,
            settings.adaptive_lookback_days,
            db_path=db_path,
            account_id=account_id,
        )
        print(f"\nDeleverage: exposure ${plan.current_exposure:.2f} -> ${plan.target_exposure:.2f}")
        for a in plan.actions:
            print(f"  [{a.priority}] {a.action} {a.market_id}: {a.rationale}")
        if not plan.sufficient_reduction:
            print("  (closing every candidate is not enough to reach the target)")


def main() -> int:
    parser = argparse.ArgumentParser(description="Inspect and operate the risk engine")
    parser.add_argument("--db-path", help="Risk store path (default: per EXECUTION_MODE)")
    parser.add_argument("--execution", choices=["paper", "live", "dry-run"], help="Execution mode")
    parser.add_argument("--account", help="Account id (default: settings.account_id)")
    parser.add_argument("--trip", metavar="REASON", help="Trip the circuit breaker")
    parser.add_argument(
        "--set",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Update a runtime limit (repeatable)",
    )
    parser.add_argument("--breaker", action="store_true", help="Evaluate the predictive breaker")
    parser.add_argument("--regime", help="Regime for --breaker (default RANGE)")
    parser.add_argument("--breach-prob", type=float, help="4h breach probability (0-1)")
    parser.add_argument("--vol", type=float, help="Volatility percentile (0-100)")
    parser.add_argument("--unrealized", type=float, help="Unrealized P&L (USD)")
    parser.add_argument("--realized", type=float, help="Realized P&L today (USD)")
    parser.add_argument("--adaptive", action="store_true", help="Show adaptive limits")
    parser.add_argument("--stress", action="store_true", help="Run the live stress test")
    parser.add_argument(
        "--deleverage",
        type=float,
        metavar="MAX_LOSS",
        help="Deleveraging plan for a max acceptable loss (USD)",
    )
    parser.add_argument("--audit", type=int, metavar="N", help="Show the last N audit events")
    args = parser.parse_args()

    from src.risk.risk_manager import RiskManager
    from src.store.db_path import resolve_db_path

    db_path = resolve_db_path(execution_mode=args.execution, explicit_db_path=args.db_path)
    manager = RiskManager(db_path, account_id=args.account)

    if args.set:
        try:
            updates = parse_updates(args.set)
        except ValueError as e:
            parser.error(str(e))
        exposure = manager.get_exposure()
        result = manager.config.update(
            updates,
            updated_by="cli",
            open_positions=manager.state.open_positions,
            current_exposure=exposure.total_exposure,
        )
        for err in result.errors:
            print(f"ERROR: {err}")
        for warning in result.warnings:
            print(f"WARNING: {warning}")
        if not result.ok:
            return 1
        print(f"Updated: {result.updated}")

    if args.trip:
        manager.trip_circuit_breaker(args.trip, actor="cli")
        print(f"Circuit breaker tripped: {args.trip}")

    if args.breaker:
        run_breaker(args, db_path, manager.account_id)
    elif args.adaptive or args.stress or args.deleverage is not None:
        run_adaptive(args, db_path, manager.account_id)
    elif args.audit:
        from src.store.db import get_audit_events

        for e in get_audit_events(args.audit, db_path=db_path):
            print(
                f"{e.created_at[:19]}  {e.action:<16} {e.account_id or '*':<10} "
                f"{e.actor:<8} {e.detail or ''}"
            )
    else:
        print_status(manager)
    return 0


if __name__ == "__main__":
    sys.exit(main())
