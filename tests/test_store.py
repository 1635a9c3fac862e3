"""Tests for the risk store (src/store/db.py, src/store/schema.py)."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from src.store.db import (
    _cutoff_iso,
    append_trade_close,
    count_audit_events,
    fail_execution,
    get_audit_events,
    get_close_stats,
    get_config_overrides,
    get_daily_pnl,
    get_execution,
    get_market_performance,
    get_open_executions,
    get_recent_closes,
    insert_execution,
    load_risk_state_row,
    log_audit_event,
    save_risk_state_row,
    set_config_values,
    transaction,
)
from src.store.schema import _connect
from tests.helpers import days_ago, insert_closed_execution


def open_execution(db_path: Path, **fields) -> int:
    with transaction(db_path) as conn:
        return insert_execution(conn, **fields)


class TestConnect:
    def test_creates_database(self, db_path: Path):
        assert not db_path.exists()
        _connect(db_path).close()
        assert db_path.exists()

    def test_creates_tables(self, db_path: Path):
        conn = _connect(db_path)
        names = {
            r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
        conn.close()
        assert {"risk_state", "trade_closes", "trade_executions", "trading_config", "audit_log"} <= names

    def test_migrates_legacy_risk_state(self, db_path: Path):
        """A pre-breaker risk_state table gets the tier / velocity / recovery columns."""
        legacy = sqlite3.connect(str(db_path))
        legacy.execute(
            """CREATE TABLE risk_state (
                account_id TEXT PRIMARY KEY,
                daily_pnl REAL NOT NULL DEFAULT 0.0,
                daily_reset_date TEXT NOT NULL DEFAULT '',
                open_positions INTEGER NOT NULL DEFAULT 0,
                circuit_broken INTEGER NOT NULL DEFAULT 0,
                total_trades INTEGER NOT NULL DEFAULT 0,
                total_pnl REAL NOT NULL DEFAULT 0.0,
                version INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL DEFAULT ''
            )"""
        )
        legacy.execute("INSERT INTO risk_state (account_id, daily_pnl) VALUES ('a', -2.5)")
        legacy.commit()
        legacy.close()

        with transaction(db_path) as conn:
            row = load_risk_state_row(conn, "a")
        assert row["daily_pnl"] == -2.5
        assert row["breaker_tier"] == "none"
        assert row["velocity_window"] == "[]"
        assert row["recovery_mode"] == 0

    def test_idempotent_schema(self, db_path: Path):
        _connect(db_path).close()
        _connect(db_path).close()


class TestRiskStateRow:
    def test_default_row_created(self, db_path: Path):
        with transaction(db_path) as conn:
            row = load_risk_state_row(conn, "acct")
        assert row["account_id"] == "acct"
        assert row["version"] == 0
        assert row["open_positions"] == 0

    def test_compare_and_swap(self, db_path: Path):
        with transaction(db_path) as conn:
            load_risk_state_row(conn, "acct")
            assert save_risk_state_row(conn, "acct", {"daily_pnl": -1.0}, expected_version=0)
            assert not save_risk_state_row(conn, "acct", {"daily_pnl": -9.0}, expected_version=0)
            row = load_risk_state_row(conn, "acct")
        assert row["daily_pnl"] == -1.0
        assert row["version"] == 1
        assert row["updated_at"]

    def test_transaction_rolls_back_on_error(self, db_path: Path):
        with pytest.raises(RuntimeError):
            with transaction(db_path) as conn:
                load_risk_state_row(conn, "acct")
                save_risk_state_row(conn, "acct", {"daily_pnl": -5.0}, expected_version=0)
                raise RuntimeError("boom")

        with transaction(db_path) as conn:
            row = load_risk_state_row(conn, "acct")
        assert row["daily_pnl"] == 0.0
        assert row["version"] == 0


class TestTradeCloses:
    def test_recent_closes_newest_first(self, db_path: Path):
        with transaction(db_path) as conn:
            for pnl in (1.0, -1.0, 0.0, 2.0):
                append_trade_close(conn, "acct", pnl)
            append_trade_close(conn, "other", -5.0)

        closes = get_recent_closes("acct", limit=3, db_path=db_path)
        assert [c.pnl for c in closes] == [2.0, 0.0, -1.0]

    def test_close_stats(self, db_path: Path):
        with transaction(db_path) as conn:
            for pnl in (1.0, 2.0, -1.0, 0.0):
                append_trade_close(conn, "acct", pnl)
        stats = get_close_stats("acct", db_path=db_path)
        assert (stats.wins, stats.losses) == (2, 1)
        assert stats.settled == 3
        assert stats.win_rate == pytest.approx(2 / 3)


class TestExecutions:
    def test_insert_and_fetch_open(self, db_path: Path):
        eid = open_execution(
            db_path,
            account_id="acct",
            market_id="m1",
            side="UP",
            amount=1.5,
            category="sports",
            dry_run=False,
        )
        execution = get_execution(eid, db_path=db_path)
        assert execution.status == "open"
        assert execution.dry_run is False
        assert [e.id for e in get_open_executions("acct", db_path=db_path)] == [eid]
        assert get_open_executions("other", db_path=db_path) == []

    def test_fail_execution_only_when_open(self, db_path: Path):
        eid = open_execution(db_path, account_id="acct", market_id="m1", side="UP", amount=1.0)
        with transaction(db_path) as conn:
            assert fail_execution(conn, eid, "timeout")
            assert not fail_execution(conn, eid, "timeout")
        assert get_execution(eid, db_path=db_path).status == "failed"

    def test_get_execution_missing(self, db_path: Path):
        assert get_execution(999, db_path=db_path) is None

    def test_market_performance_worst_first(self, db_path: Path):
        insert_closed_execution(db_path, 3.0, market_id="good", quality_score=0.8)
        insert_closed_execution(db_path, -2.0, market_id="bad", confidence=0.4)
        insert_closed_execution(db_path, -1.0, market_id="bad", confidence=0.6)

        rows = get_market_performance(7, db_path=db_path)
        assert [r.market_id for r in rows] == ["bad", "good"]
        bad = rows[0]
        assert bad.total_pnl == pytest.approx(-3.0)
        assert bad.trades == 2
        assert bad.wins == 0
        assert bad.avg_confidence == pytest.approx(0.5)
        assert bad.max_single_trade == pytest.approx(2.0)
        assert rows[1].avg_quality == pytest.approx(0.8)

    def test_market_performance_account_filter(self, db_path: Path):
        insert_closed_execution(db_path, 1.0, account_id="a")
        insert_closed_execution(db_path, 1.0, account_id="b", market_id="m2")
        rows = get_market_performance(7, db_path=db_path, account_id="b")
        assert [r.market_id for r in rows] == ["m2"]

    def test_daily_pnl(self, db_path: Path):
        insert_closed_execution(db_path, -1.0, closed_at=days_ago(1))
        insert_closed_execution(db_path, 2.5, closed_at=days_ago(1))
        insert_closed_execution(db_path, 4.0, closed_at=days_ago(3))
        days = get_daily_pnl(7, db_path=db_path)
        assert [d.pnl for d in days] == [pytest.approx(1.5), pytest.approx(4.0)]
        assert days[0].trades == 2

    def test_daily_pnl_account_filter(self, db_path: Path):
        insert_closed_execution(db_path, 2.0, account_id="a", closed_at=days_ago(1))
        insert_closed_execution(db_path, -30.0, account_id="b", closed_at=days_ago(1))
        days = get_daily_pnl(7, db_path=db_path, account_id="a")
        assert [d.pnl for d in days] == [pytest.approx(2.0)]
        assert days[0].trades == 1


class TestConfigAndAudit:
    def test_config_upsert(self, db_path: Path):
        set_config_values({"max_bet_usd": 2.0}, updated_by="ops", db_path=db_path)
        set_config_values({"max_bet_usd": 3.0, "max_open_positions": 5}, db_path=db_path)
        assert get_config_overrides(db_path=db_path) == {"max_bet_usd": 3.0, "max_open_positions": 5.0}

    def test_count_audit_events(self, db_path: Path):
        log_audit_event("CIRCUIT_BREAK", "x", db_path=db_path)
        log_audit_event("HALT_TRADING", "y", db_path=db_path)
        log_audit_event("CONFIG_UPDATE", "z", db_path=db_path)
        assert count_audit_events(["CIRCUIT_BREAK", "HALT_TRADING"], db_path=db_path) == 2

    def test_count_audit_events_per_account(self, db_path: Path):
        log_audit_event("HALT_TRADING", "a", db_path=db_path, account_id="a")
        log_audit_event("HALT_TRADING", "b", db_path=db_path, account_id="b")
        log_audit_event("HALT_TRADING", "b", db_path=db_path, account_id="b")
        assert count_audit_events(["HALT_TRADING"], db_path=db_path, account_id="a") == 1
        assert count_audit_events(["HALT_TRADING"], db_path=db_path) == 3
        assert get_audit_events(db_path=db_path)[0].account_id == "b"

    def test_legacy_audit_log_gains_account_column(self, db_path: Path):
        conn = sqlite3.connect(str(db_path))
        conn.execute(
            """CREATE TABLE audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                action TEXT NOT NULL,
                detail TEXT,
                actor TEXT NOT NULL DEFAULT 'system',
                created_at TEXT NOT NULL
            )"""
        )
        conn.execute(
            "INSERT INTO audit_log (action, actor, created_at) VALUES ('MANUAL_TRIP', 'ops', ?)",
            (days_ago(0),),
        )
        conn.commit()
        conn.close()

        events = get_audit_events(db_path=db_path)
        assert [(e.action, e.account_id) for e in events] == [("MANUAL_TRIP", None)]


class TestCutoff:
    def test_days_clamped(self):
        assert _cutoff_iso(0)[:10] == _cutoff_iso(1)[:10]
        assert _cutoff_iso(1000)[:10] == _cutoff_iso(90)[:10]
        assert _cutoff_iso(1) > _cutoff_iso(5)
