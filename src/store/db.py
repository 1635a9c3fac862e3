"""SQLite store for risk state, trade executions, close journal and audit log."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

from src.store.models import (
    AuditEvent,
    CloseStats,
    DailyPnl,
    MarketPerformance,
    TradeClose,
    TradeExecution,
    TradeStatus,
)
from src.store.schema import DEFAULT_DB_PATH, _connect

MAX_LOOKBACK_DAYS = 90


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _cutoff_iso(days: int) -> str:
    """ISO timestamp `days` ago, with days clamped to [1, MAX_LOOKBACK_DAYS]."""
    days = min(max(int(days), 1), MAX_LOOKBACK_DAYS)
    return (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()


@contextmanager
def transaction(db_path: Path | str = DEFAULT_DB_PATH) -> Iterator[sqlite3.Connection]:
    """Yield a connection inside BEGIN IMMEDIATE; commit on success, rollback on error.

    IMMEDIATE takes the write lock up front so a second process cannot
    interleave its own read-modify-write of risk_state.
    """
    conn = _connect(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# risk_state (1 row per account)
# ---------------------------------------------------------------------------


def load_risk_state_row(conn: sqlite3.Connection, account_id: str) -> dict:
    """Return the account's risk_state row, creating the default row if missing."""
    conn.execute(
        "INSERT OR IGNORE INTO risk_state (account_id, updated_at) VALUES (?, ?)",
        (account_id, _now_iso()),
    )
    row = conn.execute(
        "SELECT * FROM risk_state WHERE account_id = ?", (account_id,)
    ).fetchone()
    return dict(row)


def save_risk_state_row(
    conn: sqlite3.Connection,
    account_id: str,
    values: dict,
    expected_version: int,
) -> bool:
    """Compare-and-swap update of the risk_state row.

    Writes `values` and bumps version only if the stored version still equals
    expected_version. Returns False when another writer got there first.
    """
    columns = ", ".join(f"{k} = ?" for k in values)
    cur = conn.execute(
        f"""UPDATE risk_state SET {columns}, version = version + 1, updated_at = ?
            WHERE account_id = ? AND version = ?""",
        (*values.values(), _now_iso(), account_id, expected_version),
    )
    return cur.rowcount == 1


# ---------------------------------------------------------------------------
# trade_closes (settlement-ordered journal)
# ---------------------------------------------------------------------------


def append_trade_close(
    conn: sqlite3.Connection,
    account_id: str,
    pnl: float,
    execution_id: int | None = None,
    closed_at: str | None = None,
) -> int:
    cur = conn.execute(
        """INSERT INTO trade_closes (account_id, execution_id, pnl, closed_at)
           VALUES (?, ?, ?, ?)""",
        (account_id, execution_id, pnl, closed_at or _now_iso()),
    )
    return cur.lastrowid  # type: ignore[return-value]


def get_recent_closes(
    account_id: str,
    limit: int = 10,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> list[TradeClose]:
    """Most recent closes, newest first (journal order, not wall-clock)."""
    conn = _connect(db_path)
    try:
        rows = conn.execute(
            """SELECT * FROM trade_closes WHERE account_id = ?
               ORDER BY id DESC LIMIT ?""",
            (account_id, limit),
        ).fetchall()
        return [TradeClose(**dict(r)) for r in rows]
    finally:
        conn.close()


def get_close_stats(
    account_id: str,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> CloseStats:
    """Lifetime win/loss counts from the close journal. Zero-P&L closes count as neither."""
    conn = _connect(db_path)
    try:
        row = conn.execute(
            """SELECT
                 COALESCE(SUM(CASE WHEN pnl > 0 THEN 1 ELSE 0 END), 0) AS wins,
                 COALESCE(SUM(CASE WHEN pnl < 0 THEN 1 ELSE 0 END), 0) AS losses
               FROM trade_closes WHERE account_id = ?""",
            (account_id,),
        ).fetchone()
        return CloseStats(wins=int(row["wins"]), losses=int(row["losses"]))
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# trade_executions
# ---------------------------------------------------------------------------


def insert_execution(
    conn: sqlite3.Connection,
    *,
    account_id: str,
    market_id: str,
    side: str,
    amount: float,
    category: str | None = None,
    token_id: str | None = None,
    question: str | None = None,
    entry_price: float | None = None,
    fill_price: float | None = None,
    status: str = TradeStatus.OPEN,
    dry_run: bool = True,
    order_id: str | None = None,
    edge: float | None = None,
    confidence: float | None = None,
    regime: str | None = None,
    quality_score: float | None = None,
    streak_mult: float | None = None,
    sizing_method: str | None = None,
    opened_at: str | None = None,
) -> int:
    cur = conn.execute(
        """INSERT INTO trade_executions
           (account_id, market_id, token_id, question, category, side, amount,
            entry_price, fill_price, status, dry_run, order_id, edge, confidence,
            regime, quality_score, streak_mult, sizing_method, opened_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            account_id,
            market_id,
            token_id,
            question,
            category,
            side,
            amount,
            entry_price,
            fill_price,
            str(status),
            int(dry_run),
            order_id,
            edge,
            confidence,
            regime,
            quality_score,
            streak_mult,
            sizing_method,
            opened_at or _now_iso(),
        ),
    )
    return cur.lastrowid  # type: ignore[return-value]


def close_execution(
    conn: sqlite3.Connection,
    execution_id: int,
    *,
    pnl_usd: float,
    exit_price: float | None = None,
    close_reason: str | None = None,
    closed_at: str | None = None,
) -> bool:
    """Mark an open execution closed. Returns False if it was not open."""
    row = conn.execute(
        "SELECT amount FROM trade_executions WHERE id = ? AND status = 'open'",
        (execution_id,),
    ).fetchone()
    if row is None:
        return False
    amount = float(row["amount"])
    pnl_pct = pnl_usd / amount * 100 if amount > 0 else None
    conn.execute(
        """UPDATE trade_executions
           SET status = 'closed', exit_price = ?, pnl_usd = ?, pnl_pct = ?,
               close_reason = ?, closed_at = ?
           WHERE id = ?""",
        (exit_price, pnl_usd, pnl_pct, close_reason, closed_at or _now_iso(), execution_id),
    )
    return True


def fail_execution(
    conn: sqlite3.Connection,
    execution_id: int,
    error: str,
) -> bool:
    """Mark an open execution failed (order never filled). Returns False if not open."""
    cur = conn.execute(
        """UPDATE trade_executions
           SET status = 'failed', error = ?, closed_at = ?
           WHERE id = ? AND status = 'open'""",
        (error, _now_iso(), execution_id),
    )
    return cur.rowcount == 1


def _row_to_execution(row: sqlite3.Row) -> TradeExecution:
    data = dict(row)
    data["dry_run"] = bool(data["dry_run"])
    return TradeExecution(**data)


def get_execution(
    execution_id: int,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> TradeExecution | None:
    conn = _connect(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM trade_executions WHERE id = ?", (execution_id,)
        ).fetchone()
        return _row_to_execution(row) if row else None
    finally:
        conn.close()


def fetch_open_executions(
    conn: sqlite3.Connection,
    account_id: str,
) -> list[TradeExecution]:
    rows = conn.execute(
        """SELECT * FROM trade_executions
           WHERE account_id = ? AND status = 'open'
           ORDER BY opened_at DESC""",
        (account_id,),
    ).fetchall()
    return [_row_to_execution(r) for r in rows]


def get_open_executions(
    account_id: str,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> list[TradeExecution]:
    """Return the account's open executions (newest first)."""
    conn = _connect(db_path)
    try:
        return fetch_open_executions(conn, account_id)
    finally:
        conn.close()


def get_market_performance(
    days: int,
    db_path: Path | str = DEFAULT_DB_PATH,
    *,
    account_id: str | None = None,
) -> list[MarketPerformance]:
    """Per-market closed-trade aggregates over the lookback window.

    Ordered by total realized P&L ascending (worst first).
    """
    sql = """SELECT market_id,
                    MAX(category) AS category,
                    MAX(regime) AS regime,
                    MAX(side) AS side,
                    SUM(pnl_usd) AS total_pnl,
                    COUNT(*) AS trades,
                    SUM(CASE WHEN pnl_usd > 0 THEN 1 ELSE 0 END) AS wins,
                    AVG(pnl_usd) AS avg_pnl,
                    MAX(ABS(pnl_usd)) AS max_single_trade,
                    AVG(confidence) AS avg_confidence,
                    AVG(quality_score) AS avg_quality
             FROM trade_executions
             WHERE status = 'closed' AND pnl_usd IS NOT NULL AND closed_at > ?"""
    params: list = [_cutoff_iso(days)]
    if account_id is not None:
        sql += " AND account_id = ?"
        params.append(account_id)
    sql += " GROUP BY market_id ORDER BY total_pnl ASC, market_id ASC"

    conn = _connect(db_path)
    try:
        rows = conn.execute(sql, params).fetchall()
        return [
            MarketPerformance(
                market_id=r["market_id"],
                category=r["category"],
                regime=r["regime"],
                side=r["side"],
                total_pnl=float(r["total_pnl"]),
                trades=int(r["trades"]),
                wins=int(r["wins"]),
                avg_pnl=float(r["avg_pnl"]),
                max_single_trade=float(r["max_single_trade"]),
                avg_confidence=r["avg_confidence"],
                avg_quality=r["avg_quality"],
            )
            for r in rows
        ]
    finally:
        conn.close()


def get_daily_pnl(
    days: int = 7,
    db_path: Path | str = DEFAULT_DB_PATH,
    *,
    account_id: str | None = None,
) -> list[DailyPnl]:
    """Realized P&L per UTC day from closed executions, newest day first."""
    sql = """SELECT substr(closed_at, 1, 10) AS day,
                    SUM(pnl_usd) AS pnl,
                    COUNT(*) AS trades
             FROM trade_executions
             WHERE status = 'closed' AND pnl_usd IS NOT NULL AND closed_at > ?"""
    params: list = [_cutoff_iso(days)]
    if account_id is not None:
        sql += " AND account_id = ?"
        params.append(account_id)
    sql += " GROUP BY day ORDER BY day DESC"

    conn = _connect(db_path)
    try:
        rows = conn.execute(sql, params).fetchall()
        return [DailyPnl(day=r["day"], pnl=float(r["pnl"]), trades=int(r["trades"])) for r in rows]
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# trading_config
# ---------------------------------------------------------------------------


def get_config_overrides(db_path: Path | str = DEFAULT_DB_PATH) -> dict[str, float]:
    conn = _connect(db_path)
    try:
        rows = conn.execute("SELECT key, value FROM trading_config").fetchall()
        return {r["key"]: float(r["value"]) for r in rows}
    finally:
        conn.close()


def set_config_values(
    updates: dict[str, float],
    updated_by: str = "admin",
    db_path: Path | str = DEFAULT_DB_PATH,
) -> None:
    now = _now_iso()
    conn = _connect(db_path)
    try:
        conn.executemany(
            """INSERT INTO trading_config (key, value, updated_at, updated_by)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET
                 value = excluded.value,
                 updated_at = excluded.updated_at,
                 updated_by = excluded.updated_by""",
            [(k, v, now, updated_by) for k, v in updates.items()],
        )
        conn.commit()
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# audit_log
# ---------------------------------------------------------------------------


def insert_audit_event(
    conn: sqlite3.Connection,
    action: str,
    detail: str | None = None,
    actor: str = "system",
    account_id: str | None = None,
) -> int:
    cur = conn.execute(
        """INSERT INTO audit_log (action, detail, actor, created_at, account_id)
           VALUES (?, ?, ?, ?, ?)""",
        (action, detail, actor, _now_iso(), account_id),
    )
    return cur.lastrowid  # type: ignore[return-value]


def log_audit_event(
    action: str,
    detail: str | None = None,
    actor: str = "system",
    db_path: Path | str = DEFAULT_DB_PATH,
    *,
    account_id: str | None = None,
) -> int:
    conn = _connect(db_path)
    try:
        event_id = insert_audit_event(conn, action, detail, actor, account_id)
        conn.commit()
        return event_id
    finally:
        conn.close()


def count_audit_events(
    actions: list[str],
    days: int = 7,
    db_path: Path | str = DEFAULT_DB_PATH,
    *,
    account_id: str | None = None,
) -> int:
    placeholders = ", ".join("?" for _ in actions)
    sql = f"""SELECT COUNT(*) FROM audit_log
              WHERE action IN ({placeholders}) AND created_at > ?"""
    params: list = [*actions, _cutoff_iso(days)]
    if account_id is not None:
        sql += " AND account_id = ?"
        params.append(account_id)

    conn = _connect(db_path)
    try:
        row = conn.execute(sql, params).fetchone()
        return int(row[0])
    finally:
        conn.close()


def get_audit_events(
    limit: int = 50,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> list[AuditEvent]:
    conn = _connect(db_path)
    try:
        rows = conn.execute(
            "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall()
        return [AuditEvent(**dict(r)) for r in rows]
    finally:
        conn.close()
