"""Database schema DDL and migration helpers for the risk store.

Schema definitions and additive column migrations only; queries live in
src/store/db.py.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = Path(__file__).resolve().parent.parent.parent / "data" / "paper_risk.db"

# 1 アカウント = 1 行。version は楽観ロック (compare-and-swap) 用
RISK_STATE_SQL = """
CREATE TABLE IF NOT EXISTS risk_state (
    account_id        TEXT PRIMARY KEY,
    daily_pnl         REAL NOT NULL DEFAULT 0.0,
    daily_reset_date  TEXT NOT NULL DEFAULT '',
    open_positions    INTEGER NOT NULL DEFAULT 0,
    circuit_broken    INTEGER NOT NULL DEFAULT 0,
    total_trades      INTEGER NOT NULL DEFAULT 0,
    total_pnl         REAL NOT NULL DEFAULT 0.0,
    version           INTEGER NOT NULL DEFAULT 0,
    updated_at        TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS trade_closes (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id    TEXT NOT NULL,
    execution_id  INTEGER,
    pnl           REAL NOT NULL,
    closed_at     TEXT NOT NULL
);
"""

TRADE_EXECUTIONS_SQL = """
CREATE TABLE IF NOT EXISTS trade_executions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id      TEXT NOT NULL DEFAULT 'default',
    market_id       TEXT NOT NULL,
    token_id        TEXT,
    question        TEXT,
    category        TEXT,
    side            TEXT NOT NULL,
    amount          REAL NOT NULL,
    entry_price     REAL,
    fill_price      REAL,
    exit_price      REAL,
    pnl_usd         REAL,
    pnl_pct         REAL,
    status          TEXT NOT NULL DEFAULT 'open'
                    CHECK(status IN ('open', 'closed', 'cancelled', 'failed')),
    close_reason    TEXT,
    dry_run         INTEGER NOT NULL DEFAULT 1,
    order_id        TEXT,
    edge            REAL,
    confidence      REAL,
    error           TEXT,
    opened_at       TEXT NOT NULL,
    closed_at       TEXT
);
"""

AUDIT_CONFIG_SQL = """
CREATE TABLE IF NOT EXISTS trading_config (
    key         TEXT PRIMARY KEY,
    value       REAL NOT NULL,
    updated_at  TEXT NOT NULL,
    updated_by  TEXT
);

CREATE TABLE IF NOT EXISTS audit_log (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    action      TEXT NOT NULL,
    detail      TEXT,
    actor       TEXT NOT NULL DEFAULT 'system',
    created_at  TEXT NOT NULL
);
"""

# サーキットブレーカー拡張カラム (既存 DB との後方互換性のため ALTER TABLE で追加)
_RISK_STATE_COLUMNS = [
    ("breaker_tier", "TEXT DEFAULT 'none'"),
    ("velocity_window", "TEXT DEFAULT '[]'"),
    ("recovery_mode", "INTEGER DEFAULT 0"),
    ("recovery_wins", "INTEGER DEFAULT 0"),
]

# 監査ログのアカウント (NULL = ストア全体のイベント、例: CONFIG_UPDATE)
_AUDIT_COLUMNS = [
    ("account_id", "TEXT"),
]

# 意思決定コンテキスト (AdaptiveLimiter が参照)
_DECISION_COLUMNS = [
    ("regime", "TEXT"),
    ("quality_score", "REAL"),
    ("streak_mult", "REAL"),
    ("sizing_method", "TEXT"),
]


def _ensure_columns(
    conn: sqlite3.Connection,
    table: str,
    columns: list[tuple[str, str]],
) -> None:
    """Add columns to *table* if they don't exist."""
    existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}
    for col_name, col_def in columns:
        if col_name not in existing:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_name} {col_def}")
    conn.commit()


def _ensure_indexes(conn: sqlite3.Connection) -> None:
    """Create performance indexes if they don't exist."""
    indexes = [
        "CREATE INDEX IF NOT EXISTS idx_trade_exec_status ON trade_executions(status)",
        "CREATE INDEX IF NOT EXISTS idx_trade_exec_market ON trade_executions(market_id)",
        "CREATE INDEX IF NOT EXISTS idx_trade_exec_opened ON trade_executions(opened_at)",
        "CREATE INDEX IF NOT EXISTS idx_trade_exec_closed ON trade_executions(closed_at)",
        "CREATE INDEX IF NOT EXISTS idx_trade_closes_account ON trade_closes(account_id, id)",
        "CREATE INDEX IF NOT EXISTS idx_audit_log_created ON audit_log(created_at)",
        "CREATE INDEX IF NOT EXISTS idx_trade_exec_account ON trade_executions(account_id, status)",
    ]
    for sql in indexes:
        conn.execute(sql)
    conn.commit()


def _connect(db_path: Path | str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Open (or create) the SQLite database and ensure schema exists."""
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.executescript(RISK_STATE_SQL)
    conn.executescript(TRADE_EXECUTIONS_SQL)
    conn.executescript(AUDIT_CONFIG_SQL)
    _ensure_columns(conn, "risk_state", _RISK_STATE_COLUMNS)
    _ensure_columns(conn, "trade_executions", _DECISION_COLUMNS)
    _ensure_columns(conn, "audit_log", _AUDIT_COLUMNS)
    _ensure_indexes(conn)
    return conn
