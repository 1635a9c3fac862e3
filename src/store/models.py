"""Data models for the SQLite risk store.

Dataclasses only, no DB access.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class TradeStatus(StrEnum):
    OPEN = "open"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class TradeExecution:
    id: int
    account_id: str
    market_id: str
    token_id: str | None
    question: str | None
    category: str | None
    side: str
    amount: float
    entry_price: float | None
    fill_price: float | None
    exit_price: float | None
    pnl_usd: float | None
    pnl_pct: float | None
    status: str
    close_reason: str | None
    dry_run: bool
    order_id: str | None
    edge: float | None
    confidence: float | None  # 0-1
    error: str | None
    opened_at: str
    closed_at: str | None
    # 意思決定コンテキスト
    regime: str | None = None
    quality_score: float | None = None
    streak_mult: float | None = None
    sizing_method: str | None = None


@dataclass
class TradeClose:
    """One settled trade, in settlement order."""

    id: int
    account_id: str
    execution_id: int | None
    pnl: float
    closed_at: str


@dataclass
class MarketPerformance:
    """Closed-trade aggregate for one market over a lookback window."""

    market_id: str
    category: str | None
    regime: str | None
    side: str | None
    total_pnl: float
    trades: int
    wins: int
    avg_pnl: float
    max_single_trade: float
    avg_confidence: float | None
    avg_quality: float | None


@dataclass
class DailyPnl:
    day: str
    pnl: float
    trades: int


@dataclass
class CloseStats:
    """Win/loss counts over the close journal (Kelly sizing tier input)."""

    wins: int
    losses: int

    @property
    def settled(self) -> int:
        return self.wins + self.losses

    @property
    def win_rate(self) -> float:
        return self.wins / self.settled if self.settled > 0 else 0.0


@dataclass
class AuditEvent:
    id: int
    action: str
    detail: str | None
    actor: str
    created_at: str
    account_id: str | None = None
