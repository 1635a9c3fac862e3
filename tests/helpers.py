"""Shared test helpers: import in test files: from tests.helpers import insert_closed_execution."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

from src.sizing.kelly import Recommendation, SidePair, SignalTick
from src.store.db import close_execution, insert_execution, transaction


class FakeClock:
    """Mutable UTC clock for RiskManager(clock=...)."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def insert_closed_execution(
    db_path: Path,
    pnl: float,
    *,
    closed_at: str | None = None,
    **overrides,
) -> int:
    """Insert an execution and close it with `pnl` (closed_at defaults to now)."""
    fields = {
        "account_id": "test",
        "market_id": "mkt-1",
        "side": "UP",
        "amount": 1.0,
        "category": "sports",
        "confidence": 0.6,
        "regime": "RANGE",
    }
    fields.update(overrides)
    with transaction(db_path) as conn:
        execution_id = insert_execution(conn, **fields)
        close_execution(conn, execution_id, pnl_usd=pnl, closed_at=closed_at)
    return execution_id


def days_ago(days: int) -> str:
    return (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()


def make_tick(
    side: str = "UP",
    action: str = "ENTER",
    price: float = 0.40,
    model_prob: float = 0.55,
    edge: float | None = 0.15,
    confidence: float | None = 80.0,
) -> SignalTick:
    """Build a SignalTick where the recommended side has the given price / probability."""
    if side == "UP":
        prices = SidePair(up=price, down=round(1 - price, 4))
        probs = SidePair(up=model_prob, down=round(1 - model_prob, 4))
        edges = SidePair(up=edge, down=None)
    else:
        prices = SidePair(up=round(1 - price, 4), down=price)
        probs = SidePair(up=round(1 - model_prob, 4), down=model_prob)
        edges = SidePair(up=None, down=edge)
    return SignalTick(
        rec=Recommendation(side=side, action=action),
        prices=prices,
        time_aware=probs,
        edge=edges,
        confidence=confidence,
        market_id="mkt-1",
    )
