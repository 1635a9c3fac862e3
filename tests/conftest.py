"""Shared fixtures for risk engine tests.

Helper functions (insert_closed_execution, FakeClock, etc.) are in tests/helpers.py.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from src.risk.risk_manager import RiskManager
from tests.helpers import FakeClock


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    """Temporary database path: each test gets an isolated SQLite file."""
    return tmp_path / "test.db"


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def manager(db_path: Path, clock: FakeClock) -> RiskManager:
    """RiskManager on the default limits (max_bet 1, daily loss 10, 3 positions)."""
    return RiskManager(db_path, account_id="test", clock=clock)
