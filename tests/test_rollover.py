"""Tests for the UTC-midnight rollover timer."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from src.risk.models import RiskStateUnavailable
from src.risk.rollover import RETRY_DELAY_SEC, DailyRolloverTimer, seconds_until_next_utc_midnight


class StubManager:
    def __init__(self, fail: bool = False) -> None:
        self.calls = 0
        self.fail = fail

    def roll_over_day(self) -> bool:
        self.calls += 1
        if self.fail:
            raise RiskStateUnavailable("locked")
        return True


class TestSecondsUntilMidnight:
    def test_midday(self):
        now = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
        assert seconds_until_next_utc_midnight(now) == 12 * 3600

    def test_just_after_midnight(self):
        now = datetime(2026, 3, 2, 0, 0, 1, tzinfo=timezone.utc)
        assert seconds_until_next_utc_midnight(now) == pytest.approx(86399)


class TestDailyRolloverTimer:
    def test_start_stop(self):
        timer = DailyRolloverTimer(StubManager())
        timer.start()
        assert timer.running
        assert timer._timer.daemon
        timer.stop()
        assert not timer.running
        assert timer._timer is None

    def test_fire_rolls_over_and_reschedules(self, monkeypatch):
        scheduled = []
        manager = StubManager()
        timer = DailyRolloverTimer(manager)
        monkeypatch.setattr(timer, "_schedule", scheduled.append)
        timer._stopped = False

        timer._fire()

        assert manager.calls == 1
        assert len(scheduled) == 1
        assert 0 <= scheduled[0] <= 86400

    def test_failed_rollover_retries_soon(self, monkeypatch):
        scheduled = []
        timer = DailyRolloverTimer(StubManager(fail=True))
        monkeypatch.setattr(timer, "_schedule", scheduled.append)
        timer._stopped = False

        timer._fire()

        assert scheduled == [RETRY_DELAY_SEC]

    def test_stopped_timer_does_not_reschedule(self, monkeypatch):
        scheduled = []
        manager = StubManager()
        timer = DailyRolloverTimer(manager)
        monkeypatch.setattr(timer, "_schedule", scheduled.append)

        timer._fire()

        assert manager.calls == 1
        assert scheduled == []

    def test_with_real_manager(self, manager, clock):
        timer = DailyRolloverTimer(manager)
        timer._fire()
        assert manager.state.daily_reset_date == "2026-03-02"
        clock.advance(days=1)
        timer._fire()
        assert manager.state.daily_reset_date == "2026-03-03"
