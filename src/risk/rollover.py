"""UTC-midnight day rollover timer for RiskManager."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone

from src.risk.models import RiskStateUnavailable
from src.risk.risk_manager import RiskManager

logger = logging.getLogger(__name__)

RETRY_DELAY_SEC = 60.0


def seconds_until_next_utc_midnight(now: datetime | None = None) -> float:
    now = now or datetime.now(timezone.utc)
    now = now.astimezone(timezone.utc)
    tomorrow = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return max(0.0, (tomorrow - now).total_seconds())


class DailyRolloverTimer:
    """Daemon timer that calls manager.roll_over_day() at each UTC midnight.

    Entry points of RiskManager run the same idempotent rollover as a
    backstop, so a late or missed timer fire never double-resets.
    """

    def __init__(self, manager: RiskManager) -> None:
        self.manager = manager
        self._timer: threading.Timer | None = None
        self._lock = threading.Lock()
        self._stopped = True

    @property
    def running(self) -> bool:
        return not self._stopped

    def start(self) -> None:
        with self._lock:
            if not self._stopped:
                return
            self._stopped = False
            self._schedule(seconds_until_next_utc_midnight())

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _schedule(self, delay: float) -> None:
        timer = threading.Timer(delay, self._fire)
        timer.daemon = True
        self._timer = timer
        timer.start()
        logger.debug("Next rollover in %.0fs", delay)

    def _fire(self) -> None:
        delay = None
        try:
            self.manager.roll_over_day()
        except RiskStateUnavailable:
            # 次回のエントリーポイント呼び出しでも再試行される
            logger.exception("Scheduled rollover failed; retrying in %.0fs", RETRY_DELAY_SEC)
            delay = RETRY_DELAY_SEC
        with self._lock:
            if self._stopped:
                return
            self._schedule(delay if delay is not None else seconds_until_next_utc_midnight())
