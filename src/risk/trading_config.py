"""Runtime trading limits: SQLite overrides on top of Settings defaults.

Limits can be changed while the process runs (CLI / ops) without a restart.
Every read goes through get(), which lazily loads overrides once and is
refreshed by update() / reload().
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from src.config import Settings, settings
from src.store.db import get_config_overrides, log_audit_event, set_config_values

logger = logging.getLogger(__name__)

# key → (min, max, integer_only)
CONFIG_RULES: dict[str, tuple[float, float, bool]] = {
    "max_bet_usd": (0.1, 1000.0, False),
    "daily_loss_limit_usd": (1.0, 10000.0, False),
    "max_open_positions": (1, 50, True),
    "max_category_concentration_pct": (10.0, 100.0, False),
    "max_total_exposure_usd": (1.0, 100000.0, False),
}


@dataclass
class ConfigUpdateResult:
    ok: bool
    updated: dict[str, float] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class TradingConfig:
    """Runtime-adjustable admission limits for one risk store."""

    def __init__(self, db_path: Path | str, defaults: Settings | None = None) -> None:
        self.db_path = db_path
        self._defaults = defaults or settings
        self._overrides: dict[str, float] | None = None

    def _load(self) -> dict[str, float]:
        if self._overrides is None:
            rows = get_config_overrides(db_path=self.db_path)
            self._overrides = {k: v for k, v in rows.items() if k in CONFIG_RULES}
        return self._overrides

    def reload(self) -> None:
        self._overrides = None

    def get(self, key: str) -> float:
        if key not in CONFIG_RULES:
            raise KeyError(f"Unknown trading config key: {key}")
        value = self._load().get(key, getattr(self._defaults, key))
        return int(value) if CONFIG_RULES[key][2] else float(value)

    def as_dict(self) -> dict[str, float]:
        return {key: self.get(key) for key in CONFIG_RULES}

    @property
    def max_bet_usd(self) -> float:
        return self.get("max_bet_usd")

    @property
    def daily_loss_limit_usd(self) -> float:
        return self.get("daily_loss_limit_usd")

    @property
    def max_open_positions(self) -> int:
        return int(self.get("max_open_positions"))

    @property
    def max_category_concentration_pct(self) -> float:
        return self.get("max_category_concentration_pct")

    @property
    def max_total_exposure_usd(self) -> float:
        return self.get("max_total_exposure_usd")

    def update(
        self,
        updates: dict[str, float],
        updated_by: str = "admin",
        *,
        open_positions: int | None = None,
        current_exposure: float | None = None,
    ) -> ConfigUpdateResult:
        """Validate and persist updates. All-or-nothing: any error → nothing written.

        open_positions / current_exposure only produce warnings (a lowered
        limit below current usage blocks new entries but closes nothing).
        """
        result = ConfigUpdateResult(ok=True)
        accepted: dict[str, float] = {}

        for key, raw in updates.items():
            if key not in CONFIG_RULES:
                result.errors.append(f"{key}: unknown key")
                continue
            lo, hi, integer_only = CONFIG_RULES[key]
            try:
                value = float(raw)
            except (TypeError, ValueError):
                result.errors.append(f"{key}: not a number ({raw!r})")
                continue
            if integer_only and not value.is_integer():
                result.errors.append(f"{key}: must be an integer")
                continue
            if not lo <= value <= hi:
                result.errors.append(f"{key}: {value} outside [{lo}, {hi}]")
                continue
            accepted[key] = value

        if result.errors:
            result.ok = False
            return result

        if open_positions is not None and "max_open_positions" in accepted:
            if accepted["max_open_positions"] < open_positions:
                result.warnings.append(
                    f"max_open_positions={accepted['max_open_positions']:.0f} "
                    f"< current open positions {open_positions}"
                )
        if current_exposure is not None and "max_total_exposure_usd" in accepted:
            if accepted["max_total_exposure_usd"] < current_exposure:
                result.warnings.append(
                    f"max_total_exposure_usd=${accepted['max_total_exposure_usd']:.2f} "
                    f"< current exposure ${current_exposure:.2f}"
                )

        if accepted:
            set_config_values(accepted, updated_by=updated_by, db_path=self.db_path)
            detail = ", ".join(f"{k}={v:g}" for k, v in accepted.items())
            log_audit_event("CONFIG_UPDATE", detail, actor=updated_by, db_path=self.db_path)
            logger.info("Trading config updated by %s: %s", updated_by, detail)
            self.reload()

        result.updated = accepted
        return result
