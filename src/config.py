from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Account / storage
    account_id: str = "default"
    execution_mode: str = "paper"  # "paper" | "live" | "dry-run"
    paper_db_path: str = "data/paper_risk.db"
    live_db_path: str = "data/live_risk.db"
    dry_run_db_path: str = ""

    # === Admission control (runtime-adjustable defaults, see trading_config) ===
    max_bet_usd: float = 1.0
    daily_loss_limit_usd: float = 10.0
    max_open_positions: int = 3
    max_category_concentration_pct: float = 50.0
    max_total_exposure_usd: float = 50.0

    # === Circuit breaker ===
    risk_check_enabled: bool = True
    velocity_window_min: int = 30  # 損失ベロシティの集計窓 (分)
    velocity_loss_ratio: float = 0.5  # 窓内損失 >= 日次上限 × ratio でトリップ
    recovery_wins_required: int = 2  # recovery 解除に必要な連勝数
    recovery_sizing_mult: float = 0.5  # recovery 中のベットサイズ倍率

    # === Kelly sizing ===
    kelly_max_bet_pct: float = 0.05
    kelly_min_edge: float = 0.02
    kelly_min_settled: int = 20  # tier 判定に必要な決済数
    default_bankroll_usd: float = 100.0

    # === Adaptive limits ===
    adaptive_lookback_days: int = 7
    stress_lookback_days: int = 14
    stress_shock_pct: float = 0.10


settings = Settings()
