"""Logging configuration for the risk engine.

Console + daily-rotated risk.log. With STRUCTURED_LOGGING=true the file
handler writes one JSON object per line, tagged with the run id and the
account whose risk state the process governs.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
import uuid
from pathlib import Path

LOG_DIR = Path(__file__).resolve().parent.parent / "data" / "logs"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class RunContextFilter(logging.Filter):
    """Stamp run_id / account onto every record passing the handler."""

    def __init__(self, run_id: str, account: str = "") -> None:
        super().__init__()
        self.run_id = run_id
        self.account = account

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "run_id", ""):
            record.run_id = self.run_id
        if not getattr(record, "account", ""):
            record.account = self.account
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "run_id": getattr(record, "run_id", ""),
            "account": getattr(record, "account", ""),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def setup_logging(
    structured: bool = False,
    log_dir: Path | str | None = None,
    account_id: str = "",
    level: int = logging.INFO,
) -> str:
    """Configure the root logger. Returns the run id stamped on file records.

    Args:
        structured: JSON file output. Also enabled by STRUCTURED_LOGGING env var.
        log_dir: Override log directory. Defaults to data/logs/.
        account_id: Account tag for structured records.
    """
    run_id = uuid.uuid4().hex[:12]
    log_path = Path(log_dir) if log_dir else LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)
    # 既存ハンドラをクリア (重複防止)
    root.handlers.clear()

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console)

    use_structured = structured or os.environ.get("STRUCTURED_LOGGING", "").lower() in ("true", "1")
    file_handler = logging.handlers.TimedRotatingFileHandler(
        log_path / "risk.log",
        when="midnight",
        backupCount=30,
        encoding="utf-8",
        utc=True,
    )
    file_handler.addFilter(RunContextFilter(run_id, account_id))
    file_handler.setFormatter(JSONFormatter() if use_structured else logging.Formatter(LOG_FORMAT))
    root.addHandler(file_handler)

    return run_id
