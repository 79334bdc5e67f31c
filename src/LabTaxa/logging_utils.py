"""Structured logging helpers shared across snapshot components."""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timedelta, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

import platformdirs

from .settings import APP_NAME

__all__ = ["JSONFormatter", "LOGGER_NAME", "default_log_dir", "setup_logging"]

LOGGER_NAME = "LabTaxa"


class JSONFormatter(logging.Formatter):
    """Formatter emitting one JSON object per log record."""

    def format(self, record: logging.LogRecord) -> str:
        """Render ``record`` as a JSON string with snapshot-specific fields."""

        now = datetime.now(timezone.utc)
        payload = {
            "timestamp": now.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "stage": getattr(record, "stage", None),
        }
        for key in ("path", "url", "table", "attempt", "size_bytes"):
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = str(value) if isinstance(value, Path) else value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def default_log_dir() -> Path:
    """Return the log directory, honouring ``LABTAXA_LOG_DIR`` when set."""

    env_value = os.environ.get("LABTAXA_LOG_DIR", "").strip()
    if env_value:
        return Path(env_value).expanduser()
    return Path(platformdirs.user_log_dir(APP_NAME))


def _cleanup_logs(log_dir: Path, retention_days: int) -> List[str]:
    """Delete JSON log files older than ``retention_days``."""

    actions: List[str] = []
    cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
    for file in log_dir.glob("labtaxa-*.jsonl*"):
        mtime = datetime.fromtimestamp(file.stat().st_mtime, tz=timezone.utc)
        if mtime < cutoff:
            file.unlink(missing_ok=True)
            actions.append(f"Deleted expired log {file.name}")
    return actions


def setup_logging(
    *,
    level: str = "INFO",
    verbose: bool = True,
    log_dir: Optional[Path] = None,
    retention_days: int = 30,
    max_log_size_mb: int = 50,
    json_file: bool = True,
) -> logging.Logger:
    """Configure the ``LabTaxa`` logger with a console handler and JSON sidecar.

    When ``verbose`` is false the threshold is raised to ``WARNING`` so that
    only warnings and errors reach the console and log file.
    """

    logger = logging.getLogger(LOGGER_NAME)
    resolved_level = getattr(logging, level.upper(), logging.INFO)
    if not verbose:
        resolved_level = max(resolved_level, logging.WARNING)
    logger.setLevel(resolved_level)

    for handler in list(logger.handlers):
        if getattr(handler, "_labtaxa_managed", False):
            logger.removeHandler(handler)
            handler.close()

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    stream_handler._labtaxa_managed = True  # type: ignore[attr-defined]
    logger.addHandler(stream_handler)

    if json_file:
        resolved_dir = log_dir if log_dir is not None else default_log_dir()
        resolved_dir.mkdir(parents=True, exist_ok=True)
        _cleanup_logs(resolved_dir, retention_days)
        today = datetime.now(timezone.utc).strftime("%Y%m%d")
        file_handler = RotatingFileHandler(
            resolved_dir / f"labtaxa-{today}.jsonl",
            maxBytes=int(max_log_size_mb * 1024 * 1024),
            backupCount=3,
        )
        file_handler.setFormatter(JSONFormatter())
        file_handler._labtaxa_managed = True  # type: ignore[attr-defined]
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger
