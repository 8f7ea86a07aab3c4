from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DATA_DIR = Path(__file__).resolve().parent / "data"

TRUTHY_VALUES = {"1", "true", "yes", "on"}


class ConfigError(RuntimeError):
    pass


@dataclass
class AppConfig:
    ledger_db: Path
    upload_dir: Path
    strict_dates: bool
    log_level: str


def _read_bool_env(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in TRUTHY_VALUES


def _read_path_env(name: str, default: Path) -> Path:
    raw = (os.getenv(name) or "").strip()
    return Path(raw).expanduser() if raw else default


def load_config() -> AppConfig:
    log_level = (os.getenv("REFERRAL_LOG_LEVEL") or "INFO").strip().upper()
    if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise ConfigError(f"Unsupported REFERRAL_LOG_LEVEL value: {log_level}")

    return AppConfig(
        ledger_db=_read_path_env("REFERRAL_LEDGER_DB", DATA_DIR / "referrals.sqlite3"),
        upload_dir=_read_path_env("REFERRAL_UPLOAD_DIR", DATA_DIR / "uploads"),
        strict_dates=_read_bool_env("REFERRAL_STRICT_DATES"),
        log_level=log_level,
    )
