"""Runtime settings: environment variables, optionally overridden by a JSON file."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent.parent
CONFIG_PATH_ENV = "CATALOG_CONFIG_PATH"
DEFAULT_CONFIG_PATH = BASE_DIR / "catalog_config.json"

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass
class Settings:
    account_id: Optional[str] = None
    api_token: Optional[str] = None
    account_hash: Optional[str] = None
    cache_ttl_seconds: float = 60.0
    http_timeout_seconds: float = 30.0
    max_upload_bytes: int = 10 * 1024 * 1024
    log_level: str = "INFO"
    file_log: bool = True
    file_log_level: str = "INFO"
    log_dir: str = "logs"

    @property
    def credentials_configured(self) -> bool:
        return bool(self.account_id and self.api_token)


def _parse_bool_env(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    candidate = value.strip().lower()
    if candidate in {"1", "true", "yes", "y", "on"}:
        return True
    if candidate in {"0", "false", "no", "n", "off"}:
        return False
    try:
        return bool(int(candidate))
    except ValueError:
        return default


def _parse_float_env(value: Optional[str], default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _parse_int_env(value: Optional[str], default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _optional_env(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


def _default_settings_from_env() -> Dict[str, Any]:
    lvl = os.getenv("APP_LOG_LEVEL", "INFO").upper()
    return {
        "account_id": _optional_env("CLOUDFLARE_ACCOUNT_ID"),
        "api_token": _optional_env("CLOUDFLARE_API_TOKEN"),
        "account_hash": _optional_env("CLOUDFLARE_ACCOUNT_HASH"),
        "cache_ttl_seconds": _parse_float_env(os.getenv("IMAGE_CACHE_TTL_SECONDS"), 60.0),
        "http_timeout_seconds": _parse_float_env(os.getenv("CLOUDFLARE_TIMEOUT_SECONDS"), 30.0),
        "max_upload_bytes": _parse_int_env(os.getenv("MAX_UPLOAD_BYTES"), 10 * 1024 * 1024),
        "log_level": lvl,
        "file_log": _parse_bool_env(os.getenv("APP_FILE_LOG"), True),
        "file_log_level": os.getenv("APP_FILE_LOG_LEVEL", lvl).upper(),
        "log_dir": os.getenv("APP_LOG_DIR", "logs"),
    }


def _sanitize_settings(cfg: Dict[str, Any]) -> Dict[str, Any]:
    out = _default_settings_from_env()
    if not isinstance(cfg, dict):
        return out
    for key in ("account_id", "api_token", "account_hash"):
        value = cfg.get(key, out[key])
        out[key] = value.strip() if isinstance(value, str) and value.strip() else None
    try:
        out["cache_ttl_seconds"] = max(0.0, float(cfg.get("cache_ttl_seconds", out["cache_ttl_seconds"])))
    except (TypeError, ValueError):
        out["cache_ttl_seconds"] = max(0.0, out["cache_ttl_seconds"])
    try:
        out["http_timeout_seconds"] = max(1.0, float(cfg.get("http_timeout_seconds", out["http_timeout_seconds"])))
    except (TypeError, ValueError):
        out["http_timeout_seconds"] = max(1.0, out["http_timeout_seconds"])
    try:
        out["max_upload_bytes"] = max(1, int(cfg.get("max_upload_bytes", out["max_upload_bytes"])))
    except (TypeError, ValueError):
        pass
    lvl = str(cfg.get("log_level", out["log_level"])).upper()
    out["log_level"] = lvl if lvl in LOG_LEVELS else "INFO"
    flvl = str(cfg.get("file_log_level", out["file_log_level"])).upper()
    out["file_log_level"] = flvl if flvl in LOG_LEVELS else out["log_level"]
    out["file_log"] = bool(cfg.get("file_log", out["file_log"]))
    log_dir = cfg.get("log_dir", out["log_dir"])
    out["log_dir"] = str(log_dir) if log_dir else "logs"
    return out


def load_settings(config_path: Optional[Path] = None) -> Settings:
    """Build settings from the environment, applying JSON overrides when present."""
    base = _default_settings_from_env()
    path = config_path or Path(os.getenv(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)
    persisted: Dict[str, Any] = {}
    if path.exists():
        try:
            loaded = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Ignoring unreadable config file %s: %s", path, exc)
        else:
            if isinstance(loaded, dict):
                persisted = loaded
    return Settings(**_sanitize_settings({**base, **persisted}))


def settings_summary(settings: Settings) -> Dict[str, Any]:
    """Return settings as a dict with secrets masked, for diagnostics."""
    data = asdict(settings)
    data["api_token"] = "***" if data["api_token"] else None
    return data
