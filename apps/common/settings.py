# apps/common/settings.py
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml


DISPATCH_MODES = ("inprocess", "celery")


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    return data or {}


def _env(key: str) -> Optional[str]:
    v = os.getenv(key)
    return v.strip() if isinstance(v, str) and v.strip() else None


def _as_path(v: str) -> Path:
    return Path(v).expanduser().resolve()


def _as_bool(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def _as_list(v: Any) -> Tuple[str, ...]:
    if isinstance(v, (list, tuple)):
        items = v
    else:
        items = str(v).split(",")
    return tuple(s for s in (str(i).strip() for i in items) if s)


def _pick(env_key: str, cfg: Dict[str, Any], cfg_key: str, default: Any) -> Any:
    v = _env(env_key)
    if v is not None:
        return v
    if cfg.get(cfg_key) is not None:
        return cfg[cfg_key]
    return default


@dataclass(frozen=True)
class AppSettings:
    data_dir: Path
    monthly_limit: int = 50
    maintenance_mode: bool = False
    quota_fail_open: bool = True
    dispatch: str = "inprocess"
    max_upload_bytes: int = 10 * 1024 * 1024
    log_level: str = "INFO"
    log_json: bool = False
    redis_url: str = "redis://127.0.0.1:6379/0"
    ollama_url: str = "http://host.docker.internal:11434"
    ollama_model: str = "llama3.2:3b"
    ollama_timeout_s: float = 60.0
    ocr_lang: str = "en"
    shutdown_grace_s: float = 10.0
    cors_origins: Tuple[str, ...] = ("http://localhost:8081",)
    cors_origin_regex: Optional[str] = None
    gzip_min_bytes: int = 1000
    rate_limit_enabled: bool = True
    rate_limit_max: int = 100
    rate_limit_window_s: int = 15 * 60

    @property
    def store_dir(self) -> Path:
        return self.data_dir / "store"

    @property
    def uploads_dir(self) -> Path:
        return self.data_dir / "uploads"


def load_settings(config_path: Optional[str] = None) -> AppSettings:
    """
    Resolution order (highest -> lowest):
      1) Explicit function argument
      2) PICDO_CONFIG_PATH env var
      3) config/app.yaml
    A missing config file is not an error; every field has a default.
    Individual fields can be overridden via env vars:
      - PICDO_DATA_DIR
      - PICDO_MONTHLY_LIMIT
      - PICDO_MAINTENANCE_MODE
      - PICDO_QUOTA_FAIL_OPEN
      - PICDO_DISPATCH (inprocess | celery)
      - PICDO_MAX_UPLOAD_BYTES
      - PICDO_LOG_LEVEL, PICDO_LOG_JSON
      - REDIS_URL
      - PICDO_OLLAMA_URL, PICDO_OLLAMA_MODEL, PICDO_OLLAMA_TIMEOUT_S
      - PICDO_OCR_LANG
      - PICDO_SHUTDOWN_GRACE_S
      - PICDO_CORS_ORIGINS (comma-separated), PICDO_CORS_ORIGIN_REGEX
      - PICDO_GZIP_MIN_BYTES
      - PICDO_RATE_LIMIT_ENABLED, PICDO_RATE_LIMIT_MAX, PICDO_RATE_LIMIT_WINDOW_S
    """
    cfg_path = (
        Path(config_path)
        if config_path
        else Path(_env("PICDO_CONFIG_PATH") or "config/app.yaml")
    )
    cfg = _read_yaml(cfg_path)

    try:
        monthly_limit = int(_pick("PICDO_MONTHLY_LIMIT", cfg, "monthly_limit", 50))
        max_upload_bytes = int(_pick("PICDO_MAX_UPLOAD_BYTES", cfg, "max_upload_bytes", 10 * 1024 * 1024))
        ollama_timeout_s = float(_pick("PICDO_OLLAMA_TIMEOUT_S", cfg, "ollama_timeout_s", 60.0))
        shutdown_grace_s = float(_pick("PICDO_SHUTDOWN_GRACE_S", cfg, "shutdown_grace_s", 10.0))
        gzip_min_bytes = int(_pick("PICDO_GZIP_MIN_BYTES", cfg, "gzip_min_bytes", 1000))
        rate_limit_max = int(_pick("PICDO_RATE_LIMIT_MAX", cfg, "rate_limit_max", 100))
        rate_limit_window_s = int(_pick("PICDO_RATE_LIMIT_WINDOW_S", cfg, "rate_limit_window_s", 15 * 60))
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid numeric configuration: {e}. Config file used: {cfg_path}") from e

    dispatch = str(_pick("PICDO_DISPATCH", cfg, "dispatch", "inprocess")).lower()

    problems = []
    if monthly_limit <= 0:
        problems.append("monthly_limit / PICDO_MONTHLY_LIMIT must be > 0")
    if max_upload_bytes <= 0:
        problems.append("max_upload_bytes / PICDO_MAX_UPLOAD_BYTES must be > 0")
    if dispatch not in DISPATCH_MODES:
        problems.append(f"dispatch / PICDO_DISPATCH must be one of {', '.join(DISPATCH_MODES)}")
    if rate_limit_max <= 0 or rate_limit_window_s <= 0:
        problems.append("rate_limit_max / rate_limit_window_s must be > 0")
    if shutdown_grace_s < 0:
        problems.append("shutdown_grace_s / PICDO_SHUTDOWN_GRACE_S must be >= 0")

    if problems:
        raise ValueError(
            "Invalid configuration: " + "; ".join(problems) +
            f". Config file used: {cfg_path}"
        )

    return AppSettings(
        data_dir=_as_path(str(_pick("PICDO_DATA_DIR", cfg, "data_dir", "data"))),
        monthly_limit=monthly_limit,
        maintenance_mode=_as_bool(_pick("PICDO_MAINTENANCE_MODE", cfg, "maintenance_mode", False)),
        quota_fail_open=_as_bool(_pick("PICDO_QUOTA_FAIL_OPEN", cfg, "quota_fail_open", True)),
        dispatch=dispatch,
        max_upload_bytes=max_upload_bytes,
        log_level=str(_pick("PICDO_LOG_LEVEL", cfg, "log_level", "INFO")).upper(),
        log_json=_as_bool(_pick("PICDO_LOG_JSON", cfg, "log_json", False)),
        redis_url=str(_pick("REDIS_URL", cfg, "redis_url", "redis://127.0.0.1:6379/0")),
        ollama_url=str(_pick("PICDO_OLLAMA_URL", cfg, "ollama_url", "http://host.docker.internal:11434")),
        ollama_model=str(_pick("PICDO_OLLAMA_MODEL", cfg, "ollama_model", "llama3.2:3b")),
        ollama_timeout_s=ollama_timeout_s,
        ocr_lang=str(_pick("PICDO_OCR_LANG", cfg, "ocr_lang", "en")),
        shutdown_grace_s=shutdown_grace_s,
        cors_origins=_as_list(_pick("PICDO_CORS_ORIGINS", cfg, "cors_origins", "http://localhost:8081")),
        cors_origin_regex=_pick("PICDO_CORS_ORIGIN_REGEX", cfg, "cors_origin_regex", None) or None,
        gzip_min_bytes=gzip_min_bytes,
        rate_limit_enabled=_as_bool(_pick("PICDO_RATE_LIMIT_ENABLED", cfg, "rate_limit_enabled", True)),
        rate_limit_max=rate_limit_max,
        rate_limit_window_s=rate_limit_window_s,
    )
