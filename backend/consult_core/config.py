from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


@dataclass(frozen=True)
class ConsultSettings:
    allowed_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])
    rate_limit_max: int = 10
    rate_limit_window_seconds: float = 6 * 60 * 60
    upload_dir: str = str(Path(__file__).resolve().parents[1] / "uploads")
    max_upload_bytes: int = 50 * 1024 * 1024
    chat_timeout_seconds: float = 25.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "ConsultSettings":
        defaults = cls()
        origins = os.getenv("ALLOWED_ORIGINS")
        window_ms = _env_int("RATE_LIMIT_WINDOW_MS", int(defaults.rate_limit_window_seconds * 1000))
        return cls(
            allowed_origins=[origin.strip() for origin in origins.split(",") if origin.strip()]
            if origins
            else defaults.allowed_origins,
            rate_limit_max=max(1, _env_int("RATE_LIMIT_MAX", defaults.rate_limit_max)),
            rate_limit_window_seconds=max(1.0, window_ms / 1000.0),
            upload_dir=os.getenv("CONSULT_UPLOAD_DIR", defaults.upload_dir),
            max_upload_bytes=_env_int("CONSULT_MAX_UPLOAD_BYTES", defaults.max_upload_bytes),
            chat_timeout_seconds=_env_float("CONSULT_CHAT_TIMEOUT_SECONDS", defaults.chat_timeout_seconds),
            log_level=(os.getenv("CONSULT_LOG_LEVEL") or defaults.log_level).strip().upper(),
        )
