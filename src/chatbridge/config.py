"""Runtime configuration loaded from CHATBRIDGE_* environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from chatbridge.constants import (
    DEFAULT_PORT_END,
    DEFAULT_PORT_START,
    DEFAULT_TARGET_URL,
)


@dataclass
class DetectorConfig:
    debounce_ms: int = 1500
    soft_ceiling_seconds: float = 15.0
    hard_ceiling_seconds: float = 120.0
    poll_ms: int = 100


@dataclass
class BridgeConfig:
    host: str = "127.0.0.1"
    port_start: int = DEFAULT_PORT_START
    port_end: int = DEFAULT_PORT_END
    target_url: str = DEFAULT_TARGET_URL
    runs_dir: Path = Path("runs")
    user_data_dir: Path = Path("runs") / "profile"
    headless: bool = False
    focus_backend: str = "auto"
    focus_settle_ms: int = 300
    noise_file: Path | None = None
    cookies: str = ""
    detector: DetectorConfig = field(default_factory=DetectorConfig)

    def with_overrides(self, **changes: Any) -> "BridgeConfig":
        clean = {key: value for key, value in changes.items() if value is not None}
        return replace(self, **clean)


def load_config() -> BridgeConfig:
    port_start = _env_int("CHATBRIDGE_PORT_START", DEFAULT_PORT_START)
    port_end = _env_int("CHATBRIDGE_PORT_END", DEFAULT_PORT_END)
    if not (0 < port_start <= port_end < 65536):
        raise SystemExit(f"Invalid port range: {port_start}-{port_end}")

    runs_dir = Path(os.getenv("CHATBRIDGE_RUNS_DIR", "runs") or "runs")
    user_data_raw = os.getenv("CHATBRIDGE_USER_DATA_DIR", "").strip()
    noise_raw = os.getenv("CHATBRIDGE_NOISE_FILE", "").strip()

    focus_backend = os.getenv("CHATBRIDGE_FOCUS_BACKEND", "auto").strip().lower() or "auto"
    if focus_backend not in {"auto", "x11", "null"}:
        raise SystemExit(f"Invalid CHATBRIDGE_FOCUS_BACKEND: {focus_backend}")

    detector = DetectorConfig(
        debounce_ms=max(100, min(10000, _env_int("CHATBRIDGE_DEBOUNCE_MS", 1500))),
        soft_ceiling_seconds=max(1.0, _env_float("CHATBRIDGE_SOFT_CEILING_SECONDS", 15.0)),
        hard_ceiling_seconds=max(5.0, _env_float("CHATBRIDGE_HARD_CEILING_SECONDS", 120.0)),
        poll_ms=max(20, min(1000, _env_int("CHATBRIDGE_POLL_MS", 100))),
    )
    if detector.hard_ceiling_seconds < detector.soft_ceiling_seconds:
        detector.hard_ceiling_seconds = detector.soft_ceiling_seconds

    return BridgeConfig(
        host=os.getenv("CHATBRIDGE_HOST", "127.0.0.1").strip() or "127.0.0.1",
        port_start=port_start,
        port_end=port_end,
        target_url=os.getenv("CHATBRIDGE_TARGET_URL", DEFAULT_TARGET_URL).strip() or DEFAULT_TARGET_URL,
        runs_dir=runs_dir,
        user_data_dir=Path(user_data_raw) if user_data_raw else runs_dir / "profile",
        headless=_env_flag("CHATBRIDGE_HEADLESS"),
        focus_backend=focus_backend,
        focus_settle_ms=max(0, min(5000, _env_int("CHATBRIDGE_FOCUS_SETTLE_MS", 300))),
        noise_file=Path(noise_raw) if noise_raw else None,
        cookies=os.getenv("CHATBRIDGE_COOKIES", ""),
        detector=detector,
    )


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    if not raw.strip():
        return default
    try:
        return int(float(raw))
    except ValueError as exc:
        raise SystemExit(f"{name} must be a number, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    if not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise SystemExit(f"{name} must be a number, got {raw!r}") from exc


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}
