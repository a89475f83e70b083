from __future__ import annotations

import ipaddress
import os
from dataclasses import dataclass, field, replace

DEFAULT_CHANNEL_PORT = 17345
DEFAULT_BLOCKED_PATTERNS: tuple[str, ...] = (r"youtube\.com", r"instagram\.com")


def _bool_env(name: str, *, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return str(raw).strip().lower() not in {"0", "false", "no", "off"}


def _float_env(name: str, *, default: float, lo: float, hi: float) -> float:
    try:
        val = float(os.environ.get(name) or default)
    except Exception:
        val = default
    return max(lo, min(val, hi))


def _int_env(name: str, *, default: int, lo: int, hi: int) -> int:
    return int(_float_env(name, default=default, lo=lo, hi=hi))


def is_loopback_host(host: str) -> bool:
    h = (host or "").strip().lower()
    if h == "localhost":
        return True
    try:
        return ipaddress.ip_address(h).is_loopback
    except ValueError:
        return False


@dataclass(frozen=True, slots=True)
class ChannelConfig:
    host: str = "127.0.0.1"
    port: int = DEFAULT_CHANNEL_PORT

    # Server side.
    close_resend_delays: tuple[float, ...] = (0.1, 0.3)
    queue_capacity: int | None = None

    # Agent side.
    freeze_interval: float = 1.0
    close_attempts: int = 3
    close_retry_delay: float = 0.1
    reconnect: bool = False
    reconnect_initial_backoff: float = 0.25
    reconnect_max_backoff: float = 5.0
    connect_timeout: float = 1.5

    # DevTools-backed agent environment.
    cdp_host: str = "127.0.0.1"
    cdp_port: int = 9222
    cdp_timeout: float = 3.0
    watch_interval: float = 1.0
    auto_close_after: float = 30.0
    blocked_patterns: tuple[str, ...] = field(default=DEFAULT_BLOCKED_PATTERNS)

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    def with_overrides(self, **changes: object) -> ChannelConfig:
        clean = {k: v for k, v in changes.items() if v is not None}
        return replace(self, **clean) if clean else self

    @classmethod
    def from_env(cls) -> ChannelConfig:
        host = (os.environ.get("FOCUS_CHANNEL_HOST") or "127.0.0.1").strip() or "127.0.0.1"
        port = _int_env("FOCUS_CHANNEL_PORT", default=DEFAULT_CHANNEL_PORT, lo=1, hi=65535)

        raw_cap = (os.environ.get("FOCUS_QUEUE_CAPACITY") or "").strip()
        queue_capacity: int | None = None
        if raw_cap:
            try:
                queue_capacity = int(raw_cap)
            except ValueError:
                queue_capacity = None
            if queue_capacity is not None and queue_capacity <= 0:
                queue_capacity = None

        patterns_raw = os.environ.get("FOCUS_BLOCKED_PATTERNS", "")
        patterns = tuple(p.strip() for p in patterns_raw.split(",") if p.strip()) or DEFAULT_BLOCKED_PATTERNS

        return cls(
            host=host,
            port=port,
            queue_capacity=queue_capacity,
            freeze_interval=_float_env("FOCUS_FREEZE_INTERVAL", default=1.0, lo=0.01, hi=60.0),
            close_attempts=_int_env("FOCUS_CLOSE_ATTEMPTS", default=3, lo=1, hi=20),
            close_retry_delay=_float_env("FOCUS_CLOSE_RETRY_DELAY", default=0.1, lo=0.0, hi=10.0),
            reconnect=_bool_env("FOCUS_RECONNECT", default=False),
            reconnect_max_backoff=_float_env("FOCUS_RECONNECT_MAX_BACKOFF", default=5.0, lo=0.25, hi=120.0),
            cdp_host=(os.environ.get("FOCUS_CDP_HOST") or "127.0.0.1").strip() or "127.0.0.1",
            cdp_port=_int_env("FOCUS_CDP_PORT", default=9222, lo=1, hi=65535),
            watch_interval=_float_env("FOCUS_WATCH_INTERVAL", default=1.0, lo=0.1, hi=60.0),
            auto_close_after=_float_env("FOCUS_AUTO_CLOSE_AFTER", default=30.0, lo=0.0, hi=86400.0),
            blocked_patterns=patterns,
        )
