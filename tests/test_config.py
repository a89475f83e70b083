from __future__ import annotations

import pytest

from focus_servers.tracker.config import (
    DEFAULT_BLOCKED_PATTERNS,
    DEFAULT_CHANNEL_PORT,
    ChannelConfig,
    is_loopback_host,
)

_ENV_VARS = (
    "FOCUS_CHANNEL_HOST",
    "FOCUS_CHANNEL_PORT",
    "FOCUS_QUEUE_CAPACITY",
    "FOCUS_BLOCKED_PATTERNS",
    "FOCUS_FREEZE_INTERVAL",
    "FOCUS_CLOSE_ATTEMPTS",
    "FOCUS_RECONNECT",
    "FOCUS_CDP_PORT",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    cfg = ChannelConfig.from_env()
    assert cfg.host == "127.0.0.1"
    assert cfg.port == DEFAULT_CHANNEL_PORT
    assert cfg.url == f"ws://127.0.0.1:{DEFAULT_CHANNEL_PORT}"
    assert cfg.close_resend_delays == (0.1, 0.3)
    assert cfg.close_attempts == 3
    assert cfg.queue_capacity is None
    assert cfg.reconnect is False
    assert cfg.blocked_patterns == DEFAULT_BLOCKED_PATTERNS


def test_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("FOCUS_CHANNEL_PORT", "18000")
    monkeypatch.setenv("FOCUS_QUEUE_CAPACITY", "50")
    monkeypatch.setenv("FOCUS_RECONNECT", "1")
    monkeypatch.setenv("FOCUS_BLOCKED_PATTERNS", r"reddit\.com, ,twitch\.tv")
    monkeypatch.setenv("FOCUS_CLOSE_ATTEMPTS", "500")
    cfg = ChannelConfig.from_env()
    assert cfg.port == 18000
    assert cfg.queue_capacity == 50
    assert cfg.reconnect is True
    assert cfg.blocked_patterns == (r"reddit\.com", r"twitch\.tv")
    # Clamped.
    assert cfg.close_attempts == 20


def test_bad_values_fall_back(monkeypatch) -> None:
    monkeypatch.setenv("FOCUS_CHANNEL_PORT", "not-a-port")
    monkeypatch.setenv("FOCUS_QUEUE_CAPACITY", "-3")
    monkeypatch.setenv("FOCUS_FREEZE_INTERVAL", "soon")
    cfg = ChannelConfig.from_env()
    assert cfg.port == DEFAULT_CHANNEL_PORT
    assert cfg.queue_capacity is None
    assert cfg.freeze_interval == 1.0


def test_with_overrides_ignores_none() -> None:
    cfg = ChannelConfig()
    assert cfg.with_overrides(host=None, port=None) is cfg
    changed = cfg.with_overrides(port=1234, reconnect=True)
    assert changed.port == 1234
    assert changed.reconnect is True
    assert cfg.port == DEFAULT_CHANNEL_PORT


@pytest.mark.parametrize(
    "host, expected",
    [("127.0.0.1", True), ("localhost", True), ("::1", True), ("127.8.0.1", True), ("0.0.0.0", False), ("example.com", False)],
)
def test_is_loopback_host(host: str, expected: bool) -> None:
    assert is_loopback_host(host) is expected
