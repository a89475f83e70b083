"""Environment primitives the tab state machines act through.

``CdpTabEnvironment`` drives a Chromium started with ``--remote-debugging-port``:
tab listing and removal via the DevTools HTTP endpoints, block injection via
``Runtime.evaluate`` over a websocket-client connection.
"""

from __future__ import annotations

import asyncio
import json
import threading
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.error import URLError
from urllib.parse import quote
from urllib.request import urlopen

from .config import ChannelConfig

BLOCKER_ELEMENT_ID = "__focusBlocker"

BLOCK_SCRIPT = (
    "(() => {"
    f"  if (document.getElementById('{BLOCKER_ELEMENT_ID}')) return false;"
    "  const blocker = document.createElement('div');"
    f"  blocker.id = '{BLOCKER_ELEMENT_ID}';"
    "  blocker.style = 'position:fixed;top:0;left:0;width:100vw;height:100vh;z-index:2147483647;"
    "background:#fff;display:flex;flex-direction:column;align-items:center;justify-content:center;"
    "font-size:2rem;color:#6a4cff;pointer-events:auto;';"
    "  blocker.textContent = 'Stay focused! This site is blocked until your homework is done.';"
    "  (document.body || document.documentElement).appendChild(blocker);"
    "  return true;"
    "})()"
)

UNBLOCK_SCRIPT = (
    "(() => {"
    f"  const blocker = document.getElementById('{BLOCKER_ELEMENT_ID}');"
    "  if (blocker) blocker.remove();"
    "  return !!blocker;"
    "})()"
)


class CdpError(RuntimeError):
    pass


class TabEnvironment(Protocol):
    async def render_block(self, tab_id: int) -> None: ...

    async def remove_block(self, tab_id: int) -> None: ...

    async def tab_exists(self, tab_id: int) -> bool: ...

    async def remove_tab(self, tab_id: int) -> bool: ...


@dataclass(frozen=True)
class TabInfo:
    tab_id: int
    target_id: str
    url: str
    title: str
    ws_url: str | None


class TabRegistry:
    """Stable integer ids for DevTools target ids (which are opaque strings)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._next_id = 1
        self._by_target: dict[str, int] = {}
        self._by_tab: dict[int, str] = {}

    def tab_id_for(self, target_id: str) -> int:
        with self._lock:
            tid = self._by_target.get(target_id)
            if tid is None:
                tid = self._next_id
                self._next_id += 1
                self._by_target[target_id] = tid
                self._by_tab[tid] = target_id
            return tid

    def target_for(self, tab_id: int) -> str | None:
        with self._lock:
            return self._by_tab.get(tab_id)

    def prune(self, live_targets: set[str]) -> None:
        with self._lock:
            for target_id in [t for t in self._by_target if t not in live_targets]:
                tid = self._by_target.pop(target_id)
                self._by_tab.pop(tid, None)


def _import_websocket():
    try:
        import websocket

        return websocket
    except Exception as exc:  # noqa: BLE001
        raise CdpError(
            "The DevTools tab environment requires the 'websocket-client' package (pip install websocket-client)."
        ) from exc


def _http_get_json(url: str, timeout: float = 2.0) -> Any:
    """Fetch JSON from URL."""
    try:
        with urlopen(url, timeout=timeout) as resp:
            return json.loads(resp.read().decode())
    except (URLError, OSError, ValueError) as e:
        raise CdpError(str(e)) from e


def _http_get_text(url: str, timeout: float = 2.0) -> tuple[int, str]:
    try:
        with urlopen(url, timeout=timeout) as resp:
            return int(getattr(resp, "status", 200)), resp.read().decode(errors="replace")
    except (URLError, OSError) as e:
        raise CdpError(str(e)) from e


def _evaluate(ws_url: str, expression: str, *, timeout: float) -> Any:
    """Run one Runtime.evaluate on a page target and return its value."""
    websocket = _import_websocket()
    try:
        ws = websocket.create_connection(ws_url, timeout=timeout)
    except Exception as exc:  # noqa: BLE001
        raise CdpError(f"DevTools connect failed: {exc}") from exc
    try:
        ws.send(
            json.dumps(
                {
                    "id": 1,
                    "method": "Runtime.evaluate",
                    "params": {"expression": expression, "returnByValue": True},
                }
            )
        )
        deadline = time.time() + timeout
        while time.time() < deadline:
            try:
                raw = ws.recv()
            except Exception as exc:  # noqa: BLE001
                raise CdpError(f"DevTools recv failed: {exc}") from exc
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                continue
            # Events carry no id; skip them.
            if not isinstance(data, dict) or data.get("id") != 1:
                continue
            if "error" in data:
                err = data["error"]
                raise CdpError(err.get("message", "Runtime.evaluate failed") if isinstance(err, dict) else str(err))
            result = data.get("result") if isinstance(data.get("result"), dict) else {}
            if result.get("exceptionDetails"):
                raise CdpError("block script threw in page")
            inner = result.get("result") if isinstance(result.get("result"), dict) else {}
            return inner.get("value")
        raise CdpError("DevTools response timed out")
    finally:
        with suppress(Exception):
            ws.close()


class CdpTabEnvironment:
    def __init__(self, config: ChannelConfig | None = None, *, registry: TabRegistry | None = None) -> None:
        cfg = config or ChannelConfig.from_env()
        self.base_url = f"http://{cfg.cdp_host}:{int(cfg.cdp_port)}"
        self.timeout = float(cfg.cdp_timeout)
        self.registry = registry or TabRegistry()

    # Sync helpers (called on worker threads).

    def list_tabs(self) -> list[TabInfo]:
        data = _http_get_json(f"{self.base_url}/json/list", timeout=self.timeout)
        if not isinstance(data, list):
            raise CdpError("unexpected /json/list payload")
        tabs: list[TabInfo] = []
        live: set[str] = set()
        for entry in data:
            if not isinstance(entry, dict) or entry.get("type") != "page":
                continue
            target_id = str(entry.get("id") or "")
            if not target_id:
                continue
            live.add(target_id)
            tabs.append(
                TabInfo(
                    tab_id=self.registry.tab_id_for(target_id),
                    target_id=target_id,
                    url=str(entry.get("url") or ""),
                    title=str(entry.get("title") or ""),
                    ws_url=entry.get("webSocketDebuggerUrl") or None,
                )
            )
        self.registry.prune(live)
        return tabs

    def _find(self, tab_id: int) -> TabInfo | None:
        target_id = self.registry.target_for(tab_id)
        if target_id is None:
            return None
        for tab in self.list_tabs():
            if tab.target_id == target_id:
                return tab
        return None

    def _render_block_sync(self, tab_id: int) -> None:
        tab = self._find(tab_id)
        if tab is None:
            raise CdpError(f"tab {tab_id} not found")
        if not tab.ws_url:
            raise CdpError(f"tab {tab_id} has no debugger url (another client attached?)")
        _evaluate(tab.ws_url, BLOCK_SCRIPT, timeout=self.timeout)

    def _remove_block_sync(self, tab_id: int) -> None:
        tab = self._find(tab_id)
        if tab is None or not tab.ws_url:
            return
        _evaluate(tab.ws_url, UNBLOCK_SCRIPT, timeout=self.timeout)

    def _remove_tab_sync(self, tab_id: int) -> bool:
        target_id = self.registry.target_for(tab_id)
        if target_id is None:
            return True
        status, _body = _http_get_text(f"{self.base_url}/json/close/{quote(target_id)}", timeout=self.timeout)
        return status == 200

    # TabEnvironment

    async def render_block(self, tab_id: int) -> None:
        await asyncio.to_thread(self._render_block_sync, tab_id)

    async def remove_block(self, tab_id: int) -> None:
        await asyncio.to_thread(self._remove_block_sync, tab_id)

    async def tab_exists(self, tab_id: int) -> bool:
        return (await asyncio.to_thread(self._find, tab_id)) is not None

    async def remove_tab(self, tab_id: int) -> bool:
        return await asyncio.to_thread(self._remove_tab_sync, tab_id)


__all__ = [
    "BLOCK_SCRIPT",
    "CdpError",
    "CdpTabEnvironment",
    "TabEnvironment",
    "TabInfo",
    "TabRegistry",
    "UNBLOCK_SCRIPT",
]
