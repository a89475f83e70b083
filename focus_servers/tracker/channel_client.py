from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from .channel_server import _import_websockets
from .config import ChannelConfig
from .message import Message, parse_frame

_LOGGER = logging.getLogger("focus.tracker.channel_client")

CommandHandler = Callable[[Message], Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _is_open(ws: Any) -> bool:
    state = getattr(ws, "state", None)
    if state is None:
        return True
    return getattr(state, "name", "") == "OPEN"


class ChannelClient:
    """Agent-side end of the control channel.

    Holds at most one socket. A connection is opened when there is a distraction
    to report, and after a drop the client only reconnects on the next
    ``report_distraction`` call. With ``reconnect=True`` a loop with capped
    backoff re-opens a dropped channel on its own so commands queued on the
    monitor still arrive.
    """

    def __init__(self, config: ChannelConfig | None = None, *, url: str | None = None) -> None:
        self.config = config or ChannelConfig.from_env()
        self.url = url or self.config.url

        self._lock = threading.Lock()
        self._ready = threading.Event()
        self._stop = threading.Event()
        self._connected = threading.Event()

        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._wake: asyncio.Event | None = None

        self._ws: Any | None = None
        self._handler: CommandHandler | None = None
        self._pending: list[Message] = []
        self._wanted = False
        self._last_error: str | None = None
        self._connected_at_ms: int | None = None
        self._connect_count = 0

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self, *, wait_timeout: float = 2.0) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._ready.clear()
        self._connected.clear()

        t = threading.Thread(target=self._run_thread, name="focus-channel-client", daemon=True)
        self._thread = t
        t.start()
        if not self._ready.wait(timeout=max(0.05, float(wait_timeout))):
            raise RuntimeError("Channel client loop failed to start")

    def stop(self, *, timeout: float = 2.0) -> None:
        self._stop.set()
        loop = self._loop
        wake = self._wake
        if loop is not None:
            with contextlib.suppress(Exception):
                if wake is not None:
                    loop.call_soon_threadsafe(wake.set)
                asyncio.run_coroutine_threadsafe(self._shutdown_async(), loop).result(timeout=timeout)
        t = self._thread
        if t is not None:
            t.join(timeout=timeout)

    def status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "url": self.url,
                "connected": self._ws is not None,
                "reconnect": bool(self.config.reconnect),
                "pendingDistractions": [m.tab_id for m in self._pending],
                "connectCount": self._connect_count,
                **({"connectedAtMs": self._connected_at_ms} if self._connected_at_ms else {}),
                **({"lastError": self._last_error} if self._last_error else {}),
            }

    def is_connected(self) -> bool:
        with self._lock:
            return self._ws is not None

    def wait_for_connection(self, *, timeout: float = 5.0) -> bool:
        try:
            return bool(self._connected.wait(timeout=max(0.0, float(timeout))))
        except Exception:
            return False

    # ─────────────────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────────────────

    def on_command(self, handler: CommandHandler | None) -> None:
        """Install the handler for inbound freeze/close/unfreeze commands (runs on the client loop)."""
        self._handler = handler

    def report_distraction(self, tab_id: int | None = None) -> None:
        message = Message.distraction(tab_id)
        self._call_soon(self._report_on_loop, message)

    def send_tab_closed(self, tab_id: int) -> None:
        self.send(Message.tab_closed(tab_id))

    def send(self, message: Message) -> None:
        """Best-effort send on the current socket; dropped when disconnected."""
        self._call_soon(self._send_on_loop, message)

    def inject(self, message: Message) -> None:
        """Deliver a command locally, as if it arrived on the channel."""
        self._call_soon(self._dispatch, message)

    # ─────────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────────

    def _call_soon(self, fn: Callable[..., None], *args: Any) -> None:
        if self._loop is None:
            self.start()
        loop = self._loop
        if loop is None:
            raise RuntimeError("Channel client is not running")
        loop.call_soon_threadsafe(fn, *args)

    def _report_on_loop(self, message: Message) -> None:
        ws = self._ws
        if ws is not None and _is_open(ws):
            asyncio.get_running_loop().create_task(self._send_or_pend(ws, message))
            return
        self._add_pending(message)
        self._request_connection()

    def _add_pending(self, message: Message) -> None:
        with self._lock:
            if any(m.tab_id == message.tab_id for m in self._pending):
                return
            self._pending.append(message)

    def _request_connection(self) -> None:
        with self._lock:
            self._wanted = True
        if self._wake is not None:
            self._wake.set()

    async def _send_or_pend(self, ws: Any, message: Message) -> None:
        try:
            await ws.send(message.encode())
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("distraction send failed tab=%s: %s", message.tab_id, exc)
            self._add_pending(message)
            self._request_connection()

    def _send_on_loop(self, message: Message) -> None:
        ws = self._ws
        if ws is None or not _is_open(ws):
            _LOGGER.warning("not connected, dropping %s tab=%s", message.kind.value, message.tab_id)
            return
        asyncio.get_running_loop().create_task(self._transmit(ws, message))

    async def _transmit(self, ws: Any, message: Message) -> None:
        try:
            await ws.send(message.encode())
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("send failed, dropping %s tab=%s: %s", message.kind.value, message.tab_id, exc)

    def _dispatch(self, message: Message) -> None:
        if not message.is_command:
            _LOGGER.debug("ignoring inbound %s", message.kind.value)
            return
        handler = self._handler
        if handler is None:
            _LOGGER.debug("no command handler installed, dropping %s", message.kind.value)
            return
        try:
            result = handler(message)
        except Exception:  # noqa: BLE001
            _LOGGER.exception("command handler failed for %s tab=%s", message.kind.value, message.tab_id)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            task.add_done_callback(_log_task_failure)

    def _on_frame(self, raw: Any) -> None:
        msg = parse_frame(raw)
        if msg is None:
            _LOGGER.debug("ignored malformed frame")
            return
        self._dispatch(msg)

    def _run_thread(self) -> None:
        try:
            asyncio.run(self._run_async())
        finally:
            self._loop = None
            self._wake = None

    async def _wait_wake(self, timeout: float) -> None:
        wake = self._wake
        if wake is None:
            return
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(wake.wait(), timeout=max(0.0, timeout))
        wake.clear()

    async def _run_async(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        self._ready.set()

        initial = max(0.01, float(self.config.reconnect_initial_backoff))
        max_backoff = max(initial, float(self.config.reconnect_max_backoff))
        backoff_s = initial

        try:
            while not self._stop.is_set():
                with self._lock:
                    wanted = self._wanted
                if not wanted:
                    await self._wait_wake(0.25)
                    continue

                if not self.config.reconnect:
                    # Lazy mode: one dial per request; a report arriving while this
                    # attempt runs sets the flag again.
                    with self._lock:
                        self._wanted = False

                opened = await self._connect_once()
                if self._stop.is_set():
                    break
                if opened:
                    backoff_s = initial

                if not self.config.reconnect:
                    if not opened:
                        with self._lock:
                            if not self._wanted:
                                self._pending.clear()
                    continue

                await self._wait_wake(backoff_s)
                backoff_s = min(backoff_s * 1.6, max_backoff)
        finally:
            await self._shutdown_async()

    async def _connect_once(self) -> bool:
        websockets = _import_websockets()
        opened = False
        try:
            async with websockets.connect(
                self.url,
                ping_interval=None,
                open_timeout=max(0.1, float(self.config.connect_timeout)),
            ) as ws:
                opened = True
                with self._lock:
                    self._ws = ws
                    self._last_error = None
                    self._connected_at_ms = _now_ms()
                    self._connect_count += 1
                self._connected.set()
                _LOGGER.info("connected to %s", self.url)

                await self._flush_pending(ws)

                async for raw in ws:
                    self._on_frame(raw)
        except Exception as exc:  # noqa: BLE001
            with self._lock:
                self._last_error = str(exc)
            if opened:
                _LOGGER.info("channel dropped: %s", exc)
            else:
                _LOGGER.debug("connect to %s failed: %s", self.url, exc)
        finally:
            self._disconnect()
        return opened

    async def _flush_pending(self, ws: Any) -> None:
        with self._lock:
            pending = list(self._pending)
            self._pending.clear()
        for i, message in enumerate(pending):
            try:
                await ws.send(message.encode())
            except Exception as exc:  # noqa: BLE001
                _LOGGER.warning("pending distraction send failed tab=%s: %s", message.tab_id, exc)
                with self._lock:
                    self._pending[:0] = pending[i:]
                return

    async def _shutdown_async(self) -> None:
        ws = None
        with self._lock:
            ws = self._ws
        try:
            if ws is not None:
                await ws.close()
        except Exception:
            pass
        self._disconnect()

    def _disconnect(self) -> None:
        with self._lock:
            self._ws = None
            self._connected_at_ms = None
            self._connected.clear()


def _log_task_failure(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        _LOGGER.error("command handler task failed: %s", exc)


__all__ = ["ChannelClient", "CommandHandler"]
