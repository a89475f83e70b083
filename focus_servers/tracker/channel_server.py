from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .config import ChannelConfig, is_loopback_host
from .delivery_queue import DeliveryQueue
from .message import Message, MessageKind, parse_frame

_LOGGER = logging.getLogger("focus.tracker.channel_server")

_LOG_LEVELS = {"debug": logging.DEBUG, "info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}


def _now_ms() -> int:
    return int(time.time() * 1000)


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "The focus channel requires the 'websockets' Python package. Install it (pip install websockets)."
        ) from exc


@dataclass(frozen=True)
class ChannelSession:
    """The single authoritative agent connection. Replaced wholesale on reconnect."""

    ws: Any
    session_id: str
    connected_at_ms: int


class ChannelServer:
    """Monitor-side end of the control channel.

    - Sync API (start / send / status) for the monitor process.
    - Async websockets server internally, on a dedicated daemon thread.
    - One session at a time: the most recently accepted socket wins.
    - Every outbound command goes through the delivery queue and a single drain
      routine, so delivery order matches call order across reconnects.
    """

    def __init__(
        self,
        config: ChannelConfig | None = None,
        *,
        host: str | None = None,
        port: int | None = None,
        on_tab_closed: Callable[[int], None] | None = None,
    ) -> None:
        cfg = (config or ChannelConfig.from_env()).with_overrides(host=host, port=port)
        if not is_loopback_host(cfg.host):
            raise ValueError(f"Channel server must bind a loopback address, got {cfg.host!r}")
        self.config = cfg
        self.host = cfg.host
        self.port = int(cfg.port)
        self.queue = DeliveryQueue(capacity=cfg.queue_capacity)

        self._on_distraction: Callable[[int | None], None] | None = None
        self._on_tab_closed = on_tab_closed

        self._lock = threading.Lock()
        self._ready = threading.Event()
        self._stop = threading.Event()
        self._connected = threading.Event()

        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._server: Any | None = None
        self._bind_error: str | None = None
        self._drain_lock: asyncio.Lock | None = None

        self._session: ChannelSession | None = None
        self._last_distraction_tab_id: int | None = None

        # small log buffer (for diagnostics)
        self._logs: deque[dict[str, Any]] = deque(maxlen=200)

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(
        self,
        on_distraction: Callable[[int | None], None] | None = None,
        *,
        wait_timeout: float = 5.0,
    ) -> None:
        if on_distraction is not None:
            self._on_distraction = on_distraction
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop.clear()
        self._ready.clear()
        with self._lock:
            self._bind_error = None
            self._server = None

        t = threading.Thread(target=self._run_thread, name="focus-channel-server", daemon=True)
        self._thread = t
        t.start()

        if not self._ready.wait(timeout=max(0.05, float(wait_timeout))):
            raise RuntimeError(f"Channel server failed to start on {self.host}:{self.port}")

        with self._lock:
            server = self._server
            bind_error = self._bind_error
        if server is None:
            raise RuntimeError(f"Channel server bind failed on {self.host}:{self.port}: {bind_error or 'unknown error'}")

    def stop(self, *, timeout: float = 2.0) -> None:
        self._stop.set()
        loop = self._loop
        if loop is not None:
            with contextlib.suppress(Exception):
                asyncio.run_coroutine_threadsafe(self._shutdown_async(), loop).result(timeout=timeout)

        t = self._thread
        if t is not None:
            t.join(timeout=timeout)

    def status(self) -> dict[str, Any]:
        with self._lock:
            session = self._session
            listening = self._server is not None
            bind_error = self._bind_error
            last_tab = self._last_distraction_tab_id
            logs = list(self._logs)[-20:]

        return {
            "listening": bool(listening),
            "host": self.host,
            "port": self.port,
            "connected": session is not None,
            "sessionId": session.session_id if session is not None else None,
            **({"connectedAtMs": session.connected_at_ms} if session is not None else {}),
            "queueDepth": len(self.queue),
            "queueDropped": int(self.queue.dropped),
            "lastDistractionTabId": last_tab,
            **({"bindError": bind_error} if bind_error else {}),
            "recentLogs": logs,
        }

    def is_connected(self) -> bool:
        with self._lock:
            return self._session is not None

    def wait_for_connection(self, *, timeout: float = 5.0) -> bool:
        """Block until an agent is connected or timeout."""
        try:
            return bool(self._connected.wait(timeout=max(0.0, float(timeout))))
        except Exception:
            return False

    def set_tab_closed_handler(self, handler: Callable[[int], None] | None) -> None:
        self._on_tab_closed = handler

    @property
    def last_distraction_tab_id(self) -> int | None:
        with self._lock:
            return self._last_distraction_tab_id

    # ─────────────────────────────────────────────────────────────────────────
    # Commands
    # ─────────────────────────────────────────────────────────────────────────

    def send(self, tab_id: int, freeze_only: bool = False) -> bool:
        """Send a freeze or close command for ``tab_id``.

        Transmits right away when an agent is connected, otherwise queues until
        the next connection. Close commands are re-sent at the configured offsets
        after the first transmission. Returns False if the command was rejected.
        """
        if not isinstance(tab_id, int) or isinstance(tab_id, bool):
            self._log("error", f"refusing {'freeze' if freeze_only else 'close'} command without a tab id")
            return False
        message = Message.freeze_tab(tab_id) if freeze_only else Message.close_tab(tab_id)
        self._submit(message, resend=not freeze_only)
        return True

    def send_unfreeze(self, tab_id: int) -> bool:
        if not isinstance(tab_id, int) or isinstance(tab_id, bool):
            self._log("error", "refusing unfreeze command without a tab id")
            return False
        self._submit(Message.unfreeze_tab(tab_id), resend=False)
        return True

    def _submit(self, message: Message, *, resend: bool) -> None:
        self.queue.append(message)
        with self._lock:
            connected = self._session is not None
        if connected:
            self._log("info", f"sending {message.kind.value} tab={message.tab_id}")
        else:
            self._log("warn", f"no agent connected, queued {message.kind.value} tab={message.tab_id} depth={len(self.queue)}")

        loop = self._loop
        if loop is None:
            return
        try:
            loop.call_soon_threadsafe(self._on_submitted, message, bool(resend and connected))
        except RuntimeError:
            # Loop already closed; the message stays queued.
            pass

    def _on_submitted(self, message: Message, resend: bool) -> None:
        self._schedule_drain()
        if not resend or self._loop is None:
            return
        for delay in self.config.close_resend_delays:
            self._loop.call_later(max(0.0, float(delay)), self._resend, message)

    def _resend(self, message: Message) -> None:
        # Fires regardless of session changes; while disconnected the copy waits in the queue.
        self._log("debug", f"redundant {message.kind.value} tab={message.tab_id}")
        self.queue.append(message)
        self._schedule_drain()

    # ─────────────────────────────────────────────────────────────────────────
    # Internals (async)
    # ─────────────────────────────────────────────────────────────────────────

    def _log(self, level: str, message: str) -> None:
        _LOGGER.log(_LOG_LEVELS.get(level, logging.INFO), message)
        with self._lock:
            self._logs.append({"ts": _now_ms(), "level": level, "message": message})

    def _run_thread(self) -> None:
        try:
            asyncio.run(self._run_async())
        finally:
            self._loop = None
            self._ready.set()

    async def _run_async(self) -> None:
        websockets = _import_websockets()
        self._loop = asyncio.get_running_loop()
        self._drain_lock = asyncio.Lock()

        try:
            server = await websockets.serve(
                self._handler,
                self.host,
                int(self.port),
                ping_interval=None,
                max_size=65_536,
            )
        except OSError as exc:
            with self._lock:
                self._bind_error = str(exc)
            self._log("error", f"channel bind failed: {exc}")
            return

        with self._lock:
            self._server = server
        with contextlib.suppress(Exception):
            self.port = int(next(iter(server.sockets)).getsockname()[1])
        self._log("info", f"channel listening on {self.host}:{self.port}")
        self._ready.set()

        try:
            while not self._stop.is_set():
                await asyncio.sleep(0.05)
        finally:
            await self._shutdown_async()

    async def _shutdown_async(self) -> None:
        with self._lock:
            srv = self._server
            self._server = None
            session = self._session
        try:
            if srv is not None:
                srv.close()
                await srv.wait_closed()
        except Exception:
            pass
        if session is not None:
            with contextlib.suppress(Exception):
                await session.ws.close()
            self._disconnect(session)

    async def _handler(self, ws) -> None:  # type: ignore[no-untyped-def]
        session = ChannelSession(
            ws=ws,
            session_id=f"chan-{_now_ms()}-{os.getpid()}",
            connected_at_ms=_now_ms(),
        )
        with self._lock:
            previous = self._session
            self._session = session
        self._connected.set()
        self._log("info", f"agent connected session={session.session_id}")

        if previous is not None and previous.ws is not ws:
            self._log("info", f"superseded session={previous.session_id}")
            with contextlib.suppress(Exception):
                asyncio.get_running_loop().create_task(previous.ws.close(code=1000, reason="superseded"))

        await self._drain()

        try:
            async for raw in ws:
                if not self._is_current(session):
                    continue
                self._on_frame(raw)
        except Exception as exc:  # noqa: BLE001
            self._log("warn", f"agent connection error: {exc}")
        finally:
            self._disconnect(session)

    def _is_current(self, session: ChannelSession) -> bool:
        with self._lock:
            return self._session is session

    def _disconnect(self, session: ChannelSession) -> None:
        with self._lock:
            if self._session is not session:
                return
            self._session = None
            self._connected.clear()
        self._log("info", f"agent disconnected session={session.session_id} queued={len(self.queue)}")

    def _schedule_drain(self) -> None:
        loop = self._loop
        if loop is None:
            return
        loop.create_task(self._drain())

    async def _drain(self) -> None:
        lock = self._drain_lock
        if lock is None:
            return
        async with lock:
            while True:
                with self._lock:
                    session = self._session
                if session is None:
                    return
                message = self.queue.pop()
                if message is None:
                    return
                try:
                    await session.ws.send(message.encode())
                except Exception as exc:  # noqa: BLE001
                    self.queue.push_front(message)
                    self._log("warn", f"send failed, requeued {message.kind.value} tab={message.tab_id}: {exc}")
                    return

    def _on_frame(self, raw: Any) -> None:
        msg = parse_frame(raw, allow_legacy=True)
        if msg is None:
            self._log("debug", "ignored malformed frame")
            return

        if msg.kind is MessageKind.DISTRACTION:
            if msg.tab_id is not None:
                with self._lock:
                    self._last_distraction_tab_id = msg.tab_id
            self._log("info", f"distraction tab={msg.tab_id}")
            cb = self._on_distraction
            if cb is not None:
                try:
                    cb(msg.tab_id)
                except Exception:  # noqa: BLE001
                    _LOGGER.exception("on_distraction callback failed")
            return

        if msg.kind is MessageKind.TAB_CLOSED:
            with self._lock:
                if self._last_distraction_tab_id == msg.tab_id:
                    self._last_distraction_tab_id = None
            self._log("info", f"tab closed tab={msg.tab_id}")
            cb_closed = self._on_tab_closed
            if cb_closed is not None and msg.tab_id is not None:
                try:
                    cb_closed(msg.tab_id)
                except Exception:  # noqa: BLE001
                    _LOGGER.exception("on_tab_closed callback failed")
            return

        self._log("debug", f"ignored inbound {msg.kind.value}")


__all__ = ["ChannelServer", "ChannelSession"]
