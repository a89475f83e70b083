from __future__ import annotations

import asyncio
import contextlib
import json
import socket
import threading
import time
from typing import Any

import pytest


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


def wait_until(predicate, *, timeout: float = 3.0, interval: float = 0.02) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


class AgentStub:
    """Bare websockets client standing in for the browser agent."""

    def __init__(self, port: int) -> None:
        self.port = port
        self.frames: list[Any] = []
        self.closed = threading.Event()
        self._lock = threading.Lock()
        self._ready = threading.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop_evt: asyncio.Event | None = None
        self._ws: Any = None
        self._thread = threading.Thread(target=self._run, name="agent-stub", daemon=True)

    def start(self, *, timeout: float = 3.0) -> AgentStub:
        self._thread.start()
        assert self._ready.wait(timeout), "agent stub failed to connect"
        return self

    def _run(self) -> None:
        asyncio.run(self._main())

    async def _main(self) -> None:
        import websockets  # type: ignore[import-not-found]

        self._loop = asyncio.get_running_loop()
        self._stop_evt = asyncio.Event()
        try:
            async with websockets.connect(f"ws://127.0.0.1:{self.port}", ping_interval=None) as ws:
                self._ws = ws
                self._ready.set()
                recv_task = asyncio.create_task(self._recv(ws))
                stop_task = asyncio.create_task(self._stop_evt.wait())
                await asyncio.wait({recv_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
                for task in (recv_task, stop_task):
                    task.cancel()
                    with contextlib.suppress(BaseException):
                        await task
        finally:
            self.closed.set()

    async def _recv(self, ws) -> None:  # type: ignore[no-untyped-def]
        with contextlib.suppress(Exception):
            async for raw in ws:
                try:
                    frame = json.loads(raw)
                except ValueError:
                    frame = raw
                with self._lock:
                    self.frames.append(frame)

    def send(self, payload: str | dict[str, Any]) -> None:
        assert self._loop is not None and self._ws is not None
        raw = payload if isinstance(payload, str) else json.dumps(payload)
        asyncio.run_coroutine_threadsafe(self._ws.send(raw), self._loop).result(timeout=2.0)

    def close(self) -> None:
        loop, evt = self._loop, self._stop_evt
        if loop is not None and evt is not None and not self.closed.is_set():
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(evt.set)
        self._thread.join(timeout=3.0)

    def snapshot(self) -> list[Any]:
        with self._lock:
            return list(self.frames)

    def wait_frames(self, count: int, *, timeout: float = 3.0) -> list[Any]:
        wait_until(lambda: len(self.snapshot()) >= count, timeout=timeout)
        return self.snapshot()


@pytest.fixture
def agent_stub():
    try:
        import websockets  # type: ignore[import-not-found]  # noqa: F401
    except Exception:  # noqa: BLE001
        pytest.skip("websockets not installed")

    stubs: list[AgentStub] = []

    def _make(port: int) -> AgentStub:
        stub = AgentStub(port).start()
        stubs.append(stub)
        return stub

    yield _make
    for stub in stubs:
        stub.close()


@pytest.fixture
def channel_port() -> int:
    return free_port()
