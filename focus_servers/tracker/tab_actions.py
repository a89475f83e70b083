"""Per-tab freeze / close state machines on the agent side.

Each tab gets its own ``TabActionStateMachine`` (Idle -> Frozen -> Idle|Closing -> gone),
kept in a ``TabActionManager`` map so timers of unrelated tabs never share handles.
All methods run on the agent's event loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from enum import Enum

from .config import ChannelConfig
from .message import Message, MessageKind
from .tab_environment import TabEnvironment

_LOGGER = logging.getLogger("focus.tracker.tab_actions")


class TabState(str, Enum):
    IDLE = "idle"
    FROZEN = "frozen"
    CLOSING = "closing"


class TabActionStateMachine:
    def __init__(
        self,
        tab_id: int,
        env: TabEnvironment,
        *,
        reply: Callable[[Message], None],
        on_done: Callable[[int], None],
        freeze_interval: float = 1.0,
        close_attempts: int = 3,
        close_retry_delay: float = 0.1,
    ) -> None:
        self.tab_id = tab_id
        self.state = TabState.IDLE
        self._env = env
        self._reply = reply
        self._on_done = on_done
        self._freeze_interval = max(0.01, float(freeze_interval))
        self._close_attempts = max(1, int(close_attempts))
        self._close_retry_delay = max(0.0, float(close_retry_delay))

        self._freeze_task: asyncio.Task | None = None
        self._render_task: asyncio.Task | None = None
        self._close_task: asyncio.Task | None = None
        self.discarded = False

    @property
    def freeze_active(self) -> bool:
        return self._freeze_task is not None and not self._freeze_task.done()

    def freeze(self) -> None:
        if self.state is not TabState.IDLE:
            # Already frozen (idempotent) or closing (close wins).
            return
        self.state = TabState.FROZEN
        self._freeze_task = asyncio.get_running_loop().create_task(self._freeze_loop())
        _LOGGER.info("freeze tab=%s", self.tab_id)

    def unfreeze(self) -> None:
        if self.state is not TabState.FROZEN:
            return
        self._cancel_freeze()
        self.state = TabState.IDLE
        asyncio.get_running_loop().create_task(self._remove_block_once())
        _LOGGER.info("unfreeze tab=%s", self.tab_id)

    def close(self) -> None:
        if self.state is TabState.CLOSING:
            return
        was_frozen = self.state is TabState.FROZEN
        self._cancel_freeze()
        self.state = TabState.CLOSING
        if was_frozen:
            # The tab may survive every removal attempt; it must not stay blocked.
            asyncio.get_running_loop().create_task(self._remove_block_once())
        self._close_task = asyncio.get_running_loop().create_task(self._close_sequence())
        _LOGGER.info("close tab=%s", self.tab_id)

    def discard(self) -> None:
        """Drop all timers without any further environment calls or replies."""
        self._cancel_freeze()
        task = self._close_task
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()
        self.discarded = True

    async def wait_closed(self) -> None:
        task = self._close_task
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def _cancel_freeze(self) -> None:
        task = self._freeze_task
        self._freeze_task = None
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()

    async def _freeze_loop(self) -> None:
        while True:
            render = asyncio.get_running_loop().create_task(self._render_once())
            self._render_task = render
            # Cancelling the loop leaves an in-flight render running; close and unfreeze wait for it.
            if not await asyncio.shield(render):
                if not await self._exists():
                    _LOGGER.info("frozen tab=%s is gone, dropping state", self.tab_id)
                    self._freeze_task = None
                    self._finish()
                    return
            await asyncio.sleep(self._freeze_interval)

    async def _render_once(self) -> bool:
        try:
            await self._env.render_block(self.tab_id)
            return True
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("render_block failed tab=%s: %s", self.tab_id, exc)
            return False

    async def _settle_render(self) -> None:
        """Wait until a block injection that was in flight at cancel time has landed."""
        render = self._render_task
        if render is not None and not render.done():
            await asyncio.wait({render})

    async def _remove_block_once(self) -> None:
        await self._settle_render()
        try:
            await self._env.remove_block(self.tab_id)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("remove_block failed tab=%s: %s", self.tab_id, exc)

    async def _exists(self) -> bool:
        try:
            return bool(await self._env.tab_exists(self.tab_id))
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("tab_exists failed tab=%s: %s", self.tab_id, exc)
            # Unknown is treated as present so removal is still attempted.
            return True

    async def _close_sequence(self) -> None:
        await self._settle_render()
        removed = False
        for attempt in range(1, self._close_attempts + 1):
            if not await self._exists():
                removed = True
                break
            try:
                removed = bool(await self._env.remove_tab(self.tab_id))
            except Exception as exc:  # noqa: BLE001
                _LOGGER.warning("remove_tab raised tab=%s attempt=%s: %s", self.tab_id, attempt, exc)
                removed = False
            if removed:
                break
            if attempt < self._close_attempts:
                await asyncio.sleep(self._close_retry_delay)

        if not removed:
            _LOGGER.warning("giving up on tab=%s after %s attempts", self.tab_id, self._close_attempts)
        try:
            self._reply(Message.tab_closed(self.tab_id))
        except Exception:  # noqa: BLE001
            _LOGGER.exception("tab-closed reply failed tab=%s", self.tab_id)
        self._finish()

    def _finish(self) -> None:
        self.discarded = True
        self._on_done(self.tab_id)


def _current_task() -> asyncio.Task | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class TabActionManager:
    """Map of tab id -> state machine. Entries exist only while a tab has an action in play."""

    def __init__(
        self,
        env: TabEnvironment,
        *,
        reply: Callable[[Message], None],
        config: ChannelConfig | None = None,
    ) -> None:
        cfg = config or ChannelConfig()
        self._env = env
        self._reply = reply
        self._freeze_interval = cfg.freeze_interval
        self._close_attempts = cfg.close_attempts
        self._close_retry_delay = cfg.close_retry_delay
        self._machines: dict[int, TabActionStateMachine] = {}

    def __contains__(self, tab_id: object) -> bool:
        return tab_id in self._machines

    def state_of(self, tab_id: int) -> TabState | None:
        machine = self._machines.get(tab_id)
        return machine.state if machine is not None else None

    def machine(self, tab_id: int) -> TabActionStateMachine | None:
        return self._machines.get(tab_id)

    def active_tabs(self) -> dict[int, TabState]:
        return {tid: m.state for tid, m in self._machines.items()}

    def handle(self, message: Message) -> None:
        """Route a channel command to the tab's state machine. Unknown kinds are ignored."""
        if message.tab_id is None:
            return
        if message.kind is MessageKind.FREEZE_TAB:
            self.freeze(message.tab_id)
        elif message.kind is MessageKind.CLOSE_TAB:
            self.close(message.tab_id)
        elif message.kind is MessageKind.UNFREEZE_TAB:
            self.unfreeze(message.tab_id)
        else:
            _LOGGER.debug("ignoring %s for tab=%s", message.kind.value, message.tab_id)

    def freeze(self, tab_id: int) -> None:
        self._ensure(tab_id).freeze()

    def close(self, tab_id: int) -> None:
        """Close ``tab_id`` and lift the block from every other frozen tab."""
        self._ensure(tab_id).close()
        for other, machine in list(self._machines.items()):
            if other != tab_id and machine.state is TabState.FROZEN:
                self.unfreeze(other)

    def unfreeze(self, tab_id: int) -> None:
        machine = self._machines.get(tab_id)
        if machine is None:
            return
        machine.unfreeze()
        if machine.state is TabState.IDLE:
            self._machines.pop(tab_id, None)

    def forget(self, tab_id: int) -> None:
        """Discard state for a tab known to be gone."""
        machine = self._machines.pop(tab_id, None)
        if machine is not None:
            machine.discard()

    def shutdown(self) -> None:
        for tab_id in list(self._machines):
            self.forget(tab_id)

    def _ensure(self, tab_id: int) -> TabActionStateMachine:
        machine = self._machines.get(tab_id)
        if machine is None:
            machine = TabActionStateMachine(
                tab_id,
                self._env,
                reply=self._reply,
                on_done=self._on_done,
                freeze_interval=self._freeze_interval,
                close_attempts=self._close_attempts,
                close_retry_delay=self._close_retry_delay,
            )
            self._machines[tab_id] = machine
        return machine

    def _on_done(self, tab_id: int) -> None:
        machine = self._machines.get(tab_id)
        if machine is not None and machine.discarded:
            self._machines.pop(tab_id, None)


__all__ = ["TabActionManager", "TabActionStateMachine", "TabState"]
