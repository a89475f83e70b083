from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol

_LOGGER = logging.getLogger("focus.tracker.dispatcher")


class _CommandSink(Protocol):
    def send(self, tab_id: int, freeze_only: bool = False) -> bool: ...

    def send_unfreeze(self, tab_id: int) -> bool: ...


class BlockingDispatcher:
    """Homework-gated blocking policy on top of the channel server.

    A distraction freezes the tab while homework is incomplete. Closing the
    distracting tab on request is only allowed once homework is complete.
    The policy itself comes from the ``homework_incomplete`` predicate; a
    predicate that raises is treated as "complete" so nothing gets blocked.
    """

    def __init__(
        self,
        sink: _CommandSink,
        homework_incomplete: Callable[[], bool],
        *,
        on_blocked: Callable[[int], None] | None = None,
    ) -> None:
        self._sink = sink
        self._homework_incomplete = homework_incomplete
        self._on_blocked = on_blocked
        self._lock = threading.Lock()
        self._last_tab_id: int | None = None

    @property
    def last_tab_id(self) -> int | None:
        with self._lock:
            return self._last_tab_id

    def homework_incomplete(self) -> bool:
        try:
            return bool(self._homework_incomplete())
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("homework predicate failed, not blocking: %s", exc)
            return False

    def on_distraction(self, tab_id: int | None) -> None:
        if tab_id is not None:
            with self._lock:
                self._last_tab_id = tab_id
        if not self.homework_incomplete():
            _LOGGER.info("distraction tab=%s allowed, homework complete", tab_id)
            return
        if tab_id is None:
            _LOGGER.warning("distraction without a tab id, nothing to freeze")
            return
        _LOGGER.info("freezing tab=%s, homework incomplete", tab_id)
        self._sink.send(tab_id, freeze_only=True)
        if self._on_blocked is not None:
            try:
                self._on_blocked(tab_id)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("on_blocked callback failed")

    def freeze(self, tab_id: int | None = None) -> bool:
        target = tab_id if tab_id is not None else self.last_tab_id
        if target is None:
            _LOGGER.warning("no tab id available for freezing")
            return False
        return self._sink.send(target, freeze_only=True)

    def request_close(self, tab_id: int | None = None) -> bool:
        """Close the given (or last distracting) tab if homework is complete."""
        target = tab_id if tab_id is not None else self.last_tab_id
        if target is None:
            _LOGGER.warning("no tab id available for closing")
            return False
        if self.homework_incomplete():
            _LOGGER.info("tab close denied tab=%s, homework incomplete", target)
            return False
        sent = self._sink.send(target, freeze_only=False)
        if sent:
            with self._lock:
                if self._last_tab_id == target:
                    self._last_tab_id = None
        return sent

    def release(self, tab_id: int) -> bool:
        return self._sink.send_unfreeze(tab_id)

    def on_tab_closed(self, tab_id: int) -> None:
        with self._lock:
            if self._last_tab_id == tab_id:
                self._last_tab_id = None


__all__ = ["BlockingDispatcher"]
