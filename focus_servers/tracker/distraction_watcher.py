from __future__ import annotations

import logging
import re
import threading
import time
from collections.abc import Iterable
from typing import Protocol

from .config import ChannelConfig
from .message import Message
from .tab_environment import TabInfo

_LOGGER = logging.getLogger("focus.tracker.distraction_watcher")


class _TabSource(Protocol):
    def list_tabs(self) -> list[TabInfo]: ...


class _Reporter(Protocol):
    def report_distraction(self, tab_id: int | None = None) -> None: ...

    def inject(self, message: Message) -> None: ...


def compile_patterns(patterns: Iterable[str]) -> re.Pattern[str]:
    parts = [p for p in patterns if p]
    if not parts:
        # Matches nothing.
        return re.compile(r"(?!)")
    return re.compile("|".join(f"(?:{p})" for p in parts), re.IGNORECASE)


class DistractionWatcher:
    """Polls open tabs and reports each visit to a blocked destination once.

    A tab is re-reported only after it has left the blocked destination and come
    back. When ``auto_close_after`` is positive, a local close command is issued
    for a tab that stays on a blocked destination that long.
    """

    def __init__(
        self,
        source: _TabSource,
        reporter: _Reporter,
        *,
        config: ChannelConfig | None = None,
    ) -> None:
        cfg = config or ChannelConfig.from_env()
        self._source = source
        self._reporter = reporter
        self._pattern = compile_patterns(cfg.blocked_patterns)
        self._interval = max(0.1, float(cfg.watch_interval))
        self._auto_close_after = max(0.0, float(cfg.auto_close_after))

        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

        self._flagged: set[int] = set()
        self._close_deadlines: dict[int, float] = {}

    def is_blocked(self, url: str) -> bool:
        return bool(url) and self._pattern.search(url) is not None

    def start(self) -> bool:
        if self._thread is not None and self._thread.is_alive():
            return True
        self._stop.clear()
        t = threading.Thread(target=self._run, name="focus-distraction-watcher", daemon=True)
        self._thread = t
        t.start()
        return True

    def stop(self, *, timeout: float = 2.0) -> None:
        self._stop.set()
        t = self._thread
        if t is not None:
            t.join(timeout=timeout)

    def poll_once(self, *, now: float | None = None) -> list[int]:
        """Run one detection pass; returns the tab ids reported in this pass."""
        now = time.monotonic() if now is None else now
        tabs = self._source.list_tabs()

        reported: list[int] = []
        blocked_now: set[int] = set()
        for tab in tabs:
            if not self.is_blocked(tab.url):
                continue
            blocked_now.add(tab.tab_id)
            if tab.tab_id in self._flagged:
                continue
            self._flagged.add(tab.tab_id)
            _LOGGER.info("distraction tab=%s url=%s", tab.tab_id, tab.url)
            self._reporter.report_distraction(tab.tab_id)
            reported.append(tab.tab_id)
            if self._auto_close_after > 0:
                self._close_deadlines[tab.tab_id] = now + self._auto_close_after

        # Tabs that left the blocked destination (or closed) can be reported again later.
        for tab_id in self._flagged - blocked_now:
            self._flagged.discard(tab_id)
            self._close_deadlines.pop(tab_id, None)

        for tab_id, deadline in list(self._close_deadlines.items()):
            if now >= deadline:
                self._close_deadlines.pop(tab_id, None)
                _LOGGER.info("auto-closing tab=%s after %.0fs on a blocked site", tab_id, self._auto_close_after)
                self._reporter.inject(Message.close_tab(tab_id))

        return reported

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception as exc:  # noqa: BLE001
                _LOGGER.warning("tab poll failed: %s", exc)
            self._stop.wait(self._interval)


__all__ = ["DistractionWatcher", "compile_patterns"]
