from __future__ import annotations

from focus_servers.tracker.config import ChannelConfig
from focus_servers.tracker.distraction_watcher import DistractionWatcher, compile_patterns
from focus_servers.tracker.message import Message, MessageKind
from focus_servers.tracker.tab_environment import TabInfo


def _tab(tab_id: int, url: str) -> TabInfo:
    return TabInfo(tab_id=tab_id, target_id=f"T{tab_id}", url=url, title="", ws_url=None)


class FakeSource:
    def __init__(self) -> None:
        self.tabs: list[TabInfo] = []

    def list_tabs(self) -> list[TabInfo]:
        return list(self.tabs)


class FakeReporter:
    def __init__(self) -> None:
        self.reported: list[int | None] = []
        self.injected: list[Message] = []

    def report_distraction(self, tab_id: int | None = None) -> None:
        self.reported.append(tab_id)

    def inject(self, message: Message) -> None:
        self.injected.append(message)


def _watcher(auto_close_after: float = 0.0) -> tuple[DistractionWatcher, FakeSource, FakeReporter]:
    source, reporter = FakeSource(), FakeReporter()
    cfg = ChannelConfig(auto_close_after=auto_close_after, blocked_patterns=(r"youtube\.com",))
    return DistractionWatcher(source, reporter, config=cfg), source, reporter


def test_compile_patterns_empty_matches_nothing() -> None:
    assert compile_patterns([]).search("https://youtube.com") is None
    assert compile_patterns(["", r"a\.b"]).search("x A.B y") is not None


def test_each_visit_reported_once() -> None:
    watcher, source, reporter = _watcher()
    source.tabs = [_tab(1, "https://www.youtube.com/watch?v=x"), _tab(2, "https://docs.python.org")]
    assert watcher.poll_once(now=0.0) == [1]
    assert watcher.poll_once(now=1.0) == []
    assert reporter.reported == [1]

    # Leaving and coming back is a new visit.
    source.tabs = [_tab(1, "https://docs.python.org")]
    assert watcher.poll_once(now=2.0) == []
    source.tabs = [_tab(1, "https://youtube.com/")]
    assert watcher.poll_once(now=3.0) == [1]
    assert reporter.reported == [1, 1]


def test_auto_close_after_deadline() -> None:
    watcher, source, reporter = _watcher(auto_close_after=10.0)
    source.tabs = [_tab(3, "https://youtube.com")]
    watcher.poll_once(now=100.0)
    watcher.poll_once(now=105.0)
    assert reporter.injected == []
    watcher.poll_once(now=110.0)
    assert [(m.kind, m.tab_id) for m in reporter.injected] == [(MessageKind.CLOSE_TAB, 3)]
    watcher.poll_once(now=200.0)
    assert len(reporter.injected) == 1


def test_auto_close_cancelled_when_tab_leaves() -> None:
    watcher, source, reporter = _watcher(auto_close_after=10.0)
    source.tabs = [_tab(3, "https://youtube.com")]
    watcher.poll_once(now=0.0)
    source.tabs = []
    watcher.poll_once(now=5.0)
    watcher.poll_once(now=20.0)
    assert reporter.injected == []


def test_is_blocked_is_case_insensitive() -> None:
    watcher, _source, _reporter = _watcher()
    assert watcher.is_blocked("HTTPS://YOUTUBE.COM/")
    assert not watcher.is_blocked("")
