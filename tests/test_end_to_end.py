from __future__ import annotations

import threading

import pytest
from conftest import wait_until

from focus_servers.tracker.channel_client import ChannelClient
from focus_servers.tracker.channel_server import ChannelServer
from focus_servers.tracker.config import ChannelConfig
from focus_servers.tracker.dispatcher import BlockingDispatcher
from focus_servers.tracker.tab_actions import TabActionManager, TabState


class BrowserTabs:
    """Thread-safe in-memory tab environment for channel round-trips."""

    def __init__(self, *tab_ids: int) -> None:
        self._lock = threading.Lock()
        self.open = set(tab_ids)
        self.rendered: list[int] = []
        self.removed: list[int] = []

    async def render_block(self, tab_id: int) -> None:
        with self._lock:
            self.rendered.append(tab_id)

    async def remove_block(self, tab_id: int) -> None:
        pass

    async def tab_exists(self, tab_id: int) -> bool:
        with self._lock:
            return tab_id in self.open

    async def remove_tab(self, tab_id: int) -> bool:
        with self._lock:
            self.removed.append(tab_id)
            self.open.discard(tab_id)
        return True

    def render_count(self, tab_id: int) -> int:
        with self._lock:
            return self.rendered.count(tab_id)


@pytest.fixture
def pair(channel_port):
    pytest.importorskip("websockets")
    cfg = ChannelConfig(
        host="127.0.0.1",
        port=channel_port,
        freeze_interval=0.05,
        close_retry_delay=0.01,
        reconnect_initial_backoff=0.05,
        reconnect_max_backoff=0.2,
    )
    server = ChannelServer(cfg)
    client = ChannelClient(cfg)
    yield cfg, server, client
    client.stop()
    server.stop()


def test_close_queued_for_already_gone_tab_is_acknowledged(pair) -> None:
    cfg, server, client = pair
    closed: list[int] = []
    server.set_tab_closed_handler(closed.append)
    server.start()

    # The monitor decides to close tab 7 before any agent is connected.
    assert server.send(7, freeze_only=False)
    assert server.status()["queueDepth"] == 1

    env = BrowserTabs()
    manager = TabActionManager(env, reply=client.send, config=cfg)
    client.on_command(manager.handle)
    client.report_distraction(7)

    assert wait_until(lambda: closed == [7])
    assert server.last_distraction_tab_id is None
    assert server.status()["queueDepth"] == 0
    assert env.removed == []
    assert wait_until(lambda: 7 not in manager)


def test_distraction_freezes_then_monitor_closes(pair) -> None:
    cfg, server, client = pair
    homework = {"incomplete": True}
    dispatcher = BlockingDispatcher(server, lambda: homework["incomplete"])
    server.set_tab_closed_handler(dispatcher.on_tab_closed)
    server.start(dispatcher.on_distraction)

    env = BrowserTabs(3)
    manager = TabActionManager(env, reply=client.send, config=cfg)
    client.on_command(manager.handle)
    client.report_distraction(3)

    assert wait_until(lambda: env.render_count(3) >= 2)
    assert manager.state_of(3) is TabState.FROZEN
    assert dispatcher.request_close() is False

    homework["incomplete"] = False
    assert dispatcher.request_close(3) is True
    assert wait_until(lambda: 3 not in env.open)
    assert wait_until(lambda: 3 not in manager)
    assert env.removed == [3]
    assert server.is_connected()
