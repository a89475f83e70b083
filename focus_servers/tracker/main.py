"""
Entry points for the focus tracker control channel.

``focus-monitor`` runs the channel server with the homework-gated dispatcher.
``focus-agent`` runs the browser-side client against a Chromium DevTools port.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from collections.abc import Callable, Sequence
from pathlib import Path

from .channel_client import ChannelClient
from .channel_server import ChannelServer
from .config import ChannelConfig
from .dispatcher import BlockingDispatcher
from .distraction_watcher import DistractionWatcher
from .tab_actions import TabActionManager
from .tab_environment import CdpTabEnvironment

logger = logging.getLogger("focus.tracker")

MONITOR_HELP = "commands: freeze [tab] | close [tab] | release <tab> | status | quit"


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )


def _homework_predicate(marker: str | None) -> Callable[[], bool]:
    """Homework counts as incomplete while the marker file exists (always, without a marker)."""
    if not marker:
        return lambda: True
    path = Path(marker).expanduser()
    return path.exists


def _parse_tab(raw: str | None) -> int | None:
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _run_monitor_command(line: str, server: ChannelServer, dispatcher: BlockingDispatcher) -> bool:
    parts = line.split()
    if not parts:
        return True
    cmd, arg = parts[0].lower(), (parts[1] if len(parts) > 1 else None)
    if cmd in {"quit", "exit"}:
        return False
    if cmd == "status":
        print(json.dumps(server.status(), indent=2), flush=True)
    elif cmd == "freeze":
        print("sent" if dispatcher.freeze(_parse_tab(arg)) else "no tab to freeze", flush=True)
    elif cmd == "close":
        print("sent" if dispatcher.request_close(_parse_tab(arg)) else "close denied", flush=True)
    elif cmd == "release":
        tab = _parse_tab(arg)
        print("sent" if tab is not None and dispatcher.release(tab) else "release needs a tab id", flush=True)
    else:
        print(MONITOR_HELP, flush=True)
    return True


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--host", default=None, help="channel host (loopback only)")
    parser.add_argument("--port", type=int, default=None, help="channel port (default 17345)")
    parser.add_argument("-v", "--verbose", action="store_true")


def monitor_main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="focus-monitor", description="Run the focus channel server.")
    _add_common_args(parser)
    parser.add_argument(
        "--pending-marker",
        default=None,
        help="file whose presence means homework is incomplete (default: always block)",
    )
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    config = ChannelConfig.from_env().with_overrides(host=args.host, port=args.port)
    server = ChannelServer(config)
    dispatcher = BlockingDispatcher(server, _homework_predicate(args.pending_marker))
    server.set_tab_closed_handler(dispatcher.on_tab_closed)

    try:
        server.start(dispatcher.on_distraction)
    except RuntimeError as exc:
        logger.error("monitor_start_failed: %s", exc)
        return 1

    logger.info("monitor listening on %s:%s", server.host, server.port)
    if sys.stdin.isatty():
        print(MONITOR_HELP, flush=True)
    try:
        for line in sys.stdin:
            if not _run_monitor_command(line, server, dispatcher):
                break
        else:
            # stdin closed (daemonized): keep serving until interrupted.
            threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        server.stop()
    return 0


def agent_main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="focus-agent", description="Run the browser-side focus agent.")
    _add_common_args(parser)
    parser.add_argument("--cdp-port", type=int, default=None, help="Chromium remote debugging port")
    parser.add_argument(
        "--reconnect",
        action="store_true",
        help="re-open a dropped channel with backoff instead of waiting for the next distraction",
    )
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    config = ChannelConfig.from_env().with_overrides(
        host=args.host,
        port=args.port,
        cdp_port=args.cdp_port,
        reconnect=True if args.reconnect else None,
    )

    client = ChannelClient(config)
    env = CdpTabEnvironment(config)
    manager = TabActionManager(env, reply=client.send, config=config)
    client.on_command(manager.handle)
    watcher = DistractionWatcher(env, client, config=config)

    client.start()
    watcher.start()
    logger.info("agent watching DevTools on %s (channel %s)", env.base_url, client.url)
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        watcher.stop()
        client.stop()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if args and args[0] == "agent":
        return agent_main(args[1:])
    if args and args[0] == "monitor":
        return monitor_main(args[1:])
    return monitor_main(args)


__all__ = ["agent_main", "main", "monitor_main"]


if __name__ == "__main__":
    raise SystemExit(main())
