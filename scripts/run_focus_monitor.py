#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[focus] channel={os.environ.get('FOCUS_CHANNEL_HOST', '127.0.0.1')}:"
    f"{os.environ.get('FOCUS_CHANNEL_PORT', '17345')} | "
    f"queue_capacity={os.environ.get('FOCUS_QUEUE_CAPACITY', 'unbounded')}",
    file=sys.stderr,
)

from focus_servers.tracker.main import main  # noqa: E402

if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
