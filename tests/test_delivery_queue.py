from __future__ import annotations

import threading

import pytest

from focus_servers.tracker.delivery_queue import DeliveryQueue
from focus_servers.tracker.message import Message


def test_fifo_order_and_push_front() -> None:
    q = DeliveryQueue()
    a, b, c = Message.close_tab(1), Message.freeze_tab(2), Message.close_tab(3)
    for m in (a, b, c):
        q.append(m)

    first = q.pop()
    assert first is a
    # A failed transmission goes back to the head, ahead of b and c.
    q.push_front(first)
    assert q.snapshot() == [a, b, c]
    assert [q.pop(), q.pop(), q.pop(), q.pop()] == [a, b, c, None]


def test_duplicates_are_kept() -> None:
    q = DeliveryQueue()
    m = Message.close_tab(5)
    q.append(m)
    q.append(m)
    assert len(q) == 2


def test_bounded_queue_drops_oldest_and_counts() -> None:
    q = DeliveryQueue(capacity=2)
    msgs = [Message.close_tab(i) for i in range(1, 5)]
    for m in msgs:
        q.append(m)
    assert q.snapshot() == msgs[2:]
    assert q.dropped == 2


def test_invalid_capacity() -> None:
    with pytest.raises(ValueError):
        DeliveryQueue(capacity=0)


def test_concurrent_appends_lose_nothing() -> None:
    q = DeliveryQueue()

    def _worker(base: int) -> None:
        for i in range(200):
            q.append(Message.freeze_tab(base + i))

    threads = [threading.Thread(target=_worker, args=(n * 1000,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(q) == 800
    # Per-producer order is preserved.
    seen = [m.tab_id for m in q.snapshot() if m.tab_id is not None and m.tab_id < 1000]
    assert seen == list(range(200))


def test_requeued_message_survives_full_queue() -> None:
    q = DeliveryQueue(capacity=2)
    one, two, three = Message.close_tab(1), Message.close_tab(2), Message.close_tab(3)
    q.append(one)
    q.append(two)
    head = q.pop()
    assert head is one
    q.append(three)
    # Transmission of the head failed; it goes back first and something else is dropped.
    q.push_front(one)
    assert q.snapshot() == [one, three]
    assert q.dropped == 1
