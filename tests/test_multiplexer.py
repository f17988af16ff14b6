from __future__ import annotations

import asyncio

import pytest

from codestream.events import ExecutionCompleteEvent, ExecutionStartEvent, OutputEvent, OverflowEvent
from codestream.multiplexer import BoundedEventQueue, OutputMultiplexer, SessionOutbox
from codestream.notifier import Notifier
from codestream.session import ExecutionRequest, Session


def _output(seq: int, session_id: str = "s1") -> OutputEvent:
    return OutputEvent(session_id=session_id, sequence=seq, stream="stdout", content=str(seq))


def _drain(queue: BoundedEventQueue):
    items = []
    while True:
        item = queue.get_nowait()
        if item is None:
            return items
        items.append(item)


def test_queue_keeps_everything_below_capacity():
    queue = BoundedEventQueue(maxsize=4)
    for seq in range(4):
        queue.put_nowait(_output(seq))
    assert [e.sequence for e in _drain(queue)] == [0, 1, 2, 3]
    assert queue.dropped == 0


def test_full_queue_replaces_oldest_with_overflow():
    queue = BoundedEventQueue(maxsize=3)
    for seq in range(6):
        queue.put_nowait(_output(seq))

    items = _drain(queue)
    assert items[0].type == "overflow"
    assert items[0].dropped_count == queue.dropped == 4
    assert items[0].sequence == 3
    assert [e.sequence for e in items[1:]] == [4, 5]


def test_lifecycle_events_are_never_dropped():
    queue = BoundedEventQueue(maxsize=2)
    queue.put_nowait(ExecutionStartEvent(session_id="s1", sequence=0))
    for seq in range(1, 5):
        queue.put_nowait(_output(seq))
    queue.put_nowait(ExecutionCompleteEvent(session_id="s1", sequence=5, exit_code=0, reason="exit"))

    types = [e.type for e in _drain(queue)]
    assert types[0] == "execution_start"
    assert types[-1] == "execution_complete"
    assert "overflow" in types


def test_overflow_markers_are_per_session():
    queue = BoundedEventQueue(maxsize=2)
    queue.put_nowait(_output(0, "a"))
    queue.put_nowait(_output(0, "b"))
    queue.put_nowait(_output(1, "a"))
    queue.put_nowait(_output(1, "b"))

    items = _drain(queue)
    overflow = {e.session_id: e.dropped_count for e in items if e.type == "overflow"}
    assert sum(overflow.values()) == queue.dropped
    assert all(e.type == "overflow" or e.sequence == 1 for e in items)


def test_kept_overflow_event_splits_later_drops():
    queue = BoundedEventQueue(maxsize=3)
    queue.put_nowait(_output(5))
    queue.put_nowait(OverflowEvent(session_id="s1", sequence=7, dropped_count=2))
    queue.put_nowait(_output(10))
    queue.put_nowait(_output(11))

    sequences = [e.sequence for e in _drain(queue)]
    assert sequences == sorted(sequences)
    assert sequences == [5, 7, 10, 11]
    assert queue.dropped == 2


@pytest.mark.asyncio
async def test_get_returns_none_after_close():
    queue = BoundedEventQueue()
    queue.put_nowait(_output(0))
    queue.close()
    queue.put_nowait(_output(1))
    assert (await queue.get()).sequence == 0
    assert await queue.get() is None


@pytest.mark.asyncio
async def test_get_waits_for_producer():
    queue = BoundedEventQueue()
    getter = asyncio.create_task(queue.get())
    await asyncio.sleep(0)
    assert not getter.done()
    queue.put_nowait(_output(7))
    assert (await asyncio.wait_for(getter, 1)).sequence == 7


@pytest.mark.asyncio
async def test_multiplexer_tags_streams_and_sequences():
    notifier = Notifier()
    session = Session(ExecutionRequest(language="python", source=b"x"))
    subscription = notifier.subscribe()
    outbox = SessionOutbox(session.id, notifier)
    outbox.start()

    stdout, stderr = asyncio.StreamReader(), asyncio.StreamReader()
    stdout.feed_data(b"hello ")
    stderr.feed_data(b"oops")
    stdout.feed_data(b"world")
    stdout.feed_eof()
    stderr.feed_eof()

    multiplexer = OutputMultiplexer(session, outbox, chunk_size=4)
    await multiplexer.pump(stdout, stderr)
    await outbox.aclose()
    subscription.unsubscribe()

    events = [event async for event in subscription]
    assert "".join(e.content for e in events if e.stream == "stdout") == "hello world"
    assert "".join(e.content for e in events if e.stream == "stderr") == "oops"
    assert multiplexer.chunks["stdout"] == 3
    assert multiplexer.bytes_read == {"stdout": 11, "stderr": 4}
    sequences = [e.sequence for e in events]
    assert len(set(sequences)) == len(sequences)


@pytest.mark.asyncio
async def test_multibyte_characters_split_across_chunks():
    notifier = Notifier()
    session = Session(ExecutionRequest(language="python", source=b"x"))
    subscription = notifier.subscribe()
    outbox = SessionOutbox(session.id, notifier)
    outbox.start()

    stdout, stderr = asyncio.StreamReader(), asyncio.StreamReader()
    stdout.feed_data("é!".encode("utf-8"))
    stdout.feed_eof()
    stderr.feed_eof()

    await OutputMultiplexer(session, outbox, chunk_size=1).pump(stdout, stderr)
    await outbox.aclose()
    subscription.unsubscribe()

    events = [event async for event in subscription]
    assert [e.content for e in events] == ["é", "!"]
    assert events[0].payload == "é".encode("utf-8")
