"""Turn a child's two output pipes into ordered, timestamped events.

The producer side of this module must never wait on a consumer: a child
process writing into a full pipe blocks, and a blocked child cannot be
drained.  Both pipes are therefore read by independent tasks that only
ever wait for the child, and every event goes into a
:class:`BoundedEventQueue` that drops the oldest output instead of
blocking.  Dropped output is replaced by a single ``overflow`` event that
says how much was lost.
"""

from __future__ import annotations

import asyncio
import codecs
import collections
import itertools
import logging
from typing import TYPE_CHECKING, Deque, Dict, Optional, Union

from .events import BaseEvent, OutputEvent, OverflowEvent
from .session import Session

if TYPE_CHECKING:
    from .notifier import Notifier


logger = logging.getLogger("codestream.multiplexer")


class _Gap:
    """Placeholder for a run of dropped events of one session."""

    __slots__ = ("session_id", "count", "last_sequence")

    def __init__(self, session_id: str, count: int, last_sequence: int) -> None:
        self.session_id = session_id
        self.count = count
        self.last_sequence = last_sequence

    def to_event(self) -> OverflowEvent:
        return OverflowEvent(
            session_id=self.session_id,
            sequence=self.last_sequence,
            dropped_count=self.count,
        )


class BoundedEventQueue:
    """Non-blocking FIFO of events with a drop-oldest overflow policy.

    ``put_nowait`` never blocks and never raises for a full queue.  When the
    queue holds ``maxsize`` items, the oldest droppable event is removed and
    replaced by an overflow marker; later drops of the same session are
    merged into that marker as long as no kept event of the session sits
    between them, so a session's sequences never go backwards.  Events that
    are not droppable (lifecycle and overflow events) are always kept, so
    the queue may briefly exceed ``maxsize`` when it holds nothing else.
    """

    def __init__(self, maxsize: int = 1024) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self.maxsize = maxsize
        self.dropped = 0
        self._items: Deque[Union[BaseEvent, _Gap]] = collections.deque()
        self._ready = asyncio.Event()
        self._closed = False

    def __len__(self) -> int:
        return len(self._items)

    @property
    def closed(self) -> bool:
        return self._closed

    def put_nowait(self, event: BaseEvent) -> None:
        if self._closed:
            return
        while len(self._items) >= self.maxsize:
            if not self._drop_oldest():
                break
        self._items.append(event)
        self._ready.set()

    def _drop_oldest(self) -> bool:
        for index, item in enumerate(self._items):
            if isinstance(item, _Gap) or not item.droppable:
                continue
            self.dropped += 1
            gap = self._gap_before(index, item.session_id)
            if gap is None:
                self._items[index] = _Gap(item.session_id, 1, item.sequence)
            else:
                gap.count += 1
                gap.last_sequence = max(gap.last_sequence, item.sequence)
                del self._items[index]
            return True
        return False

    def _gap_before(self, index: int, session_id: str) -> Optional[_Gap]:
        """Return the marker a drop at ``index`` can merge into, if any.

        A kept event of the same session between the marker and ``index``
        rules the marker out: its sequence must stay below the marker's.
        """
        gap: Optional[_Gap] = None
        for item in itertools.islice(self._items, index):
            if item.session_id != session_id:
                continue
            gap = item if isinstance(item, _Gap) else None
        return gap

    def get_nowait(self) -> Optional[BaseEvent]:
        if not self._items:
            return None
        item = self._items.popleft()
        if isinstance(item, _Gap):
            return item.to_event()
        return item

    async def get(self) -> Optional[BaseEvent]:
        """Return the next event, or ``None`` once the queue is closed and empty."""
        while not self._items:
            if self._closed:
                return None
            self._ready.clear()
            await self._ready.wait()
        return self.get_nowait()

    def close(self) -> None:
        self._closed = True
        self._ready.set()


class SessionOutbox:
    """Per-session event buffer drained into the notifier by its own task."""

    def __init__(self, session_id: str, notifier: "Notifier", maxsize: int = 1024) -> None:
        self.session_id = session_id
        self.queue = BoundedEventQueue(maxsize)
        self._notifier = notifier
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._forward(), name=f"outbox-{self.session_id}")

    def emit(self, event: BaseEvent) -> None:
        self.queue.put_nowait(event)

    async def _forward(self) -> None:
        while True:
            event = await self.queue.get()
            if event is None:
                return
            self._notifier.publish(event)

    async def aclose(self) -> None:
        """Flush everything emitted so far and stop forwarding."""
        self.queue.close()
        if self._task is not None:
            await self._task
        if self.queue.dropped:
            logger.warning(
                "Session %s dropped %d output events under backpressure",
                self.session_id,
                self.queue.dropped,
            )


class OutputMultiplexer:
    """Read stdout and stderr concurrently and emit one event per chunk."""

    def __init__(self, session: Session, outbox: SessionOutbox, chunk_size: int = 4096) -> None:
        self.session = session
        self.outbox = outbox
        self.chunk_size = chunk_size
        self.chunks: Dict[str, int] = {"stdout": 0, "stderr": 0}
        self.bytes_read: Dict[str, int] = {"stdout": 0, "stderr": 0}

    async def pump(self, stdout: asyncio.StreamReader, stderr: asyncio.StreamReader) -> None:
        """Return once both streams have reached end of file."""
        await asyncio.gather(self._read(stdout, "stdout"), self._read(stderr, "stderr"))
        logger.debug(
            "Session %s output drained: stdout=%d bytes, stderr=%d bytes",
            self.session.id,
            self.bytes_read["stdout"],
            self.bytes_read["stderr"],
        )

    async def _read(self, reader: asyncio.StreamReader, stream: str) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = b""
        while True:
            chunk = await reader.read(self.chunk_size)
            if not chunk:
                tail = decoder.decode(b"", final=True)
                if tail or pending:
                    self._emit(stream, tail, pending)
                return
            self.bytes_read[stream] += len(chunk)
            pending += chunk
            text = decoder.decode(chunk)
            # an incomplete multi-byte character waits for the next chunk
            if text:
                self._emit(stream, text, pending)
                pending = b""

    def _emit(self, stream: str, content: str, payload: bytes) -> None:
        self.chunks[stream] += 1
        self.outbox.emit(
            OutputEvent(
                session_id=self.session.id,
                sequence=self.session.next_sequence(),
                stream=stream,
                content=content,
                payload=payload,
            )
        )
