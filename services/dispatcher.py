"""
Typed Async Pub/Sub Dispatcher

This module provides the broadcast bus every market-data registry publishes
through. A publisher registers a topic once and gets back an opaque id;
any number of subscribers receive a Pipe per topic.

Delivery:
    publish() enqueues one job per current subscriber into a bounded job
    queue consumed by a fixed pool of worker tasks. A full job queue blocks
    the publisher (backpressure). Each worker writes to exactly one
    subscriber's queue without waiting; a full subscriber queue drops the
    value for that subscriber only.

Ordering:
    A worker takes a job and delivers it in the same step, with no await in
    between. Jobs therefore reach subscriber queues in job-queue order and a
    subscriber never sees two values of one topic reordered.

Typing:
    Each topic carries the record type it was registered with. publish()
    refuses values of any other type, so subscribers never have to guess.

Example:
    dispatcher = Dispatcher(max_workers=4, jobs_limit=100)
    await dispatcher.start()

    topic = dispatcher.register_topic(Ticker)
    pipe = dispatcher.subscribe(topic)
    await dispatcher.publish(topic, ticker)

    async for value in pipe:
        ...

    dispatcher.release(pipe)
"""

import asyncio
import threading
import uuid
from typing import Any, Dict, List, Optional, Tuple

from core.errors import DispatcherNotRunningError, PipeClosedError
from core.logging import get_logger
from services.subsystem import Subsystem

logger = get_logger(__name__)

# Marks the end of a released pipe's queue
_CLOSED = object()


class Pipe:
    """
    Subscription handle.

    Attributes:
        id: Unique delivery id
        topic: Topic id this pipe is subscribed to
        kind: Record type delivered on this pipe
        dropped: Values discarded because the queue was full
    """

    def __init__(self, topic: uuid.UUID, kind: type, buffer: int) -> None:
        self.id = uuid.uuid4()
        self.topic = topic
        self.kind = kind
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=buffer + 1)
        self._buffer = buffer
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return self._queue.qsize()

    def _deliver(self, value: Any) -> bool:
        if self._closed:
            return False
        # One slot is reserved for the close marker
        if self._queue.qsize() >= self._buffer:
            self.dropped += 1
            return False
        self._queue.put_nowait(value)
        return True

    def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    async def recv(self) -> Any:
        """
        Wait for the next value.

        Raises:
            PipeClosedError: If the pipe was released
        """
        value = await self._queue.get()
        if value is _CLOSED:
            # Leave the marker for any other waiter
            self._queue.put_nowait(_CLOSED)
            raise PipeClosedError()
        return value

    def recv_nowait(self) -> Any:
        """
        Raises:
            asyncio.QueueEmpty: If nothing is waiting
            PipeClosedError: If the pipe was released
        """
        value = self._queue.get_nowait()
        if value is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise PipeClosedError()
        return value

    def __aiter__(self) -> "Pipe":
        return self

    async def __anext__(self) -> Any:
        try:
            return await self.recv()
        except PipeClosedError:
            raise StopAsyncIteration

    def __repr__(self) -> str:
        return f"<Pipe(id={self.id}, kind={self.kind.__name__}, closed={self._closed})>"


class _Topic:
    def __init__(self, kind: type) -> None:
        self.kind = kind
        self.subscribers: Dict[uuid.UUID, Pipe] = {}


class Dispatcher(Subsystem):
    """
    Worker-pool broadcast bus, managed as the `dispatch` subsystem.

    Topics survive a stop/start cycle so publishers keep their ids; pipes do
    not, every pipe is released on stop.
    """

    name = "dispatch"

    def __init__(self, max_workers: int = 10, jobs_limit: int = 100, pipe_buffer: int = 50) -> None:
        super().__init__()
        self.max_workers = max_workers
        self.jobs_limit = jobs_limit
        self.pipe_buffer = pipe_buffer
        self._topics: Dict[uuid.UUID, _Topic] = {}
        self._routes_lock = threading.RLock()
        self._jobs: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._blocked_publishers = 0
        self._requested_sizes: Tuple[Optional[int], Optional[int]] = (None, None)

    async def start(self, max_workers: Optional[int] = None, jobs_limit: Optional[int] = None) -> None:
        """
        Start the worker pool, optionally resized.

        New sizes only take effect when the start is accepted; a rejected or
        failed start leaves the configured sizes untouched.
        """
        self._requested_sizes = (max_workers, jobs_limit)
        try:
            await super().start()
        finally:
            self._requested_sizes = (None, None)

    # ============================================
    # Lifecycle
    # ============================================

    async def _start(self) -> None:
        max_workers, jobs_limit = self._requested_sizes
        max_workers = self.max_workers if max_workers is None else max_workers
        jobs_limit = self.jobs_limit if jobs_limit is None else jobs_limit
        if max_workers < 1 or jobs_limit < 1:
            raise ValueError("dispatcher needs at least one worker and one job slot")
        self.max_workers = max_workers
        self.jobs_limit = jobs_limit
        self._jobs = asyncio.Queue(maxsize=self.jobs_limit)
        self._workers = [
            asyncio.create_task(self._worker(), name=f"dispatch_worker_{i}")
            for i in range(self.max_workers)
        ]
        logger.debug(f"Dispatcher started with {self.max_workers} workers, {self.jobs_limit} job slots")

    async def _stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        # Wake publishers stuck on a full queue; they re-check state and raise
        while self._blocked_publishers:
            self._drain_jobs()
            await asyncio.sleep(0)
        self._drain_jobs()

        with self._routes_lock:
            pipes = [p for t in self._topics.values() for p in t.subscribers.values()]
            for topic in self._topics.values():
                topic.subscribers.clear()
        for pipe in pipes:
            pipe._close()
        logger.debug(f"Dispatcher released {len(pipes)} pipes")

    def _drain_jobs(self) -> None:
        while not self._jobs.empty():
            self._jobs.get_nowait()

    async def _worker(self) -> None:
        while True:
            pipe, value = await self._jobs.get()
            pipe._deliver(value)

    # ============================================
    # Routing
    # ============================================

    def register_topic(self, kind: type = object) -> uuid.UUID:
        """
        Create a topic carrying values of `kind`.

        Returns:
            Opaque topic id
        """
        topic_id = uuid.uuid4()
        with self._routes_lock:
            self._topics[topic_id] = _Topic(kind)
        return topic_id

    def topic_kind(self, topic_id: uuid.UUID) -> type:
        with self._routes_lock:
            topic = self._topics.get(topic_id)
        if topic is None:
            raise KeyError(f"dispatcher topic {topic_id} not found")
        return topic.kind

    def subscriber_count(self, topic_id: uuid.UUID) -> int:
        with self._routes_lock:
            topic = self._topics.get(topic_id)
            return len(topic.subscribers) if topic is not None else 0

    def subscribe(self, topic_id: uuid.UUID) -> Pipe:
        """
        Subscribe to a topic.

        Raises:
            DispatcherNotRunningError: If the dispatcher is not running
            KeyError: If the topic id was never registered
        """
        if not self.is_running():
            raise DispatcherNotRunningError()
        with self._routes_lock:
            topic = self._topics.get(topic_id)
            if topic is None:
                raise KeyError(f"dispatcher topic {topic_id} not found")
            pipe = Pipe(topic_id, topic.kind, self.pipe_buffer)
            topic.subscribers[pipe.id] = pipe
        logger.debug(f"Subscriber added to topic {topic_id}. total={len(topic.subscribers)}")
        return pipe

    def release(self, pipe: Pipe) -> None:
        """Unsubscribe and close a pipe. Safe to call more than once."""
        with self._routes_lock:
            topic = self._topics.get(pipe.topic)
            if topic is not None:
                topic.subscribers.pop(pipe.id, None)
        pipe._close()

    async def publish(self, topic_id: uuid.UUID, value: Any) -> None:
        """
        Deliver `value` to every current subscriber of the topic.

        Blocks while the job queue is full.

        Raises:
            DispatcherNotRunningError: If the dispatcher is not running
            TypeError: If `value` is not of the topic's registered type
        """
        if not self.is_running():
            raise DispatcherNotRunningError()
        with self._routes_lock:
            topic = self._topics.get(topic_id)
            if topic is None:
                logger.debug(f"Publish to unknown topic {topic_id} ignored")
                return
            subscribers = list(topic.subscribers.values())
        if not isinstance(value, topic.kind):
            raise TypeError(
                f"topic {topic_id} carries {topic.kind.__name__}, got {type(value).__name__}"
            )

        for pipe in subscribers:
            await self._enqueue((pipe, value))
            # Stopped while waiting for a job slot
            if not self.is_running():
                raise DispatcherNotRunningError()

    async def _enqueue(self, job: Tuple[Pipe, Any]) -> None:
        self._blocked_publishers += 1
        try:
            await self._jobs.put(job)
        finally:
            self._blocked_publishers -= 1

    def stats(self) -> Dict[str, int]:
        with self._routes_lock:
            topics = len(self._topics)
            subscribers = sum(len(t.subscribers) for t in self._topics.values())
        return {
            "topics": topics,
            "subscribers": subscribers,
            "workers": len(self._workers),
            "queued_jobs": self._jobs.qsize() if self._jobs is not None else 0,
        }
