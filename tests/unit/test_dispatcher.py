"""
Unit Tests for the Dispatcher

These tests verify that the Dispatcher:
- Fans every published value out to every subscriber of the topic
- Keeps per-topic order for each subscriber
- Drops values for a full subscriber without blocking the others
- Refuses to work while stopped and releases pipes on stop

Run with:
    pytest tests/unit/test_dispatcher.py -v
"""

import asyncio

import pytest
import pytest_asyncio

from core.errors import (
    AlreadyStartedError,
    DispatcherNotRunningError,
    PipeClosedError,
    StartFailedError,
)
from services.dispatcher import Dispatcher


async def drain(pipe, count, timeout=1.0):
    """Receive `count` values from a pipe."""
    return [await asyncio.wait_for(pipe.recv(), timeout) for _ in range(count)]


# ============================================
# Fixtures
# ============================================

@pytest_asyncio.fixture
async def dispatcher():
    d = Dispatcher(max_workers=4, jobs_limit=50, pipe_buffer=20)
    await d.start()
    yield d
    if d.is_running():
        await d.stop()


# ============================================
# Delivery
# ============================================

class TestPublish:
    """Tests for publish/subscribe delivery"""

    @pytest.mark.asyncio
    async def test_every_subscriber_receives_value(self, dispatcher):
        """Verify one publish reaches all pipes of the topic"""
        topic = dispatcher.register_topic(int)
        pipes = [dispatcher.subscribe(topic) for _ in range(3)]

        await dispatcher.publish(topic, 7)

        for pipe in pipes:
            assert await drain(pipe, 1) == [7]

    @pytest.mark.asyncio
    async def test_values_arrive_in_publish_order(self, dispatcher):
        """Verify a subscriber never sees two values of a topic reordered"""
        topic = dispatcher.register_topic(int)
        pipe = dispatcher.subscribe(topic)

        for i in range(15):
            await dispatcher.publish(topic, i)

        assert await drain(pipe, 15) == list(range(15))

    @pytest.mark.asyncio
    async def test_other_topics_not_delivered(self, dispatcher):
        """Verify a pipe only receives its own topic"""
        a = dispatcher.register_topic(str)
        b = dispatcher.register_topic(str)
        pipe = dispatcher.subscribe(a)

        await dispatcher.publish(b, "other")
        await dispatcher.publish(a, "mine")

        assert await drain(pipe, 1) == ["mine"]
        await asyncio.sleep(0.01)
        assert pipe.pending() == 0

    @pytest.mark.asyncio
    async def test_wrong_type_rejected(self, dispatcher):
        """Verify publish refuses a value of another type"""
        topic = dispatcher.register_topic(int)
        dispatcher.subscribe(topic)

        with pytest.raises(TypeError):
            await dispatcher.publish(topic, "not an int")

    @pytest.mark.asyncio
    async def test_unknown_topic_ignored(self, dispatcher):
        """Verify publishing to a topic nobody registered is a no-op"""
        import uuid

        await dispatcher.publish(uuid.uuid4(), 1)

    @pytest.mark.asyncio
    async def test_full_pipe_drops_for_that_subscriber_only(self):
        """Verify a slow subscriber loses values while a fast one keeps up"""
        d = Dispatcher(max_workers=2, jobs_limit=10, pipe_buffer=2)
        await d.start()
        try:
            topic = d.register_topic(int)
            slow = d.subscribe(topic)
            fast = d.subscribe(topic)

            received = []
            for i in range(5):
                await d.publish(topic, i)
                received.extend(await drain(fast, 1))

            await asyncio.sleep(0.01)
            assert received == [0, 1, 2, 3, 4]
            assert slow.pending() == 2
            assert slow.dropped == 3
            assert await drain(slow, 2) == [0, 1]
        finally:
            await d.stop()


# ============================================
# Pipes
# ============================================

class TestPipes:
    """Tests for subscribe/release"""

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, dispatcher):
        """Verify a pipe can be released twice"""
        topic = dispatcher.register_topic(int)
        pipe = dispatcher.subscribe(topic)

        dispatcher.release(pipe)
        dispatcher.release(pipe)

        assert pipe.closed
        assert dispatcher.subscriber_count(topic) == 0

    @pytest.mark.asyncio
    async def test_recv_after_release_raises(self, dispatcher):
        """Verify a released pipe reports closure instead of blocking"""
        topic = dispatcher.register_topic(int)
        pipe = dispatcher.subscribe(topic)
        dispatcher.release(pipe)

        with pytest.raises(PipeClosedError):
            await pipe.recv()

    @pytest.mark.asyncio
    async def test_async_iteration_ends_on_release(self, dispatcher):
        """Verify `async for` over a pipe stops when it is released"""
        topic = dispatcher.register_topic(int)
        pipe = dispatcher.subscribe(topic)
        await dispatcher.publish(topic, 1)
        await asyncio.sleep(0.01)

        seen = []

        async def consume():
            async for value in pipe:
                seen.append(value)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.01)
        dispatcher.release(pipe)
        await asyncio.wait_for(task, 1.0)

        assert seen == [1]

    @pytest.mark.asyncio
    async def test_subscribe_unknown_topic(self, dispatcher):
        """Verify subscribing to an unregistered topic raises KeyError"""
        import uuid

        with pytest.raises(KeyError):
            dispatcher.subscribe(uuid.uuid4())


# ============================================
# Lifecycle
# ============================================

class TestLifecycle:
    """Tests for start/stop behaviour"""

    @pytest.mark.asyncio
    async def test_not_running_errors(self):
        """Verify subscribe and publish fail before start"""
        d = Dispatcher()
        topic = d.register_topic(int)

        with pytest.raises(DispatcherNotRunningError):
            d.subscribe(topic)
        with pytest.raises(DispatcherNotRunningError):
            await d.publish(topic, 1)

    @pytest.mark.asyncio
    async def test_double_start(self, dispatcher):
        """Verify a second start raises AlreadyStartedError"""
        with pytest.raises(AlreadyStartedError):
            await dispatcher.start()

    @pytest.mark.asyncio
    async def test_rejected_start_keeps_sizes(self, dispatcher):
        """Verify sizes passed to a rejected start are not applied later"""
        with pytest.raises(AlreadyStartedError):
            await dispatcher.start(max_workers=1, jobs_limit=1)

        await dispatcher.stop()
        await dispatcher.start()

        assert dispatcher.max_workers == 4
        assert dispatcher.jobs_limit == 50
        assert dispatcher.stats()["workers"] == 4

    @pytest.mark.asyncio
    async def test_invalid_sizes_fail_start(self):
        """Verify a start with zero workers fails and keeps the old sizes"""
        d = Dispatcher(max_workers=3, jobs_limit=5)

        with pytest.raises(StartFailedError):
            await d.start(max_workers=0)

        assert d.max_workers == 3
        assert not d.is_running()

    @pytest.mark.asyncio
    async def test_stop_closes_pipes(self, dispatcher):
        """Verify subscribers are released when the dispatcher stops"""
        topic = dispatcher.register_topic(int)
        pipe = dispatcher.subscribe(topic)

        await dispatcher.stop()

        assert pipe.closed
        with pytest.raises(PipeClosedError):
            await pipe.recv()

    @pytest.mark.asyncio
    async def test_topics_survive_restart(self, dispatcher):
        """Verify topic ids remain valid after stop/start"""
        topic = dispatcher.register_topic(int)
        await dispatcher.stop()
        await dispatcher.start(max_workers=2, jobs_limit=5)

        pipe = dispatcher.subscribe(topic)
        await dispatcher.publish(topic, 3)

        assert await drain(pipe, 1) == [3]
        assert dispatcher.stats()["workers"] == 2


# ============================================
# Backpressure and Concurrency
# ============================================

def gate_workers(dispatcher):
    """Hold every worker until the returned event is set."""
    gate = asyncio.Event()
    run_worker = dispatcher._worker

    async def gated():
        await gate.wait()
        await run_worker()

    dispatcher._worker = gated
    return gate


class TestStalledWorkers:
    """Tests with workers held back so jobs stay queued"""

    @pytest.mark.asyncio
    async def test_publish_blocks_while_jobs_full(self):
        """Verify publish waits for a job slot and resumes once workers drain"""
        d = Dispatcher(max_workers=1, jobs_limit=1, pipe_buffer=10)
        gate = gate_workers(d)
        await d.start()
        try:
            topic = d.register_topic(int)
            pipe = d.subscribe(topic)

            await d.publish(topic, 1)
            pending = asyncio.create_task(d.publish(topic, 2))
            await asyncio.sleep(0.02)

            assert not pending.done()
            assert d.stats()["queued_jobs"] == 1

            gate.set()
            await asyncio.wait_for(pending, 1.0)
            assert await drain(pipe, 2) == [1, 2]
        finally:
            await d.stop()

    @pytest.mark.asyncio
    async def test_release_before_delivery(self):
        """Verify a pipe released after publish but before delivery gets nothing"""
        d = Dispatcher(max_workers=2, jobs_limit=10, pipe_buffer=10)
        gate = gate_workers(d)
        await d.start()
        try:
            topic = d.register_topic(int)
            released = d.subscribe(topic)
            kept = d.subscribe(topic)

            await d.publish(topic, 9)
            d.release(released)
            gate.set()

            assert await drain(kept, 1) == [9]
            await asyncio.sleep(0.01)
            assert released.pending() == 0
            with pytest.raises(PipeClosedError):
                await released.recv()
        finally:
            await d.stop()

    @pytest.mark.asyncio
    async def test_stop_wakes_blocked_publisher(self):
        """Verify a publisher waiting on a full queue fails once the dispatcher stops"""
        d = Dispatcher(max_workers=1, jobs_limit=1, pipe_buffer=10)
        gate_workers(d)
        await d.start()
        topic = d.register_topic(int)
        d.subscribe(topic)
        d.subscribe(topic)

        pending = asyncio.create_task(d.publish(topic, 1))
        await asyncio.sleep(0.02)
        assert not pending.done()

        await d.stop()
        with pytest.raises(DispatcherNotRunningError):
            await asyncio.wait_for(pending, 1.0)
