import asyncio
import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from linkpulse.click_processor import health
from linkpulse.click_processor.click_worker import ClickConsumer, ProcessOutcome, compute_backoff
from linkpulse.exceptions import UnavailableError
from linkpulse.queue.factory import QueueFactory
from linkpulse.queue.strategies import InMemoryQueue


def queue_length(queue, name):
    return asyncio.run(queue.get_queue_length(name))


def publish(queue, name, *bodies):
    async def send():
        for body in bodies:
            await queue.publish(name, body)

    asyncio.run(send())


class TestProcessing:
    """One batch at a time through poll_once()"""

    def test_click_is_recorded_and_message_deleted(self, consumer, queue, store):
        store.save(1, "1", "https://example.com/")
        publish(queue, consumer.queue_name, "1")

        outcomes = asyncio.run(consumer.poll_once())

        assert outcomes == [ProcessOutcome.RECORDED]
        assert store.click_count(1) == 1
        assert queue_length(queue, consumer.queue_name) == 0
        assert consumer.stats["received"] == 1
        assert consumer.stats["recorded"] == 1

    def test_whitespace_around_code_is_ignored(self, consumer, queue, store):
        store.save(1, "1", "https://example.com/")
        publish(queue, consumer.queue_name, " 1\n")

        assert asyncio.run(consumer.poll_once()) == [ProcessOutcome.RECORDED]

    def test_empty_queue(self, consumer):
        assert asyncio.run(consumer.poll_once()) == []

    def test_unknown_code_leaves_message(self, consumer, queue, store):
        publish(queue, consumer.queue_name, "ghost")

        outcomes = asyncio.run(consumer.poll_once())

        assert outcomes == [ProcessOutcome.UNRESOLVED]
        assert store.aggregate_clicks() == []
        assert queue_length(queue, consumer.queue_name) == 1

    def test_bad_message_does_not_stop_batch(self, consumer, queue, store):
        store.save(1, "1", "https://example.com/one")
        store.save(2, "2", "https://example.com/two")
        publish(queue, consumer.queue_name, "1", "ghost", "2")

        outcomes = asyncio.run(consumer.poll_once())

        assert outcomes == [ProcessOutcome.RECORDED, ProcessOutcome.UNRESOLVED, ProcessOutcome.RECORDED]
        assert store.click_count(1) == 1
        assert store.click_count(2) == 1

    def test_unknown_code_is_dead_lettered(self, store, worker_settings):
        queue = InMemoryQueue(visibility_timeout=0)
        config = worker_settings.model_copy(update={"max_receive_count": 3, "dead_letter_queue_name": "clicks-dlq"})
        consumer = ClickConsumer(queue=queue, store=store, config=config)
        publish(queue, consumer.queue_name, "ghost")

        outcomes = [asyncio.run(consumer.poll_once()) for _ in range(3)]

        assert outcomes == [
            [ProcessOutcome.UNRESOLVED],
            [ProcessOutcome.UNRESOLVED],
            [ProcessOutcome.DEAD_LETTERED],
        ]
        assert queue_length(queue, consumer.queue_name) == 0
        dead = asyncio.run(queue.receive("clicks-dlq", wait_seconds=0))
        assert [m.body for m in dead] == ["ghost"]

    def test_dead_letter_without_queue_just_deletes(self, store, worker_settings):
        queue = InMemoryQueue(visibility_timeout=0)
        config = worker_settings.model_copy(update={"max_receive_count": 1})
        consumer = ClickConsumer(queue=queue, store=store, config=config)
        publish(queue, consumer.queue_name, "ghost")

        assert asyncio.run(consumer.poll_once()) == [ProcessOutcome.DEAD_LETTERED]
        assert queue_length(queue, consumer.queue_name) == 0

    def test_zero_limit_retries_forever(self, store, worker_settings):
        queue = InMemoryQueue(visibility_timeout=0)
        config = worker_settings.model_copy(update={"max_receive_count": 0})
        consumer = ClickConsumer(queue=queue, store=store, config=config)
        publish(queue, consumer.queue_name, "ghost")

        for _ in range(10):
            assert asyncio.run(consumer.poll_once()) == [ProcessOutcome.UNRESOLVED]
        assert queue_length(queue, consumer.queue_name) == 1

    def test_failed_dead_letter_publish_keeps_message(self, store, worker_settings):
        queue = InMemoryQueue(visibility_timeout=0)
        config = worker_settings.model_copy(update={"max_receive_count": 1, "dead_letter_queue_name": "clicks-dlq"})
        consumer = ClickConsumer(queue=queue, store=store, config=config)
        publish(queue, consumer.queue_name, "ghost")

        original_publish = queue.publish

        async def failing_publish(queue_name, body):
            if queue_name == "clicks-dlq":
                raise UnavailableError("dlq down")
            await original_publish(queue_name, body)

        queue.publish = failing_publish

        assert asyncio.run(consumer.poll_once()) == [ProcessOutcome.FAILED]
        assert queue_length(queue, consumer.queue_name) == 1

    def test_store_failure_leaves_message_for_retry(self, store, worker_settings):
        queue = InMemoryQueue(visibility_timeout=0)
        store.save(1, "1", "https://example.com/")
        flaky_store = MagicMock(wraps=store)
        flaky_store.record_click.side_effect = [UnavailableError("db down"), None]
        flaky_store.record_click.__name__ = "record_click"
        consumer = ClickConsumer(queue=queue, store=flaky_store, config=worker_settings)
        publish(queue, consumer.queue_name, "1")

        assert asyncio.run(consumer.poll_once()) == [ProcessOutcome.FAILED]
        assert queue_length(queue, consumer.queue_name) == 1

        assert asyncio.run(consumer.poll_once()) == [ProcessOutcome.RECORDED]
        assert queue_length(queue, consumer.queue_name) == 0

    def test_slow_store_times_out(self, store, worker_settings):
        slow_store = MagicMock()
        slow_store.resolve_id.side_effect = lambda code: time.sleep(0.5)
        slow_store.resolve_id.__name__ = "resolve_id"
        queue = InMemoryQueue()
        config = worker_settings.model_copy(update={"store_timeout_seconds": 0.05})
        consumer = ClickConsumer(queue=queue, store=slow_store, config=config)
        publish(queue, consumer.queue_name, "1")

        assert asyncio.run(consumer.poll_once()) == [ProcessOutcome.FAILED]
        slow_store.record_click.assert_not_called()

    def test_delete_failure_still_counts_click(self, store, worker_settings):
        """The click is stored; redelivery afterwards only over-counts"""
        queue = InMemoryQueue(visibility_timeout=0)
        store.save(1, "1", "https://example.com/")
        consumer = ClickConsumer(queue=queue, store=store, config=worker_settings)
        publish(queue, consumer.queue_name, "1")

        async def failing_delete(queue_name, receipt_handle):
            raise UnavailableError("queue down")

        queue.delete = failing_delete

        assert asyncio.run(consumer.poll_once()) == [ProcessOutcome.RECORDED]
        assert asyncio.run(consumer.poll_once()) == [ProcessOutcome.RECORDED]
        assert store.click_count(1) == 2

    def test_unexpected_error_is_contained(self, queue, worker_settings):
        broken_store = MagicMock()
        broken_store.resolve_id.side_effect = RuntimeError("boom")
        broken_store.resolve_id.__name__ = "resolve_id"
        consumer = ClickConsumer(queue=queue, store=broken_store, config=worker_settings)
        publish(queue, consumer.queue_name, "1", "2")

        assert asyncio.run(consumer.poll_once()) == [ProcessOutcome.FAILED, ProcessOutcome.FAILED]
        assert consumer.stats["failed"] == 2


class TestReceiveErrors:
    def test_receive_error_backs_off(self, store, worker_settings):
        broken_queue = MagicMock()
        broken_queue.receive = AsyncMock(side_effect=UnavailableError("broker down"))
        config = worker_settings.model_copy(update={"receive_backoff_base": 0.01, "receive_backoff_max": 0.02})
        consumer = ClickConsumer(queue=broken_queue, store=store, config=config)

        assert asyncio.run(consumer.poll_once()) == []
        assert asyncio.run(consumer.poll_once()) == []
        assert consumer.stats["receive_errors"] == 2
        assert consumer._receive_failures == 2

    def test_successful_receive_resets_failures(self, store, worker_settings):
        queue = MagicMock()
        queue.receive = AsyncMock(side_effect=[UnavailableError("broker down"), []])
        consumer = ClickConsumer(queue=queue, store=store, config=worker_settings)

        asyncio.run(consumer.poll_once())
        asyncio.run(consumer.poll_once())

        assert consumer._receive_failures == 0


class TestBackoff:
    def test_grows_exponentially_until_cap(self):
        upper = lambda low, high: high  # noqa: E731
        delays = [compute_backoff(attempt, 1.0, 30.0, rand=upper) for attempt in range(8)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0, 30.0]

    def test_full_jitter(self):
        for attempt in range(10):
            delay = compute_backoff(attempt, 1.0, 30.0)
            assert 0 <= delay <= min(30.0, 2 ** attempt)


class TestShutdown:
    def test_stop_finishes_current_message_only(self, queue, store, worker_settings):
        store.save(1, "1", "https://example.com/")
        store.save(2, "2", "https://example.com/")
        publish(queue, "linkpulse-clicks", "1", "2")

        stopping_store = MagicMock(wraps=store)
        consumer = ClickConsumer(queue=queue, store=stopping_store, config=worker_settings)

        def record_then_stop(url_id):
            store.record_click(url_id)
            consumer.stop()

        stopping_store.record_click.side_effect = record_then_stop
        stopping_store.record_click.__name__ = "record_click"

        asyncio.run(asyncio.wait_for(consumer.start(), timeout=5))

        assert consumer.running is False
        assert store.click_count(1) == 1
        assert store.click_count(2) == 0
        # The first message was deleted, the second is still in flight
        assert queue_length(queue, consumer.queue_name) == 1

    def test_stop_interrupts_backoff(self, store, worker_settings):
        broken_queue = MagicMock()
        broken_queue.receive = AsyncMock(side_effect=UnavailableError("broker down"))
        config = worker_settings.model_copy(update={"receive_backoff_base": 60.0, "receive_backoff_max": 60.0})
        consumer = ClickConsumer(queue=broken_queue, store=store, config=config)

        async def run_then_stop():
            task = asyncio.create_task(consumer.start())
            await asyncio.sleep(0.1)
            consumer.stop()
            await asyncio.wait_for(task, timeout=2)

        asyncio.run(run_then_stop())
        assert consumer.running is False

    def test_stop_before_start_returns_immediately(self, consumer, queue, store):
        store.save(1, "1", "https://example.com/")
        publish(queue, consumer.queue_name, "1")

        consumer.stop()
        asyncio.run(asyncio.wait_for(consumer.start(), timeout=2))

        assert consumer.running is False
        assert consumer.stats["received"] == 0
        assert queue_length(queue, consumer.queue_name) == 1

    def test_stop_before_task_first_step(self, consumer):
        """stop() right after create_task(), as the lifespans do on shutdown"""

        async def create_then_stop():
            task = asyncio.create_task(consumer.start())
            consumer.stop()
            await asyncio.wait_for(task, timeout=2)

        asyncio.run(create_then_stop())
        assert consumer.running is False

    def test_zero_wait_loop_yields_to_event_loop(self, consumer):
        """An idle loop with no long-poll must still let other tasks run"""
        assert consumer.config.queue_wait_seconds == 0
        ticks = []

        async def run_alongside():
            task = asyncio.create_task(consumer.start())
            for _ in range(5):
                await asyncio.sleep(0.01)
                ticks.append(time.monotonic())
            consumer.stop()
            await asyncio.wait_for(task, timeout=2)

        asyncio.run(asyncio.wait_for(run_alongside(), timeout=5))

        assert len(ticks) == 5
        assert consumer.running is False


class TestWorkerApp:
    """The worker process: liveness endpoint plus the consumer in its lifespan"""

    def test_liveness(self, db_session):
        QueueFactory.clear_instance()

        with TestClient(health.app) as client:
            response = client.get("/")
            assert response.status_code == 200
            assert response.text == "Worker is alive and running."

            stats = client.get("/stats").json()
            assert "running" in stats
            assert stats["received"] == 0

    def test_consumes_in_background(self, db_session, store):
        QueueFactory.clear_instance()
        store.save(1, "1", "https://example.com/")

        with TestClient(health.app) as client:
            queue = client.app.state.consumer.queue
            publish(queue, "linkpulse-clicks", "1")

            deadline = time.monotonic() + 5
            while store.click_count(1) < 1 and time.monotonic() < deadline:
                time.sleep(0.05)

        assert store.click_count(1) == 1
        assert QueueFactory._instance is None


@pytest.mark.parametrize("count,limit,expected", [
    (1, 3, ProcessOutcome.UNRESOLVED),
    (2, 3, ProcessOutcome.UNRESOLVED),
    (3, 3, ProcessOutcome.DEAD_LETTERED),
    (7, 0, ProcessOutcome.UNRESOLVED),
])
def test_receive_count_limit(count, limit, expected, store, worker_settings):
    from linkpulse.queue.models import ClickMessage

    queue = MagicMock()
    queue.delete = AsyncMock()
    config = worker_settings.model_copy(update={"max_receive_count": limit})
    consumer = ClickConsumer(queue=queue, store=store, config=config)
    message = ClickMessage(body="ghost", receipt_handle="h", receive_count=count)

    assert asyncio.run(consumer.process_message(message)) == expected
