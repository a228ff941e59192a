"""
Click Worker

This worker turns click events from the queue into click rows in the
database. It is the only consumer of the queue.

Architecture:
- Long-polls the queue for a small batch of messages
- For each message: short code -> url id -> insert click -> delete message
- A message is deleted only after its click is stored; anything else leaves
  it in the queue to be redelivered after the visibility timeout
- One bad message never stops the batch or the loop

Delivery is at-least-once, so a message whose delete fails is processed again
and adds a second click. Counts are therefore "at least this many clicks".

Usage:
    python -m linkpulse.click_processor.click_worker
"""

import asyncio
import logging
import random
from enum import Enum
from typing import Callable, Dict, List, Optional

from linkpulse.config import Settings, settings
from linkpulse.exceptions import NotFoundError, UnavailableError
from linkpulse.queue.models import ClickMessage
from linkpulse.queue.strategies import QueueStrategy
from linkpulse.storage.store import DurableStore

logger = logging.getLogger(__name__)


class ProcessOutcome(Enum):
    """What happened to one message"""
    RECORDED = "recorded"            # click stored (delete attempted)
    UNRESOLVED = "unresolved"        # unknown short code, left for redelivery
    FAILED = "failed"                # store or queue error, left for redelivery
    DEAD_LETTERED = "dead_lettered"  # unknown short code, given up on and deleted


def compute_backoff(
    attempt: int,
    base: float,
    cap: float,
    rand: Callable[[float, float], float] = random.uniform,
) -> float:
    """Capped exponential backoff with full jitter: uniform(0, min(cap, base * 2**attempt))"""
    return rand(0, min(cap, base * (2 ** attempt)))


class ClickConsumer:
    """
    Click event consumer with graceful shutdown.

    stop() is observed before every receive and before every message. The
    message being processed when stop() is called is finished; the rest of
    its batch is left in the queue for redelivery.
    """

    def __init__(
        self,
        queue: QueueStrategy,
        store: DurableStore,
        config: Settings = settings,
    ):
        """
        Args:
            queue: Queue strategy for consuming messages
            store: Store that resolves short codes and records clicks
            config: Settings to read queue and retry tuning from
        """
        self.queue = queue
        self.store = store
        self.config = config
        self.queue_name = config.queue_name

        self.running = False
        self._stopping = False
        self._wakeup: Optional[asyncio.Event] = None
        self._receive_failures = 0  # consecutive, drives the backoff

        self.stats: Dict[str, int] = {"received": 0, "receive_errors": 0}
        self.stats.update({outcome.value: 0 for outcome in ProcessOutcome})

    async def start(self):
        """
        Run the consume loop until stop() is called.

        A stop() that arrives before the loop's first step is honoured, so
        start() then returns without receiving anything.
        """
        self.running = True
        # Bound to the running loop here, not in __init__
        self._wakeup = asyncio.Event()
        if self._stopping:
            self._wakeup.set()
        logger.info(
            "Click worker started (queue=%s, batch=%d, wait=%ds)",
            self.queue_name, self.config.queue_batch_size, self.config.queue_wait_seconds,
        )

        try:
            while not self._stopping:
                await self.poll_once()
                # An empty receive with wait 0 may not suspend at all
                await asyncio.sleep(0)
        finally:
            self.running = False
            logger.info("Click worker stopped. Stats: %s", self.stats)

    def stop(self):
        """Ask the loop to finish the current message and exit (also before start)"""
        if not self._stopping:
            logger.info("Stopping click worker...")
        self._stopping = True
        if self._wakeup is not None:
            self._wakeup.set()

    async def poll_once(self) -> List[ProcessOutcome]:
        """
        One iteration: receive a batch and process it message by message.

        Returns:
            Outcome for each processed message (empty if nothing arrived)
        """
        try:
            messages = await self.queue.receive(
                self.queue_name,
                max_messages=self.config.queue_batch_size,
                wait_seconds=self.config.queue_wait_seconds,
            )
        except Exception as e:
            await self._back_off_after_receive_error(e)
            return []

        self._receive_failures = 0
        if not messages:
            return []

        self.stats["received"] += len(messages)
        logger.info("Received %d message(s)", len(messages))

        outcomes = []
        for message in messages:
            if self._stopping:
                logger.info(
                    "Shutdown requested, leaving %d message(s) for redelivery",
                    len(messages) - len(outcomes),
                )
                break

            try:
                outcome = await self.process_message(message)
            except Exception:
                logger.exception("Unexpected error processing click event %r", message.body)
                outcome = ProcessOutcome.FAILED

            self.stats[outcome.value] += 1
            outcomes.append(outcome)

        return outcomes

    async def process_message(self, message: ClickMessage) -> ProcessOutcome:
        """Resolve, record and delete one click event"""
        short_code = message.short_code
        logger.debug("Processing click for short code %r", short_code)

        try:
            url_id = await self._store_call(self.store.resolve_id, short_code)
        except NotFoundError:
            return await self._handle_unresolved(message)
        except UnavailableError as e:
            logger.error("Error finding url id for %r: %s", short_code, e)
            return ProcessOutcome.FAILED

        try:
            await self._store_call(self.store.record_click, url_id)
        except UnavailableError as e:
            logger.error("Error saving click for %r: %s", short_code, e)
            return ProcessOutcome.FAILED

        logger.info("Saved click for short code %r", short_code)
        await self._delete(message)
        return ProcessOutcome.RECORDED

    async def _handle_unresolved(self, message: ClickMessage) -> ProcessOutcome:
        """
        Unknown short code: leave it for redelivery until it has been
        delivered max_receive_count times, then dead-letter it.

        max_receive_count = 0 never gives up.
        """
        limit = self.config.max_receive_count
        if limit <= 0 or message.receive_count < limit:
            logger.warning(
                "Unknown short code %r (delivery %d), leaving message for redelivery",
                message.body, message.receive_count,
            )
            return ProcessOutcome.UNRESOLVED

        dead_letter_queue = self.config.dead_letter_queue_name
        if dead_letter_queue:
            try:
                await self.queue.publish(dead_letter_queue, message.body)
            except Exception as e:
                logger.error(
                    "Could not move %r to dead-letter queue %s, leaving it for redelivery: %s",
                    message.body, dead_letter_queue, e,
                )
                return ProcessOutcome.FAILED

        await self._delete(message)
        logger.error(
            "Dead-lettered click event %r after %d deliveries%s",
            message.body,
            message.receive_count,
            f" (moved to {dead_letter_queue})" if dead_letter_queue else "",
        )
        return ProcessOutcome.DEAD_LETTERED

    async def _delete(self, message: ClickMessage) -> None:
        try:
            await self.queue.delete(self.queue_name, message.receipt_handle)
        except Exception as e:
            # The click is stored; a redelivery only over-counts
            logger.warning("Error deleting message for %r, it may be redelivered: %s", message.body, e)

    async def _store_call(self, func, *args):
        """Run a blocking store call in a thread, bounded by store_timeout_seconds"""
        timeout = self.config.store_timeout_seconds
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise UnavailableError(f"{func.__name__} timed out after {timeout}s") from e

    async def _back_off_after_receive_error(self, error: Exception) -> None:
        delay = compute_backoff(
            self._receive_failures,
            self.config.receive_backoff_base,
            self.config.receive_backoff_max,
        )
        self._receive_failures += 1
        self.stats["receive_errors"] += 1
        logger.error(
            "Error receiving messages (%d in a row), retrying in %.2fs: %s",
            self._receive_failures, delay, error,
            exc_info=not isinstance(error, UnavailableError),
        )
        await self._sleep(delay)

    async def _sleep(self, delay: float) -> None:
        """Sleep that returns early when stop() is called"""
        if self._wakeup is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass


def main():
    """
    Main entry point for the click worker.

    Serves the liveness endpoint with uvicorn; the consumer loop runs inside
    that app's lifespan, so SIGTERM drains the loop before exiting.
    """
    import uvicorn

    from linkpulse.logging_config import configure_logging

    configure_logging()
    logger.info(
        "LinkPulse click worker (environment=%s, queue backend=%s)",
        settings.environment, settings.queue_backend,
    )
    uvicorn.run(
        "linkpulse.click_processor.health:app",
        host=settings.worker_host,
        port=settings.worker_port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
