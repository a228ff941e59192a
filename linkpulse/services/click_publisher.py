import asyncio
import logging
import threading
import time
from typing import Callable, Optional

from linkpulse.exceptions import UnavailableError
from linkpulse.queue.strategies import QueueStrategy

logger = logging.getLogger(__name__)


class ClickQueueProvider:
    """
    Supplies the click queue to the publisher, never to the redirect itself.

    The queue is built by the first publish, which already runs after the
    redirect response has been sent. When the broker is unreachable, further
    connection attempts are skipped for `cooldown` seconds, so an outage
    costs one attempt per window instead of one per click.
    """

    def __init__(
        self,
        factory: Callable[[], Optional[QueueStrategy]],
        cooldown: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            factory: Builds (or returns the cached) queue; raises UnavailableError
            cooldown: Seconds to skip connection attempts after a failure
            clock: Monotonic time source
        """
        self.factory = factory
        self.cooldown = cooldown
        self._clock = clock
        self._queue: Optional[QueueStrategy] = None
        self._retry_at = 0.0
        # Concurrent publishes during an outage wait here instead of piling
        # up their own connection attempts
        self._lock = threading.Lock()

    @property
    def queue(self) -> Optional[QueueStrategy]:
        """The queue if it has been built already"""
        return self._queue

    def get(self) -> Optional[QueueStrategy]:
        """
        Return the queue, building it if needed. Blocking, so call it from a
        worker thread.

        Returns:
            The queue, or None while the broker is unreachable
        """
        with self._lock:
            if self._queue is not None:
                return self._queue
            if self._clock() < self._retry_at:
                return None

            try:
                self._queue = self.factory()
            except UnavailableError as e:
                self._retry_at = self._clock() + self.cooldown
                logger.warning(
                    "Click queue unavailable, skipping click tracking for %.1fs: %s",
                    self.cooldown, e,
                )
                return None

            return self._queue


async def publish_click_event(
    provider: ClickQueueProvider, queue_name: str, short_code: str
) -> bool:
    """
    Best-effort publish of one click event.

    Runs as a background task after the redirect response has been sent.
    Failures are logged and the event is dropped: a lost click is accepted
    telemetry loss and must never reach the visitor. No retry here.

    Returns:
        True if the event was handed to the queue
    """
    queue = provider.queue
    if queue is None:
        queue = await asyncio.to_thread(provider.get)
    if queue is None:
        logger.warning("No click queue available, dropping click event for %s", short_code)
        return False

    try:
        await queue.publish(queue_name, short_code)
    except Exception:
        logger.exception("Error publishing click event for %s", short_code)
        return False

    logger.debug("Published click event for %s", short_code)
    return True
