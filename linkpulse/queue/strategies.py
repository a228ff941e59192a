"""
Queue strategies using Strategy Pattern.
Allows switching between queue backends (Amazon SQS, Redis Streams, In-Memory).

Every backend gives the same at-least-once contract:
- publish() appends a message
- receive() long-polls and hides what it returns for a visibility timeout
- delete() removes a delivered message for good
- a message that is received but never deleted becomes visible again and is
  delivered once more, with a higher receive_count

Client libraries here are blocking, so calls run in a worker thread to keep
the event loop (and the worker's health endpoint) responsive during a
20 second long-poll.
"""

import asyncio
import logging
import socket
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, Dict, List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError
from redis.exceptions import RedisError, ResponseError

from linkpulse.exceptions import UnavailableError
from .models import ClickMessage

logger = logging.getLogger(__name__)


class QueueStrategy(ABC):
    """
    Abstract base class for queue strategies.

    This is the Strategy Pattern interface - allows multiple queue implementations
    without changing the redirect route or the click worker.

    Transport failures raise UnavailableError.
    """

    @abstractmethod
    async def publish(self, queue_name: str, body: str) -> None:
        """
        Publish a message to the queue.

        Args:
            queue_name: Name of the queue
            body: Message body (the short code)
        """

    @abstractmethod
    async def receive(
        self,
        queue_name: str,
        max_messages: int = 10,
        wait_seconds: int = 20
    ) -> List[ClickMessage]:
        """
        Long-poll for messages.

        Args:
            queue_name: Name of the queue
            max_messages: Maximum number of messages to retrieve
            wait_seconds: How long to wait when the queue is empty

        Returns:
            Received messages; an empty list is a normal outcome
        """

    @abstractmethod
    async def delete(self, queue_name: str, receipt_handle: str) -> None:
        """
        Delete a received message (mark as processed).

        Args:
            queue_name: Name of the queue
            receipt_handle: ClickMessage.receipt_handle of the delivery
        """

    @abstractmethod
    async def get_queue_length(self, queue_name: str) -> int:
        """Approximate number of messages waiting or in flight"""

    async def close(self) -> None:
        """Release client connections"""


class SQSQueue(QueueStrategy):
    """
    Amazon SQS implementation.

    SQS provides visibility timeouts, redelivery and receive counts natively.
    queue_name may be a full queue URL or a queue name looked up once with
    GetQueueUrl.
    """

    def __init__(self, sqs_client, visibility_timeout: Optional[int] = None):
        """
        Args:
            sqs_client: boto3 SQS client
            visibility_timeout: Per-receive override; None keeps the queue's setting
        """
        self.sqs = sqs_client
        self.visibility_timeout = visibility_timeout
        self._queue_urls: Dict[str, str] = {}

    def _queue_url(self, queue_name: str) -> str:
        if queue_name.startswith(("http://", "https://")):
            return queue_name
        if queue_name not in self._queue_urls:
            response = self.sqs.get_queue_url(QueueName=queue_name)
            self._queue_urls[queue_name] = response["QueueUrl"]
        return self._queue_urls[queue_name]

    async def _call(self, operation: str, queue_name: str, **kwargs) -> dict:
        def call():
            method = getattr(self.sqs, operation)
            return method(QueueUrl=self._queue_url(queue_name), **kwargs)

        try:
            return await asyncio.to_thread(call)
        except (BotoCoreError, ClientError) as e:
            raise UnavailableError(f"SQS {operation} failed: {e}") from e

    async def publish(self, queue_name: str, body: str) -> None:
        await self._call("send_message", queue_name, MessageBody=body)

    async def receive(
        self,
        queue_name: str,
        max_messages: int = 10,
        wait_seconds: int = 20
    ) -> List[ClickMessage]:
        params = {
            "MaxNumberOfMessages": max(1, min(max_messages, 10)),
            "WaitTimeSeconds": max(0, min(wait_seconds, 20)),
            "AttributeNames": ["ApproximateReceiveCount"],
        }
        if self.visibility_timeout is not None:
            params["VisibilityTimeout"] = self.visibility_timeout

        response = await self._call("receive_message", queue_name, **params)

        return [
            ClickMessage(
                body=message["Body"],
                receipt_handle=message["ReceiptHandle"],
                receive_count=int(
                    message.get("Attributes", {}).get("ApproximateReceiveCount", 1)
                ),
            )
            for message in response.get("Messages", [])
        ]

    async def delete(self, queue_name: str, receipt_handle: str) -> None:
        await self._call("delete_message", queue_name, ReceiptHandle=receipt_handle)

    async def get_queue_length(self, queue_name: str) -> int:
        response = await self._call(
            "get_queue_attributes",
            queue_name,
            AttributeNames=["ApproximateNumberOfMessages", "ApproximateNumberOfMessagesNotVisible"],
        )
        attributes = response.get("Attributes", {})
        return int(attributes.get("ApproximateNumberOfMessages", 0)) + int(
            attributes.get("ApproximateNumberOfMessagesNotVisible", 0)
        )

    async def close(self) -> None:
        await asyncio.to_thread(self.sqs.close)


def _text(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


class RedisStreamQueue(QueueStrategy):
    """
    Redis Streams implementation for message queue.

    How it works:
    1. Producer publishes messages using XADD
    2. Consumer first reclaims entries that sat un-acknowledged longer than
       the visibility timeout (XAUTOCLAIM), then reads new ones (XREADGROUP)
    3. Consumer deletes messages using XACK + XDEL

    Step 2 is what turns a crashed or failed delivery into a redelivery, the
    same way an SQS visibility timeout does.
    """

    def __init__(
        self,
        redis_client,
        consumer_group: str = "click_workers",
        visibility_timeout: int = 30,
        consumer_name: Optional[str] = None,
    ):
        """
        Args:
            redis_client: Redis client instance
            consumer_group: Name of consumer group for workers
            visibility_timeout: Seconds before an unacknowledged entry is reclaimed
            consumer_name: Name of this consumer inside the group
        """
        self.redis = redis_client
        self.consumer_group = consumer_group
        self.visibility_timeout = visibility_timeout
        self.consumer_name = consumer_name or f"worker-{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
        self._initialized_streams = set()

    def _ensure_stream_exists(self, queue_name: str) -> None:
        """Create the stream and consumer group if they don't exist"""
        if queue_name in self._initialized_streams:
            return

        try:
            self.redis.xgroup_create(
                name=queue_name,
                groupname=self.consumer_group,
                id="0",
                mkstream=True,
            )
            logger.info("Created Redis stream %s (group %s)", queue_name, self.consumer_group)
        except ResponseError as e:
            # Group might already exist, that's OK
            if "BUSYGROUP" not in str(e):
                raise

        self._initialized_streams.add(queue_name)

    async def _run(self, description: str, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except RedisError as e:
            raise UnavailableError(f"Redis {description} failed: {e}") from e

    def _publish_sync(self, queue_name: str, body: str) -> None:
        self._ensure_stream_exists(queue_name)
        self.redis.xadd(queue_name, {"body": body})

    def _times_delivered(self, queue_name: str, message_id: str) -> int:
        pending = self.redis.xpending_range(
            queue_name, self.consumer_group, min=message_id, max=message_id, count=1
        )
        return int(pending[0]["times_delivered"]) if pending else 1

    def _receive_sync(self, queue_name: str, max_messages: int, wait_seconds: int) -> List[ClickMessage]:
        self._ensure_stream_exists(queue_name)
        messages: List[ClickMessage] = []

        # Redeliver entries whose visibility timeout has expired
        claimed = self.redis.xautoclaim(
            queue_name,
            self.consumer_group,
            self.consumer_name,
            min_idle_time=self.visibility_timeout * 1000,
            start_id="0-0",
            count=max_messages,
        )
        for message_id, fields in claimed[1]:
            if not fields:
                continue  # trimmed from the stream while pending
            message_id = _text(message_id)
            messages.append(
                ClickMessage(
                    body=_text(fields.get("body", fields.get(b"body", ""))),
                    receipt_handle=message_id,
                    receive_count=self._times_delivered(queue_name, message_id),
                )
            )

        remaining = max_messages - len(messages)
        if remaining <= 0:
            return messages

        # block=None returns immediately; block=0 would wait forever
        block = wait_seconds * 1000 if wait_seconds > 0 and not messages else None
        streams = self.redis.xreadgroup(
            groupname=self.consumer_group,
            consumername=self.consumer_name,
            streams={queue_name: ">"},
            count=remaining,
            block=block,
        )
        for _, stream_messages in streams or []:
            for message_id, fields in stream_messages:
                messages.append(
                    ClickMessage(
                        body=_text(fields.get("body", fields.get(b"body", ""))),
                        receipt_handle=_text(message_id),
                    )
                )

        return messages

    def _delete_sync(self, queue_name: str, receipt_handle: str) -> None:
        pipe = self.redis.pipeline(transaction=True)
        pipe.xack(queue_name, self.consumer_group, receipt_handle)
        pipe.xdel(queue_name, receipt_handle)
        pipe.execute()

    async def publish(self, queue_name: str, body: str) -> None:
        await self._run("publish", self._publish_sync, queue_name, body)

    async def receive(
        self,
        queue_name: str,
        max_messages: int = 10,
        wait_seconds: int = 20
    ) -> List[ClickMessage]:
        return await self._run("receive", self._receive_sync, queue_name, max_messages, wait_seconds)

    async def delete(self, queue_name: str, receipt_handle: str) -> None:
        await self._run("delete", self._delete_sync, queue_name, receipt_handle)

    async def get_queue_length(self, queue_name: str) -> int:
        return await self._run("xlen", self.redis.xlen, queue_name)

    async def close(self) -> None:
        await asyncio.to_thread(self.redis.close)


class InMemoryQueue(QueueStrategy):
    """
    In-memory queue with visibility timeouts.

    Pros:
    - Simple (no external dependencies)
    - Redelivers un-deleted messages like the real backends

    Cons:
    - Not persistent (lost on restart)
    - Only reachable from the process that created it, so the consumer must
      run in the same process (RUN_EMBEDDED_WORKER)

    Used in development/testing environments.
    """

    POLL_INTERVAL = 0.05

    def __init__(self, visibility_timeout: float = 30):
        """
        Args:
            visibility_timeout: Seconds before an un-deleted message reappears
        """
        self.visibility_timeout = visibility_timeout
        self._queues: Dict[str, Deque[Tuple[str, str]]] = {}
        # queue_name -> receipt_handle -> (message_id, body, visible_again_at)
        self._in_flight: Dict[str, Dict[str, Tuple[str, str, float]]] = {}
        self._receive_counts: Dict[str, int] = {}
        # publish() runs in request threads, receive() in the worker loop
        self._lock = threading.Lock()

    def _get_queue(self, queue_name: str) -> Deque[Tuple[str, str]]:
        """Get or create queue"""
        if queue_name not in self._queues:
            self._queues[queue_name] = deque()
            self._in_flight[queue_name] = {}
        return self._queues[queue_name]

    def _requeue_expired(self, queue_name: str, now: float) -> None:
        in_flight = self._in_flight[queue_name]
        expired = [handle for handle, (_, _, visible_at) in in_flight.items() if visible_at <= now]
        for handle in expired:
            message_id, body, _ = in_flight.pop(handle)
            self._queues[queue_name].appendleft((message_id, body))

    async def publish(self, queue_name: str, body: str) -> None:
        with self._lock:
            self._get_queue(queue_name).append((uuid.uuid4().hex, body))

    def _take(self, queue_name: str, max_messages: int) -> List[ClickMessage]:
        with self._lock:
            queue = self._get_queue(queue_name)
            now = time.monotonic()
            self._requeue_expired(queue_name, now)

            messages = []
            while queue and len(messages) < max_messages:
                message_id, body = queue.popleft()
                self._receive_counts[message_id] = self._receive_counts.get(message_id, 0) + 1
                handle = uuid.uuid4().hex
                self._in_flight[queue_name][handle] = (
                    message_id, body, now + self.visibility_timeout
                )
                messages.append(
                    ClickMessage(
                        body=body,
                        receipt_handle=handle,
                        receive_count=self._receive_counts[message_id],
                    )
                )
            return messages

    async def receive(
        self,
        queue_name: str,
        max_messages: int = 10,
        wait_seconds: int = 20
    ) -> List[ClickMessage]:
        deadline = time.monotonic() + wait_seconds
        while True:
            messages = self._take(queue_name, max_messages)
            remaining = deadline - time.monotonic()
            if messages or remaining <= 0:
                return messages
            await asyncio.sleep(min(self.POLL_INTERVAL, remaining))

    async def delete(self, queue_name: str, receipt_handle: str) -> None:
        with self._lock:
            self._get_queue(queue_name)
            entry = self._in_flight[queue_name].pop(receipt_handle, None)
            if entry is not None:
                self._receive_counts.pop(entry[0], None)

    async def get_queue_length(self, queue_name: str) -> int:
        """Waiting plus in-flight messages"""
        with self._lock:
            queue = self._get_queue(queue_name)
            return len(queue) + len(self._in_flight[queue_name])
