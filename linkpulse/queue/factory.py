"""
Builds the click-event queue named by QUEUE_BACKEND.
One instance per process, shared by the redirect route and the consumer.
"""

import logging
from enum import Enum

from linkpulse.config import settings
from linkpulse.exceptions import UnavailableError
from .strategies import QueueStrategy, SQSQueue, RedisStreamQueue, InMemoryQueue

logger = logging.getLogger(__name__)


class QueueBackend(Enum):
    """Available queue backends"""
    SQS = "sqs"
    REDIS_STREAMS = "redis_streams"
    MEMORY = "memory"


class QueueFactory:
    """
    Creates the configured queue backend once and hands out the same object.

    Connection details come from settings.

    There is no fallback to the in-memory queue when a broker is unreachable:
    the API and the worker are separate processes, so a private in-memory
    queue would silently drop every click.
    """

    _instance: QueueStrategy = None  # Single cached instance

    @classmethod
    def create(cls, backend: QueueBackend) -> QueueStrategy:
        """
        Build the queue for `backend`, or return the one already built.

        Args:
            backend: Which transport to use

        Returns:
            The shared queue instance

        Raises:
            UnavailableError: if the Redis broker does not answer PING
        """
        if cls._instance is not None:
            return cls._instance

        if backend == QueueBackend.SQS:
            import boto3

            sqs_client = boto3.client(
                "sqs",
                region_name=settings.aws_region,
                endpoint_url=settings.sqs_endpoint_url,
            )
            cls._instance = SQSQueue(sqs_client, visibility_timeout=settings.queue_visibility_timeout)
            logger.info("SQS queue initialized (region %s)", settings.aws_region)

        elif backend == QueueBackend.REDIS_STREAMS:
            import redis

            redis_client = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_connect_timeout=2,
                # Must outlast the XREADGROUP long-poll
                socket_timeout=settings.queue_wait_seconds + 5,
            )

            try:
                redis_client.ping()
            except redis.RedisError as e:
                raise UnavailableError(f"Redis queue unreachable at {settings.redis_url}: {e}") from e

            cls._instance = RedisStreamQueue(
                redis_client,
                consumer_group=settings.queue_consumer_group,
                visibility_timeout=settings.queue_visibility_timeout,
            )
            logger.info("Redis Streams queue initialized")

        elif backend == QueueBackend.MEMORY:
            cls._instance = InMemoryQueue(visibility_timeout=settings.queue_visibility_timeout)
            logger.info("In-memory queue initialized")

        else:
            raise ValueError(f"Unknown queue backend: {backend}")

        return cls._instance

    @classmethod
    def clear_instance(cls):
        """Clear cached instance (for testing)"""
        cls._instance = None
