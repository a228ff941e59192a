"""
Message queue module for click events.
Implements Strategy Pattern for flexible queue backends.
"""

from .strategies import QueueStrategy, SQSQueue, RedisStreamQueue, InMemoryQueue
from .factory import QueueFactory, QueueBackend
from .models import ClickMessage

__all__ = [
    "QueueStrategy",
    "SQSQueue",
    "RedisStreamQueue",
    "InMemoryQueue",
    "QueueFactory",
    "QueueBackend",
    "ClickMessage",
]
