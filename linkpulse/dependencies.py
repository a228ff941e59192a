"""
FastAPI dependencies for dependency injection.

This module provides singleton instances of the store and the queue, and the
per-process IdAllocator seeded during startup, for injection into routes.
Tests override these through app.dependency_overrides.
"""

from functools import lru_cache

from fastapi import Depends, Request

from linkpulse.config import settings
from linkpulse.exceptions import UnavailableError
from linkpulse.queue.factory import QueueFactory, QueueBackend
from linkpulse.queue.strategies import QueueStrategy
from linkpulse.services.click_publisher import ClickQueueProvider
from linkpulse.services.id_allocator import IdAllocator
from linkpulse.services.link_service import LinkService
from linkpulse.storage.store import DurableStore


@lru_cache()
def get_store() -> DurableStore:
    """
    Get store instance (singleton).

    @lru_cache ensures this is called only once.
    """
    return DurableStore()


@lru_cache()
def get_queue() -> QueueStrategy:
    """
    Get queue instance (singleton).

    Factory gets config from settings internally.
    @lru_cache ensures this is called only once.

    Returns:
        QueueStrategy instance based on settings
    """
    backend = QueueBackend(settings.queue_backend)
    return QueueFactory.create(backend)


def get_allocator(request: Request) -> IdAllocator:
    """The allocator seeded from the database in the app lifespan"""
    allocator = getattr(request.app.state, "allocator", None)
    if allocator is None:
        raise UnavailableError("ID allocator is not initialized")
    return allocator


def get_link_service(
    store: DurableStore = Depends(get_store),
    allocator: IdAllocator = Depends(get_allocator),
) -> LinkService:
    """Get LinkService with its store and allocator injected"""
    return LinkService(store=store, allocator=allocator)


@lru_cache()
def get_click_queue_provider() -> ClickQueueProvider:
    """
    Get the click queue provider (singleton).

    The redirect route only hands this to its background task; the queue is
    built and, during a broker outage, retried after the response is sent.
    """
    return ClickQueueProvider(factory=get_queue, cooldown=settings.queue_retry_cooldown)
