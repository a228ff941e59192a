import logging
from typing import List

from linkpulse.schemas.url import AnalyticsRow, URLRecord
from linkpulse.services.codec import encode
from linkpulse.services.id_allocator import IdAllocator
from linkpulse.storage.store import DurableStore

logger = logging.getLogger(__name__)


class LinkService:
    """
    Shorten, resolve and report on URLs.

    Store and allocator are injected (not created internally), so tests can
    hand in their own. Click tracking is not done here: the redirect route
    publishes a click event after the response is sent.
    """

    def __init__(self, store: DurableStore, allocator: IdAllocator):
        self.store = store
        self.allocator = allocator

    def shorten(self, long_url: str) -> URLRecord:
        """Create a new short URL

        Always allocates a fresh id, even for a long URL that is already
        stored, so every short link gets its own click counts.

        Raises:
            ConflictError: the id or code already exists (allocator misuse)
            UnavailableError: the database is unreachable
        """
        url_id = self.allocator.next()
        short_code = encode(url_id)
        self.store.save(url_id, short_code, long_url)

        logger.info("Shortened %s as %s (id %d)", long_url, short_code, url_id)
        return URLRecord(id=url_id, short_code=short_code, long_url=long_url)

    def resolve(self, short_code: str) -> str:
        """Long URL for a redirect; raises NotFoundError for unknown codes"""
        return self.store.load(short_code)

    def analytics(self) -> List[AnalyticsRow]:
        return self.store.aggregate_clicks()
