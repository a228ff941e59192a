"""
Durable storage for URL and click records.
"""

from .store import DurableStore

__all__ = [
    "DurableStore",
]
