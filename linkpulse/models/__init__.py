"""
Database models for LinkPulse.

URLs and clicks live in the same database so analytics can be computed with a
single left outer join.
"""

from .url import URL
from .click import Click

__all__ = ["URL", "Click"]
