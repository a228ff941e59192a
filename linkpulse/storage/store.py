"""
Durable store for URL and click records.

The store is the only component that talks to the database. It is shared by
request threads in the API and by the click consumer in the worker, so every
operation opens and closes its own session from the session factory.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, List

from sqlalchemy import desc, func, select, text
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from linkpulse.database.connection import SessionLocal
from linkpulse.exceptions import ConflictError, NotFoundError, UnavailableError
from linkpulse.models import URL, Click
from linkpulse.schemas.url import AnalyticsRow

logger = logging.getLogger(__name__)

# Errors that mean "could not talk to the database", as opposed to bad SQL
UNAVAILABLE_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError)


class DurableStore:
    """
    SQLAlchemy-backed store.

    Raises:
        NotFoundError: lookups of unknown short codes
        ConflictError: duplicate id or short code on save
        UnavailableError: database unreachable or connection dropped
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self.session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        except IntegrityError as e:
            db.rollback()
            raise ConflictError(str(e.orig)) from e
        except UNAVAILABLE_ERRORS as e:
            db.rollback()
            raise UnavailableError(str(e)) from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def save(self, url_id: int, short_code: str, long_url: str) -> None:
        """Insert a new URL record"""
        with self._session() as db:
            db.add(URL(id=url_id, short_code=short_code, long_url=long_url))
            db.commit()

    def load(self, short_code: str) -> str:
        """Return the long URL stored under short_code"""
        with self._session() as db:
            long_url = db.execute(
                select(URL.long_url).where(URL.short_code == short_code)
            ).scalar_one_or_none()

        if long_url is None:
            raise NotFoundError(f"Short code not found: {short_code}")
        return long_url

    def resolve_id(self, short_code: str) -> int:
        """Return the id of the URL stored under short_code"""
        with self._session() as db:
            url_id = db.execute(
                select(URL.id).where(URL.short_code == short_code)
            ).scalar_one_or_none()

        if url_id is None:
            raise NotFoundError(f"Short code not found: {short_code}")
        return url_id

    def record_click(self, url_id: int) -> None:
        """Append one click for url_id (created_at is set by the database)"""
        with self._session() as db:
            db.add(Click(url_id=url_id))
            db.commit()

    def click_count(self, url_id: int) -> int:
        with self._session() as db:
            return db.execute(
                select(func.count(Click.id)).where(Click.url_id == url_id)
            ).scalar_one()

    def aggregate_clicks(self) -> List[AnalyticsRow]:
        """
        Click totals for every URL, most clicked first.

        URLs without clicks are included with click_count 0. Order among
        equal counts is whatever the database returns.
        """
        click_count = func.count(Click.id).label("click_count")
        query = (
            select(URL.short_code, URL.long_url, click_count)
            .outerjoin(Click, Click.url_id == URL.id)
            .group_by(URL.id, URL.short_code, URL.long_url)
            .order_by(desc(click_count))
        )

        with self._session() as db:
            rows = db.execute(query).all()

        return [AnalyticsRow.model_validate(row) for row in rows]

    def max_id(self) -> int:
        """Highest stored URL id, or 0 when there are none"""
        with self._session() as db:
            return db.execute(select(func.coalesce(func.max(URL.id), 0))).scalar_one()

    def ping(self) -> None:
        with self._session() as db:
            db.execute(text("SELECT 1"))
