"""
Database engine, session factory and startup connection handling.

Both processes call `wait_for_database()` during startup. The database is the
only dependency neither process can serve without, so running out of attempts
is fatal: the error propagates and the process exits non-zero, letting the
orchestrator restart it.
"""

import logging
import math
import time
from typing import Callable

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from linkpulse.config import settings
from linkpulse.exceptions import UnavailableError

logger = logging.getLogger(__name__)


def _engine_options(database_url: str, timeout: float) -> dict:
    """
    Engine keyword arguments for `database_url`.

    `timeout` bounds every way a store call can wait on the database: getting
    a pooled connection, opening a new one, and running a statement.
    """
    if database_url.startswith("sqlite"):
        # Sessions are opened from request threads and from asyncio.to_thread
        return {"connect_args": {"check_same_thread": False, "timeout": timeout}}

    options = {
        "pool_pre_ping": True,
        "pool_size": 10,
        "max_overflow": 10,
        "pool_timeout": timeout,
    }
    if database_url.startswith("postgresql"):
        options["connect_args"] = {
            # libpq only takes whole seconds, and 0 means "wait forever"
            "connect_timeout": max(1, math.ceil(timeout)),
            "options": f"-c statement_timeout={int(timeout * 1000)}",
        }
    return options


engine = create_engine(
    settings.database_url,
    **_engine_options(settings.database_url, settings.store_timeout_seconds),
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def wait_for_database(
    bind: Engine = engine,
    max_attempts: int = None,
    delay: float = None,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """
    Block until the database answers `SELECT 1`.

    Tries up to `max_attempts` times with a fixed `delay` between attempts.

    Raises:
        UnavailableError: if every attempt failed
    """
    max_attempts = settings.startup_max_attempts if max_attempts is None else max_attempts
    delay = settings.startup_retry_delay if delay is None else delay

    last_error = None
    for attempt in range(1, max_attempts + 1):
        try:
            with bind.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Connected to the database (attempt %d/%d)", attempt, max_attempts)
            return
        except SQLAlchemyError as e:
            last_error = e
            logger.warning(
                "Failed to connect to the database (attempt %d/%d): %s",
                attempt, max_attempts, e,
            )
            if attempt < max_attempts:
                sleep(delay)

    logger.critical("Giving up on the database after %d attempts", max_attempts)
    raise UnavailableError(
        f"Database unreachable after {max_attempts} attempts: {last_error}"
    ) from last_error


def init_db(bind: Engine = engine) -> None:
    """Create tables for all registered models"""
    # Import models so they are registered with Base
    import linkpulse.models  # noqa: F401

    Base.metadata.create_all(bind=bind)


def close_db(bind: Engine = engine) -> None:
    bind.dispose()
