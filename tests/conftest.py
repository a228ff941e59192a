"""
Test configuration and fixtures for LinkPulse.
This centralizes all test setup, making individual tests clean.

Settings are read at import time, so the environment is pointed at a
throwaway SQLite database and the in-memory queue before anything from the
application is imported.
"""

import os

# The fixtures drop every table: only LINKPULSE_TEST_DATABASE_URL (set by
# run_tests.py --database-url) may point them at a real server
os.environ["DATABASE_URL"] = os.environ.get("LINKPULSE_TEST_DATABASE_URL", "sqlite:///./test.db")
os.environ["QUEUE_BACKEND"] = "memory"
os.environ["QUEUE_WAIT_SECONDS"] = "1"
os.environ["STARTUP_RETRY_DELAY"] = "0"
os.environ["RUN_EMBEDDED_WORKER"] = "false"
os.environ["BASE_URL"] = "http://short.test"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from main import app  # noqa: E402
from linkpulse.click_processor.click_worker import ClickConsumer  # noqa: E402
from linkpulse.config import Settings  # noqa: E402
from linkpulse.database.connection import Base, SessionLocal, engine  # noqa: E402
from linkpulse.dependencies import get_click_queue_provider  # noqa: E402
from linkpulse.queue.strategies import InMemoryQueue  # noqa: E402
from linkpulse.services.click_publisher import ClickQueueProvider  # noqa: E402
from linkpulse.storage.store import DurableStore  # noqa: E402
import linkpulse.models  # noqa: E402,F401


@pytest.fixture(scope="function")
def db_session():
    """
    Create a fresh database for each test.
    This ensures tests are isolated and don't affect each other.
    """
    # Create tables
    Base.metadata.create_all(bind=engine)

    # Create session
    db = SessionLocal()

    try:
        yield db
    finally:
        # Cleanup
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def store(db_session):
    return DurableStore(SessionLocal)


@pytest.fixture(scope="function")
def queue():
    return InMemoryQueue(visibility_timeout=30)


@pytest.fixture(scope="function")
def worker_settings():
    """Consumer tuning for tests: no long-poll, no backoff sleeps"""
    return Settings(
        queue_wait_seconds=0,
        queue_batch_size=10,
        receive_backoff_base=0,
        receive_backoff_max=0,
        store_timeout_seconds=5,
        max_receive_count=3,
        dead_letter_queue_name=None,
    )


@pytest.fixture(scope="function")
def consumer(queue, store, worker_settings):
    return ClickConsumer(queue=queue, store=store, config=worker_settings)


@pytest.fixture(scope="function")
def client(db_session, queue):
    """
    Create a test client with the click queue overridden.
    This is the main fixture that API tests will use.
    """
    provider = ClickQueueProvider(factory=lambda: queue)
    app.dependency_overrides[get_click_queue_provider] = lambda: provider

    # Entering the context runs the lifespan (DB check, allocator seeding)
    with TestClient(app) as test_client:
        yield test_client

    # Clean up overrides
    app.dependency_overrides.clear()
