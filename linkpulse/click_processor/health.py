"""
HTTP app for the worker process.

Serves a liveness check for the orchestrator and owns the lifecycle of the
click consumer: connect (with retries), run the loop, drain on shutdown.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from linkpulse.click_processor.click_worker import ClickConsumer
from linkpulse.config import settings
from linkpulse.database.connection import close_db, init_db, wait_for_database
from linkpulse.queue.factory import QueueBackend, QueueFactory
from linkpulse.storage.store import DurableStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Raises after the last failed attempt, which aborts startup
    await asyncio.to_thread(wait_for_database)
    init_db()

    queue = QueueFactory.create(QueueBackend(settings.queue_backend))
    consumer = ClickConsumer(queue=queue, store=DurableStore())
    task = asyncio.create_task(consumer.start())
    app.state.consumer = consumer
    logger.info("Worker is listening for click events")

    try:
        yield
    finally:
        consumer.stop()
        await task
        await queue.close()
        QueueFactory.clear_instance()
        close_db()


app = FastAPI(title=f"{settings.app_name} worker", version=settings.app_version, lifespan=lifespan)


@app.get("/", response_class=PlainTextResponse)
def liveness():
    return "Worker is alive and running."


@app.get("/stats")
def consumer_stats(request: Request):
    """Counters of the running consumer"""
    consumer: ClickConsumer = request.app.state.consumer
    return {"running": consumer.running, **consumer.stats}
