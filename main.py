import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from linkpulse.api.v1 import redirect, urls
from linkpulse.click_processor.click_worker import ClickConsumer
from linkpulse.config import settings
from linkpulse.database.connection import close_db, init_db, wait_for_database
from linkpulse.dependencies import get_click_queue_provider, get_queue, get_store
from linkpulse.exceptions import ConflictError, NotFoundError, UnavailableError
from linkpulse.logging_config import configure_logging
from linkpulse.services.id_allocator import IdAllocator
from linkpulse.storage.store import DurableStore

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()

    # Fatal after the last attempt: uvicorn aborts startup and exits non-zero
    await asyncio.to_thread(wait_for_database)
    init_db()

    store = get_store()
    app.state.allocator = IdAllocator(seed=store.max_id())
    logger.info("Starting %s (last known ID is %d)", settings.app_name, app.state.allocator.last_id)

    consumer, worker_task = None, None
    if settings.run_embedded_worker:
        consumer = ClickConsumer(queue=get_queue(), store=store)
        worker_task = asyncio.create_task(consumer.start())

    try:
        yield
    finally:
        if consumer is not None:
            consumer.stop()
            await worker_task
        if get_queue.cache_info().currsize:
            await get_queue().close()
        get_click_queue_provider.cache_clear()
        close_db()


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="URL shortener with asynchronous click analytics",
    debug=settings.debug,
    lifespan=lifespan,
)


@app.middleware("http")
async def cors_headers(request: Request, call_next):
    """Answer every OPTIONS request with 200 and put CORS headers on all responses"""
    if request.method == "OPTIONS":
        response = Response(status_code=status.HTTP_200_OK)
    else:
        response = await call_next(request)
    response.headers.update(CORS_HEADERS)
    return response


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": "Short URL not found"})


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError):
    logger.error("Failed to save URL: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


@app.exception_handler(UnavailableError)
async def unavailable_handler(request: Request, exc: UnavailableError):
    logger.error("Dependency unavailable while handling %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Service temporarily unavailable"},
    )


@app.exception_handler(RequestValidationError)
async def validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Bad request", "errors": jsonable_errors(exc)},
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    return [{"loc": list(error["loc"]), "msg": error["msg"]} for error in exc.errors()]


@app.get("/api/health")
def health_check(store: DurableStore = Depends(get_store)):
    """Health check endpoint; 503 while the database is unreachable"""
    store.ping()
    return {"status": "healthy", "environment": settings.environment}


######## Include routers
app.include_router(urls.router)
app.include_router(redirect.router)
