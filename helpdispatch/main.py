"""helpdispatch: urgency-ordered dispatch of help requests to helpers."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import HTTPException
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from helpdispatch.api.router import api_router
from helpdispatch.background import background_loop
from helpdispatch.config import settings
from helpdispatch.database import close_db, get_session_factory, init_db, mask_url, to_async_url
from helpdispatch.errors import QueueUnavailableError, ServiceError
from helpdispatch.queue.connection import ConnectionState, QueueConnection
from helpdispatch.queue.consumer import MessageConsumer
from helpdispatch.queue.topology import request_topology
from helpdispatch.rate_limit import limiter
from helpdispatch.services.dispatch import QueueDispatchPublisher
from helpdispatch.worker import build_consumer

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("helpdispatch")


async def _bring_up(connection: QueueConnection, consumer: MessageConsumer | None) -> None:
    try:
        if consumer is not None:
            await consumer.start()
        else:
            await connection.connect()
    except QueueUnavailableError as exc:
        # connection.fatal is set; /health reports it
        logger.error("Queue startup failed: %s", exc.detail)


@asynccontextmanager
async def lifespan(app: FastAPI):
    db_url = to_async_url(settings.database_url)
    await init_db(db_url)
    logger.info("Database connected: %s", mask_url(db_url))
    session_factory = get_session_factory()

    topology = request_topology(settings)
    connection = QueueConnection.from_settings(settings)
    await connection.declare(topology)
    publisher = QueueDispatchPublisher(connection, topology)
    consumer = build_consumer(connection, settings) if settings.consumer_enabled else None

    app.state.connection = connection
    app.state.publisher = publisher
    app.state.consumer = consumer

    # Broker connect runs in the background so the API serves while it retries.
    tasks = [
        asyncio.create_task(_bring_up(connection, consumer)),
        asyncio.create_task(background_loop(session_factory, publisher)),
    ]

    yield

    for task in tasks:
        task.cancel()
    for task in tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    if consumer is not None:
        await consumer.stop()
    await connection.close()
    await close_db()
    logger.info("Database closed")


app = FastAPI(
    title="helpdispatch",
    description="Priority-ordered dispatch of help requests to volunteers and caregivers",
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

app.include_router(api_router)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse({"error": exc.detail, "code": exc.code}, status_code=exc.status_code)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=exc.headers)


@app.get("/health")
async def health(request: Request):
    """Queue connectivity and consumer counters. 503 once the broker is given up on."""
    connection: QueueConnection | None = getattr(request.app.state, "connection", None)
    consumer: MessageConsumer | None = getattr(request.app.state, "consumer", None)

    state = connection.state if connection is not None else ConnectionState.disconnected
    healthy = state is not ConnectionState.failed
    body = {
        "status": "ok" if healthy else "unhealthy",
        "queue": state.value,
        "consumer": None,
    }
    if consumer is not None:
        body["consumer"] = {"running": consumer.running, **consumer.stats.snapshot()}
    return JSONResponse(body, status_code=200 if healthy else 503)


def main() -> None:
    uvicorn.run("helpdispatch.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
