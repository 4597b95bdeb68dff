import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from . import models
from .database import engine
from .exceptions import BookingServiceError, GatewayError
from .gateway import CashfreeGateway
from .routers import admin_router, booking_router, payment_router
from .outbox_poller import run_outbox_poller
from .meeting_consumer import consume_booking_events

import redis.asyncio as redis
from fastapi_limiter import FastAPILimiter
from .config import settings

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

# Setup logger
logger = logging.getLogger("booking_service")

# Creates 'payment_orders', 'bookings' and 'outbox_events' if they don't exist
models.Base.metadata.create_all(bind=engine)


async def _stop_task(task: asyncio.Task, name: str) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        logger.info(f"{name} task successfully cancelled.")
    except Exception as e:
        logger.error(f"Error during {name} shutdown: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manages application startup and shutdown events.
    """
    logger.info("Starting booking service...")

    redis_client = redis.from_url(settings.REDIS_URL, encoding="utf-8")
    try:
        await FastAPILimiter.init(redis_client)
        logger.info("FastAPILimiter initialized with Redis.")
    except Exception as e:
        logger.error(f"Failed to initialize FastAPILimiter: {e}")

    # One gateway client per process, injected into every request
    app.state.gateway = CashfreeGateway.from_settings(settings)

    poller_task = asyncio.create_task(run_outbox_poller())
    consumer_task = asyncio.create_task(consume_booking_events())

    yield  # The application is now running

    logger.info("Shutting down background tasks...")
    await _stop_task(poller_task, "Outbox poller")
    await _stop_task(consumer_task, "Meeting link consumer")

    app.state.gateway.close()
    await redis_client.aclose()


app = FastAPI(
    title="Consultation Booking API",
    description="Books paid consultation slots and reconciles them with Cashfree payments.",
    version="1.0.0",
    lifespan=lifespan
)


@app.exception_handler(BookingServiceError)
async def booking_service_error_handler(request: Request, exc: BookingServiceError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({exc.status_code}): {exc.message}")
    content = {"detail": exc.message}
    if exc.details:
        content["details"] = jsonable_encoder(exc.details)
    if isinstance(exc, GatewayError):
        content["retryable"] = exc.retryable
    return JSONResponse(status_code=exc.status_code, content=content)


app.include_router(booking_router.router)
app.include_router(payment_router.router)
app.include_router(admin_router.router)


@app.get("/")
def read_root():
    return {"message": "Welcome to the Consultation Booking Service"}
