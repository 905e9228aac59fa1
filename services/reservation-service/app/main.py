import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .config import BOOKING_SWEEP_SECONDS, LOG_LEVEL, PAYMENT_SWEEP_SECONDS
from .errors import ReservationError
from .expiry_worker import sweep_loop
from .logging_config import configure_logging
from .middleware import RequestLoggingMiddleware
from .notifications import notifier, publisher
from .redis_client import redis_client
from .routes import get_booking_service, get_payment_service, router
from .sweeps import expire_stale_bookings, expire_stale_payment_sessions

configure_logging(LOG_LEVEL)
logger = logging.getLogger(__name__)

OPENAPI_TAGS = [
    {"name": "System", "description": "Operational endpoints (health, on-demand sweeps)."},
    {"name": "Accommodations", "description": "Inventory management."},
    {"name": "Bookings", "description": "Booking lifecycle."},
    {"name": "Payments", "description": "Checkout sessions and settlement."},
]

app = FastAPI(title="Reservation Service", openapi_tags=OPENAPI_TAGS)
app.add_middleware(RequestLoggingMiddleware)
app.include_router(router)

_stop_event = asyncio.Event()
_sweep_tasks: list[asyncio.Task] = []


@app.exception_handler(ReservationError)
async def reservation_error_handler(request: Request, exc: ReservationError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.reason, "error": exc.kind},
    )


@app.get("/health", tags=["System"])
async def health():
    return {"status": "ok", "service": "reservation-service", "events_enabled": publisher.enabled}


@app.on_event("startup")
async def startup():
    # Never crash service if RabbitMQ is temporarily unavailable
    try:
        await publisher.connect()
    except Exception as e:
        logger.warning("RabbitMQ connect failed at startup; continuing without events: %s", e)

    bookings = get_booking_service()
    payments = get_payment_service()

    _stop_event.clear()
    _sweep_tasks.append(asyncio.create_task(sweep_loop(
        "bookings",
        lambda: expire_stale_bookings(bookings, notifier),
        BOOKING_SWEEP_SECONDS,
        _stop_event,
        redis_client,
    )))
    _sweep_tasks.append(asyncio.create_task(sweep_loop(
        "payments",
        lambda: expire_stale_payment_sessions(payments),
        PAYMENT_SWEEP_SECONDS,
        _stop_event,
        redis_client,
    )))


@app.on_event("shutdown")
async def shutdown():
    _stop_event.set()
    for task in _sweep_tasks:
        try:
            await task
        except Exception:
            logger.exception("Sweep task ended with an error")
    _sweep_tasks.clear()
    try:
        await publisher.close()
    except Exception as e:
        logger.warning("RabbitMQ close failed: %s", e)
