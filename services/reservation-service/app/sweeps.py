"""
Reconciliation sweeps.

Each run re-derives its working set from storage, then applies the
transition item by item. A failing item is logged and skipped; the
write-time preconditions in the services make a concurrent or repeated
run a no-op for anything already handled.
"""
import logging

from .bookings import BookingService
from .payments import PaymentService

logger = logging.getLogger(__name__)


async def expire_stale_bookings(bookings: BookingService, notifier) -> int:
    logger.info("Starting expired bookings check")

    stale = await bookings.stale_ids()
    if not stale:
        logger.info("No expired bookings found")
        await notifier.expiry_report(0)
        return 0

    logger.info("Found %s expired bookings", len(stale))

    expired = 0
    for booking_id in stale:
        try:
            if await bookings.expire(booking_id):
                expired += 1
        except Exception:
            logger.exception("Failed to process expired booking %s", booking_id)

    await notifier.expiry_report(expired)
    logger.info("Completed expired bookings check. Processed %s of %s bookings", expired, len(stale))
    return expired


async def expire_stale_payment_sessions(payments: PaymentService) -> int:
    logger.debug("Checking for expired payment sessions")

    stale = await payments.stale_ids()
    if not stale:
        logger.debug("No expired payment sessions found")
        return 0

    logger.info("Found %s expired payment sessions", len(stale))

    expired = 0
    for payment_id in stale:
        try:
            if await payments.expire_session(payment_id):
                expired += 1
        except Exception:
            logger.exception("Failed to mark payment %s as expired", payment_id)
    return expired
