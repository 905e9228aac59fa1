import logging

from shared.events import build_event, to_json
from shared.rabbitmq import RabbitPublisher

from .config import RABBIT_URL
from .models import Booking, Payment

logger = logging.getLogger(__name__)

BOOKING_CREATED = "booking.created"
BOOKING_CANCELLED = "booking.cancelled"
ACCOMMODATION_RELEASED = "accommodation.released"
PAYMENT_CREATED = "payment.created"
PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_EXPIRED = "payment.expired"
BOOKINGS_EXPIRY_REPORT = "bookings.expiry_report"


def _money(value) -> str:
    return f"{value:.2f}"


def booking_data(booking: Booking) -> dict:
    return {
        "booking_id": booking.id,
        "user_id": booking.user_id,
        "accommodation_id": booking.accommodation_id,
        "check_in_date": booking.check_in_date.isoformat(),
        "check_out_date": booking.check_out_date.isoformat(),
        "total_price": _money(booking.total_price),
        "status": booking.status,
    }


def payment_data(payment: Payment, booking_id: int | None) -> dict:
    return {
        "payment_id": payment.id,
        "booking_id": booking_id,
        "user_id": payment.user_id,
        "amount": _money(payment.amount_to_pay),
        "status": payment.status,
        "expires_at": payment.expires_at.isoformat() if payment.expires_at else None,
        "paid_at": payment.paid_at.isoformat() if payment.paid_at else None,
    }


class Notifier:
    """
    Fire-and-forget sink for domain side effects.

    Called after the triggering transaction has committed; a failure here is
    logged and never reaches the caller.
    """

    def __init__(self, publisher: RabbitPublisher):
        self.publisher = publisher

    async def notify(self, event_type: str, data: dict):
        try:
            event = build_event(event_type, data)
            await self.publisher.publish(event_type, to_json(event))
        except Exception:
            logger.exception("Failed to publish %s", event_type)

    async def booking_created(self, booking: Booking):
        await self.notify(BOOKING_CREATED, booking_data(booking))

    async def booking_cancelled(self, booking: Booking, available_units: int):
        await self.notify(
            BOOKING_CANCELLED,
            {**booking_data(booking), "available_units": available_units},
        )

    async def accommodation_released(self, accommodation_id: int, available_units: int):
        await self.notify(
            ACCOMMODATION_RELEASED,
            {"accommodation_id": accommodation_id, "available_units": available_units},
        )

    async def payment_created(self, payment: Payment, booking_id: int):
        await self.notify(PAYMENT_CREATED, payment_data(payment, booking_id))

    async def payment_succeeded(self, payment: Payment, booking_id: int):
        await self.notify(PAYMENT_SUCCEEDED, payment_data(payment, booking_id))

    async def payment_expired(self, payment: Payment):
        await self.notify(PAYMENT_EXPIRED, payment_data(payment, None))

    async def expiry_report(self, expired: int):
        # expired == 0 is the "no expired bookings today" notice
        await self.notify(BOOKINGS_EXPIRY_REPORT, {"expired": expired})


publisher = RabbitPublisher(RABBIT_URL)
notifier = Notifier(publisher)


