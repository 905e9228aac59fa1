from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import ACTIVE_BOOKING_STATUSES, Booking


def overlaps(a_start: date, a_end: date, b_start: date, b_end: date) -> bool:
    # half-open ranges: a check-out on the day of the next check-in is not a conflict
    return a_start < b_end and a_end > b_start


async def find_overlaps(
    db: AsyncSession,
    accommodation_id: int,
    check_in: date,
    check_out: date,
    exclude_booking_id: int | None = None,
) -> list[Booking]:
    """
    Active bookings on the accommodation intersecting [check_in, check_out).

    Returns an empty list when the range is free; interpretation is left
    to the caller.
    """
    stmt = select(Booking).where(
        Booking.accommodation_id == accommodation_id,
        Booking.status.in_(ACTIVE_BOOKING_STATUSES),
        Booking.check_in_date < check_out,
        Booking.check_out_date > check_in,
    )
    if exclude_booking_id is not None:
        stmt = stmt.where(Booking.id != exclude_booking_id)

    res = await db.execute(stmt.order_by(Booking.check_in_date))
    return list(res.scalars().all())
