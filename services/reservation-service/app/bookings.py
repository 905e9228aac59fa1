"""
Booking state machine.

    PENDING   -> CONFIRMED | CANCELED | EXPIRED
    CONFIRMED -> EXPIRED   (owner cancellation is the one explicit exception)
    CANCELED, EXPIRED: terminal

Every status write is a conditional UPDATE on the expected source status, and
every exit to CANCELED/EXPIRED increments the ledger inside the same
transaction, so a booking releases its unit exactly once.
"""
import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from . import ledger
from .clock import today, utcnow
from .config import DEFAULT_PAGE_SIZE, LEDGER_MAX_ATTEMPTS
from .db import paginate, run_in_transaction
from .errors import (
    AccessDeniedError,
    ConflictError,
    InvalidDateError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    OverlapError,
    PendingPaymentError,
    UnavailableError,
)
from .models import ACTIVE_BOOKING_STATUSES, Accommodation, Booking, BookingStatus
from .overlap import find_overlaps
from .rbac import Requester

logger = logging.getLogger(__name__)

TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELED, BookingStatus.EXPIRED},
    BookingStatus.CONFIRMED: {BookingStatus.EXPIRED},
    BookingStatus.CANCELED: set(),
    BookingStatus.EXPIRED: set(),
}


@dataclass
class BookingPatch:
    check_in_date: date | None = None
    check_out_date: date | None = None
    status: BookingStatus | None = None

    @property
    def changes_dates(self) -> bool:
        return self.check_in_date is not None or self.check_out_date is not None


def validate_dates(check_in: date, check_out: date, current_day: date):
    if check_in <= current_day:
        raise InvalidDateError("Check-in date must be in the future")
    if check_out <= check_in:
        raise InvalidDateError("Check-out date must be after check-in date")


async def transition(
    db: AsyncSession,
    booking: Booking,
    allowed_from: tuple[str, ...],
    target: BookingStatus,
    *extra_conditions,
) -> bool:
    """Write ``target`` only if the row is still in ``allowed_from``; False means someone got there first."""
    res = await db.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status.in_(allowed_from), *extra_conditions)
        .values(status=target.value)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        return False
    set_committed_value(booking, "status", target.value)
    return True


async def confirm_pending(db: AsyncSession, booking_id: int) -> Booking:
    """PENDING -> CONFIRMED on the caller's transaction (payment success)."""
    booking = await _load(db, booking_id, lock=True)
    if booking.status != BookingStatus.PENDING:
        raise InvalidStateError(
            f"Booking {booking.id} can no longer be confirmed. Current status: {booking.status}"
        )
    if not await transition(db, booking, (BookingStatus.PENDING.value,), BookingStatus.CONFIRMED):
        raise InvalidStateError(f"Booking {booking.id} changed status concurrently")
    return booking


async def _load(db: AsyncSession, booking_id: int, lock: bool = False) -> Booking:
    stmt = select(Booking).where(Booking.id == booking_id)
    if lock:
        stmt = stmt.with_for_update()
    res = await db.execute(stmt)
    booking = res.scalar_one_or_none()
    if not booking:
        raise NotFoundError(f"Booking not found with id: {booking_id}")
    return booking


class BookingService:
    def __init__(self, session_factory, notifier, clock=utcnow, max_attempts: int = LEDGER_MAX_ATTEMPTS):
        self.session_factory = session_factory
        self.notifier = notifier
        self.clock = clock
        self.max_attempts = max_attempts

    def _today(self) -> date:
        return today(self.clock())

    async def _transact(self, work, booking_id: int):
        try:
            return await run_in_transaction(self.session_factory, work, attempts=self.max_attempts)
        except ConflictError:
            raise InvalidTransitionError(f"Booking {booking_id} changed concurrently, please retry")

    # ---- commands ----

    async def create(
        self,
        requester: Requester,
        accommodation_id: int,
        check_in: date,
        check_out: date,
    ) -> Booking:
        async def work(db: AsyncSession) -> Booking:
            pending = await db.scalar(
                select(func.count())
                .select_from(Booking)
                .where(
                    Booking.user_id == requester.user_id,
                    Booking.status == BookingStatus.PENDING.value,
                )
            )
            if pending:
                raise PendingPaymentError(
                    f"Cannot create booking. You have {pending} pending booking(s). "
                    "Please complete payment first"
                )

            validate_dates(check_in, check_out, self._today())

            res = await db.execute(
                select(Accommodation)
                .where(Accommodation.id == accommodation_id)
                .with_for_update()
            )
            accommodation = res.scalar_one_or_none()
            if not accommodation:
                raise NotFoundError(f"Accommodation not found with id: {accommodation_id}")

            if accommodation.is_deleted or accommodation.available_units <= 0:
                raise UnavailableError(
                    f"Accommodation is not available (current availability: {accommodation.available_units})"
                )

            conflicts = await find_overlaps(db, accommodation.id, check_in, check_out)
            if conflicts:
                raise OverlapError(
                    "Accommodation is already booked for the selected dates. "
                    f"Found {len(conflicts)} conflicting booking(s)"
                )

            await ledger.decrement(db, accommodation.id)

            nights = (check_out - check_in).days
            booking = Booking(
                user_id=requester.user_id,
                accommodation_id=accommodation.id,
                check_in_date=check_in,
                check_out_date=check_out,
                status=BookingStatus.PENDING.value,
                daily_rate=accommodation.daily_rate,
                total_price=accommodation.daily_rate * nights,
            )
            db.add(booking)
            await db.flush()
            return booking

        try:
            booking = await run_in_transaction(self.session_factory, work, attempts=self.max_attempts)
        except ConflictError:
            raise UnavailableError("Accommodation is no longer available, please try again")

        logger.info(
            "Booking %s created for user %s on accommodation %s (%s - %s)",
            booking.id, booking.user_id, booking.accommodation_id,
            booking.check_in_date, booking.check_out_date,
        )
        await self.notifier.booking_created(booking)
        return booking

    async def update(self, booking_id: int, requester: Requester, patch: BookingPatch) -> Booking:
        async def work(db: AsyncSession):
            booking = await _load(db, booking_id, lock=True)
            units = None

            if not requester.can_view(booking.user_id):
                raise AccessDeniedError("Access denied to this booking")

            if patch.status is not None:
                self._check_status_patch(booking, requester, BookingStatus(patch.status))

            if patch.changes_dates:
                if booking.status != BookingStatus.PENDING:
                    raise InvalidStateError(
                        f"Dates can only be changed on pending bookings. Current status: {booking.status}"
                    )
                new_in = patch.check_in_date or booking.check_in_date
                new_out = patch.check_out_date or booking.check_out_date
                validate_dates(new_in, new_out, self._today())

                conflicts = await find_overlaps(
                    db, booking.accommodation_id, new_in, new_out, exclude_booking_id=booking.id
                )
                if conflicts:
                    raise OverlapError("Selected dates conflict with existing booking(s)")

                booking.check_in_date = new_in
                booking.check_out_date = new_out
                booking.total_price = booking.daily_rate * booking.nights

            if patch.status is not None:
                target = BookingStatus(patch.status)
                if not await transition(db, booking, (booking.status,), target):
                    raise InvalidTransitionError(f"Booking {booking.id} changed status concurrently")
                if target == BookingStatus.CANCELED:
                    units = await ledger.increment(db, booking.accommodation_id)

            await db.flush()
            return booking, units

        booking, units = await self._transact(work, booking_id)
        if units is not None:
            await self.notifier.booking_cancelled(booking, units)
        return booking

    def _check_status_patch(self, booking: Booking, requester: Requester, target: BookingStatus):
        current = BookingStatus(booking.status)
        if current == target:
            raise InvalidTransitionError(f"Booking already has status: {target.value}")
        if current in (BookingStatus.CANCELED, BookingStatus.EXPIRED):
            raise InvalidTransitionError(f"Cannot change status of {current.value.lower()} booking")
        if target not in TRANSITIONS[current]:
            raise InvalidTransitionError(f"Transition {current.value} -> {target.value} is not allowed")
        if target == BookingStatus.EXPIRED:
            raise InvalidTransitionError("Bookings expire only through the expiry sweep")
        if target == BookingStatus.CONFIRMED and not requester.is_elevated:
            raise AccessDeniedError("Bookings are confirmed by payment")
        if target == BookingStatus.CANCELED:
            self._check_cancellable(booking, requester)

    def _check_cancellable(self, booking: Booking, requester: Requester):
        if not requester.owns(booking.user_id):
            raise AccessDeniedError("Only booking owner can cancel it")
        if not booking.is_active or booking.check_in_date <= self._today():
            raise InvalidTransitionError(
                f"Booking cannot be cancelled. Status: {booking.status}, "
                f"Check-in date: {booking.check_in_date}"
            )

    async def cancel(self, booking_id: int, requester: Requester) -> Booking:
        async def work(db: AsyncSession):
            booking = await _load(db, booking_id, lock=True)
            self._check_cancellable(booking, requester)

            if not await transition(db, booking, ACTIVE_BOOKING_STATUSES, BookingStatus.CANCELED):
                raise InvalidTransitionError(f"Booking {booking.id} changed status concurrently")
            units = await ledger.increment(db, booking.accommodation_id)
            return booking, units

        booking, units = await self._transact(work, booking_id)
        logger.info("Booking %s cancelled by owner, accommodation %s now has %s unit(s)",
                    booking.id, booking.accommodation_id, units)
        await self.notifier.booking_cancelled(booking, units)
        return booking

    async def expire(self, booking_id: int) -> bool:
        """
        Sweep-only: PENDING/CONFIRMED with a past check-out -> EXPIRED.

        The precondition is re-checked at write time; returns False (no-op)
        when the booking moved on since the scan.
        """
        current_day = self._today()

        async def work(db: AsyncSession):
            booking = await _load(db, booking_id)
            expired = await transition(
                db, booking, ACTIVE_BOOKING_STATUSES, BookingStatus.EXPIRED,
                Booking.check_out_date < current_day,
            )
            if not expired:
                return booking, None
            return booking, await ledger.increment(db, booking.accommodation_id)

        booking, units = await self._transact(work, booking_id)
        if units is None:
            logger.info("Booking %s no longer eligible for expiry (status %s)", booking_id, booking.status)
            return False

        logger.info("Marked booking %s as expired and released accommodation %s",
                    booking.id, booking.accommodation_id)
        await self.notifier.accommodation_released(booking.accommodation_id, units)
        return True

    # ---- queries ----

    async def get(self, booking_id: int, requester: Requester) -> Booking:
        async with self.session_factory() as db:
            booking = await _load(db, booking_id)
        if not requester.can_view(booking.user_id):
            raise AccessDeniedError("Access denied to this booking")
        return booking

    async def list_mine(
        self, requester: Requester, page: int = 0, size: int = DEFAULT_PAGE_SIZE
    ) -> list[Booking]:
        stmt = select(Booking).where(Booking.user_id == requester.user_id).order_by(Booking.id)
        async with self.session_factory() as db:
            res = await db.execute(paginate(stmt, page, size))
            return list(res.scalars().all())

    async def list_all(
        self,
        requester: Requester,
        user_id: str | None = None,
        status: BookingStatus | None = None,
        page: int = 0,
        size: int = DEFAULT_PAGE_SIZE,
    ) -> list[Booking]:
        if not requester.is_elevated:
            raise AccessDeniedError("Only managers can list all bookings")

        stmt = select(Booking)
        if user_id is not None:
            stmt = stmt.where(Booking.user_id == user_id)
        if status is not None:
            stmt = stmt.where(Booking.status == BookingStatus(status).value)

        async with self.session_factory() as db:
            res = await db.execute(paginate(stmt.order_by(Booking.id), page, size))
            return list(res.scalars().all())

    async def stale_ids(self) -> list[int]:
        """Active bookings whose check-out date is strictly before today."""
        async with self.session_factory() as db:
            res = await db.execute(
                select(Booking.id)
                .where(
                    Booking.status.in_(ACTIVE_BOOKING_STATUSES),
                    Booking.check_out_date < self._today(),
                )
                .order_by(Booking.id)
            )
            return list(res.scalars().all())
