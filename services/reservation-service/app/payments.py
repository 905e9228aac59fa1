"""
Payment state machine.

    PENDING -> PAID | EXPIRED | CANCELED
    EXPIRED, CANCELED -> PENDING   (renew: same row, fresh processor session)
    PAID: terminal

Processor calls happen before any local write and outside any transaction;
the local state is re-validated under lock once the processor has answered.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from .bookings import confirm_pending
from .clock import as_utc, utcnow
from .config import APP_BASE_URL, DEFAULT_PAGE_SIZE, PAYMENT_CURRENCY, PAYMENT_SESSION_HOURS
from .db import paginate, run_in_transaction
from .errors import (
    AccessDeniedError,
    AlreadyProcessedError,
    ConflictError,
    DuplicatePaymentError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    VerificationError,
)
from .models import Accommodation, Booking, BookingStatus, Payment, PaymentStatus
from .processor import CheckoutSession, PaymentProcessor
from .rbac import Requester

logger = logging.getLogger(__name__)

RENEWABLE_STATUSES = (PaymentStatus.EXPIRED.value, PaymentStatus.CANCELED.value)


@dataclass
class PaymentRecord:
    payment: Payment
    booking_id: int | None


@dataclass
class CancelledCheckout:
    payment_id: int
    renew_url: str


async def _booking_for_payment(db: AsyncSession, payment_id: int, lock: bool = False) -> Booking | None:
    stmt = select(Booking).where(Booking.payment_id == payment_id)
    if lock:
        stmt = stmt.with_for_update()
    res = await db.execute(stmt)
    return res.scalar_one_or_none()


async def _payment_by_session(db: AsyncSession, session_id: str, lock: bool = False) -> Payment:
    stmt = select(Payment).where(Payment.session_id == session_id)
    if lock:
        stmt = stmt.with_for_update()
    res = await db.execute(stmt)
    payment = res.scalar_one_or_none()
    if not payment:
        raise NotFoundError(f"Payment not found for session: {session_id}")
    return payment


async def _payment_by_id(db: AsyncSession, payment_id: int, lock: bool = False) -> Payment:
    stmt = select(Payment).where(Payment.id == payment_id)
    if lock:
        stmt = stmt.with_for_update()
    res = await db.execute(stmt)
    payment = res.scalar_one_or_none()
    if not payment:
        raise NotFoundError(f"Payment not found with id: {payment_id}")
    return payment


async def _booking_by_id(db: AsyncSession, booking_id: int, lock: bool = False) -> Booking:
    stmt = select(Booking).where(Booking.id == booking_id)
    if lock:
        stmt = stmt.with_for_update()
    res = await db.execute(stmt)
    booking = res.scalar_one_or_none()
    if not booking:
        raise NotFoundError(f"Booking not found with id: {booking_id}")
    return booking


async def transition(
    db: AsyncSession,
    payment: Payment,
    allowed_from: tuple[str, ...],
    target: PaymentStatus,
    *extra_conditions,
    **values,
) -> bool:
    res = await db.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status.in_(allowed_from), *extra_conditions)
        .values(status=target.value, **values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        return False
    set_committed_value(payment, "status", target.value)
    for key, value in values.items():
        set_committed_value(payment, key, value)
    return True


class PaymentService:
    def __init__(
        self,
        session_factory,
        processor: PaymentProcessor,
        notifier,
        clock=utcnow,
        base_url: str = APP_BASE_URL,
        currency: str = PAYMENT_CURRENCY,
        session_hours: int = PAYMENT_SESSION_HOURS,
    ):
        self.session_factory = session_factory
        self.processor = processor
        self.notifier = notifier
        self.clock = clock
        self.base_url = base_url
        self.currency = currency
        self.session_lifetime = timedelta(hours=session_hours)

    # ---- helpers ----

    async def _transact(self, work, subject: str):
        try:
            return await run_in_transaction(self.session_factory, work)
        except ConflictError:
            raise InvalidTransitionError(f"{subject} changed concurrently, please retry")

    def _check_can_open(self, booking: Booking, existing: Payment | None, requester: Requester):
        if not requester.owns(booking.user_id):
            raise AccessDeniedError("You can only create payments for your own bookings")

        if booking.status != BookingStatus.PENDING:
            raise InvalidStateError(
                f"Payment can only be created for pending bookings. Current status: {booking.status}"
            )

        if existing is None:
            return
        if existing.status == PaymentStatus.PAID:
            raise DuplicatePaymentError("Booking already has a paid payment")
        if existing.status == PaymentStatus.PENDING and as_utc(existing.expires_at) > self.clock():
            raise DuplicatePaymentError(
                "Booking already has an active payment session. "
                "Please use the existing session or wait for it to expire"
            )

    async def _open_checkout(
        self,
        booking: Booking,
        accommodation: Accommodation,
        expires_at: datetime,
        customer_email: str | None,
    ) -> CheckoutSession:
        checkout = await self.processor.open_session(
            amount=booking.total_price,
            currency=self.currency,
            success_url=f"{self.base_url}/payments/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self.base_url}/payments/cancel?session_id={{CHECKOUT_SESSION_ID}}",
            expires_at=expires_at,
            metadata={"booking_id": booking.id, "user_id": booking.user_id},
            name=f"Booking #{booking.id} - {accommodation.type}",
            description=f"{accommodation.size} at {accommodation.location} ({booking.nights} nights)",
            customer_email=customer_email,
        )
        logger.info("Opened processor session %s for booking %s", checkout.session_id, booking.id)
        return checkout

    # ---- commands ----

    async def create_session(self, booking_id: int, requester: Requester) -> PaymentRecord:
        async with self.session_factory() as db:
            booking = await _booking_by_id(db, booking_id)
            existing = await db.get(Payment, booking.payment_id) if booking.payment_id else None
            self._check_can_open(booking, existing, requester)
            accommodation = await db.get(Accommodation, booking.accommodation_id)

        now = self.clock()
        expires_at = now + self.session_lifetime
        checkout = await self._open_checkout(booking, accommodation, expires_at, requester.email)
        quoted_amount = booking.total_price

        async def work(db: AsyncSession) -> Payment:
            booking = await _booking_by_id(db, booking_id, lock=True)
            existing = (
                await _payment_by_id(db, booking.payment_id, lock=True) if booking.payment_id else None
            )
            self._check_can_open(booking, existing, requester)
            if booking.total_price != quoted_amount:
                raise InvalidStateError("Booking changed while the payment session was opened, please retry")

            payment = existing or Payment(user_id=booking.user_id)
            payment.status = PaymentStatus.PENDING.value
            payment.amount_to_pay = booking.total_price
            payment.session_id = checkout.session_id
            payment.session_url = checkout.session_url
            payment.payment_reference = None
            payment.expires_at = expires_at
            payment.paid_at = None
            if existing is None:
                db.add(payment)
                await db.flush()
                booking.payment_id = payment.id
            await db.flush()
            return payment

        payment = await self._transact(work, f"Booking {booking_id}")
        await self.notifier.payment_created(payment, booking_id)
        return PaymentRecord(payment=payment, booking_id=booking_id)

    async def confirm_success(self, session_id: str) -> PaymentRecord:
        async with self.session_factory() as db:
            payment = await _payment_by_session(db, session_id)
        if payment.status == PaymentStatus.PAID:
            raise AlreadyProcessedError("Payment already processed")

        state = await self.processor.retrieve_session(session_id)
        if not state.is_paid:
            raise VerificationError("Payment was not completed successfully")

        async def work(db: AsyncSession):
            payment = await _payment_by_session(db, session_id, lock=True)
            if payment.status == PaymentStatus.PAID:
                raise AlreadyProcessedError("Payment already processed")
            if payment.status != PaymentStatus.PENDING:
                raise InvalidTransitionError(
                    f"Only pending payments can be marked as paid. Current status: {payment.status}"
                )

            booking = await _booking_for_payment(db, payment.id)
            if booking is None:
                raise NotFoundError(f"No booking linked to payment {payment.id}")
            await confirm_pending(db, booking.id)

            paid = await transition(
                db, payment, (PaymentStatus.PENDING.value,), PaymentStatus.PAID,
                paid_at=self.clock(),
                payment_reference=state.payment_reference,
            )
            if not paid:
                raise AlreadyProcessedError("Payment already processed")
            return payment, booking.id

        payment, booking_id = await self._transact(work, f"Payment for session {session_id}")
        logger.info("Payment %s paid, booking %s confirmed", payment.id, booking_id)
        await self.notifier.payment_succeeded(payment, booking_id)
        return PaymentRecord(payment=payment, booking_id=booking_id)

    async def handle_cancel(self, session_id: str) -> CancelledCheckout:
        async with self.session_factory() as db:
            payment = await _payment_by_session(db, session_id)
        return CancelledCheckout(
            payment_id=payment.id,
            renew_url=f"{self.base_url}/payments/{payment.id}/renew",
        )

    async def cancel(self, payment_id: int, requester: Requester) -> PaymentRecord:
        async def work(db: AsyncSession):
            payment = await _payment_by_id(db, payment_id, lock=True)
            if not requester.owns(payment.user_id):
                raise AccessDeniedError("You can only cancel your own payments")
            cancelled = await transition(
                db, payment, (PaymentStatus.PENDING.value,), PaymentStatus.CANCELED
            )
            if not cancelled:
                raise InvalidTransitionError(
                    f"Only pending payments can be canceled. Current status: {payment.status}"
                )
            booking = await _booking_for_payment(db, payment.id)
            return payment, booking.id if booking else None

        payment, booking_id = await self._transact(work, f"Payment {payment_id}")
        logger.info("Payment %s canceled by owner", payment.id)
        return PaymentRecord(payment=payment, booking_id=booking_id)

    def _check_renewable(self, payment: Payment, booking: Booking | None, requester: Requester):
        if not requester.owns(payment.user_id):
            raise AccessDeniedError("You can only renew your own payments")
        if payment.status not in RENEWABLE_STATUSES:
            raise InvalidStateError(
                f"Only expired or canceled payments can be renewed. Current status: {payment.status}"
            )
        if booking is None or booking.status != BookingStatus.PENDING:
            raise InvalidStateError(
                "Cannot renew payment for non-pending booking. "
                f"Booking status: {booking.status if booking else None}"
            )

    async def renew(self, payment_id: int, requester: Requester) -> PaymentRecord:
        async with self.session_factory() as db:
            payment = await _payment_by_id(db, payment_id)
            booking = await _booking_for_payment(db, payment.id)
            self._check_renewable(payment, booking, requester)
            accommodation = await db.get(Accommodation, booking.accommodation_id)

        expires_at = self.clock() + self.session_lifetime
        checkout = await self._open_checkout(booking, accommodation, expires_at, requester.email)

        async def work(db: AsyncSession) -> Payment:
            payment = await _payment_by_id(db, payment_id, lock=True)
            booking = await _booking_for_payment(db, payment.id, lock=True)
            self._check_renewable(payment, booking, requester)

            renewed = await transition(
                db, payment, RENEWABLE_STATUSES, PaymentStatus.PENDING,
                session_id=checkout.session_id,
                session_url=checkout.session_url,
                expires_at=expires_at,
                amount_to_pay=booking.total_price,
            )
            if not renewed:
                raise InvalidStateError(f"Payment {payment.id} changed status concurrently")
            return payment

        payment = await self._transact(work, f"Payment {payment_id}")
        logger.info("Payment %s renewed with session %s", payment.id, payment.session_id)
        return PaymentRecord(payment=payment, booking_id=booking.id)

    async def expire_session(self, payment_id: int) -> bool:
        """
        Sweep-only: PENDING past ``expires_at`` -> EXPIRED.

        Never touches the booking or the ledger. Returns False when the
        payment moved on since the scan.
        """
        now = self.clock()

        async def work(db: AsyncSession):
            payment = await _payment_by_id(db, payment_id)
            expired = await transition(
                db, payment, (PaymentStatus.PENDING.value,), PaymentStatus.EXPIRED,
                Payment.expires_at < now,
            )
            return payment, expired

        payment, expired = await self._transact(work, f"Payment {payment_id}")
        if not expired:
            logger.info("Payment %s no longer eligible for expiry (status %s)", payment_id, payment.status)
            return False

        logger.info("Marked payment %s as expired", payment.id)
        await self.notifier.payment_expired(payment)
        return True

    # ---- queries ----

    async def get(self, payment_id: int, requester: Requester) -> PaymentRecord:
        async with self.session_factory() as db:
            payment = await _payment_by_id(db, payment_id)
            booking = await _booking_for_payment(db, payment.id)
        if not requester.can_view(payment.user_id):
            raise AccessDeniedError("Access denied to this payment")
        return PaymentRecord(payment=payment, booking_id=booking.id if booking else None)

    async def list_payments(
        self,
        requester: Requester,
        user_id: str | None = None,
        page: int = 0,
        size: int = DEFAULT_PAGE_SIZE,
    ) -> list[PaymentRecord]:
        stmt = select(Payment, Booking.id).outerjoin(Booking, Booking.payment_id == Payment.id)
        if requester.is_elevated:
            if user_id is not None:
                stmt = stmt.where(Payment.user_id == user_id)
        else:
            stmt = stmt.where(Payment.user_id == requester.user_id)

        async with self.session_factory() as db:
            res = await db.execute(paginate(stmt.order_by(Payment.id), page, size))
            return [PaymentRecord(payment=p, booking_id=b_id) for p, b_id in res.all()]

    async def stale_ids(self) -> list[int]:
        async with self.session_factory() as db:
            res = await db.execute(
                select(Payment.id)
                .where(
                    Payment.status == PaymentStatus.PENDING.value,
                    Payment.expires_at < self.clock(),
                )
                .order_by(Payment.id)
            )
            return list(res.scalars().all())
