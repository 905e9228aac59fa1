from fastapi import APIRouter, Depends, Query, Response

from .accommodations import AccommodationService
from .bookings import BookingPatch, BookingService
from .breaker import CircuitBreaker
from .config import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    PROCESSOR_FAILURE_THRESHOLD,
    PROCESSOR_RESET_SECONDS,
    STRIPE_SECRET_KEY,
)
from .db import SessionLocal
from .models import BookingStatus
from .notifications import notifier
from .payments import PaymentRecord, PaymentService
from .processor import StripeProcessor
from .rbac import Requester, require_role
from .redis_client import redis_client
from .schemas import (
    AccommodationResponse,
    BookingResponse,
    CreateAccommodationRequest,
    CreateBookingRequest,
    CreatePaymentRequest,
    PaymentCancelResponse,
    PaymentResponse,
    PaymentSuccessResponse,
    SweepResponse,
    UpdateAccommodationRequest,
    UpdateBookingRequest,
)
from .security import get_requester, get_token_payload
from .sweeps import expire_stale_bookings, expire_stale_payment_sessions

router = APIRouter()

MANAGEMENT_ROLES = ["admin"]
ELEVATED_ROLES = ["manager", "admin"]

stripe_breaker = CircuitBreaker(
    redis_client,
    "stripe",
    failure_threshold=PROCESSOR_FAILURE_THRESHOLD,
    reset_timeout_seconds=PROCESSOR_RESET_SECONDS,
)


def get_accommodation_service() -> AccommodationService:
    return AccommodationService(SessionLocal)


def get_booking_service() -> BookingService:
    return BookingService(SessionLocal, notifier)


def get_payment_service() -> PaymentService:
    processor = StripeProcessor(STRIPE_SECRET_KEY, breaker=stripe_breaker)
    return PaymentService(SessionLocal, processor, notifier)


def _payment_response(record: PaymentRecord) -> PaymentResponse:
    p = record.payment
    return PaymentResponse(
        id=p.id,
        booking_id=record.booking_id,
        user_id=p.user_id,
        status=p.status,
        amount_to_pay=p.amount_to_pay,
        session_id=p.session_id,
        session_url=p.session_url,
        expires_at=p.expires_at,
        paid_at=p.paid_at,
    )


# ================= ACCOMMODATIONS =================

@router.post("/accommodations", response_model=AccommodationResponse, status_code=201, tags=["Accommodations"])
async def create_accommodation(
    data: CreateAccommodationRequest,
    payload: dict = Depends(get_token_payload),
    service: AccommodationService = Depends(get_accommodation_service),
):
    require_role(payload, MANAGEMENT_ROLES)
    return await service.create(data.model_dump())


@router.get("/accommodations", response_model=list[AccommodationResponse], tags=["Accommodations"])
async def list_accommodations(
    location: str | None = None,
    type: str | None = None,
    page: int = Query(0, ge=0),
    size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    service: AccommodationService = Depends(get_accommodation_service),
):
    return await service.list_accommodations(location=location, type=type, page=page, size=size)


@router.get("/accommodations/{accommodation_id}", response_model=AccommodationResponse, tags=["Accommodations"])
async def get_accommodation(
    accommodation_id: int,
    service: AccommodationService = Depends(get_accommodation_service),
):
    return await service.get(accommodation_id)


@router.patch("/accommodations/{accommodation_id}", response_model=AccommodationResponse, tags=["Accommodations"])
async def update_accommodation(
    accommodation_id: int,
    data: UpdateAccommodationRequest,
    payload: dict = Depends(get_token_payload),
    service: AccommodationService = Depends(get_accommodation_service),
):
    require_role(payload, MANAGEMENT_ROLES)
    return await service.update(accommodation_id, data.model_dump(exclude_unset=True))


@router.delete("/accommodations/{accommodation_id}", status_code=204, tags=["Accommodations"])
async def delete_accommodation(
    accommodation_id: int,
    payload: dict = Depends(get_token_payload),
    service: AccommodationService = Depends(get_accommodation_service),
):
    require_role(payload, MANAGEMENT_ROLES)
    await service.delete(accommodation_id)
    return Response(status_code=204)


# ================= BOOKINGS =================

@router.post("/bookings", response_model=BookingResponse, status_code=201, tags=["Bookings"])
async def create_booking(
    data: CreateBookingRequest,
    requester: Requester = Depends(get_requester),
    service: BookingService = Depends(get_booking_service),
):
    return await service.create(requester, data.accommodation_id, data.check_in_date, data.check_out_date)


@router.get("/bookings/my", response_model=list[BookingResponse], tags=["Bookings"])
async def my_bookings(
    page: int = Query(0, ge=0),
    size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    requester: Requester = Depends(get_requester),
    service: BookingService = Depends(get_booking_service),
):
    return await service.list_mine(requester, page=page, size=size)


@router.get("/bookings", response_model=list[BookingResponse], tags=["Bookings"])
async def list_bookings(
    user_id: str | None = None,
    status: BookingStatus | None = None,
    page: int = Query(0, ge=0),
    size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    requester: Requester = Depends(get_requester),
    service: BookingService = Depends(get_booking_service),
):
    return await service.list_all(requester, user_id=user_id, status=status, page=page, size=size)


@router.get("/bookings/{booking_id}", response_model=BookingResponse, tags=["Bookings"])
async def get_booking(
    booking_id: int,
    requester: Requester = Depends(get_requester),
    service: BookingService = Depends(get_booking_service),
):
    return await service.get(booking_id, requester)


@router.patch("/bookings/{booking_id}", response_model=BookingResponse, tags=["Bookings"])
async def update_booking(
    booking_id: int,
    data: UpdateBookingRequest,
    requester: Requester = Depends(get_requester),
    service: BookingService = Depends(get_booking_service),
):
    patch = BookingPatch(
        check_in_date=data.check_in_date,
        check_out_date=data.check_out_date,
        status=data.status,
    )
    return await service.update(booking_id, requester, patch)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse, tags=["Bookings"])
async def cancel_booking(
    booking_id: int,
    requester: Requester = Depends(get_requester),
    service: BookingService = Depends(get_booking_service),
):
    return await service.cancel(booking_id, requester)


# ================= PAYMENTS =================

@router.post("/payments", response_model=PaymentResponse, status_code=201, tags=["Payments"])
async def create_payment(
    data: CreatePaymentRequest,
    requester: Requester = Depends(get_requester),
    service: PaymentService = Depends(get_payment_service),
):
    return _payment_response(await service.create_session(data.booking_id, requester))


@router.get("/payments/success", response_model=PaymentSuccessResponse, tags=["Payments"])
async def payment_success(session_id: str, service: PaymentService = Depends(get_payment_service)):
    record = await service.confirm_success(session_id)
    return PaymentSuccessResponse(
        payment_id=record.payment.id,
        booking_id=record.booking_id,
        amount_paid=record.payment.amount_to_pay,
        paid_at=record.payment.paid_at,
    )


@router.get("/payments/cancel", response_model=PaymentCancelResponse, tags=["Payments"])
async def payment_cancel(session_id: str, service: PaymentService = Depends(get_payment_service)):
    result = await service.handle_cancel(session_id)
    return PaymentCancelResponse(payment_id=result.payment_id, renew_url=result.renew_url)


@router.get("/payments", response_model=list[PaymentResponse], tags=["Payments"])
async def list_payments(
    user_id: str | None = None,
    page: int = Query(0, ge=0),
    size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    requester: Requester = Depends(get_requester),
    service: PaymentService = Depends(get_payment_service),
):
    records = await service.list_payments(requester, user_id=user_id, page=page, size=size)
    return [_payment_response(r) for r in records]


@router.get("/payments/{payment_id}", response_model=PaymentResponse, tags=["Payments"])
async def get_payment(
    payment_id: int,
    requester: Requester = Depends(get_requester),
    service: PaymentService = Depends(get_payment_service),
):
    return _payment_response(await service.get(payment_id, requester))


@router.post("/payments/{payment_id}/renew", response_model=PaymentResponse, tags=["Payments"])
async def renew_payment(
    payment_id: int,
    requester: Requester = Depends(get_requester),
    service: PaymentService = Depends(get_payment_service),
):
    return _payment_response(await service.renew(payment_id, requester))


@router.post("/payments/{payment_id}/cancel", response_model=PaymentResponse, tags=["Payments"])
async def cancel_payment(
    payment_id: int,
    requester: Requester = Depends(get_requester),
    service: PaymentService = Depends(get_payment_service),
):
    return _payment_response(await service.cancel(payment_id, requester))


# ================= SYSTEM =================

@router.post("/system/sweeps/bookings", response_model=SweepResponse, tags=["System"])
async def run_booking_sweep(
    payload: dict = Depends(get_token_payload),
    service: BookingService = Depends(get_booking_service),
):
    require_role(payload, ELEVATED_ROLES)
    processed = await expire_stale_bookings(service, service.notifier)
    return SweepResponse(sweep="bookings", processed=processed)


@router.post("/system/sweeps/payments", response_model=SweepResponse, tags=["System"])
async def run_payment_sweep(
    payload: dict = Depends(get_token_payload),
    service: PaymentService = Depends(get_payment_service),
):
    require_role(payload, ELEVATED_ROLES)
    processed = await expire_stale_payment_sessions(service)
    return SweepResponse(sweep="payments", processed=processed)
