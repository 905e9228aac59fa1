from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from .models import BookingStatus


class CreateAccommodationRequest(BaseModel):
    type: str
    location: str
    size: str
    amenities: str = ""
    daily_rate: Decimal = Field(gt=0)
    available_units: int = Field(ge=0)


class UpdateAccommodationRequest(BaseModel):
    type: str | None = None
    location: str | None = None
    size: str | None = None
    amenities: str | None = None
    daily_rate: Decimal | None = Field(default=None, gt=0)


class AccommodationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: str
    location: str
    size: str
    amenities: str
    daily_rate: Decimal
    available_units: int


class CreateBookingRequest(BaseModel):
    accommodation_id: int
    check_in_date: date
    check_out_date: date


class UpdateBookingRequest(BaseModel):
    check_in_date: date | None = None
    check_out_date: date | None = None
    status: BookingStatus | None = None


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    accommodation_id: int
    payment_id: int | None = None
    check_in_date: date
    check_out_date: date
    status: str
    total_price: Decimal


class CreatePaymentRequest(BaseModel):
    booking_id: int


class PaymentResponse(BaseModel):
    id: int
    booking_id: int | None
    user_id: str
    status: str
    amount_to_pay: Decimal
    session_id: str | None = None
    session_url: str | None = None
    expires_at: datetime
    paid_at: datetime | None = None


class PaymentSuccessResponse(BaseModel):
    payment_id: int
    booking_id: int
    amount_paid: Decimal
    paid_at: datetime


class PaymentCancelResponse(BaseModel):
    payment_id: int
    renew_url: str


class SweepResponse(BaseModel):
    sweep: str
    processed: int
