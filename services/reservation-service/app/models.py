import enum

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, Numeric, String, func

from .db import Base


class BookingStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    EXPIRED = "EXPIRED"
    CANCELED = "CANCELED"
    FAILED = "FAILED"


ACTIVE_BOOKING_STATUSES = (BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value)


class Accommodation(Base):
    __tablename__ = "accommodations"

    id = Column(Integer, primary_key=True)
    type = Column(String(50), nullable=False)
    location = Column(String(200), nullable=False, index=True)
    size = Column(String(50), nullable=False)
    amenities = Column(String(1000), nullable=False, default="")
    daily_rate = Column(Numeric(10, 2), nullable=False)

    # mutated only through the ledger
    available_units = Column(Integer, nullable=False)

    is_deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    status = Column(String(20), nullable=False, index=True)  # PENDING/PAID/EXPIRED/CANCELED/FAILED
    amount_to_pay = Column(Numeric(10, 2), nullable=False)

    session_id = Column(String(255), unique=True, nullable=True, index=True)
    session_url = Column(String(1000), nullable=True)
    payment_reference = Column(String(255), nullable=True)

    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    accommodation_id = Column(Integer, ForeignKey("accommodations.id"), nullable=False, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True, unique=True)

    check_in_date = Column(Date, nullable=False)
    check_out_date = Column(Date, nullable=False)

    status = Column(String(20), nullable=False, index=True)  # PENDING/CONFIRMED/CANCELED/EXPIRED

    # snapshot of the accommodation rate at creation; total_price never follows later rate changes
    daily_rate = Column(Numeric(10, 2), nullable=False)
    total_price = Column(Numeric(10, 2), nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    @property
    def nights(self) -> int:
        return (self.check_out_date - self.check_in_date).days

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_BOOKING_STATUSES
