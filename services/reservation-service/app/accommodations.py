from sqlalchemy import func, select

from .config import DEFAULT_PAGE_SIZE
from .db import paginate
from .errors import InvalidStateError, NotFoundError
from .models import ACTIVE_BOOKING_STATUSES, Accommodation, Booking

# no available_units: after creation only the ledger moves it
MUTABLE_FIELDS = {"type", "location", "size", "amenities", "daily_rate"}


class AccommodationService:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def create(self, data: dict) -> Accommodation:
        accommodation = Accommodation(
            type=data["type"],
            location=data["location"],
            size=data["size"],
            amenities=data.get("amenities") or "",
            daily_rate=data["daily_rate"],
            available_units=data["available_units"],
            is_deleted=False,
        )
        async with self.session_factory() as db:
            db.add(accommodation)
            await db.commit()
        return accommodation

    async def get(self, accommodation_id: int) -> Accommodation:
        async with self.session_factory() as db:
            return await self._load(db, accommodation_id)

    async def list_accommodations(
        self,
        location: str | None = None,
        type: str | None = None,
        page: int = 0,
        size: int = DEFAULT_PAGE_SIZE,
    ) -> list[Accommodation]:
        stmt = select(Accommodation).where(Accommodation.is_deleted.is_(False))
        if location:
            stmt = stmt.where(Accommodation.location.ilike(f"%{location}%"))
        if type:
            stmt = stmt.where(Accommodation.type == type)

        async with self.session_factory() as db:
            res = await db.execute(paginate(stmt.order_by(Accommodation.id), page, size))
            return list(res.scalars().all())

    async def update(self, accommodation_id: int, changes: dict) -> Accommodation:
        async with self.session_factory() as db:
            accommodation = await self._load(db, accommodation_id)
            for field, value in changes.items():
                if field in MUTABLE_FIELDS and value is not None:
                    setattr(accommodation, field, value)
            await db.commit()
        return accommodation

    async def delete(self, accommodation_id: int):
        async with self.session_factory() as db:
            accommodation = await self._load(db, accommodation_id)
            active = await db.scalar(
                select(func.count())
                .select_from(Booking)
                .where(
                    Booking.accommodation_id == accommodation.id,
                    Booking.status.in_(ACTIVE_BOOKING_STATUSES),
                )
            )
            if active:
                raise InvalidStateError("Cannot delete accommodation with active bookings")

            accommodation.is_deleted = True
            await db.commit()

    async def _load(self, db, accommodation_id: int) -> Accommodation:
        res = await db.execute(
            select(Accommodation).where(
                Accommodation.id == accommodation_id,
                Accommodation.is_deleted.is_(False),
            )
        )
        accommodation = res.scalar_one_or_none()
        if not accommodation:
            raise NotFoundError(f"Accommodation not found with id: {accommodation_id}")
        return accommodation
