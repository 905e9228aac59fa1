from datetime import date
from decimal import Decimal

import pytest

from app import ledger
from app.errors import ConflictError
from app.models import Accommodation, Booking
from app.overlap import find_overlaps, overlaps


def jan(day: int) -> date:
    return date(2025, 1, day)


def _booking(accommodation_id: int, start: int, end: int, status: str) -> Booking:
    return Booking(
        user_id="seed",
        accommodation_id=accommodation_id,
        check_in_date=jan(start),
        check_out_date=jan(end),
        status=status,
        daily_rate=Decimal("100.00"),
        total_price=Decimal("100.00") * (end - start),
    )


@pytest.mark.parametrize(
    "other,expected",
    [
        ((15, 18), False),  # back-to-back
        ((5, 10), False),
        ((14, 18), True),
        ((11, 12), True),
        ((5, 20), True),
    ],
)
def test_overlaps_treats_ranges_as_half_open(other, expected):
    assert overlaps(jan(10), jan(15), jan(other[0]), jan(other[1])) is expected


async def test_decrement_refuses_to_go_below_zero(session_factory, make_accommodation):
    accommodation = await make_accommodation(units=1)

    async with session_factory() as db:
        async with db.begin():
            assert await ledger.decrement(db, accommodation.id) == 0

    async with session_factory() as db:
        with pytest.raises(ConflictError):
            async with db.begin():
                await ledger.decrement(db, accommodation.id)

    async with session_factory() as db:
        assert (await db.get(Accommodation, accommodation.id)).available_units == 0


async def test_increment_returns_new_count(session_factory, make_accommodation):
    accommodation = await make_accommodation(units=2)

    async with session_factory() as db:
        async with db.begin():
            assert await ledger.decrement(db, accommodation.id) == 1
            assert await ledger.increment(db, accommodation.id) == 2
            assert await ledger.increment(db, accommodation.id) == 3


async def test_decrement_rolls_back_with_its_transaction(session_factory, make_accommodation):
    accommodation = await make_accommodation(units=1)

    async with session_factory() as db:
        with pytest.raises(RuntimeError):
            async with db.begin():
                await ledger.decrement(db, accommodation.id)
                raise RuntimeError("booking insert failed")

    async with session_factory() as db:
        assert (await db.get(Accommodation, accommodation.id)).available_units == 1


async def test_find_overlaps_only_counts_active_bookings(session_factory, make_accommodation):
    accommodation = await make_accommodation(units=5)
    async with session_factory() as db:
        async with db.begin():
            db.add_all([
                _booking(accommodation.id, 10, 15, "PENDING"),
                _booking(accommodation.id, 11, 13, "CANCELED"),
                _booking(accommodation.id, 15, 18, "CONFIRMED"),
                _booking(accommodation.id, 12, 14, "EXPIRED"),
            ])

    async with session_factory() as db:
        hits = await find_overlaps(db, accommodation.id, jan(11), jan(13))
        assert [b.status for b in hits] == ["PENDING"]

        hits = await find_overlaps(db, accommodation.id, jan(14), jan(16))
        assert [b.status for b in hits] == ["PENDING", "CONFIRMED"]

        assert await find_overlaps(db, accommodation.id, jan(18), jan(20)) == []
        assert await find_overlaps(db, accommodation.id + 1, jan(11), jan(13)) == []


async def test_find_overlaps_can_exclude_the_booking_being_moved(session_factory, make_accommodation):
    accommodation = await make_accommodation(units=5)
    async with session_factory() as db:
        async with db.begin():
            own = _booking(accommodation.id, 10, 15, "PENDING")
            db.add(own)

    async with session_factory() as db:
        assert len(await find_overlaps(db, accommodation.id, jan(12), jan(17))) == 1
        assert await find_overlaps(
            db, accommodation.id, jan(12), jan(17), exclude_booking_id=own.id
        ) == []
