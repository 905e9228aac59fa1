from datetime import date

import pytest

from app.clock import as_utc
from app.models import BookingStatus, PaymentStatus
from app.sweeps import expire_stale_bookings, expire_stale_payment_sessions


def jan(day: int) -> date:
    return date(2025, 1, day)


async def test_lapsed_session_expires_but_booking_keeps_its_unit(
    payments, bookings, accommodations, make_accommodation, clock, publisher, alice
):
    accommodation = await make_accommodation(units=1)
    booking = await bookings.create(alice, accommodation.id, jan(10), jan(15))
    record = await payments.create_session(booking.id, alice)

    clock.advance(hours=24)
    assert await expire_stale_payment_sessions(payments) == 1

    expired = await payments.get(record.payment.id, alice)
    assert expired.payment.status == PaymentStatus.EXPIRED
    assert (await bookings.get(booking.id, alice)).status == BookingStatus.PENDING
    assert (await accommodations.get(accommodation.id)).available_units == 0
    assert publisher.of("payment.expired")[0]["payment_id"] == record.payment.id

    assert await expire_stale_payment_sessions(payments) == 0

    renewed = await payments.renew(record.payment.id, alice)
    assert renewed.payment.status == PaymentStatus.PENDING
    assert as_utc(renewed.payment.expires_at) > clock()


async def test_finished_stay_expires_and_frees_the_unit(
    payments, bookings, accommodations, make_accommodation, processor, notifier, clock, publisher, alice
):
    accommodation = await make_accommodation(units=1)
    booking = await bookings.create(alice, accommodation.id, jan(2), jan(4))
    record = await payments.create_session(booking.id, alice)
    processor.pay(record.payment.session_id)
    await payments.confirm_success(record.payment.session_id)

    clock.advance(days=4)
    assert await expire_stale_bookings(bookings, notifier) == 1

    assert (await bookings.get(booking.id, alice)).status == BookingStatus.EXPIRED
    assert (await accommodations.get(accommodation.id)).available_units == 1
    assert publisher.of("accommodation.released") == [
        {"accommodation_id": accommodation.id, "available_units": 1}
    ]
    assert publisher.of("bookings.expiry_report") == [{"expired": 1}]

    assert await expire_stale_bookings(bookings, notifier) == 0
    assert (await accommodations.get(accommodation.id)).available_units == 1
    assert publisher.of("bookings.expiry_report") == [{"expired": 1}, {"expired": 0}]


async def test_unpaid_finished_stay_expires_too(bookings, accommodations, make_accommodation, notifier, clock, alice):
    accommodation = await make_accommodation(units=1)
    booking = await bookings.create(alice, accommodation.id, jan(2), jan(4))

    clock.advance(days=3)  # check-out day itself is not stale yet
    assert await bookings.stale_ids() == []

    clock.advance(days=1)
    assert await bookings.stale_ids() == [booking.id]
    assert await expire_stale_bookings(bookings, notifier) == 1
    assert (await accommodations.get(accommodation.id)).available_units == 1


async def test_empty_run_still_reports(bookings, notifier, publisher):
    assert await expire_stale_bookings(bookings, notifier) == 0
    assert publisher.of("bookings.expiry_report") == [{"expired": 0}]


async def test_expiring_twice_releases_once(bookings, accommodations, make_accommodation, clock, alice):
    accommodation = await make_accommodation(units=1)
    booking = await bookings.create(alice, accommodation.id, jan(2), jan(4))
    clock.advance(days=4)

    assert await bookings.expire(booking.id) is True
    assert await bookings.expire(booking.id) is False
    assert (await accommodations.get(accommodation.id)).available_units == 1


async def test_one_failing_booking_does_not_stop_the_sweep(
    bookings, accommodations, make_accommodation, notifier, clock, publisher, alice, bob, monkeypatch
):
    first_place = await make_accommodation(units=1)
    second_place = await make_accommodation(units=1)
    broken = await bookings.create(alice, first_place.id, jan(2), jan(4))
    healthy = await bookings.create(bob, second_place.id, jan(2), jan(4))
    clock.advance(days=4)

    real_expire = bookings.expire

    async def flaky_expire(booking_id):
        if booking_id == broken.id:
            raise RuntimeError("storage hiccup")
        return await real_expire(booking_id)

    monkeypatch.setattr(bookings, "expire", flaky_expire)

    assert await expire_stale_bookings(bookings, notifier) == 1
    assert (await bookings.get(healthy.id, bob)).status == BookingStatus.EXPIRED
    assert (await bookings.get(broken.id, alice)).status == BookingStatus.PENDING
    assert publisher.of("bookings.expiry_report") == [{"expired": 1}]

    monkeypatch.undo()
    assert await expire_stale_bookings(bookings, notifier) == 1
    assert (await accommodations.get(first_place.id)).available_units == 1


async def test_payment_settled_after_scan_is_left_alone(payments, bookings, make_accommodation, processor, clock, alice):
    accommodation = await make_accommodation(units=1)
    booking = await bookings.create(alice, accommodation.id, jan(10), jan(15))
    record = await payments.create_session(booking.id, alice)
    clock.advance(hours=24)

    stale = await payments.stale_ids()
    assert stale == [record.payment.id]

    processor.pay(record.payment.session_id)
    await payments.confirm_success(record.payment.session_id)

    assert await payments.expire_session(stale[0]) is False
    assert (await payments.get(record.payment.id, alice)).payment.status == PaymentStatus.PAID
