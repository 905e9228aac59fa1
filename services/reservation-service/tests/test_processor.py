from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
import stripe

from app.breaker import CircuitBreaker, CircuitBreakerOpen
from app.errors import PaymentProcessorError
from app.processor import CheckoutSession, StripeProcessor


def _session_kwargs(**overrides):
    kwargs = {
        "amount": Decimal("500.00"),
        "currency": "usd",
        "success_url": "http://testserver/payments/success?session_id={CHECKOUT_SESSION_ID}",
        "cancel_url": "http://testserver/payments/cancel?session_id={CHECKOUT_SESSION_ID}",
        "expires_at": datetime(2025, 1, 2, 11, 0, tzinfo=timezone.utc),
        "metadata": {"booking_id": 7, "user_id": "user-1"},
        "name": "Booking #7 - APARTMENT",
        "description": "2 rooms at Kyiv (5 nights)",
    }
    kwargs.update(overrides)
    return kwargs


async def test_breaker_opens_after_threshold_and_closes_on_success(redis_client):
    breaker = CircuitBreaker(redis_client, "stripe", failure_threshold=2, reset_timeout_seconds=30)

    await breaker.allow_request()
    await breaker.record_failure()
    assert await breaker.state() == "CLOSED"

    await breaker.record_failure()
    assert await breaker.state() == "OPEN"
    with pytest.raises(CircuitBreakerOpen):
        await breaker.allow_request()

    await breaker.record_success()
    assert await breaker.state() == "CLOSED"


async def test_half_open_admits_a_single_trial_call(redis_client):
    breaker = CircuitBreaker(redis_client, "stripe", failure_threshold=1, reset_timeout_seconds=0)

    await breaker.record_failure()
    assert await breaker.state() == "OPEN"

    await breaker.allow_request()
    assert await breaker.state() == "HALF_OPEN"
    with pytest.raises(CircuitBreakerOpen, match="trial call in flight"):
        await breaker.allow_request()

    await breaker.record_failure()
    assert await breaker.state() == "OPEN"

    await breaker.allow_request()
    assert await breaker.state() == "HALF_OPEN"
    await breaker.record_success()
    assert await breaker.state() == "CLOSED"
    await breaker.allow_request()
    await breaker.allow_request()


async def test_open_session_sends_minor_units(monkeypatch):
    captured = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return SimpleNamespace(id="cs_1", url="https://checkout.stripe.test/cs_1")

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)

    checkout = await StripeProcessor("sk_test").open_session(**_session_kwargs(customer_email="a@example.com"))

    assert checkout == CheckoutSession(session_id="cs_1", session_url="https://checkout.stripe.test/cs_1")
    assert captured["api_key"] == "sk_test"
    assert captured["mode"] == "payment"
    assert captured["expires_at"] == int(datetime(2025, 1, 2, 11, 0, tzinfo=timezone.utc).timestamp())
    assert captured["metadata"] == {"booking_id": "7", "user_id": "user-1"}
    assert captured["customer_email"] == "a@example.com"

    price = captured["line_items"][0]["price_data"]
    assert price["unit_amount"] == 50000
    assert price["currency"] == "usd"
    assert price["product_data"]["name"] == "Booking #7 - APARTMENT"


async def test_retrieve_session_reports_paid(monkeypatch):
    def fake_retrieve(session_id, **kwargs):
        assert kwargs["api_key"] == "sk_test"
        return SimpleNamespace(status="complete", payment_status="paid", payment_intent="pi_1")

    monkeypatch.setattr(stripe.checkout.Session, "retrieve", fake_retrieve)

    state = await StripeProcessor("sk_test").retrieve_session("cs_1")

    assert state.is_paid
    assert state.payment_reference == "pi_1"


async def test_open_but_unpaid_session_is_not_paid(monkeypatch):
    monkeypatch.setattr(
        stripe.checkout.Session,
        "retrieve",
        lambda session_id, **kwargs: SimpleNamespace(status="open", payment_status="unpaid", payment_intent=None),
    )

    state = await StripeProcessor("sk_test").retrieve_session("cs_1")

    assert not state.is_paid


async def test_unconfigured_processor_refuses():
    with pytest.raises(PaymentProcessorError):
        await StripeProcessor(None).retrieve_session("cs_1")


async def test_stripe_errors_trip_the_breaker(monkeypatch, redis_client):
    calls = []

    def failing_create(**kwargs):
        calls.append(kwargs)
        raise stripe.StripeError("card network down")

    monkeypatch.setattr(stripe.checkout.Session, "create", failing_create)
    breaker = CircuitBreaker(redis_client, "stripe", failure_threshold=1, reset_timeout_seconds=30)
    processor = StripeProcessor("sk_test", breaker=breaker)

    with pytest.raises(PaymentProcessorError, match="card network down"):
        await processor.open_session(**_session_kwargs())
    assert await breaker.state() == "OPEN"

    with pytest.raises(PaymentProcessorError, match="OPEN"):
        await processor.open_session(**_session_kwargs())
    assert len(calls) == 1


async def test_breaker_fails_open_when_redis_is_down(down_redis):
    breaker = CircuitBreaker(down_redis, "stripe", failure_threshold=1)

    await breaker.allow_request()
    await breaker.record_failure()
    await breaker.record_success()


async def test_processor_calls_go_through_when_breaker_store_is_down(monkeypatch, down_redis):
    monkeypatch.setattr(
        stripe.checkout.Session,
        "retrieve",
        lambda session_id, **kwargs: SimpleNamespace(status="complete", payment_status="paid", payment_intent="pi_1"),
    )
    processor = StripeProcessor("sk_test", breaker=CircuitBreaker(down_redis, "stripe"))

    state = await processor.retrieve_session("cs_1")

    assert state.is_paid


async def test_stripe_error_is_wrapped_when_breaker_store_is_down(monkeypatch, down_redis):
    def failing_create(**kwargs):
        raise stripe.StripeError("card network down")

    monkeypatch.setattr(stripe.checkout.Session, "create", failing_create)
    processor = StripeProcessor("sk_test", breaker=CircuitBreaker(down_redis, "stripe", failure_threshold=1))

    with pytest.raises(PaymentProcessorError, match="card network down"):
        await processor.open_session(**_session_kwargs())
