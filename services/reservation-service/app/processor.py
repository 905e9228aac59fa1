"""Payment-processor collaborator backed by Stripe Checkout."""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Protocol

import stripe

from .breaker import CircuitBreaker, CircuitBreakerOpen
from .errors import PaymentProcessorError

logger = logging.getLogger(__name__)

AMOUNT_MULTIPLIER = 100  # Stripe expects minor units


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    session_url: str


@dataclass(frozen=True)
class SessionState:
    status: str | None
    payment_status: str | None
    payment_reference: str | None = None

    @property
    def is_paid(self) -> bool:
        return self.status == "complete" and self.payment_status == "paid"


class PaymentProcessor(Protocol):
    async def open_session(
        self,
        *,
        amount: Decimal,
        currency: str,
        success_url: str,
        cancel_url: str,
        expires_at: datetime,
        metadata: dict,
        name: str,
        description: str,
        customer_email: str | None = None,
    ) -> CheckoutSession: ...

    async def retrieve_session(self, session_id: str) -> SessionState: ...


class StripeProcessor:
    def __init__(self, api_key: str | None, breaker: CircuitBreaker | None = None):
        self.api_key = api_key
        self.breaker = breaker

    async def open_session(
        self,
        *,
        amount: Decimal,
        currency: str,
        success_url: str,
        cancel_url: str,
        expires_at: datetime,
        metadata: dict,
        name: str,
        description: str,
        customer_email: str | None = None,
    ) -> CheckoutSession:
        params = {
            "mode": "payment",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "expires_at": int(expires_at.timestamp()),
            "line_items": [
                {
                    "price_data": {
                        "currency": currency,
                        "unit_amount": int(amount * AMOUNT_MULTIPLIER),
                        "product_data": {"name": name, "description": description},
                    },
                    "quantity": 1,
                }
            ],
            "metadata": {k: str(v) for k, v in metadata.items()},
        }
        if customer_email:
            params["customer_email"] = customer_email

        session = await self._call(stripe.checkout.Session.create, **params)
        return CheckoutSession(session_id=session.id, session_url=session.url)

    async def retrieve_session(self, session_id: str) -> SessionState:
        session = await self._call(stripe.checkout.Session.retrieve, session_id)
        return SessionState(
            status=session.status,
            payment_status=session.payment_status,
            payment_reference=session.payment_intent,
        )

    async def _call(self, fn, *args, **kwargs):
        if not self.api_key:
            raise PaymentProcessorError("Payment processor is not configured")

        if self.breaker:
            try:
                await self.breaker.allow_request()
            except CircuitBreakerOpen as e:
                raise PaymentProcessorError(str(e))

        try:
            # blocking SDK call, kept off the event loop and outside any transaction
            result = await asyncio.to_thread(fn, *args, api_key=self.api_key, **kwargs)
        except stripe.StripeError as e:
            logger.error("Stripe call %s failed: %s", getattr(fn, "__name__", fn), e)
            if self.breaker:
                await self.breaker.record_failure()
            raise PaymentProcessorError(f"Payment processor error: {e.user_message or e}")

        if self.breaker:
            await self.breaker.record_success()
        return result
