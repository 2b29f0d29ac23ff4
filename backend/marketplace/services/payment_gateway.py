import json
import logging
import os
from dataclasses import dataclass
from threading import Lock
from typing import Dict, Optional, Protocol
from uuid import uuid4

import stripe

from marketplace.errors import GatewayUnavailableError, NotFoundError, ValidationError
from marketplace.models import GatewaySessionStatus, PaymentMetadata

logger = logging.getLogger(__name__)

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173").rstrip("/")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "usd").lower()
CHECKOUT_COMPLETED_EVENT = "checkout.session.completed"


@dataclass(frozen=True)
class GatewayCheckout:
    session_id: str
    url: str


@dataclass(frozen=True)
class GatewayEvent:
    type: str
    session_id: str
    booking_id: Optional[str]


class PaymentGateway(Protocol):
    def create_checkout_session(
        self,
        booking_id: str,
        amount_cents: int,
        metadata: PaymentMetadata,
    ) -> GatewayCheckout: ...

    def get_session_status(self, session_id: str) -> GatewaySessionStatus: ...

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> GatewayEvent: ...


def success_url(booking_id: str) -> str:
    return f"{FRONTEND_URL}/payment/success?session_id={{CHECKOUT_SESSION_ID}}&booking_id={booking_id}"


def cancel_url(booking_id: str) -> str:
    return f"{FRONTEND_URL}/payment/cancel?booking_id={booking_id}"


class StripeGateway:
    """Stripe Checkout adapter. Library errors surface as ``GatewayUnavailableError``."""

    def __init__(self, api_key: str, webhook_secret: str = "", currency: str = PAYMENT_CURRENCY) -> None:
        stripe.api_key = api_key
        stripe.max_network_retries = 1
        self._webhook_secret = webhook_secret
        self._currency = currency

    def create_checkout_session(
        self,
        booking_id: str,
        amount_cents: int,
        metadata: PaymentMetadata,
    ) -> GatewayCheckout:
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": self._currency,
                            "product_data": {"name": metadata.service_name or "Handyman service"},
                            "unit_amount": amount_cents,
                        },
                        "quantity": 1,
                    }
                ],
                client_reference_id=booking_id,
                metadata={
                    "booking_id": booking_id,
                    "service_name": metadata.service_name,
                    "provider_name": metadata.provider_name,
                },
                success_url=success_url(booking_id),
                cancel_url=cancel_url(booking_id),
            )
        except stripe.StripeError as exc:
            logger.exception("Stripe checkout session creation failed for booking %s", booking_id)
            raise GatewayUnavailableError("Payment provider unavailable; please retry") from exc
        return GatewayCheckout(session_id=session.id, url=session.url)

    def get_session_status(self, session_id: str) -> GatewaySessionStatus:
        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.InvalidRequestError as exc:
            logger.warning("Stripe session %s not found: %s", session_id, exc)
            raise NotFoundError("Payment session not found") from exc
        except stripe.StripeError as exc:
            logger.exception("Stripe session lookup failed for %s", session_id)
            raise GatewayUnavailableError("Payment provider unavailable; please retry") from exc

        metadata = {str(key): str(value) for key, value in (session.metadata or {}).items()}
        return GatewaySessionStatus(
            session_id=session.id,
            booking_id=session.client_reference_id or metadata.get("booking_id"),
            paid=session.payment_status == "paid",
            amount_cents=int(session.amount_total or 0),
            metadata=metadata,
        )

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        if not self._webhook_secret:
            raise ValidationError("Webhook secret not configured")
        try:
            event = stripe.Webhook.construct_event(payload, signature or "", self._webhook_secret)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Invalid webhook signature")
            raise ValidationError("Invalid webhook signature") from exc
        except ValueError as exc:
            raise ValidationError("Invalid webhook payload") from exc

        session = event["data"]["object"]
        metadata = session.get("metadata") or {}
        return GatewayEvent(
            type=event["type"],
            session_id=session["id"],
            booking_id=session.get("client_reference_id") or metadata.get("booking_id"),
        )


@dataclass
class _SandboxSession:
    session_id: str
    booking_id: str
    amount_cents: int
    metadata: Dict[str, str]
    paid: bool = False


class SandboxGateway:
    """In-process gateway used when no Stripe key is configured.

    Sessions are paid by calling ``complete_session``; ``available`` can be
    switched off to exercise the retry path.
    """

    def __init__(self, base_url: str = FRONTEND_URL) -> None:
        self._lock = Lock()
        self._sessions: Dict[str, _SandboxSession] = {}
        self._base_url = base_url
        self.available = True

    def _ensure_available(self) -> None:
        if not self.available:
            raise GatewayUnavailableError("Payment provider unavailable; please retry")

    def create_checkout_session(
        self,
        booking_id: str,
        amount_cents: int,
        metadata: PaymentMetadata,
    ) -> GatewayCheckout:
        self._ensure_available()
        session = _SandboxSession(
            session_id=f"cs_sandbox_{uuid4().hex[:16]}",
            booking_id=booking_id,
            amount_cents=amount_cents,
            metadata={
                "booking_id": booking_id,
                "service_name": metadata.service_name,
                "provider_name": metadata.provider_name,
            },
        )
        with self._lock:
            self._sessions[session.session_id] = session
        return GatewayCheckout(
            session_id=session.session_id,
            url=f"{self._base_url}/sandbox/checkout/{session.session_id}",
        )

    def complete_session(self, session_id: str) -> GatewaySessionStatus:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise NotFoundError("Payment session not found")
            session.paid = True
        return self.get_session_status(session_id)

    def get_session_status(self, session_id: str) -> GatewaySessionStatus:
        self._ensure_available()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise NotFoundError("Payment session not found")
            return GatewaySessionStatus(
                session_id=session.session_id,
                booking_id=session.booking_id,
                paid=session.paid,
                amount_cents=session.amount_cents,
                metadata=dict(session.metadata),
            )

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        try:
            event = json.loads(payload or b"{}")
            session = event["data"]["object"]
            return GatewayEvent(
                type=str(event["type"]),
                session_id=str(session["id"]),
                booking_id=session.get("client_reference_id"),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise ValidationError("Invalid webhook payload") from exc


def build_gateway() -> PaymentGateway:
    api_key = os.getenv("STRIPE_SECRET_KEY", "").strip()
    if not api_key:
        logger.info("STRIPE_SECRET_KEY not set; using sandbox payment gateway")
        return SandboxGateway()
    return StripeGateway(api_key=api_key, webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", "").strip())
