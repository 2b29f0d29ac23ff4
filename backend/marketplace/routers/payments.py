from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from starlette.concurrency import run_in_threadpool

from marketplace.dependencies import RequestContext, require_authenticated, require_client
from marketplace.errors import NotFoundError, UnauthorizedError
from marketplace.models import (
    ApiResponse,
    CheckoutRequest,
    PaymentConfirmRequest,
    PaymentReconcileRequest,
    ok,
)
from marketplace.services.booking_store import booking_store
from marketplace.services.payment_gateway import SandboxGateway
from marketplace.services.payment_reconciler import payment_reconciler

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/checkout", response_model=ApiResponse)
def initiate_checkout(
    request: CheckoutRequest,
    context: RequestContext = Depends(require_client),
):
    return ok(payment_reconciler.initiate_checkout(request.booking_id, context.actor, amount=request.amount))


@router.post("/confirm", response_model=ApiResponse)
def confirm_payment(
    request: PaymentConfirmRequest,
    context: RequestContext = Depends(require_authenticated),
):
    booking_store.get_booking_for(context.actor, request.booking_id)
    return ok(payment_reconciler.confirm(request.booking_id))


@router.post("/reconcile", response_model=ApiResponse)
def reconcile_missing_payment(
    request: PaymentReconcileRequest,
    context: RequestContext = Depends(require_client),
):
    booking = booking_store.get_booking(request.booking_id)
    if booking.client_id != context.user_id:
        raise UnauthorizedError("Only the booking's client can reconcile its payment")
    return ok(payment_reconciler.reconcile_missing(request.booking_id, request.session_id))


@router.get("/booking/{booking_id}", response_model=ApiResponse)
def get_booking_payment(booking_id: str, context: RequestContext = Depends(require_authenticated)):
    booking_store.get_booking_for(context.actor, booking_id)
    return ok(payment_reconciler.get_payment(booking_id))


@router.post("/webhook", response_model=ApiResponse)
async def payment_webhook(request: Request, stripe_signature: Optional[str] = Header(default=None)):
    payload = await request.body()
    record = await run_in_threadpool(payment_reconciler.handle_webhook, payload, stripe_signature)
    return ok(record)


@router.post("/sandbox/{session_id}/complete", response_model=ApiResponse)
def complete_sandbox_session(session_id: str, context: RequestContext = Depends(require_client)):
    gateway = payment_reconciler.gateway
    if not isinstance(gateway, SandboxGateway):
        raise NotFoundError("Sandbox payments are disabled")
    booking_id = payment_reconciler.ledger.checkout_booking_id(session_id)
    if booking_id is None:
        raise NotFoundError("Payment session not found")
    booking = booking_store.get_booking(booking_id)
    if booking.client_id != context.user_id:
        raise UnauthorizedError("Only the booking's client can complete its checkout")
    return ok(gateway.complete_session(session_id))
