from fastapi import APIRouter, Depends, Query

from marketplace.dependencies import RequestContext, require_authenticated, require_client
from marketplace.errors import UnauthorizedError
from marketplace.models import ApiResponse, BookingCreateRequest, BookingTransitionRequest, ok
from marketplace.services.access_guard import Capability, authorize
from marketplace.services.booking_store import booking_store
from marketplace.services.catalog_store import catalog_store

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("", response_model=ApiResponse)
def create_booking(
    request: BookingCreateRequest,
    context: RequestContext = Depends(require_client),
):
    service = catalog_store.get_service(request.service_id)
    return ok(booking_store.create_booking(context.actor, request, service))


@router.get("", response_model=ApiResponse)
def list_bookings(
    role: str = Query(default="all"),
    context: RequestContext = Depends(require_authenticated),
):
    if role.strip().lower() == "provider":
        decision = authorize(context.resolution, Capability.PROVIDER)
        if not decision.allowed:
            raise UnauthorizedError(decision.reason, redirect_to=decision.redirect_to)
    return ok(booking_store.list_bookings_for_user(context.user_id, role))


@router.get("/{booking_id}", response_model=ApiResponse)
def get_booking(booking_id: str, context: RequestContext = Depends(require_authenticated)):
    return ok(booking_store.get_booking_for(context.actor, booking_id))


@router.get("/{booking_id}/history", response_model=ApiResponse)
def booking_history(booking_id: str, context: RequestContext = Depends(require_authenticated)):
    booking_store.get_booking_for(context.actor, booking_id)
    return ok(booking_store.history(booking_id))


@router.post("/{booking_id}/transition", response_model=ApiResponse)
def transition_booking(
    booking_id: str,
    request: BookingTransitionRequest,
    context: RequestContext = Depends(require_authenticated),
):
    result = booking_store.transition(
        booking_id,
        request.action,
        context.actor,
        fee=request.fee,
        expected_status=request.expected_status,
    )
    return ok(result)
