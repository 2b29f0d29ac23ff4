from fastapi import APIRouter, Depends, Query

from marketplace.dependencies import RequestContext, require_authenticated
from marketplace.errors import UnauthorizedError
from marketplace.models import ApiResponse, ChatMessageCreate, ok
from marketplace.services.access_guard import Capability, authorize
from marketplace.services.booking_store import booking_store
from marketplace.services.chat_store import chat_store
from marketplace.services.chat_threads import chat_thread_aggregator
from marketplace.services.profile_store import profile_store

router = APIRouter(prefix="/chat", tags=["chat"])


@router.get("/recent", response_model=ApiResponse)
def recent_threads(
    role: str = Query(default="client"),
    context: RequestContext = Depends(require_authenticated),
):
    capability = Capability.PROVIDER if role.strip().lower() == "provider" else Capability.CLIENT
    decision = authorize(context.resolution, capability)
    if not decision.allowed:
        raise UnauthorizedError(decision.reason, redirect_to=decision.redirect_to)
    return ok(chat_thread_aggregator.recent_threads(context.user_id, role).view())


@router.post("/bookings/{booking_id}/messages", response_model=ApiResponse)
def post_message(
    booking_id: str,
    request: ChatMessageCreate,
    context: RequestContext = Depends(require_authenticated),
):
    booking_store.get_booking_for(context.actor, booking_id)
    sender_name = profile_store.display_name(context.user_id)
    return ok(chat_store.post_message(booking_id, context.user_id, sender_name, request.message))


@router.post("/bookings/{booking_id}/read", response_model=ApiResponse)
def mark_thread_read(booking_id: str, context: RequestContext = Depends(require_authenticated)):
    booking_store.get_booking_for(context.actor, booking_id)
    chat_store.mark_read(booking_id, context.user_id)
    return ok({"booking_id": booking_id})


@router.get("/bookings/{booking_id}/messages", response_model=ApiResponse)
def list_messages(booking_id: str, context: RequestContext = Depends(require_authenticated)):
    booking_store.get_booking_for(context.actor, booking_id)
    return ok(chat_store.list_messages(booking_id))
