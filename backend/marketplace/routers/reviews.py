from typing import Optional

from fastapi import APIRouter, Depends, Query

from marketplace.dependencies import RequestContext, require_client
from marketplace.models import ApiResponse, ReviewCreateRequest, ok
from marketplace.services.booking_store import booking_store
from marketplace.services.review_store import review_store

router = APIRouter(prefix="/reviews", tags=["reviews"])


@router.get("", response_model=ApiResponse)
def list_reviews(
    service_id: Optional[str] = Query(default=None),
    provider_id: Optional[str] = Query(default=None),
):
    return ok(review_store.list_reviews(service_id=service_id, provider_id=provider_id))


@router.post("", response_model=ApiResponse)
def create_review(
    request: ReviewCreateRequest,
    context: RequestContext = Depends(require_client),
):
    booking = booking_store.get_booking_for(context.actor, request.booking_id)
    return ok(review_store.create_review(context.actor, booking, request))
