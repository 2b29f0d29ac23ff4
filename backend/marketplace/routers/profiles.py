from fastapi import APIRouter, Depends

from marketplace.dependencies import RequestContext, require_authenticated
from marketplace.models import ApiResponse, ClientProfileRequest, ProviderProfileRequest, ok
from marketplace.services.profile_store import profile_store

router = APIRouter(prefix="/profiles", tags=["profiles"])


@router.get("/me", response_model=ApiResponse)
def my_profiles(context: RequestContext = Depends(require_authenticated)):
    return ok(profile_store.get_overview(context.user_id))


@router.post("/client", response_model=ApiResponse)
def create_client_profile(
    request: ClientProfileRequest,
    context: RequestContext = Depends(require_authenticated),
):
    return ok(profile_store.upsert_client_profile(context.user_id, request))


@router.post("/provider", response_model=ApiResponse)
def create_provider_profile(
    request: ProviderProfileRequest,
    context: RequestContext = Depends(require_authenticated),
):
    # Provider capability also needs the identity-side flag; the profile alone is not enough.
    return ok(profile_store.upsert_provider_profile(context.user_id, request))
