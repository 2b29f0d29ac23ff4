from typing import Optional

from fastapi import APIRouter, Depends, Query

from marketplace.dependencies import RequestContext, require_provider
from marketplace.models import ApiResponse, ServiceCreateRequest, ok
from marketplace.services.catalog_store import catalog_store

router = APIRouter(prefix="/services", tags=["services"])


@router.get("", response_model=ApiResponse)
def list_services(
    category: Optional[str] = Query(default=None),
    provider_id: Optional[str] = Query(default=None),
):
    return ok(catalog_store.list_services(category=category, provider_id=provider_id))


@router.post("", response_model=ApiResponse)
def create_service(
    request: ServiceCreateRequest,
    context: RequestContext = Depends(require_provider),
):
    return ok(catalog_store.add_service(context.user_id, request))


@router.get("/{service_id}", response_model=ApiResponse)
def get_service(service_id: str):
    return ok(catalog_store.get_service(service_id))
