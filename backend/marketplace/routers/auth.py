import os

from fastapi import APIRouter, Depends

from marketplace.auth import create_access_token
from marketplace.dependencies import RequestContext, require_authenticated
from marketplace.errors import UnauthenticatedError, ValidationError
from marketplace.models import ApiResponse, AuthLoginRequest, AuthLoginResponse, AuthMeResponse, ok

router = APIRouter(prefix="/auth", tags=["auth"])

DEMO_PASSWORD = os.getenv("AUTH_DEMO_PASSWORD", "handyman-demo")


@router.post("/login", response_model=ApiResponse)
def login(payload: AuthLoginRequest):
    user_id = payload.user_id.strip()
    if not user_id:
        raise ValidationError("user_id is required")
    if payload.password != DEMO_PASSWORD:
        raise UnauthenticatedError("Invalid credentials")
    token, expires_at = create_access_token(user_id=user_id, provider_flag=payload.provider_flag)
    return ok(
        AuthLoginResponse(
            access_token=token,
            user_id=user_id,
            provider_flag=payload.provider_flag,
            expires_at=expires_at,
        )
    )


@router.get("/me", response_model=ApiResponse)
def me(context: RequestContext = Depends(require_authenticated)):
    return ok(
        AuthMeResponse(
            user_id=context.user_id,
            provider_flag=context.principal.provider_flag_claimed,
            verdict=context.verdict,
        )
    )


@router.get("/verify-role", response_model=ApiResponse)
def verify_role(context: RequestContext = Depends(require_authenticated)):
    return ok(context.resolution.record)
