import base64
import hashlib
import hmac
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Header

from marketplace.models import Principal

logger = logging.getLogger(__name__)


def _env_positive_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        logger.warning("%s=%r is not an integer; using %s", name, raw, default)
        return default
    return value if value > 0 else default


TOKEN_TTL_HOURS = _env_positive_int("AUTH_TOKEN_TTL_HOURS", 24)
_AUTH_SECRET = os.getenv("AUTH_SECRET", "dev-insecure-secret-change-me")


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _b64urldecode(value: str) -> bytes:
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


def create_access_token(user_id: str, provider_flag: bool = False) -> tuple[str, str]:
    expiry = datetime.now(timezone.utc) + timedelta(hours=TOKEN_TTL_HOURS)
    payload = f"{user_id}|{1 if provider_flag else 0}|{int(expiry.timestamp())}".encode("utf-8")
    payload_part = _b64url(payload)
    sig = hmac.new(_AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()
    token = f"{payload_part}.{_b64url(sig)}"
    return token, expiry.isoformat()


def verify_access_token(token: str) -> Optional[Principal]:
    try:
        payload_part, sig_part = token.split(".", 1)
        payload = _b64urldecode(payload_part)
        sent_sig = _b64urldecode(sig_part)
        expected_sig = hmac.new(_AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()
        if not hmac.compare_digest(sent_sig, expected_sig):
            return None
        user_id, provider_flag, expiry_ts = payload.decode("utf-8").split("|", 2)
        if datetime.now(timezone.utc).timestamp() > int(expiry_ts):
            return None
    except (ValueError, UnicodeDecodeError):
        return None
    return Principal(id=user_id, provider_flag_claimed=provider_flag == "1", loaded=True)


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def resolve_request_principal(authorization: Optional[str]) -> Principal:
    """Build the request principal from the Authorization header.

    The identity layer is settled once the header has been read, so the
    returned principal is always ``loaded``; a missing or invalid token
    yields an anonymous principal.
    """
    token = parse_bearer_token(authorization)
    if not token:
        return Principal(id=None, loaded=True)
    principal = verify_access_token(token)
    if principal is None:
        logger.info("Rejected bearer token")
        return Principal(id=None, loaded=True)
    return principal


def get_request_principal(authorization: Optional[str] = Header(default=None)) -> Principal:
    return resolve_request_principal(authorization)
