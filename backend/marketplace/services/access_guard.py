import os
from dataclasses import dataclass
from enum import Enum
from typing import Literal, Optional

from marketplace.services.role_resolver import RoleResolution

LOGIN_PATH = os.getenv("LOGIN_PATH", "/")
CLIENT_HOME_PATH = os.getenv("CLIENT_HOME_PATH", "/client/dashboard")
COMPLETE_PROFILE_PATH = os.getenv("COMPLETE_PROFILE_PATH", "/complete-profile")

DenialKind = Literal["unauthenticated", "missing_role"]


class Capability(str, Enum):
    AUTHENTICATED = "authenticated"
    CLIENT = "client"
    PROVIDER = "provider"


@dataclass(frozen=True)
class AccessDecision:
    outcome: Literal["allow", "deny", "await"]
    redirect_to: Optional[str] = None
    reason: str = ""
    denial: Optional[DenialKind] = None

    @property
    def allowed(self) -> bool:
        return self.outcome == "allow"

    @property
    def scope_mismatch(self) -> bool:
        """True when the principal is signed in but lacks the requested role."""
        return self.outcome == "deny" and self.denial == "missing_role"


ALLOW = AccessDecision(outcome="allow")
AWAIT_VERDICT = AccessDecision(outcome="await", reason="Role verification in progress")


def _deny_to_login(reason: str) -> AccessDecision:
    return AccessDecision(outcome="deny", redirect_to=LOGIN_PATH, reason=reason, denial="unauthenticated")


def _deny_missing_role(redirect_to: str, reason: str) -> AccessDecision:
    return AccessDecision(outcome="deny", redirect_to=redirect_to, reason=reason, denial="missing_role")


def authorize(
    resolution: RoleResolution,
    capability: Capability,
    *,
    identity_loaded: bool = True,
) -> AccessDecision:
    if not identity_loaded or resolution.status in {"idle", "pending"}:
        return AWAIT_VERDICT
    if resolution.status == "failed" or resolution.verdict is None:
        return _deny_to_login("Role verification failed")

    verdict = resolution.verdict
    if not verdict.is_authenticated:
        return _deny_to_login("Authentication required")

    if capability == Capability.AUTHENTICATED:
        return ALLOW
    if capability == Capability.CLIENT:
        if verdict.is_client:
            return ALLOW
        return _deny_missing_role(COMPLETE_PROFILE_PATH, "Client profile required")
    if capability == Capability.PROVIDER:
        if verdict.is_provider:
            return ALLOW
        return _deny_missing_role(CLIENT_HOME_PATH, "Provider access required")
    raise ValueError(f"Unknown capability: {capability}")
