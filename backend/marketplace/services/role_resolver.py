"""Role resolution.

A principal's roles come from two sources that are updated independently:
the identity provider's self-declared provider flag and the durable profile
store. ``compute_verdict`` combines them; ``RoleResolver`` drives lookups for
one identity session and keeps only the newest answer.
"""

import logging
import os
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal, Optional

from marketplace.models import Principal, ProfileFlags, RoleRecord, RoleVerdict
from marketplace.services.profile_store import role_record_from_flags

logger = logging.getLogger(__name__)

IMPLICIT_CLIENT_ROLE = os.getenv("IMPLICIT_CLIENT_ROLE", "true").lower() in {"1", "true", "yes"}

ProfileLookup = Callable[[str], Awaitable[ProfileFlags]]
ResolutionStatus = Literal["idle", "pending", "failed", "resolved"]


def compute_verdict(
    *,
    authenticated: bool,
    provider_flag_claimed: bool,
    has_client_profile: bool,
    has_provider_profile: bool,
    implicit_client_role: bool = True,
) -> RoleVerdict:
    """Combine identity-side and profile-side facts into a verdict.

    Provider capability needs both the durable provider profile and the
    identity claim. Every provider is also a client. With
    ``implicit_client_role`` any authenticated principal is client-capable.
    """
    if not authenticated:
        return RoleVerdict()
    is_provider = has_provider_profile and provider_flag_claimed
    is_client = has_client_profile or is_provider or implicit_client_role
    return RoleVerdict(
        is_client=is_client,
        is_provider=is_provider,
        is_authenticated=True,
        is_verified=True,
    )


@dataclass(frozen=True)
class RoleResolution:
    status: ResolutionStatus
    verdict: Optional[RoleVerdict] = None
    record: Optional[RoleRecord] = None

    @property
    def settled(self) -> bool:
        return self.status in {"failed", "resolved"}


IDLE = RoleResolution(status="idle")
PENDING = RoleResolution(status="pending")
FAILED = RoleResolution(status="failed")
ANONYMOUS = RoleResolution(status="resolved", verdict=RoleVerdict())


class RoleResolver:
    """Resolves roles for one identity session, last request wins.

    A lookup starts when the principal's id changes or its ``loaded`` flag
    turns true. Results of lookups superseded while in flight are dropped.
    """

    def __init__(self, lookup: ProfileLookup, *, implicit_client_role: Optional[bool] = None) -> None:
        self._lookup = lookup
        self._implicit_client_role = IMPLICIT_CLIENT_ROLE if implicit_client_role is None else implicit_client_role
        self._generation = 0
        self._observed: Optional[Principal] = None
        self._state = IDLE

    @property
    def state(self) -> RoleResolution:
        return self._state

    def needs_refresh(self, principal: Principal) -> bool:
        if not principal.loaded:
            return False
        previous = self._observed
        if previous is None or not previous.loaded:
            return True
        return (previous.id, previous.provider_flag_claimed) != (principal.id, principal.provider_flag_claimed)

    async def resolve(self, principal: Principal) -> RoleResolution:
        if not principal.loaded:
            self._observed = principal
            return self._state
        if not self.needs_refresh(principal):
            return self._state
        return await self.refresh(principal)

    async def refresh(self, principal: Principal) -> RoleResolution:
        self._generation += 1
        generation = self._generation
        self._observed = principal

        if not principal.id:
            self._state = ANONYMOUS
            return self._state

        self._state = PENDING
        try:
            flags = await self._lookup(principal.id)
        except Exception:
            if generation != self._generation:
                return self._state
            logger.exception("Role lookup failed for %s", principal.id)
            self._state = FAILED
            return self._state

        if generation != self._generation:
            logger.warning("Discarding stale role lookup for %s", principal.id)
            return self._state

        record = role_record_from_flags(principal.id, flags)
        verdict = compute_verdict(
            authenticated=True,
            provider_flag_claimed=principal.provider_flag_claimed,
            has_client_profile=record.has_client_profile,
            has_provider_profile=record.has_provider_profile,
            implicit_client_role=self._implicit_client_role,
        )
        self._state = RoleResolution(status="resolved", verdict=verdict, record=record)
        return self._state
