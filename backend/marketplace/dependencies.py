from dataclasses import dataclass
from typing import Awaitable, Callable

from fastapi import Depends

from marketplace.auth import get_request_principal
from marketplace.errors import RoleVerdictPendingError, UnauthenticatedError, UnauthorizedError
from marketplace.models import Principal, RoleVerdict
from marketplace.services.access_guard import Capability, authorize
from marketplace.services.booking_store import Actor
from marketplace.services.profile_store import profile_store
from marketplace.services.role_resolver import RoleResolution, RoleResolver


@dataclass(frozen=True)
class RequestContext:
    principal: Principal
    resolution: RoleResolution

    @property
    def user_id(self) -> str:
        return self.principal.id or ""

    @property
    def verdict(self) -> RoleVerdict:
        return self.resolution.verdict or RoleVerdict()

    @property
    def actor(self) -> Actor:
        return Actor(user_id=self.user_id, verdict=self.verdict)


def build_role_resolver() -> RoleResolver:
    return RoleResolver(profile_store.fetch_flags)


async def get_role_resolution(principal: Principal = Depends(get_request_principal)) -> RoleResolution:
    resolver = build_role_resolver()
    return await resolver.resolve(principal)


def require_capability(capability: Capability) -> Callable[..., Awaitable[RequestContext]]:
    async def dependency(
        principal: Principal = Depends(get_request_principal),
        resolution: RoleResolution = Depends(get_role_resolution),
    ) -> RequestContext:
        decision = authorize(resolution, capability, identity_loaded=principal.loaded)
        if decision.outcome == "await":
            raise RoleVerdictPendingError(decision.reason)
        if decision.outcome == "deny":
            if decision.scope_mismatch:
                raise UnauthorizedError(decision.reason, redirect_to=decision.redirect_to)
            raise UnauthenticatedError(decision.reason, redirect_to=decision.redirect_to)
        return RequestContext(principal=principal, resolution=resolution)

    return dependency


require_authenticated = require_capability(Capability.AUTHENTICATED)
require_client = require_capability(Capability.CLIENT)
require_provider = require_capability(Capability.PROVIDER)
