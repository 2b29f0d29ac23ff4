import asyncio
import itertools
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from marketplace.models import ClientProfileRequest, Principal, ProfileFlags, ProviderProfileRequest
from marketplace.services.profile_store import ProfileStore
from marketplace.services.role_resolver import RoleResolver, compute_verdict


@pytest.mark.parametrize(
    "provider_flag,has_client,has_provider,implicit",
    list(itertools.product([False, True], repeat=4)),
)
def test_verdict_combines_flag_and_profiles(provider_flag, has_client, has_provider, implicit):
    verdict = compute_verdict(
        authenticated=True,
        provider_flag_claimed=provider_flag,
        has_client_profile=has_client,
        has_provider_profile=has_provider,
        implicit_client_role=implicit,
    )
    assert verdict.is_provider == (provider_flag and has_provider)
    assert verdict.is_client == (has_client or verdict.is_provider or implicit)
    assert verdict.is_authenticated is True


def test_unauthenticated_verdict_grants_nothing():
    verdict = compute_verdict(
        authenticated=False,
        provider_flag_claimed=True,
        has_client_profile=True,
        has_provider_profile=True,
    )
    assert not (verdict.is_client or verdict.is_provider or verdict.is_authenticated)


def test_provider_flag_without_profile_is_not_provider():
    verdict = compute_verdict(
        authenticated=True,
        provider_flag_claimed=True,
        has_client_profile=False,
        has_provider_profile=False,
        implicit_client_role=False,
    )
    assert verdict.is_provider is False
    assert verdict.is_client is False


def _lookup_from(flags_by_user):
    async def lookup(user_id):
        return flags_by_user[user_id]

    return lookup


def test_resolve_waits_for_identity_to_load():
    resolver = RoleResolver(_lookup_from({}))
    state = asyncio.run(resolver.resolve(Principal(id="u1", loaded=False)))
    assert state.status == "idle"
    assert not state.settled


def test_resolve_anonymous_principal():
    resolver = RoleResolver(_lookup_from({}))
    state = asyncio.run(resolver.resolve(Principal(id=None, loaded=True)))
    assert state.status == "resolved"
    assert state.verdict.is_authenticated is False


def test_resolve_uses_profile_store(tmp_path):
    store = ProfileStore(db_path=str(tmp_path / "profiles.sqlite3"))
    store.upsert_client_profile("u1", ClientProfileRequest(full_name="Una"))
    store.upsert_provider_profile("u1", ProviderProfileRequest(full_name="Una", trade="electrical"))

    resolver = RoleResolver(store.fetch_flags, implicit_client_role=False)
    state = asyncio.run(resolver.resolve(Principal(id="u1", provider_flag_claimed=True, loaded=True)))

    assert state.status == "resolved"
    assert state.record.role == "provider"
    assert state.verdict.is_provider is True
    assert state.verdict.is_client is True


def test_same_principal_is_not_looked_up_twice():
    calls = []

    async def lookup(user_id):
        calls.append(user_id)
        return ProfileFlags(has_client_profile=True)

    resolver = RoleResolver(lookup)
    principal = Principal(id="u1", loaded=True)

    async def scenario():
        await resolver.resolve(principal)
        await resolver.resolve(principal)
        await resolver.resolve(Principal(id="u1", provider_flag_claimed=True, loaded=True))

    asyncio.run(scenario())
    assert calls == ["u1", "u1"]


def test_stale_lookup_is_discarded():
    async def scenario():
        release_first = asyncio.Event()

        async def lookup(user_id):
            if user_id == "first":
                await release_first.wait()
                return ProfileFlags(has_client_profile=True, has_provider_profile=True)
            return ProfileFlags()

        resolver = RoleResolver(lookup, implicit_client_role=False)
        first = asyncio.create_task(resolver.resolve(Principal(id="first", provider_flag_claimed=True, loaded=True)))
        await asyncio.sleep(0)
        assert resolver.state.status == "pending"

        second = await resolver.resolve(Principal(id="second", loaded=True))
        release_first.set()
        await first
        return resolver.state, second

    state, second = asyncio.run(scenario())
    assert state == second
    assert state.record.user_id == "second"
    assert state.verdict.is_provider is False


def test_failed_lookup_settles_as_failed():
    async def lookup(user_id):
        raise RuntimeError("profile store offline")

    resolver = RoleResolver(lookup)
    state = asyncio.run(resolver.resolve(Principal(id="u1", loaded=True)))

    assert state.status == "failed"
    assert state.settled
    assert state.verdict is None

