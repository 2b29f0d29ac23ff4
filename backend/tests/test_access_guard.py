import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from marketplace.models import RoleVerdict
from marketplace.services.access_guard import (
    CLIENT_HOME_PATH,
    COMPLETE_PROFILE_PATH,
    LOGIN_PATH,
    Capability,
    authorize,
)
from marketplace.services.role_resolver import ANONYMOUS, FAILED, IDLE, PENDING, RoleResolution


def _resolved(**flags):
    return RoleResolution(
        status="resolved",
        verdict=RoleVerdict(is_authenticated=True, is_verified=True, **flags),
    )


@pytest.mark.parametrize("resolution", [IDLE, PENDING])
def test_unsettled_resolution_waits(resolution):
    for capability in Capability:
        decision = authorize(resolution, capability)
        assert decision.outcome == "await"
        assert decision.redirect_to is None


def test_identity_not_loaded_waits_even_with_verdict():
    decision = authorize(_resolved(is_client=True, is_provider=True), Capability.PROVIDER, identity_loaded=False)
    assert decision.outcome == "await"


def test_failed_resolution_denies_to_login():
    decision = authorize(FAILED, Capability.AUTHENTICATED)
    assert decision.outcome == "deny"
    assert decision.redirect_to == LOGIN_PATH
    assert decision.scope_mismatch is False


def test_anonymous_is_sent_to_login():
    decision = authorize(ANONYMOUS, Capability.CLIENT)
    assert decision.outcome == "deny"
    assert decision.redirect_to == LOGIN_PATH


def test_client_without_provider_verdict_goes_to_client_home():
    decision = authorize(_resolved(is_client=True), Capability.PROVIDER)
    assert decision.outcome == "deny"
    assert decision.redirect_to == CLIENT_HOME_PATH
    assert decision.scope_mismatch is True


def test_missing_client_role_goes_to_profile_completion():
    decision = authorize(_resolved(), Capability.CLIENT)
    assert decision.redirect_to == COMPLETE_PROFILE_PATH


def test_provider_is_allowed_everywhere():
    resolution = _resolved(is_client=True, is_provider=True)
    assert all(authorize(resolution, capability).allowed for capability in Capability)


def test_denials_are_classified_without_comparing_redirects(monkeypatch):
    from marketplace.services import access_guard

    monkeypatch.setattr(access_guard, "CLIENT_HOME_PATH", LOGIN_PATH)

    decision = authorize(_resolved(is_client=True), Capability.PROVIDER)
    assert decision.redirect_to == LOGIN_PATH
    assert decision.denial == "missing_role"
    assert decision.scope_mismatch is True

    anonymous = authorize(ANONYMOUS, Capability.PROVIDER)
    assert anonymous.denial == "unauthenticated"
    assert anonymous.scope_mismatch is False
