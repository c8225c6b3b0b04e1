from __future__ import annotations

import pytest

from faucet.config import Settings
from faucet.domain.account import Channel, IdentityBinding, Role
from faucet.domain.policy import QuotaPolicy, RoleLimits, parse_bindings

from conftest import make_policy


def test_policy_defaults_from_settings():
    settings = Settings(
        user_default_amount=100,
        user_max_amount=100,
        user_daily_cap=300,
        privileged_default_amount=1000,
        privileged_max_amount=1000,
        privileged_daily_cap=None,
        admin_default_amount=None,
        admin_max_amount=None,
        admin_daily_cap=None,
        privileged_domains=("Example.org",),
        bootstrap_admins=("telegram:Root",),
    )
    policy = QuotaPolicy.from_settings(settings)

    assert policy.max_single(Role.user) == 100
    assert policy.max_daily(Role.user) == 300
    assert policy.default_amount(Role.user) == 100
    assert policy.max_single(Role.privileged) == 1000
    assert policy.max_daily(Role.privileged) is None
    # admins inherit the privileged caps unless configured
    assert policy.limits(Role.admin) == policy.limits(Role.privileged)
    assert policy.initial_role(IdentityBinding.of("telegram", "root"), None) is Role.admin
    assert policy.initial_role(IdentityBinding.of("web", "a@example.org"), "EXAMPLE.ORG") is Role.privileged


def test_admin_limits_can_be_configured_separately():
    settings = Settings(admin_default_amount=500, admin_max_amount=5000, admin_daily_cap=20000)
    policy = QuotaPolicy.from_settings(settings)
    assert policy.limits(Role.admin) == RoleLimits(default_amount=500, max_single=5000, max_daily=20000)


def test_initial_role_defaults_to_user():
    policy = make_policy()
    assert policy.initial_role(IdentityBinding.of(Channel.discord, "someone"), None) is Role.user
    assert policy.initial_role(IdentityBinding.of(Channel.web, "x@elsewhere.net"), "elsewhere.net") is Role.user


@pytest.mark.parametrize(
    "kwargs",
    [
        {"default_amount": 10, "max_single": 0, "max_daily": 100},
        {"default_amount": 200, "max_single": 100, "max_daily": 300},
        {"default_amount": 0, "max_single": 100, "max_daily": 300},
        {"default_amount": 100, "max_single": 100, "max_daily": 50},
    ],
)
def test_role_limits_reject_inconsistent_caps(kwargs):
    with pytest.raises(ValueError):
        RoleLimits(**kwargs)


def test_policy_requires_every_role():
    with pytest.raises(ValueError, match="privileged"):
        QuotaPolicy(
            {
                Role.user: RoleLimits(100, 100, 300),
                Role.admin: RoleLimits(1000, 1000, None),
            }
        )


def test_parse_bindings_normalises_and_rejects_malformed_entries():
    assert parse_bindings(["Discord: Alice "]) == [IdentityBinding(Channel.discord, "alice")]
    with pytest.raises(ValueError):
        parse_bindings(["no-separator"])
    with pytest.raises(ValueError):
        parse_bindings(["sms:+100"])


def test_settings_reject_lease_shorter_than_ledger_timeout():
    with pytest.raises(ValueError, match="LEASE"):
        Settings(lease_seconds=5, ledger_timeout_seconds=10)
