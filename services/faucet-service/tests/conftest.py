from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from faucet.domain.account import Channel, IdentityBinding, Role
from faucet.domain.policy import QuotaPolicy, RoleLimits
from faucet.domain.service import FaucetService
from faucet.memory_repository import InMemoryFaucetStore

DESTINATION = "0x" + "ab" * 20


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_policy(**overrides: RoleLimits) -> QuotaPolicy:
    limits = {
        Role.user: RoleLimits(default_amount=100, max_single=100, max_daily=300),
        Role.privileged: RoleLimits(default_amount=1000, max_single=1000, max_daily=None),
        Role.admin: RoleLimits(default_amount=1000, max_single=1000, max_daily=None),
    }
    limits.update({Role(name): value for name, value in overrides.items()})
    return QuotaPolicy(
        limits,
        privileged_domains=frozenset({"example.org"}),
        bootstrap_admins=frozenset({IdentityBinding.of(Channel.telegram, "root")}),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryFaucetStore:
    return InMemoryFaucetStore()


@pytest.fixture
def policy() -> QuotaPolicy:
    return make_policy()


@pytest.fixture
def service(store, policy, clock) -> FaucetService:
    return FaucetService(store, policy, clock=clock)


@pytest.fixture
def admin(service):
    """Bootstrap admin bound to ``telegram:root``."""
    return service.identities.resolve_account(Channel.telegram, "root")
