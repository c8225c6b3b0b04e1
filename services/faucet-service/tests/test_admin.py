from __future__ import annotations

import threading

import pytest

from faucet.domain.account import Channel, Role
from faucet.domain.contracts import MintInput
from faucet.domain.disbursement import DisbursementStatus
from faucet.domain.errors import AccountNotFound, ExceedsDailyCap, ExceedsSingleLimit, Forbidden

from conftest import DESTINATION


def test_non_admin_cannot_change_roles(service, store):
    actor = service.identities.resolve_account(Channel.telegram, "mallory")
    target = service.identities.resolve_account(Channel.telegram, "victim")
    outcome = service.mint(
        MintInput(channel=Channel.telegram, handle="victim", destination=DESTINATION, amount=60)
    )

    with pytest.raises(Forbidden):
        service.set_role_by_id(actor.account_id, target.account_id, Role.admin)
    assert store.get_account(target.account_id).role is Role.user
    assert store.get_account(actor.account_id).role is Role.user
    assert service.ledger.snapshot(target.account_id).reserved == 60
    assert store.get_reservation(outcome.reservation.reservation_id).released_at is None
    assert service.get_request(outcome.request.request_id).status is DisbursementStatus.pending


def test_promotion_is_visible_to_the_next_reservation(service, admin):
    target = service.identities.resolve_account(Channel.discord, "helper")
    with pytest.raises(ExceedsSingleLimit):
        service.ledger.reserve(target.account_id, 1000)

    updated = service.set_role_by_id(admin.account_id, target.account_id, "privileged")
    assert updated.role is Role.privileged
    service.ledger.reserve(target.account_id, 1000)


def test_demotion_applies_caps_immediately(service, admin):
    target = service.identities.resolve_account(Channel.discord, "former-ops")
    service.set_role_by_id(admin.account_id, target.account_id, Role.privileged)
    service.ledger.reserve(target.account_id, 1000)

    service.set_role_by_id(admin.account_id, target.account_id, Role.user)
    with pytest.raises(ExceedsDailyCap):
        service.ledger.reserve(target.account_id, 100)


def test_demoted_admin_loses_admin_rights(service, admin):
    second = service.identities.resolve_account(Channel.web, "second@mail.test")
    service.set_role_by_id(admin.account_id, second.account_id, Role.admin)
    service.set_role_by_id(second.account_id, admin.account_id, Role.user)

    with pytest.raises(Forbidden):
        service.set_role_by_id(admin.account_id, second.account_id, Role.user)


def test_missing_target(service, admin):
    with pytest.raises(AccountNotFound):
        service.set_role_by_id(admin.account_id, "missing", Role.user)


def test_set_role_by_handle_creates_the_target(service, admin):
    account = service.set_role(Channel.telegram, "root", Channel.discord, "NewMod", Role.privileged)
    assert account.role is Role.privileged
    assert service.identities.lookup(Channel.discord, "newmod").account_id == account.account_id


def test_unknown_actor_is_forbidden_and_creates_nothing(service):
    with pytest.raises(Forbidden):
        service.set_role(Channel.telegram, "stranger", Channel.discord, "target", Role.admin)
    assert service.identities.lookup(Channel.telegram, "stranger") is None
    assert service.identities.lookup(Channel.discord, "target") is None


def test_role_change_serialises_with_reservations(service, admin, store, clock):
    """Every reservation sees either the old role's caps or the new one's, never a mix."""
    target = service.identities.resolve_account(Channel.telegram, "racer")
    service.set_role_by_id(admin.account_id, target.account_id, Role.privileged)

    barrier = threading.Barrier(9)
    accepted: list[int] = []
    lock = threading.Lock()

    def reserve() -> None:
        barrier.wait()
        try:
            reservation = service.ledger.reserve(target.account_id, 100)
        except ExceedsDailyCap:
            return
        with lock:
            accepted.append(reservation.reserved_after)

    def demote() -> None:
        barrier.wait()
        service.set_role_by_id(admin.account_id, target.account_id, Role.user)

    threads = [threading.Thread(target=reserve) for _ in range(8)]
    threads.append(threading.Thread(target=demote))
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert store.get_account(target.account_id).role is Role.user
    snapshot = service.ledger.snapshot(target.account_id)
    assert snapshot.reserved == 100 * len(accepted)
    assert sorted(accepted) == [100 * (i + 1) for i in range(len(accepted))]
