from __future__ import annotations

import threading

import pytest

from faucet import memory_repository
from faucet.domain.account import Channel, Role
from faucet.domain.errors import ExceedsDailyCap, ExceedsSingleLimit, InvalidAmount
from faucet.domain.ledger import utc_day
from faucet.domain.policy import RoleLimits

from conftest import DESTINATION, make_policy


@pytest.fixture
def user(service):
    return service.identities.resolve_account(Channel.telegram, "alice")


def test_three_default_mints_then_daily_cap(service, user, store, clock):
    ledger = service.ledger
    reservations = [ledger.reserve(user.account_id, 100) for _ in range(3)]

    assert [(r.reserved_before, r.reserved_after) for r in reservations] == [(0, 100), (100, 200), (200, 300)]
    with pytest.raises(ExceedsDailyCap):
        ledger.reserve(user.account_id, 100)
    assert store.reserved_amount(user.account_id, utc_day(clock())) == 300


def test_rejections_are_checked_in_order(service, user):
    with pytest.raises(InvalidAmount):
        service.ledger.reserve(user.account_id, 0)
    with pytest.raises(InvalidAmount):
        service.ledger.reserve(user.account_id, -5)
    with pytest.raises(ExceedsSingleLimit):
        service.ledger.reserve(user.account_id, 101)
    assert service.ledger.snapshot(user.account_id).reserved == 0


def test_release_is_reversible_and_idempotent(service, user):
    ledger = service.ledger
    reservations = [ledger.reserve(user.account_id, 100) for _ in range(3)]

    assert ledger.release(reservations[1].reservation_id) is True
    assert ledger.release(reservations[1].reservation_id) is False
    assert ledger.snapshot(user.account_id).reserved == 200

    again = ledger.reserve(user.account_id, 100)
    assert again.reserved_before == 200


def test_release_of_unknown_reservation_raises(service):
    with pytest.raises(KeyError):
        service.ledger.release("missing")


def test_window_resets_on_the_next_utc_day(service, user, clock):
    for _ in range(3):
        service.ledger.reserve(user.account_id, 100)
    clock.advance(24 * 3600)

    reservation = service.ledger.reserve(user.account_id, 100)
    assert reservation.reserved_before == 0
    assert reservation.day == utc_day(clock())


def test_unlimited_role_has_no_remaining_bound(service):
    privileged = service.identities.resolve_account(Channel.web, "ops@example.org", "example.org")
    assert privileged.role is Role.privileged
    for _ in range(10):
        service.ledger.reserve(privileged.account_id, 1000)

    snapshot = service.ledger.snapshot(privileged.account_id)
    assert snapshot.reserved == 10_000
    assert snapshot.max_daily is None
    assert snapshot.remaining is None


def test_concurrent_reservations_never_exceed_the_cap(service, user, store, clock):
    workers = 24
    barrier = threading.Barrier(workers)
    accepted: list[int] = []
    rejected: list[int] = []
    lock = threading.Lock()

    def attempt(index: int) -> None:
        barrier.wait()
        try:
            service.ledger.reserve(user.account_id, 50)
        except ExceedsDailyCap:
            with lock:
                rejected.append(index)
        else:
            with lock:
                accepted.append(index)

    threads = [threading.Thread(target=attempt, args=(i,)) for i in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(accepted) == 6
    assert len(rejected) == workers - 6
    assert store.reserved_amount(user.account_id, utc_day(clock())) == 300


def test_reserve_and_enqueue_uses_the_role_default(service, user):
    reservation, request, snapshot = service.ledger.reserve_and_enqueue(
        user.account_id, None, channel=Channel.telegram, destination=DESTINATION
    )
    assert request.amount == reservation.amount == 100
    assert request.reservation_id == reservation.reservation_id
    assert snapshot.reserved == 100
    assert snapshot.remaining == 200


def test_failed_enqueue_rolls_back_the_reservation(service, user, store, monkeypatch):
    def boom(self, request):
        raise RuntimeError("disk full")

    monkeypatch.setattr(memory_repository._MemoryAccountTransaction, "insert_request", boom)

    with pytest.raises(RuntimeError):
        service.ledger.reserve_and_enqueue(
            user.account_id, 100, channel=Channel.telegram, destination=DESTINATION
        )
    assert service.ledger.snapshot(user.account_id).reserved == 0
    assert store.list_requests() == []


def test_policy_swap_applies_to_the_next_evaluation(service, user):
    service.ledger.reserve(user.account_id, 100)
    service.set_policy(make_policy(user=RoleLimits(default_amount=50, max_single=50, max_daily=150)))

    with pytest.raises(ExceedsSingleLimit):
        service.ledger.reserve(user.account_id, 100)
    service.ledger.reserve(user.account_id, 50)
    with pytest.raises(ExceedsDailyCap):
        service.ledger.reserve(user.account_id, 50)
