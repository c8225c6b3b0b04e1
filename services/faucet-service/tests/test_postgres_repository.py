"""Integration tests against a real Postgres; set FAUCET_TEST_POSTGRES_URL to run them."""

from __future__ import annotations

import os
import threading
from dataclasses import replace

import pytest

from faucet.domain.account import Channel, Role
from faucet.domain.contracts import MintInput
from faucet.domain.disbursement import DisbursementStatus
from faucet.domain.errors import ExceedsDailyCap, IdentityConflict
from faucet.domain.service import FaucetService

from conftest import DESTINATION, make_policy

POSTGRES_URL = os.getenv("FAUCET_TEST_POSTGRES_URL")

pytestmark = pytest.mark.skipif(not POSTGRES_URL, reason="FAUCET_TEST_POSTGRES_URL not set")


@pytest.fixture
def pg_store():
    from psycopg_pool import ConnectionPool

    from faucet.repository import PostgresFaucetStore

    pool = ConnectionPool(POSTGRES_URL, max_size=20, open=False)
    pool.open()
    store = PostgresFaucetStore(pool)
    store.ensure_schema()
    with pool.connection() as conn:
        conn.execute(
            "TRUNCATE disbursement_failures, disbursement_requests, quota_reservations, "
            "quota_windows, identity_bindings, accounts"
        )
    try:
        yield store
    finally:
        pool.close()


@pytest.fixture
def pg_service(pg_store, clock) -> FaucetService:
    return FaucetService(pg_store, make_policy(), clock=clock)


def test_resolve_and_link(pg_service):
    account_id = pg_service.identities.resolve(Channel.telegram, "Alice")
    assert pg_service.identities.resolve(Channel.telegram, "alice") == account_id

    linked = pg_service.link_identity(account_id, Channel.discord, "alice#1")
    assert {b.key() for b in linked.bindings} == {"telegram:alice", "discord:alice#1"}

    other = pg_service.identities.resolve(Channel.web, "other@mail.test")
    with pytest.raises(IdentityConflict):
        pg_service.link_identity(other, Channel.telegram, "alice")


def test_concurrent_first_contact_creates_one_account(pg_service):
    barrier = threading.Barrier(8)
    seen: list[str] = []
    lock = threading.Lock()

    def contact() -> None:
        barrier.wait()
        account_id = pg_service.identities.resolve(Channel.discord, "crowd")
        with lock:
            seen.append(account_id)

    threads = [threading.Thread(target=contact) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert len(set(seen)) == 1


def test_concurrent_reservations_respect_the_cap(pg_service):
    account_id = pg_service.identities.resolve(Channel.telegram, "racer")
    barrier = threading.Barrier(12)
    accepted: list[int] = []
    lock = threading.Lock()

    def attempt() -> None:
        barrier.wait()
        try:
            pg_service.ledger.reserve(account_id, 50)
        except ExceedsDailyCap:
            return
        with lock:
            accepted.append(1)

    threads = [threading.Thread(target=attempt) for _ in range(12)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(accepted) == 6
    assert pg_service.ledger.snapshot(account_id).reserved == 300


def test_queue_lease_and_failure_release(pg_service, pg_store, clock):
    outcome = pg_service.mint(MintInput(channel=Channel.telegram, handle="bob", destination=DESTINATION))

    leased = pg_store.lease_next("worker-a", 60, clock())
    assert leased.request_id == outcome.request.request_id
    assert leased.status is DisbursementStatus.processing
    assert leased.attempts == 1
    assert pg_store.lease_next("worker-b", 60, clock()) is None

    assert pg_store.update_request(
        replace(leased, submitted_at=clock()),
        expected_status=DisbursementStatus.processing,
        expected_owner="worker-a",
    )
    assert not pg_store.update_request(
        leased, expected_status=DisbursementStatus.processing, expected_owner="worker-b"
    )

    failed = pg_service.ledger.fail_request(
        leased.request_id,
        "invalid destination",
        expected_status=DisbursementStatus.processing,
        expected_owner="worker-a",
    )
    assert failed.status is DisbursementStatus.failed
    assert pg_service.ledger.snapshot(leased.account_id).reserved == 0
    assert [f.reason for f in pg_store.list_failures(leased.request_id)] == ["invalid destination"]
    assert pg_service.ledger.release(leased.reservation_id) is False


def test_role_change_is_persisted(pg_service, pg_store):
    admin = pg_service.identities.resolve_account(Channel.telegram, "root")
    target = pg_service.identities.resolve_account(Channel.web, "t@mail.test")
    pg_service.set_role_by_id(admin.account_id, target.account_id, Role.privileged)
    assert pg_store.get_account(target.account_id).role is Role.privileged
