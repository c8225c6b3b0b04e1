"""In-process store used for development and tests.

Each account owns a ``threading.Lock``; an ``AccountTransaction`` holds it for its
whole lifetime and applies staged writes only when the block exits cleanly. The
request table has its own lock, always taken after an account lock, never before.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import Iterator

from .domain.account import Account, IdentityBinding, Role
from .domain.contracts import Reservation
from .domain.disbursement import DisbursementRequest, DisbursementStatus
from .domain.errors import AccountNotFound, IdentityConflict
from .domain.ports import FailureRecord


def _copy_account(account: Account) -> Account:
    return replace(account, bindings=list(account.bindings))


class InMemoryFaucetStore:
    """Thread-safe, non-durable implementation of the ``FaucetStore`` port."""

    def __init__(self) -> None:
        self._bindings_lock = threading.Lock()
        self._queue_lock = threading.Lock()
        self._accounts: dict[str, Account] = {}
        self._account_locks: dict[str, threading.Lock] = {}
        self._bindings: dict[IdentityBinding, str] = {}
        self._windows: dict[tuple[str, date], int] = {}
        self._reservations: dict[str, Reservation] = {}
        self._requests: dict[str, DisbursementRequest] = {}
        self._failures: list[FailureRecord] = []

    # identity -------------------------------------------------------------

    def resolve_identity(
        self, binding: IdentityBinding, *, role: Role, domain: str | None, at: datetime
    ) -> tuple[Account, bool]:
        with self._bindings_lock:
            existing = self._bindings.get(binding)
            if existing is not None:
                return _copy_account(self._accounts[existing]), False
            account = Account(
                account_id=str(uuid.uuid4()),
                role=role,
                created_at=at,
                bindings=[binding],
                domain=domain,
            )
            self._accounts[account.account_id] = account
            self._account_locks[account.account_id] = threading.Lock()
            self._bindings[binding] = account.account_id
            return _copy_account(account), True

    def link_identity(self, account_id: str, binding: IdentityBinding) -> Account:
        with self._bindings_lock:
            account = self._accounts.get(account_id)
            if account is None:
                raise AccountNotFound(account_id)
            owner = self._bindings.get(binding)
            if owner is not None and owner != account_id:
                raise IdentityConflict(f"{binding.key()} is bound to another account")
            if owner is None:
                self._bindings[binding] = account_id
                account.bindings.append(binding)
            return _copy_account(account)

    def get_account(self, account_id: str) -> Account | None:
        account = self._accounts.get(account_id)
        return _copy_account(account) if account is not None else None

    def find_account(self, binding: IdentityBinding) -> Account | None:
        account_id = self._bindings.get(binding)
        return self.get_account(account_id) if account_id else None

    # ledger ---------------------------------------------------------------

    @contextmanager
    def account_transaction(self, account_id: str) -> Iterator["_MemoryAccountTransaction"]:
        lock = self._account_locks.get(account_id)
        if lock is None:
            raise AccountNotFound(account_id)
        with lock:
            tx = _MemoryAccountTransaction(self, _copy_account(self._accounts[account_id]))
            try:
                yield tx
                tx.commit()
            finally:
                tx.close()

    def get_reservation(self, reservation_id: str) -> Reservation | None:
        return self._reservations.get(reservation_id)

    def reserved_amount(self, account_id: str, day: date) -> int:
        return self._windows.get((account_id, day), 0)

    # queue ----------------------------------------------------------------

    def lease_next(self, worker_id: str, lease_seconds: float, now: datetime) -> DisbursementRequest | None:
        with self._queue_lock:
            candidates = [
                request
                for request in self._requests.values()
                if request.status is DisbursementStatus.pending
                or (
                    request.status is DisbursementStatus.processing
                    and not request.needs_reconciliation
                    and request.lease_expires_at is not None
                    and request.lease_expires_at <= now
                )
            ]
            if not candidates:
                return None
            request = min(candidates, key=lambda r: (r.requested_at, r.request_id))
            changes = dict(
                attempts=request.attempts + 1,
                lease_owner=worker_id,
                lease_expires_at=now + timedelta(seconds=lease_seconds),
            )
            if request.status is DisbursementStatus.pending:
                leased = request.transitioned(DisbursementStatus.processing, now, **changes)
            else:
                leased = replace(request, updated_at=now, **changes)
            self._requests[leased.request_id] = leased
            return leased

    def get_request(self, request_id: str) -> DisbursementRequest | None:
        with self._queue_lock:
            return self._requests.get(request_id)

    def update_request(
        self,
        request: DisbursementRequest,
        *,
        expected_status: DisbursementStatus,
        expected_owner: str | None = None,
    ) -> bool:
        with self._queue_lock:
            current = self._requests.get(request.request_id)
            if current is None or current.status is not expected_status:
                return False
            if expected_owner is not None and current.lease_owner != expected_owner:
                return False
            self._requests[request.request_id] = request
            return True

    def list_requests(
        self,
        *,
        status: DisbursementStatus | None = None,
        older_than: datetime | None = None,
        limit: int = 100,
    ) -> list[DisbursementRequest]:
        with self._queue_lock:
            rows = [
                r
                for r in self._requests.values()
                if (status is None or r.status is status)
                and (older_than is None or r.requested_at <= older_than)
            ]
        rows.sort(key=lambda r: (r.requested_at, r.request_id))
        return rows[: max(1, limit)]

    def list_failures(self, request_id: str) -> list[FailureRecord]:
        return [f for f in self._failures if f.request_id == request_id]


class _MemoryAccountTransaction:
    def __init__(self, store: InMemoryFaucetStore, account: Account) -> None:
        self._store = store
        self._account = account
        self._window_deltas: dict[date, int] = {}
        self._reservations: dict[str, Reservation] = {}
        self._requests: dict[str, DisbursementRequest] = {}
        self._failures: list[FailureRecord] = []
        self._role_changed = False
        self._holds_queue = False

    @property
    def account(self) -> Account:
        return self._account

    def _queue(self) -> None:
        # Held until close() so request reads stay valid through commit.
        if not self._holds_queue:
            self._store._queue_lock.acquire()
            self._holds_queue = True

    def reserved_amount(self, day: date) -> int:
        base = self._store._windows.get((self._account.account_id, day), 0)
        return base + self._window_deltas.get(day, 0)

    def add_reservation(self, reservation: Reservation) -> None:
        self._window_deltas[reservation.day] = self._window_deltas.get(reservation.day, 0) + reservation.amount
        self._reservations[reservation.reservation_id] = reservation

    def release_reservation(self, reservation_id: str, at: datetime) -> Reservation | None:
        current = self._reservations.get(reservation_id) or self._store._reservations.get(reservation_id)
        if current is None or current.account_id != self._account.account_id:
            raise KeyError(f"reservation {reservation_id} not held by account {self._account.account_id}")
        if current.released_at is not None:
            return None
        released = replace(current, released_at=at)
        self._reservations[reservation_id] = released
        self._window_deltas[released.day] = self._window_deltas.get(released.day, 0) - released.amount
        return released

    def set_role(self, role: Role) -> Account:
        self._account = replace(self._account, role=role, bindings=list(self._account.bindings))
        self._role_changed = True
        return _copy_account(self._account)

    def insert_request(self, request: DisbursementRequest) -> None:
        self._queue()
        self._requests[request.request_id] = request

    def get_request(self, request_id: str) -> DisbursementRequest | None:
        self._queue()
        staged = self._requests.get(request_id)
        if staged is not None:
            return staged
        request = self._store._requests.get(request_id)
        if request is not None and request.account_id != self._account.account_id:
            return None
        return request

    def update_request(
        self,
        request: DisbursementRequest,
        *,
        expected_status: DisbursementStatus,
        expected_owner: str | None = None,
    ) -> bool:
        current = self.get_request(request.request_id)
        if current is None or current.status is not expected_status:
            return False
        if expected_owner is not None and current.lease_owner != expected_owner:
            return False
        self._requests[request.request_id] = request
        return True

    def record_failure(self, request_id: str, reason: str, at: datetime) -> None:
        self._failures.append(FailureRecord(request_id=request_id, failed_at=at, reason=reason))

    def commit(self) -> None:
        store = self._store
        account_id = self._account.account_id
        for day, delta in self._window_deltas.items():
            key = (account_id, day)
            store._windows[key] = store._windows.get(key, 0) + delta
        store._reservations.update(self._reservations)
        for request in self._requests.values():
            store._requests[request.request_id] = request
        store._failures.extend(self._failures)
        if self._role_changed:
            store._accounts[account_id].role = self._account.role

    def close(self) -> None:
        if self._holds_queue:
            self._holds_queue = False
            self._store._queue_lock.release()
