"""Storage ports implemented by the Postgres and in-memory repositories."""

from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import date, datetime
from typing import Protocol

from .account import Account, IdentityBinding, Role
from .contracts import Reservation
from .disbursement import DisbursementRequest, DisbursementStatus


@dataclass(frozen=True, slots=True)
class FailureRecord:
    request_id: str
    failed_at: datetime
    reason: str


class AccountTransaction(Protocol):
    """Unit of work holding one account's serialisation point.

    Every read and write of the account's role and quota windows goes through an
    open transaction. Writes become visible together when the context exits cleanly
    and are discarded if it raises.
    """

    @property
    def account(self) -> Account: ...

    def reserved_amount(self, day: date) -> int: ...

    def add_reservation(self, reservation: Reservation) -> None: ...

    def release_reservation(self, reservation_id: str, at: datetime) -> Reservation | None:
        """Reverse a reservation; ``None`` when it was already released."""
        ...

    def set_role(self, role: Role) -> Account: ...

    def insert_request(self, request: DisbursementRequest) -> None: ...

    def get_request(self, request_id: str) -> DisbursementRequest | None: ...

    def update_request(
        self,
        request: DisbursementRequest,
        *,
        expected_status: DisbursementStatus,
        expected_owner: str | None = None,
    ) -> bool: ...

    def record_failure(self, request_id: str, reason: str, at: datetime) -> None: ...


class FaucetStore(Protocol):
    def resolve_identity(
        self, binding: IdentityBinding, *, role: Role, domain: str | None, at: datetime
    ) -> tuple[Account, bool]:
        """Return the bound account, inserting a new one when the binding is absent."""
        ...

    def link_identity(self, account_id: str, binding: IdentityBinding) -> Account: ...

    def get_account(self, account_id: str) -> Account | None: ...

    def find_account(self, binding: IdentityBinding) -> Account | None: ...

    def account_transaction(self, account_id: str) -> AbstractContextManager[AccountTransaction]: ...

    def get_reservation(self, reservation_id: str) -> Reservation | None: ...

    def lease_next(self, worker_id: str, lease_seconds: float, now: datetime) -> DisbursementRequest | None: ...

    def get_request(self, request_id: str) -> DisbursementRequest | None: ...

    def update_request(
        self,
        request: DisbursementRequest,
        *,
        expected_status: DisbursementStatus,
        expected_owner: str | None = None,
    ) -> bool: ...

    def list_requests(
        self,
        *,
        status: DisbursementStatus | None = None,
        older_than: datetime | None = None,
        limit: int = 100,
    ) -> list[DisbursementRequest]: ...

    def list_failures(self, request_id: str) -> list[FailureRecord]: ...
