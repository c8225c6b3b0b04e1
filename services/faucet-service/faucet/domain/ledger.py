"""Account ledger: atomic quota reservation and release per account and UTC day.

All reads of an account's role and window happen inside the store's
``account_transaction``, so a reservation sees either the role before a
concurrent ``set_role`` or the role after it, never a mix of the two.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Callable

from .. import metrics
from .account import Channel
from .contracts import QuotaSnapshot, Reservation
from .disbursement import DisbursementRequest, DisbursementStatus, new_request
from .errors import ExceedsDailyCap, ExceedsSingleLimit, InvalidAmount, RequestNotFound
from .policy import QuotaPolicy
from .ports import AccountTransaction, FaucetStore

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_day(at: datetime) -> date:
    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    return at.astimezone(timezone.utc).date()


class AccountLedger:
    """Quota reservations backed by a ``FaucetStore``."""

    def __init__(
        self,
        store: FaucetStore,
        policy: QuotaPolicy,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._policy = policy
        self._clock = clock

    @property
    def policy(self) -> QuotaPolicy:
        return self._policy

    def set_policy(self, policy: QuotaPolicy) -> None:
        """Swap the role table; the next evaluation uses it."""
        self._policy = policy

    def reserve(self, account_id: str, amount: int, at_time: datetime | None = None) -> Reservation:
        """Reserve ``amount`` against today's window or raise a ``QuotaRejected`` subclass."""
        at = at_time or self._clock()
        with self._store.account_transaction(account_id) as tx:
            return self._reserve_locked(tx, amount, at)

    def reserve_and_enqueue(
        self,
        account_id: str,
        amount: int | None,
        *,
        channel: Channel,
        destination: str,
        at_time: datetime | None = None,
    ) -> tuple[Reservation, DisbursementRequest, QuotaSnapshot]:
        """Reserve quota and enqueue the matching pending request in one unit.

        If the enqueue write fails the reservation is rolled back with it.
        An ``amount`` of ``None`` takes the default for the role held at reservation time.
        """
        at = at_time or self._clock()
        with self._store.account_transaction(account_id) as tx:
            if amount is None:
                amount = self._policy.default_amount(tx.account.role)
            reservation = self._reserve_locked(tx, amount, at)
            request = new_request(
                account_id=account_id,
                channel=channel,
                destination=destination,
                amount=amount,
                reservation_id=reservation.reservation_id,
                requested_at=at,
            )
            tx.insert_request(request)
            snapshot = self._snapshot_locked(tx, reservation.day)
        logger.info(
            "disbursement enqueued request_id=%s account_id=%s amount=%s",
            request.request_id,
            account_id,
            amount,
        )
        return reservation, request, snapshot

    def _reserve_locked(self, tx: AccountTransaction, amount: int, at: datetime) -> Reservation:
        account = tx.account
        limits = self._policy.limits(account.role)
        if amount <= 0:
            metrics.RESERVATIONS.labels(outcome="invalid_amount").inc()
            raise InvalidAmount("amount must be greater than zero")
        if amount > limits.max_single:
            metrics.RESERVATIONS.labels(outcome="exceeds_single_limit").inc()
            raise ExceedsSingleLimit(
                f"amount {amount} exceeds the {account.role.value} limit of {limits.max_single}"
            )
        day = utc_day(at)
        reserved = tx.reserved_amount(day)
        if limits.max_daily is not None and reserved + amount > limits.max_daily:
            metrics.RESERVATIONS.labels(outcome="exceeds_daily_cap").inc()
            raise ExceedsDailyCap(
                f"daily cap of {limits.max_daily} reached ({reserved} already reserved today)"
            )
        reservation = Reservation.new(
            account_id=account.account_id, day=day, amount=amount, reserved_before=reserved, at=at
        )
        tx.add_reservation(reservation)
        metrics.RESERVATIONS.labels(outcome="accepted").inc()
        logger.debug(
            "quota reserved account_id=%s day=%s before=%s after=%s",
            account.account_id,
            day,
            reservation.reserved_before,
            reservation.reserved_after,
        )
        return reservation

    def release(self, reservation_id: str, at_time: datetime | None = None) -> bool:
        """Reverse a reservation. Returns ``False`` when it was already released."""
        reservation = self._store.get_reservation(reservation_id)
        if reservation is None:
            raise KeyError(f"unknown reservation {reservation_id}")
        at = at_time or self._clock()
        with self._store.account_transaction(reservation.account_id) as tx:
            released = tx.release_reservation(reservation_id, at)
        if released is not None:
            logger.info(
                "quota released account_id=%s day=%s amount=%s",
                released.account_id,
                released.day,
                released.amount,
            )
        return released is not None

    def snapshot(self, account_id: str, at_time: datetime | None = None) -> QuotaSnapshot:
        day = utc_day(at_time or self._clock())
        with self._store.account_transaction(account_id) as tx:
            return self._snapshot_locked(tx, day)

    def _snapshot_locked(self, tx: AccountTransaction, day: date) -> QuotaSnapshot:
        role = tx.account.role
        limits = self._policy.limits(role)
        return QuotaSnapshot(
            account_id=tx.account.account_id,
            role=role,
            day=day,
            max_single=limits.max_single,
            default_amount=limits.default_amount,
            max_daily=limits.max_daily,
            reserved=tx.reserved_amount(day),
        )

    def fail_request(
        self,
        request_id: str,
        reason: str,
        *,
        expected_status: DisbursementStatus,
        expected_owner: str | None = None,
        tx_reference: str | None = None,
        at_time: datetime | None = None,
    ) -> DisbursementRequest | None:
        """Move a request to ``failed`` and release its reservation in the same unit.

        Returns ``None`` when the request is no longer in ``expected_status`` (or no
        longer leased by ``expected_owner``), in which case nothing is written.
        """
        request = self._store.get_request(request_id)
        if request is None:
            raise RequestNotFound(request_id)
        at = at_time or self._clock()
        with self._store.account_transaction(request.account_id) as tx:
            current = tx.get_request(request_id)
            if current is None or current.status is not expected_status:
                return None
            if expected_owner is not None and current.lease_owner != expected_owner:
                return None
            failed = current.transitioned(
                DisbursementStatus.failed,
                at,
                last_error=reason,
                tx_reference=tx_reference or current.tx_reference,
                lease_owner=None,
                lease_expires_at=None,
                needs_reconciliation=False,
            )
            if not tx.update_request(failed, expected_status=expected_status, expected_owner=expected_owner):
                return None
            tx.release_reservation(current.reservation_id, at)
            tx.record_failure(request_id, reason, at)
        metrics.DISBURSEMENTS.labels(status="failed").inc()
        logger.warning("disbursement failed request_id=%s reason=%s", request_id, reason)
        return failed
