"""Disbursement request aggregate and its forward-only state machine."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum

from .account import Channel
from .errors import InvalidTransition


class DisbursementStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


TERMINAL_STATUSES = frozenset({DisbursementStatus.completed, DisbursementStatus.failed})

_ALLOWED_TRANSITIONS: dict[DisbursementStatus, frozenset[DisbursementStatus]] = {
    DisbursementStatus.pending: frozenset(
        # pending -> failed is the operator cancel before submission
        {DisbursementStatus.processing, DisbursementStatus.failed}
    ),
    DisbursementStatus.processing: frozenset(
        {DisbursementStatus.completed, DisbursementStatus.failed}
    ),
    DisbursementStatus.completed: frozenset(),
    DisbursementStatus.failed: frozenset(),
}


def ensure_transition(current: DisbursementStatus, target: DisbursementStatus) -> None:
    """Raise ``InvalidTransition`` unless ``current -> target`` moves strictly forward."""
    if target not in _ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(f"cannot move disbursement from {current.value} to {target.value}")


@dataclass(frozen=True, slots=True)
class DisbursementRequest:
    """One accepted token transfer. ``request_id`` doubles as the ledger idempotency key."""

    request_id: str
    account_id: str
    channel: Channel
    destination: str
    amount: int
    reservation_id: str
    requested_at: datetime
    status: DisbursementStatus = DisbursementStatus.pending
    tx_reference: str | None = None
    attempts: int = 0
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    submitted_at: datetime | None = None
    last_error: str | None = None
    needs_reconciliation: bool = False
    updated_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def age_seconds(self, now: datetime) -> float:
        return max((now - self.requested_at).total_seconds(), 0.0)

    def transitioned(self, target: DisbursementStatus, at: datetime, **changes) -> "DisbursementRequest":
        """Return a copy moved to ``target``; the amount is never part of ``changes``."""
        ensure_transition(self.status, target)
        if "amount" in changes:
            raise ValueError("amount is immutable after creation")
        finished_at = at if target in TERMINAL_STATUSES else self.finished_at
        return replace(self, status=target, updated_at=at, finished_at=finished_at, **changes)


def new_request(
    *,
    account_id: str,
    channel: Channel,
    destination: str,
    amount: int,
    reservation_id: str,
    requested_at: datetime,
) -> DisbursementRequest:
    return DisbursementRequest(
        request_id=str(uuid.uuid4()),
        account_id=account_id,
        channel=channel,
        destination=destination,
        amount=amount,
        reservation_id=reservation_id,
        requested_at=requested_at,
        updated_at=requested_at,
    )
