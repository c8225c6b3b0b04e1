"""Domain-level request contracts shared by multiple layers."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, datetime

from .account import Channel, Role
from .disbursement import DisbursementRequest


@dataclass(frozen=True, slots=True)
class Reservation:
    """A committed increment against one account's quota window for one UTC day.

    ``reserved_before`` and ``reserved_after`` are the window totals around the
    increment, kept for audit and tests.
    """

    reservation_id: str
    account_id: str
    day: date
    amount: int
    reserved_before: int
    reserved_after: int
    created_at: datetime
    released_at: datetime | None = None

    @classmethod
    def new(
        cls, *, account_id: str, day: date, amount: int, reserved_before: int, at: datetime
    ) -> "Reservation":
        return cls(
            reservation_id=str(uuid.uuid4()),
            account_id=account_id,
            day=day,
            amount=amount,
            reserved_before=reserved_before,
            reserved_after=reserved_before + amount,
            created_at=at,
        )


@dataclass(frozen=True, slots=True)
class QuotaSnapshot:
    """Limits and today's usage for an account, read at one consistent instant."""

    account_id: str
    role: Role
    day: date
    max_single: int
    default_amount: int
    max_daily: int | None
    reserved: int

    @property
    def remaining(self) -> int | None:
        if self.max_daily is None:
            return None
        return max(self.max_daily - self.reserved, 0)


@dataclass(slots=True)
class MintInput:
    """Validated inputs a channel adapter supplies when asking for tokens."""

    channel: Channel
    handle: str
    destination: str
    amount: int | None = None
    domain: str | None = None


@dataclass(frozen=True, slots=True)
class MintOutcome:
    """Accepted mint: the queued request plus the quota state right after the reservation."""

    request: DisbursementRequest
    reservation: Reservation
    snapshot: QuotaSnapshot
