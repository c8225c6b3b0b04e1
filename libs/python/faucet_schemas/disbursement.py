"""Shared Pydantic models for disbursement requests and their status events."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict


class DisbursementState(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class MintAccepted(BaseModel):
    request_id: str
    status: DisbursementState
    amount: int
    reserved_daily_used: int
    reserved_daily_remaining: int | None = None
    tx_reference: str | None = None


class Disbursement(BaseModel):
    request_id: str
    account_id: str
    channel: str
    destination: str
    amount: int
    status: DisbursementState
    tx_reference: str | None = None
    attempts: int = 0
    last_error: str | None = None
    needs_reconciliation: bool = False
    requested_at: datetime
    finished_at: datetime | None = None
    age_seconds: float | None = None


class DisbursementStatusChanged(BaseModel):
    """Event emitted to channels polling or subscribing for request progress."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    request_id: str
    account_id: str
    state: DisbursementState
    occurred_at: datetime
    tx_reference: str | None = None
    reason: str | None = None
