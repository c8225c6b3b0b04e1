"""Account-related DTOs shared with channel adapters."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class AccountRole(str, Enum):
    user = "user"
    privileged = "privileged"
    admin = "admin"


class IdentityRef(BaseModel):
    channel: str
    handle: str


class Account(BaseModel):
    account_id: str
    role: AccountRole
    created_at: datetime
    identities: list[IdentityRef] = Field(default_factory=list)


class WhoAmI(BaseModel):
    """Role, limits and today's usage as reported to the person asking."""

    account_id: str
    role: AccountRole
    default_amount: int
    max_amount: int
    max_daily_cap: int | None = None
    minted_today: int
    remaining_today: int | None = None
