from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Channel(str, Enum):
    web = "web"
    telegram = "telegram"
    discord = "discord"


class Role(str, Enum):
    user = "user"
    privileged = "privileged"
    admin = "admin"


def normalise_handle(handle: str) -> str:
    """Return the canonical form used as the binding key for an external handle."""
    cleaned = handle.strip().lower()
    if not cleaned:
        raise ValueError("external handle must not be empty")
    return cleaned


@dataclass(frozen=True, slots=True)
class IdentityBinding:
    """One ``(channel, external_handle)`` pair bound to exactly one account."""

    channel: Channel
    handle: str

    @classmethod
    def of(cls, channel: Channel | str, handle: str) -> "IdentityBinding":
        return cls(channel=Channel(channel), handle=normalise_handle(handle))

    def key(self) -> str:
        return f"{self.channel.value}:{self.handle}"


@dataclass(slots=True)
class Account:
    """Aggregate root unifying channel identities under one role and quota."""

    account_id: str
    role: Role
    created_at: datetime
    bindings: list[IdentityBinding] = field(default_factory=list)
    domain: str | None = None
