"""Role and quota policy: a pure lookup from role to request and daily limits."""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from .account import Channel, IdentityBinding, Role


@dataclass(frozen=True, slots=True)
class RoleLimits:
    """Caps applied to every account holding a role.

    ``max_daily`` of ``None`` means the role has no daily cap.
    """

    default_amount: int
    max_single: int
    max_daily: int | None

    def __post_init__(self) -> None:
        if self.max_single <= 0:
            raise ValueError("max_single must be positive")
        if not 0 < self.default_amount <= self.max_single:
            raise ValueError("default_amount must be within (0, max_single]")
        if self.max_daily is not None and self.max_daily < self.max_single:
            raise ValueError("max_daily must not be below max_single")


class QuotaPolicy:
    """Immutable role -> limits table. No I/O; safe to share between threads."""

    def __init__(
        self,
        limits: Mapping[Role, RoleLimits],
        *,
        privileged_domains: frozenset[str] = frozenset(),
        bootstrap_admins: frozenset[IdentityBinding] = frozenset(),
    ) -> None:
        missing = [role.value for role in Role if role not in limits]
        if missing:
            raise ValueError(f"missing limits for roles: {', '.join(missing)}")
        self._limits = MappingProxyType(dict(limits))
        self._privileged_domains = frozenset(d.strip().lower() for d in privileged_domains)
        self._bootstrap_admins = bootstrap_admins

    def limits(self, role: Role) -> RoleLimits:
        return self._limits[role]

    def max_single(self, role: Role) -> int:
        return self._limits[role].max_single

    def max_daily(self, role: Role) -> int | None:
        return self._limits[role].max_daily

    def default_amount(self, role: Role) -> int:
        return self._limits[role].default_amount

    def initial_role(self, binding: IdentityBinding, domain: str | None) -> Role:
        """Role assigned to an account created for ``binding`` on first contact."""
        if binding in self._bootstrap_admins:
            return Role.admin
        if domain and domain.strip().lower() in self._privileged_domains:
            return Role.privileged
        return Role.user

    @classmethod
    def from_settings(cls, settings) -> "QuotaPolicy":
        privileged = RoleLimits(
            default_amount=settings.privileged_default_amount,
            max_single=settings.privileged_max_amount,
            max_daily=settings.privileged_daily_cap,
        )
        admin = RoleLimits(
            default_amount=settings.admin_default_amount or privileged.default_amount,
            max_single=settings.admin_max_amount or privileged.max_single,
            max_daily=settings.admin_daily_cap if settings.admin_daily_cap is not None else privileged.max_daily,
        )
        return cls(
            {
                Role.user: RoleLimits(
                    default_amount=settings.user_default_amount,
                    max_single=settings.user_max_amount,
                    max_daily=settings.user_daily_cap,
                ),
                Role.privileged: privileged,
                Role.admin: admin,
            },
            privileged_domains=frozenset(settings.privileged_domains),
            bootstrap_admins=frozenset(parse_bindings(settings.bootstrap_admins)),
        )


def parse_bindings(values: list[str] | tuple[str, ...]) -> list[IdentityBinding]:
    """Parse ``channel:handle`` strings into identity bindings."""
    bindings = []
    for raw in values:
        channel, sep, handle = raw.partition(":")
        if not sep:
            raise ValueError(f"expected channel:handle, got {raw!r}")
        bindings.append(IdentityBinding.of(Channel(channel.strip().lower()), handle))
    return bindings
