"""Identity resolver mapping ``(channel, external_handle)`` pairs onto accounts."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from .account import Account, Channel, IdentityBinding
from .ledger import utc_now
from .policy import QuotaPolicy
from .ports import FaucetStore

logger = logging.getLogger(__name__)


class IdentityResolver:
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

    def set_policy(self, policy: QuotaPolicy) -> None:
        self._policy = policy

    def resolve(self, channel: Channel | str, external_handle: str, domain: str | None = None) -> str:
        """Return the account id for the binding, creating the account on first contact."""
        return self.resolve_account(channel, external_handle, domain).account_id

    def resolve_account(
        self, channel: Channel | str, external_handle: str, domain: str | None = None
    ) -> Account:
        binding = IdentityBinding.of(channel, external_handle)
        existing = self._store.find_account(binding)
        if existing is not None:
            return existing
        role = self._policy.initial_role(binding, domain)
        account, created = self._store.resolve_identity(
            binding, role=role, domain=domain, at=self._clock()
        )
        if created:
            logger.info(
                "account created account_id=%s binding=%s role=%s",
                account.account_id,
                binding.key(),
                account.role.value,
            )
        return account

    def lookup(self, channel: Channel | str, external_handle: str) -> Account | None:
        return self._store.find_account(IdentityBinding.of(channel, external_handle))

    def link(self, account_id: str, channel: Channel | str, external_handle: str) -> Account:
        """Bind another identity to an existing account; raises ``IdentityConflict`` if taken."""
        binding = IdentityBinding.of(channel, external_handle)
        account = self._store.link_identity(account_id, binding)
        logger.info("identity linked account_id=%s binding=%s", account_id, binding.key())
        return account
