"""Privileged role changes, serialised with reservations on the target account."""

from __future__ import annotations

import logging

from .account import Account, Role
from .errors import AccountNotFound, Forbidden
from .ports import FaucetStore

logger = logging.getLogger(__name__)


class RoleMutator:
    def __init__(self, store: FaucetStore) -> None:
        self._store = store

    def require_admin(self, actor_account_id: str) -> Account:
        """Return the actor if it holds ``admin`` right now; raise ``Forbidden`` otherwise."""
        actor = self._store.get_account(actor_account_id)
        if actor is None or actor.role is not Role.admin:
            raise Forbidden("only admins may perform this operation")
        return actor

    def set_role(self, actor_account_id: str, target_account_id: str, new_role: Role | str) -> Account:
        role = Role(new_role)
        self.require_admin(actor_account_id)
        if self._store.get_account(target_account_id) is None:
            raise AccountNotFound(target_account_id)
        with self._store.account_transaction(target_account_id) as tx:
            previous = tx.account.role
            if actor_account_id == target_account_id and previous is not Role.admin:
                # The actor was demoted between the check and the lock.
                raise Forbidden("only admins may perform this operation")
            account = tx.set_role(role)
        logger.info(
            "role changed target=%s from=%s to=%s actor=%s",
            target_account_id,
            previous.value,
            role.value,
            actor_account_id,
        )
        return account
