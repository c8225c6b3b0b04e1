"""Faucet service orchestrating identity resolution, quota reservation and operator workflows."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from .account import Account, Channel, Role
from .admin import RoleMutator
from .contracts import MintInput, MintOutcome, QuotaSnapshot
from .disbursement import DisbursementRequest, DisbursementStatus
from .errors import Forbidden, InvalidTransition, RequestNotFound
from .identity import IdentityResolver
from .ledger import AccountLedger, utc_now
from .policy import QuotaPolicy
from .ports import FailureRecord, FaucetStore

logger = logging.getLogger(__name__)


class FaucetService:
    """Channel-facing workflows backed by a ``FaucetStore``."""

    def __init__(
        self,
        store: FaucetStore,
        policy: QuotaPolicy,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Compose the resolver, ledger and role mutator over one store and policy."""
        self._store = store
        self._clock = clock
        self.identities = IdentityResolver(store, policy, clock=clock)
        self.ledger = AccountLedger(store, policy, clock=clock)
        self.roles = RoleMutator(store)

    @property
    def policy(self) -> QuotaPolicy:
        return self.ledger.policy

    def set_policy(self, policy: QuotaPolicy) -> None:
        """Replace the role table for every component; in-flight evaluations keep the old one."""
        self.identities.set_policy(policy)
        self.ledger.set_policy(policy)
        logger.info("quota policy replaced")

    # channel workflows ----------------------------------------------------

    def mint(self, payload: MintInput) -> MintOutcome:
        """Resolve the caller, reserve quota and enqueue the disbursement.

        The returned request is always ``pending``; the ledger transfer happens later
        in a submission worker. Quota rejections surface as ``QuotaRejected`` subclasses
        and leave no request behind.
        """
        account = self.identities.resolve_account(payload.channel, payload.handle, payload.domain)
        reservation, request, snapshot = self.ledger.reserve_and_enqueue(
            account.account_id,
            payload.amount,
            channel=Channel(payload.channel),
            destination=payload.destination.strip(),
        )
        return MintOutcome(request=request, reservation=reservation, snapshot=snapshot)

    def whoami(
        self, channel: Channel | str, handle: str, domain: str | None = None
    ) -> tuple[Account, QuotaSnapshot]:
        account = self.identities.resolve_account(channel, handle, domain)
        snapshot = self.ledger.snapshot(account.account_id)
        account.role = snapshot.role
        return account, snapshot

    def link_identity(self, account_id: str, channel: Channel | str, handle: str) -> Account:
        return self.identities.link(account_id, channel, handle)

    def get_request(self, request_id: str) -> DisbursementRequest:
        request = self._store.get_request(request_id)
        if request is None:
            raise RequestNotFound(request_id)
        return request

    def list_failures(self, request_id: str) -> list[FailureRecord]:
        self.get_request(request_id)
        return self._store.list_failures(request_id)

    # admin workflows ------------------------------------------------------

    def admin_actor(self, channel: Channel | str, handle: str) -> Account:
        """Return the admin account bound to ``(channel, handle)`` or raise ``Forbidden``.

        Unknown actors are not created: an identity nobody has seen cannot be an admin.
        """
        actor = self.identities.lookup(channel, handle)
        if actor is None:
            raise Forbidden("only admins may perform this operation")
        return self.roles.require_admin(actor.account_id)

    def set_role(
        self,
        actor_channel: Channel | str,
        actor_handle: str,
        target_channel: Channel | str,
        target_handle: str,
        role: Role | str,
    ) -> Account:
        actor = self.admin_actor(actor_channel, actor_handle)
        target = self.identities.resolve_account(target_channel, target_handle)
        return self.roles.set_role(actor.account_id, target.account_id, role)

    def set_role_by_id(self, actor_account_id: str, target_account_id: str, role: Role | str) -> Account:
        return self.roles.set_role(actor_account_id, target_account_id, role)

    def cancel_request(self, actor_account_id: str, request_id: str) -> DisbursementRequest:
        """Fail a request that no worker has picked up yet and release its quota."""
        self.roles.require_admin(actor_account_id)
        request = self.get_request(request_id)
        if request.status is not DisbursementStatus.pending:
            raise InvalidTransition(f"only pending requests can be cancelled (status={request.status.value})")
        cancelled = self.ledger.fail_request(
            request_id,
            f"cancelled by operator {actor_account_id}",
            expected_status=DisbursementStatus.pending,
        )
        if cancelled is None:
            raise InvalidTransition("request was picked up by a worker before it could be cancelled")
        logger.info("disbursement cancelled request_id=%s actor=%s", request_id, actor_account_id)
        return cancelled

    def resolve_stuck(
        self,
        actor_account_id: str,
        request_id: str,
        outcome: DisbursementStatus | str,
        tx_reference: str | None = None,
    ) -> DisbursementRequest:
        """Settle a request flagged for manual reconciliation after checking the ledger by hand.

        ``completed`` requires the ledger's tx reference; ``failed`` releases the quota.
        """
        self.roles.require_admin(actor_account_id)
        target = DisbursementStatus(outcome)
        request = self.get_request(request_id)
        if request.status is not DisbursementStatus.processing or not request.needs_reconciliation:
            raise InvalidTransition("request is not awaiting manual reconciliation")

        if target is DisbursementStatus.completed:
            if not tx_reference:
                raise ValueError("a tx reference is required to mark a request completed")
            resolved = request.transitioned(
                DisbursementStatus.completed,
                self._clock(),
                tx_reference=tx_reference,
                lease_owner=None,
                lease_expires_at=None,
                needs_reconciliation=False,
            )
            saved = self._store.update_request(
                resolved,
                expected_status=DisbursementStatus.processing,
                expected_owner=request.lease_owner,
            )
            resolved = resolved if saved else None
        elif target is DisbursementStatus.failed:
            resolved = self.ledger.fail_request(
                request_id,
                f"resolved as failed by operator {actor_account_id}",
                expected_status=DisbursementStatus.processing,
                expected_owner=request.lease_owner,
                tx_reference=tx_reference,
            )
        else:
            raise InvalidTransition(f"cannot resolve a request as {target.value}")

        if resolved is None:
            raise InvalidTransition("request changed while it was being resolved")
        logger.info(
            "stuck disbursement resolved request_id=%s outcome=%s actor=%s",
            request_id,
            target.value,
            actor_account_id,
        )
        return resolved

    def list_requests(
        self,
        actor_account_id: str,
        *,
        status: DisbursementStatus | str | None = None,
        older_than_seconds: float | None = None,
        limit: int = 100,
    ) -> list[tuple[DisbursementRequest, float]]:
        """Return requests oldest first, each paired with its age in seconds."""
        self.roles.require_admin(actor_account_id)
        now = self._clock()
        older_than = now - timedelta(seconds=older_than_seconds) if older_than_seconds else None
        rows = self._store.list_requests(
            status=DisbursementStatus(status) if status else None,
            older_than=older_than,
            limit=limit,
        )
        return [(row, row.age_seconds(now)) for row in rows]

