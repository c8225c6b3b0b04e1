"""Error taxonomy shared by the ledger, queue, worker and HTTP layers."""

from __future__ import annotations


class FaucetError(Exception):
    """Base error for the faucet core."""

    code = "faucet_error"


class IdentityConflict(FaucetError):
    """The external handle is already bound to a different account."""

    code = "identity_conflict"


class QuotaRejected(FaucetError):
    """A reservation was refused by the role and quota policy."""

    code = "quota_rejected"


class InvalidAmount(QuotaRejected):
    """Requested amount is zero or negative."""

    code = "invalid_amount"


class ExceedsSingleLimit(QuotaRejected):
    """Requested amount is above the role's single-request maximum."""

    code = "exceeds_single_limit"


class ExceedsDailyCap(QuotaRejected):
    """Requested amount would push the day's reservations above the role's cap."""

    code = "exceeds_daily_cap"


class Forbidden(FaucetError):
    """The acting account does not hold the role required for the operation."""

    code = "forbidden"


class AccountNotFound(FaucetError):
    code = "account_not_found"


class RequestNotFound(FaucetError):
    code = "request_not_found"


class InvalidTransition(FaucetError):
    """A disbursement status change would leave a terminal state or move backwards."""

    code = "invalid_transition"


class SubmissionError(FaucetError):
    """Base class for failures reported by the ledger-submission collaborator."""

    code = "submission_error"

    def __init__(self, message: str, *, tx_reference: str | None = None) -> None:
        super().__init__(message)
        self.tx_reference = tx_reference


class TransientNetworkError(SubmissionError):
    """Timeout or network error before the submission reached the ledger. Retried."""

    code = "transient_network_error"


class PermanentSubmissionError(SubmissionError):
    """The ledger refused the transfer for good, e.g. an invalid destination."""

    code = "permanent_submission_error"


class AmbiguousOutcome(SubmissionError):
    """The submission was sent but its result is unknown; reconcile before deciding."""

    code = "ambiguous_outcome"


class StorageUnavailable(FaucetError):
    """The backing store could not complete the operation; nothing was committed."""

    code = "storage_unavailable"
