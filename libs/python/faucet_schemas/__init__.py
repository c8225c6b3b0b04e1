"""Shared schema exports."""

from .account import Account, AccountRole, IdentityRef, WhoAmI
from .disbursement import Disbursement, DisbursementState, DisbursementStatusChanged, MintAccepted

__all__ = [
    "Account",
    "AccountRole",
    "IdentityRef",
    "WhoAmI",
    "Disbursement",
    "DisbursementState",
    "DisbursementStatusChanged",
    "MintAccepted",
]
