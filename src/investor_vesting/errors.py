"""Exception hierarchy for the vesting ledger.

Every error raised by a ledger operation derives from :class:`VestingError` so
callers (the HTTP layer, the CLI) can map failures uniformly. Validation
errors are raised before any write is committed.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class VestingError(Exception):
    """Base exception for all ledger errors.

    Attributes:
        message: Human-readable error description
        details: Additional context about the error
    """

    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def kind(self) -> str:
        return type(self).__name__


# ==================== Lifecycle ====================


class NotInitialized(VestingError):
    """Raised when an operation runs before ``init``."""

    status_code = 409


class AlreadyInitialized(VestingError):
    """Raised when ``init`` is called a second time."""

    status_code = 409


# ==================== Configuration ====================


class InvalidGroupConfig(VestingError):
    """Duplicate or missing group id, negative duration or basis points out of range."""


class InvalidScheduleOverlay(VestingError):
    """Invalid global initial-claim overlay or initialization arguments."""


class UnknownGroup(VestingError):
    pass


class InvalidInvestorEntry(VestingError):
    """Missing field, duplicate account in batch, non-positive amount or allocation below claimed."""


# ==================== Access control ====================


class Unauthorized(VestingError):
    status_code = 403


class MissingMinimalDeposit(VestingError):
    status_code = 402


# ==================== Funds movement ====================


class NoAllocation(VestingError):
    status_code = 404


class NothingToClaim(VestingError):
    pass


class InsufficientPoolBalance(VestingError):
    status_code = 409


class InvalidWithdrawAmount(VestingError):
    pass


class InvalidDepositAmount(VestingError):
    pass


class TransferFailed(VestingError):
    """The external token transfer failed and the optimistic mutation was reversed."""

    status_code = 502


class TransferOutcomeUnknown(VestingError):
    """The token service may or may not have moved the funds (timeout, dropped
    connection, server error). The transfer stays pending until reconciled."""

    status_code = 504


class UnknownTransfer(VestingError):
    status_code = 404


class TransferAlreadyResolved(VestingError):
    status_code = 409


class LedgerInvariantError(VestingError):
    """Pool counters no longer reconcile. Never expected outside of bugs."""

    status_code = 500


__all__ = [
    "VestingError",
    "NotInitialized",
    "AlreadyInitialized",
    "InvalidGroupConfig",
    "InvalidScheduleOverlay",
    "UnknownGroup",
    "InvalidInvestorEntry",
    "Unauthorized",
    "MissingMinimalDeposit",
    "NoAllocation",
    "NothingToClaim",
    "InsufficientPoolBalance",
    "InvalidWithdrawAmount",
    "InvalidDepositAmount",
    "TransferFailed",
    "TransferOutcomeUnknown",
    "UnknownTransfer",
    "TransferAlreadyResolved",
    "LedgerInvariantError",
]
