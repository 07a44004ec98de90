"""State machine for outbound transfers (claims and withdrawals).

A transfer moves Idle -> Pending when the ledger applies its optimistic
mutation and records a :class:`PendingTransfer`. The asynchronous outcome
then moves it to Committed, or to RolledBack after the mutation has been
reversed by exactly the recorded amount.
"""
from __future__ import annotations

import uuid
from concurrent.futures import Future
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

from .errors import TransferAlreadyResolved
from .models import PendingTransfer, TransferKind, TransferStatus

CLAIM_MEMO = "vesting-claim"
WITHDRAW_MEMO = "vesting-withdrawal"


@dataclass(frozen=True, slots=True)
class TransferReceipt:
    """Returned by ``claim`` and ``withdraw_unallocated``.

    ``resolution`` completes with :attr:`TransferStatus.COMMITTED` or raises
    :class:`~investor_vesting.errors.TransferFailed` once the token service
    reports the outcome.
    """

    transfer_id: str
    kind: TransferKind
    account_id: str
    amount: int
    resolution: "Future[TransferStatus]"


def new_pending(kind: TransferKind, account_id: str, amount: int, memo: str) -> PendingTransfer:
    return PendingTransfer(
        transfer_id=uuid.uuid4().hex,
        kind=kind,
        account_id=account_id,
        amount=amount,
        memo=memo,
        created_at=datetime.utcnow(),
    )


def resolve(record: PendingTransfer, succeeded: bool, error: Optional[str] = None) -> PendingTransfer:
    """Return the terminal version of ``record``."""

    if record.status is not TransferStatus.PENDING:
        raise TransferAlreadyResolved(
            f"Transfer {record.transfer_id} is already {record.status.value}",
            {"transfer_id": record.transfer_id},
        )
    status = TransferStatus.COMMITTED if succeeded else TransferStatus.ROLLED_BACK
    return replace(
        record,
        status=status,
        error=None if succeeded else (error or "Token transfer failed"),
        resolved_at=datetime.utcnow(),
    )


__all__ = ["CLAIM_MEMO", "WITHDRAW_MEMO", "TransferReceipt", "new_pending", "resolve"]
