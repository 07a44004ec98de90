"""Domain models for the vesting ledger.

Token quantities, durations and timestamps are plain ``int`` values. Durations
and timestamps count nanoseconds.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Mapping, Optional

from .errors import LedgerInvariantError


@dataclass(frozen=True, slots=True)
class GroupConfig:
    """Vesting schedule shared by every investor of a group."""

    group_id: str
    cliff_duration: int
    vesting_duration: int
    initial_unlock_bps: int = 0  # unlocked instantly once the cliff passes


@dataclass(slots=True)
class InvestorRecord:
    """Allocation owed to a single account."""

    account_id: str
    group_id: str
    total_allocation: int
    claimed: int = 0

    @property
    def remaining(self) -> int:
        return self.total_allocation - self.claimed


@dataclass(frozen=True, slots=True)
class InvestorEntry:
    """One line of an ``upsert_investors`` batch."""

    account_id: str
    group_id: str
    amount: int


@dataclass(frozen=True, slots=True)
class ScheduleOverlay:
    """Global schedule: the TGE instant and the initial-claim unlock available to everyone."""

    tge_timestamp: int
    initial_claim_bps: int = 0
    initial_claim_available_at: Optional[int] = None


@dataclass(slots=True)
class PoolAccount:
    """Aggregate counters of the token pool.

    Conservation identity:
    pool_balance = total_deposited - total_claimed - total_withdrawn
    """

    total_deposited: int = 0
    total_claimed: int = 0
    total_withdrawn: int = 0
    pool_balance: int = 0

    def check(self) -> None:
        """Raise :class:`LedgerInvariantError` if the counters do not reconcile."""
        buckets = [
            ("total_deposited", self.total_deposited),
            ("total_claimed", self.total_claimed),
            ("total_withdrawn", self.total_withdrawn),
            ("pool_balance", self.pool_balance),
        ]
        for name, value in buckets:
            if value < 0:
                raise LedgerInvariantError(f"Negative pool counter {name}={value}")
        expected = self.total_deposited - self.total_claimed - self.total_withdrawn
        if self.pool_balance != expected:
            raise LedgerInvariantError(
                f"Pool balance {self.pool_balance} does not reconcile with "
                f"deposited={self.total_deposited}, claimed={self.total_claimed}, "
                f"withdrawn={self.total_withdrawn}"
            )

    def deposit(self, amount: int) -> None:
        self.pool_balance += amount
        self.total_deposited += amount
        self.check()

    def reserve_claim(self, amount: int) -> None:
        self.total_claimed += amount
        self.pool_balance -= amount
        self.check()

    def release_claim(self, amount: int) -> None:
        self.total_claimed -= amount
        self.pool_balance += amount
        self.check()

    def reserve_withdrawal(self, amount: int) -> None:
        self.pool_balance -= amount
        self.total_withdrawn += amount
        self.check()

    def release_withdrawal(self, amount: int) -> None:
        self.pool_balance += amount
        self.total_withdrawn -= amount
        self.check()


class TransferKind(str, Enum):
    CLAIM = "claim"
    WITHDRAW = "withdraw"


class TransferStatus(str, Enum):
    """Lifecycle of an outbound transfer. Idle is the absence of a record."""

    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass(slots=True)
class PendingTransfer:
    """Durable record of an optimistic mutation awaiting its transfer outcome."""

    transfer_id: str
    kind: TransferKind
    account_id: str
    amount: int
    memo: str
    status: TransferStatus = TransferStatus.PENDING
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class LedgerState:
    """Read-only snapshot returned by ``get_state``."""

    owner: str
    token_service_id: str
    ledger_account_id: str
    overlay: ScheduleOverlay
    pool: PoolAccount
    groups: Mapping[str, GroupConfig] = field(default_factory=dict)


__all__ = [
    "GroupConfig",
    "InvestorRecord",
    "InvestorEntry",
    "ScheduleOverlay",
    "PoolAccount",
    "TransferKind",
    "TransferStatus",
    "PendingTransfer",
    "LedgerState",
]
