"""Wire schemas for the HTTP surface.

Amounts, durations and timestamps are accepted as integers or decimal strings
and always emitted as decimal strings. Range checks are left to the ledger so
every rejection carries a ledger error kind.
"""
from __future__ import annotations

from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field

from .models import GroupConfig, InvestorRecord, LedgerState, PendingTransfer

WireInt = Union[int, str]


class GroupIn(BaseModel):
    id: str
    cliff_duration: WireInt
    vesting_duration: WireInt
    initial_unlock_bps: Optional[WireInt] = None


class InitRequest(BaseModel):
    owner: Optional[str] = None
    token_service_id: str
    tge_timestamp: WireInt
    groups: List[GroupIn]
    initial_claim_bps: Optional[WireInt] = None
    initial_claim_available_at: Optional[WireInt] = None


class GroupsRequest(BaseModel):
    groups: List[GroupIn]


class InitialClaimRequest(BaseModel):
    initial_claim_bps: Optional[WireInt] = None
    initial_claim_available_at: Optional[WireInt] = None


class InvestorIn(BaseModel):
    account_id: str
    group_id: str
    amount: WireInt


class InvestorsRequest(BaseModel):
    investors: List[InvestorIn]


class ClaimRequest(BaseModel):
    account_id: Optional[str] = None


class WithdrawRequest(BaseModel):
    amount: WireInt
    recipient: Optional[str] = None
    memo: Optional[str] = None


class DepositNotification(BaseModel):
    sender_id: str
    amount: WireInt
    msg: str = ""


class GroupOut(BaseModel):
    cliff_duration: str
    vesting_duration: str
    initial_unlock_bps: int

    @classmethod
    def from_model(cls, group: GroupConfig) -> "GroupOut":
        return cls(
            cliff_duration=str(group.cliff_duration),
            vesting_duration=str(group.vesting_duration),
            initial_unlock_bps=group.initial_unlock_bps,
        )


class StateOut(BaseModel):
    owner: str
    token_service_id: str
    ledger_account_id: str
    tge_timestamp: str
    initial_claim_bps: int
    initial_claim_available_at: Optional[str]
    total_deposited: str
    total_claimed: str
    total_withdrawn: str
    pool_balance: str
    groups: Dict[str, GroupOut] = Field(default_factory=dict)

    @classmethod
    def from_model(cls, state: LedgerState) -> "StateOut":
        available_at = state.overlay.initial_claim_available_at
        return cls(
            owner=state.owner,
            token_service_id=state.token_service_id,
            ledger_account_id=state.ledger_account_id,
            tge_timestamp=str(state.overlay.tge_timestamp),
            initial_claim_bps=state.overlay.initial_claim_bps,
            initial_claim_available_at=None if available_at is None else str(available_at),
            total_deposited=str(state.pool.total_deposited),
            total_claimed=str(state.pool.total_claimed),
            total_withdrawn=str(state.pool.total_withdrawn),
            pool_balance=str(state.pool.pool_balance),
            groups={group_id: GroupOut.from_model(group) for group_id, group in state.groups.items()},
        )


class InvestorOut(BaseModel):
    group_id: str
    total_allocation: str
    claimed: str

    @classmethod
    def from_model(cls, record: InvestorRecord) -> "InvestorOut":
        return cls(
            group_id=record.group_id,
            total_allocation=str(record.total_allocation),
            claimed=str(record.claimed),
        )


class TransferOut(BaseModel):
    transfer_id: str
    kind: str
    account_id: str
    amount: str
    memo: str
    status: str
    error: Optional[str] = None

    @classmethod
    def from_model(cls, record: PendingTransfer) -> "TransferOut":
        return cls(
            transfer_id=record.transfer_id,
            kind=record.kind.value,
            account_id=record.account_id,
            amount=str(record.amount),
            memo=record.memo,
            status=record.status.value,
            error=record.error,
        )


__all__ = [
    "GroupIn",
    "InitRequest",
    "GroupsRequest",
    "InitialClaimRequest",
    "InvestorIn",
    "InvestorsRequest",
    "ClaimRequest",
    "WithdrawRequest",
    "DepositNotification",
    "GroupOut",
    "StateOut",
    "InvestorOut",
    "TransferOut",
]
