"""Shared fixtures: in-memory database and a deterministic fake host."""
from __future__ import annotations

from collections import defaultdict
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Optional

import pytest

from investor_vesting.access import ONE_YOCTO, CallContext
from investor_vesting.db import create_db_engine, ensure_schema
from investor_vesting.errors import TransferOutcomeUnknown
from investor_vesting.host import Host
from investor_vesting.ledger import VestingLedger

OWNER = "owner.test"
TOKEN = "token.test"
LEDGER = "vesting.test"
ALICE = "alice.test"
BOB = "bob.test"

ONE_TOKEN = 10**24
MONTH = 30 * 24 * 60 * 60 * 1_000_000_000
TGE = 1_700_000_000 * 1_000_000_000

GROUPS = [
    {"id": "seed", "cliff_duration": 12 * MONTH, "vesting_duration": 12 * MONTH},
    {"id": "strategic", "cliff_duration": 12 * MONTH, "vesting_duration": 18 * MONTH},
    {"id": "private", "cliff_duration": 12 * MONTH, "vesting_duration": 12 * MONTH},
]


@dataclass
class FakeTransfer:
    receiver_id: str
    amount: int
    memo: str
    future: Future


class FakeHost(Host):
    """Host whose transfers stay pending until a test completes or fails them."""

    def __init__(self, account_id: str = LEDGER, now: int = TGE) -> None:
        super().__init__(account_id)
        self.clock = now
        self.transfers: dict[str, FakeTransfer] = {}
        self.outcomes: dict[str, Optional[bool]] = {}
        self.balances: defaultdict[str, int] = defaultdict(int)
        self.auto_complete: Optional[bool] = None
        self.fail_to_start = False

    def now(self) -> int:
        return self.clock

    def transfer(self, receiver_id: str, amount: int, memo: str, transfer_id: str) -> Future:
        if self.fail_to_start:
            raise ConnectionError("token service unreachable")
        future: Future = Future()
        self.transfers[transfer_id] = FakeTransfer(receiver_id, amount, memo, future)
        if self.auto_complete is not None:
            self.complete(transfer_id, self.auto_complete)
        return future

    def complete(self, transfer_id: str, succeeded: bool = True) -> None:
        transfer = self.transfers[transfer_id]
        if succeeded:
            self.balances[transfer.receiver_id] += transfer.amount
            transfer.future.set_result(None)
        else:
            transfer.future.set_exception(RuntimeError("receiver is not registered"))

    def lose_answer(self, transfer_id: str) -> None:
        """Fail the call without telling whether the tokens moved."""
        self.transfers[transfer_id].future.set_exception(TransferOutcomeUnknown("read timed out"))

    def transfer_outcome(self, transfer_id: str) -> Optional[bool]:
        return self.outcomes.get(transfer_id)


def ctx(caller_id: str, deposit: int = 0) -> CallContext:
    return CallContext(caller_id=caller_id, attached_deposit=deposit)


def paid(caller_id: str) -> CallContext:
    return CallContext(caller_id=caller_id, attached_deposit=ONE_YOCTO)


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite:///:memory:")
    ensure_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def ledger(engine, host) -> VestingLedger:
    return VestingLedger(engine, host)


@pytest.fixture
def initialized(ledger) -> VestingLedger:
    ledger.init(ctx(OWNER), token_service_id=TOKEN, tge_timestamp=TGE, groups=GROUPS)
    return ledger


def fund(ledger: VestingLedger, amount: int) -> None:
    ledger.on_deposit(ctx(TOKEN), OWNER, amount, "seed funding")


def assert_invariants(ledger: VestingLedger, *accounts: str) -> None:
    pool = ledger.get_state().pool
    assert pool.pool_balance == pool.total_deposited - pool.total_claimed - pool.total_withdrawn
    for account in accounts:
        record = ledger.get_investor(account)
        if record is not None:
            assert 0 <= record.claimed <= record.total_allocation
