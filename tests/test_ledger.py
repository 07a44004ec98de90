"""Tests for the ledger service: configuration, claims, withdrawals and rollbacks."""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest
import requests

from investor_vesting.errors import (
    AlreadyInitialized,
    InsufficientPoolBalance,
    InvalidDepositAmount,
    InvalidGroupConfig,
    InvalidInvestorEntry,
    InvalidScheduleOverlay,
    InvalidWithdrawAmount,
    LedgerInvariantError,
    MissingMinimalDeposit,
    NoAllocation,
    NotInitialized,
    NothingToClaim,
    TransferAlreadyResolved,
    TransferFailed,
    Unauthorized,
    UnknownGroup,
    UnknownTransfer,
)
from investor_vesting.host import TokenServiceHost
from investor_vesting.ledger import VestingLedger
from investor_vesting.models import TransferKind, TransferStatus
from investor_vesting.token_client import TokenServiceClient

from conftest import (
    ALICE,
    BOB,
    GROUPS,
    LEDGER,
    MONTH,
    ONE_TOKEN,
    OWNER,
    TGE,
    TOKEN,
    assert_invariants,
    ctx,
    fund,
    paid,
)

HALFWAY = TGE + 12 * MONTH + 6 * MONTH
FULLY_VESTED = TGE + 24 * MONTH


def allocate(ledger, account, amount, group="seed"):
    ledger.upsert_investors(ctx(OWNER), [{"account_id": account, "group_id": group, "amount": amount}])


def snapshot(ledger, account):
    pool = ledger.get_state().pool
    record = ledger.get_investor(account)
    return (record.claimed, pool.total_claimed, pool.pool_balance, pool.total_deposited, pool.total_withdrawn)


class TestInitialization:

    def test_init_sets_state(self, initialized):
        state = initialized.get_state()
        assert state.owner == OWNER
        assert state.token_service_id == TOKEN
        assert state.ledger_account_id == LEDGER
        assert state.overlay.tge_timestamp == TGE
        assert list(state.groups) == ["seed", "strategic", "private"]
        assert state.pool.pool_balance == 0

    def test_owner_defaults_to_initializer(self, ledger):
        ledger.init(ctx("deployer.test"), TOKEN, TGE, GROUPS)
        assert ledger.get_state().owner == "deployer.test"

    def test_explicit_owner(self, ledger):
        ledger.init(ctx("deployer.test"), TOKEN, TGE, GROUPS, owner=OWNER)
        assert ledger.get_state().owner == OWNER

    def test_init_only_once(self, initialized):
        with pytest.raises(AlreadyInitialized):
            initialized.init(ctx(OWNER), TOKEN, TGE, GROUPS)

    def test_failed_init_leaves_ledger_uninitialized(self, ledger):
        with pytest.raises(InvalidGroupConfig):
            ledger.init(ctx(OWNER), TOKEN, TGE, [])
        with pytest.raises(NotInitialized):
            ledger.get_state()

    def test_init_requires_token_service(self, ledger):
        with pytest.raises(InvalidScheduleOverlay):
            ledger.init(ctx(OWNER), "", TGE, GROUPS)

    def test_init_accepts_date_strings(self, ledger):
        ledger.init(ctx(OWNER), TOKEN, "2024-01-01T00:00:00Z", GROUPS)
        assert ledger.get_state().overlay.tge_timestamp == 1_704_067_200 * 1_000_000_000

    def test_init_with_initial_claim(self, ledger):
        ledger.init(ctx(OWNER), TOKEN, TGE, GROUPS, initial_claim_bps=500, initial_claim_available_at=TGE)
        overlay = ledger.get_state().overlay
        assert overlay.initial_claim_bps == 500
        assert overlay.initial_claim_available_at == TGE

    def test_init_rejects_bps_without_timestamp(self, ledger):
        with pytest.raises(InvalidScheduleOverlay, match="required"):
            ledger.init(ctx(OWNER), TOKEN, TGE, GROUPS, initial_claim_bps=500)

    def test_operations_require_initialization(self, ledger):
        with pytest.raises(NotInitialized):
            ledger.configure_groups(ctx(OWNER), GROUPS)
        with pytest.raises(NotInitialized):
            ledger.upsert_investors(ctx(OWNER), [{"account_id": ALICE, "group_id": "seed", "amount": 1}])
        with pytest.raises(NotInitialized):
            ledger.claim(paid(ALICE))
        with pytest.raises(NotInitialized):
            ledger.on_deposit(ctx(TOKEN), OWNER, 10)


class TestGroupConfiguration:

    def test_owner_replaces_registry(self, initialized):
        initialized.configure_groups(
            ctx(OWNER), [{"id": "team", "cliff_duration": 0, "vesting_duration": MONTH, "initial_unlock_bps": 100}]
        )
        groups = initialized.get_state().groups
        assert list(groups) == ["team"]
        assert groups["team"].initial_unlock_bps == 100

    def test_non_owner_rejected(self, initialized):
        with pytest.raises(Unauthorized):
            initialized.configure_groups(ctx(ALICE), GROUPS)

    def test_invalid_config_leaves_registry_unchanged(self, initialized):
        bad = [
            {"id": "team", "cliff_duration": 0, "vesting_duration": MONTH},
            {"id": "team", "cliff_duration": 0, "vesting_duration": MONTH},
        ]
        with pytest.raises(InvalidGroupConfig):
            initialized.configure_groups(ctx(OWNER), bad)
        assert list(initialized.get_state().groups) == ["seed", "strategic", "private"]

    def test_removed_group_freezes_claimable(self, initialized, host):
        allocate(initialized, ALICE, 12 * ONE_TOKEN)
        host.clock = HALFWAY
        assert initialized.get_claimable(ALICE) == 6 * ONE_TOKEN

        initialized.configure_groups(ctx(OWNER), GROUPS[1:])
        assert initialized.get_investor(ALICE).group_id == "seed"
        assert initialized.get_claimable(ALICE) == 0

        initialized.configure_groups(ctx(OWNER), GROUPS)
        assert initialized.get_claimable(ALICE) == 6 * ONE_TOKEN


class TestInitialClaimConfiguration:

    def test_requires_a_field(self, initialized):
        with pytest.raises(InvalidScheduleOverlay, match="Provide"):
            initialized.configure_initial_claim(ctx(OWNER))

    def test_requires_timestamp_for_positive_bps(self, initialized):
        with pytest.raises(InvalidScheduleOverlay):
            initialized.configure_initial_claim(ctx(OWNER), bps=1_000)

    def test_rejects_out_of_range_bps(self, initialized):
        with pytest.raises(InvalidScheduleOverlay):
            initialized.configure_initial_claim(ctx(OWNER), bps=10_001, available_at=TGE)

    def test_non_owner_rejected(self, initialized):
        with pytest.raises(Unauthorized):
            initialized.configure_initial_claim(ctx(ALICE), bps=0)

    def test_unlocks_before_cliff(self, initialized, host):
        allocate(initialized, ALICE, 10 * ONE_TOKEN)
        initialized.configure_initial_claim(ctx(OWNER), bps=1_000, available_at=TGE + MONTH)
        host.clock = TGE + MONTH
        assert initialized.get_claimable(ALICE) == ONE_TOKEN

    def test_partial_update_keeps_other_field(self, initialized):
        initialized.configure_initial_claim(ctx(OWNER), bps=1_000, available_at=TGE + MONTH)
        overlay = initialized.configure_initial_claim(ctx(OWNER), bps=2_000)
        assert overlay.initial_claim_available_at == TGE + MONTH
        assert overlay.initial_claim_bps == 2_000

    def test_zero_bps_is_a_no_op(self, initialized, host):
        allocate(initialized, ALICE, 12 * ONE_TOKEN + 5)
        times = [TGE, TGE + 12 * MONTH, HALFWAY + 11, FULLY_VESTED]
        before = [initialized.get_claimable(ALICE, at) for at in times]
        initialized.configure_initial_claim(ctx(OWNER), bps=0, available_at=TGE)
        assert [initialized.get_claimable(ALICE, at) for at in times] == before


class TestUpsertInvestors:

    def test_creates_records(self, initialized):
        initialized.upsert_investors(
            ctx(OWNER),
            [
                {"account_id": ALICE, "group_id": "seed", "amount": str(5 * ONE_TOKEN)},
                {"account_id": BOB, "group_id": "strategic", "amount": 20 * ONE_TOKEN},
            ],
        )
        alice = initialized.get_investor(ALICE)
        assert (alice.group_id, alice.total_allocation, alice.claimed) == ("seed", 5 * ONE_TOKEN, 0)
        assert initialized.get_investor(BOB).total_allocation == 20 * ONE_TOKEN

    def test_unknown_account_is_absent(self, initialized):
        assert initialized.get_investor("nobody.test") is None
        assert initialized.get_claimable("nobody.test") == 0

    def test_non_owner_rejected(self, initialized):
        with pytest.raises(Unauthorized):
            initialized.upsert_investors(ctx(ALICE), [{"account_id": ALICE, "group_id": "seed", "amount": 1}])

    def test_batch_is_all_or_nothing(self, initialized):
        allocate(initialized, ALICE, 10)
        batch = [
            {"account_id": ALICE, "group_id": "seed", "amount": 50},
            {"account_id": BOB, "group_id": "seed", "amount": 5},
            {"account_id": "carol.test", "group_id": "missing", "amount": 5},
        ]
        with pytest.raises(UnknownGroup):
            initialized.upsert_investors(ctx(OWNER), batch)
        assert initialized.get_investor(ALICE).total_allocation == 10
        assert initialized.get_investor(BOB) is None

    def test_raising_allocation_keeps_claimed(self, initialized, host):
        allocate(initialized, BOB, 20 * ONE_TOKEN, group="strategic")
        fund(initialized, 30 * ONE_TOKEN)
        host.clock = TGE + 12 * MONTH + 18 * MONTH
        host.auto_complete = True
        initialized.claim(paid(BOB))
        assert initialized.get_investor(BOB).claimed == 20 * ONE_TOKEN

        allocate(initialized, BOB, 25 * ONE_TOKEN, group="strategic")
        record = initialized.get_investor(BOB)
        assert record.claimed == 20 * ONE_TOKEN
        assert record.total_allocation == 25 * ONE_TOKEN
        assert initialized.get_claimable(BOB) == 5 * ONE_TOKEN
        assert initialized.get_state().pool.pool_balance == 10 * ONE_TOKEN

    def test_lowering_below_claimed_is_rejected(self, initialized, host):
        allocate(initialized, ALICE, 12 * ONE_TOKEN)
        fund(initialized, 12 * ONE_TOKEN)
        host.clock = HALFWAY
        host.auto_complete = True
        initialized.claim(paid(ALICE))
        before = snapshot(initialized, ALICE)

        with pytest.raises(InvalidInvestorEntry, match="cannot be less than claimed"):
            allocate(initialized, ALICE, 6 * ONE_TOKEN - 1)
        assert snapshot(initialized, ALICE) == before
        assert initialized.get_investor(ALICE).total_allocation == 12 * ONE_TOKEN


class TestDeposits:

    def test_deposit_credits_pool(self, initialized):
        assert initialized.on_deposit(ctx(TOKEN), OWNER, str(5 * ONE_TOKEN), "seed funding") == 0
        pool = initialized.get_state().pool
        assert pool.total_deposited == 5 * ONE_TOKEN
        assert pool.pool_balance == 5 * ONE_TOKEN

    def test_only_token_service(self, initialized):
        with pytest.raises(Unauthorized):
            initialized.on_deposit(ctx(OWNER), OWNER, 5)
        assert initialized.get_state().pool.total_deposited == 0

    @pytest.mark.parametrize("amount", [0, -1, None, "abc"])
    def test_rejects_invalid_amount(self, initialized, amount):
        with pytest.raises(InvalidDepositAmount):
            initialized.on_deposit(ctx(TOKEN), OWNER, amount)


class TestClaim:

    def test_nothing_to_claim_before_cliff(self, initialized):
        allocate(initialized, ALICE, 5 * ONE_TOKEN)
        fund(initialized, 5 * ONE_TOKEN)
        with pytest.raises(NothingToClaim):
            initialized.claim(paid(OWNER), ALICE)
        assert initialized.get_state().pool.total_deposited == 5 * ONE_TOKEN

    def test_requires_minimal_deposit(self, initialized, host):
        allocate(initialized, ALICE, 12 * ONE_TOKEN)
        fund(initialized, 12 * ONE_TOKEN)
        host.clock = HALFWAY
        with pytest.raises(MissingMinimalDeposit):
            initialized.claim(ctx(ALICE))
        with pytest.raises(MissingMinimalDeposit):
            initialized.claim(ctx(ALICE, deposit=2))

    def test_no_allocation(self, initialized):
        with pytest.raises(NoAllocation):
            initialized.claim(paid("stranger.test"))

    def test_only_owner_claims_for_others(self, initialized, host):
        allocate(initialized, ALICE, 12 * ONE_TOKEN)
        fund(initialized, 12 * ONE_TOKEN)
        host.clock = HALFWAY
        with pytest.raises(Unauthorized):
            initialized.claim(paid(BOB), ALICE)
        receipt = initialized.claim(paid(OWNER), ALICE)
        assert receipt.account_id == ALICE
        assert host.transfers[receipt.transfer_id].receiver_id == ALICE

    def test_halfway_claim_commits(self, initialized, host):
        allocation = 12 * ONE_TOKEN
        allocate(initialized, ALICE, allocation)
        fund(initialized, allocation * 2)
        host.clock = HALFWAY

        receipt = initialized.claim(paid(ALICE))
        assert receipt.kind is TransferKind.CLAIM
        assert abs(receipt.amount - allocation // 2) <= allocation // 100

        # Pending: the ledger is already debited before the transfer resolves.
        assert initialized.get_investor(ALICE).claimed == receipt.amount
        pool = initialized.get_state().pool
        assert pool.total_claimed == receipt.amount
        assert pool.pool_balance == allocation * 2 - receipt.amount
        assert [t.transfer_id for t in initialized.pending_transfers()] == [receipt.transfer_id]
        assert not receipt.resolution.done()

        host.complete(receipt.transfer_id)
        assert receipt.resolution.result(timeout=1) is TransferStatus.COMMITTED
        assert initialized.get_transfer(receipt.transfer_id).status is TransferStatus.COMMITTED
        assert initialized.pending_transfers() == []
        assert host.balances[ALICE] == receipt.amount
        assert initialized.get_claimable(ALICE) == 0
        assert_invariants(initialized, ALICE)

    def test_full_unlock_claims_everything(self, initialized, host):
        allocation = 12 * ONE_TOKEN + 3
        allocate(initialized, ALICE, allocation)
        fund(initialized, allocation)
        host.clock = FULLY_VESTED
        host.auto_complete = True
        receipt = initialized.claim(paid(ALICE))
        assert receipt.amount == allocation
        assert initialized.get_state().pool.pool_balance == 0
        with pytest.raises(NothingToClaim):
            initialized.claim(paid(ALICE))

    def test_insufficient_pool_balance(self, initialized, host):
        allocate(initialized, ALICE, 12 * ONE_TOKEN)
        fund(initialized, ONE_TOKEN)
        host.clock = HALFWAY
        with pytest.raises(InsufficientPoolBalance):
            initialized.claim(paid(ALICE))
        assert initialized.get_investor(ALICE).claimed == 0
        assert initialized.pending_transfers() == []

    def test_in_flight_funds_cannot_be_claimed_twice(self, initialized, host):
        allocate(initialized, ALICE, 12 * ONE_TOKEN)
        allocate(initialized, BOB, 12 * ONE_TOKEN)
        fund(initialized, 10 * ONE_TOKEN)
        host.clock = HALFWAY

        first = initialized.claim(paid(ALICE))
        with pytest.raises(InsufficientPoolBalance):
            initialized.claim(paid(BOB))
        with pytest.raises(NothingToClaim):
            initialized.claim(paid(ALICE))

        host.complete(first.transfer_id, succeeded=False)
        second = initialized.claim(paid(BOB))
        assert second.amount == 6 * ONE_TOKEN
        assert_invariants(initialized, ALICE, BOB)


class TestClaimRollback:

    def test_failed_transfer_restores_exact_state(self, initialized, host, caplog):
        allocate(initialized, ALICE, 12 * ONE_TOKEN + 7)
        fund(initialized, 30 * ONE_TOKEN + 1)
        host.clock = HALFWAY + 12_345
        before = snapshot(initialized, ALICE)

        receipt = initialized.claim(paid(ALICE))
        assert snapshot(initialized, ALICE) != before

        with caplog.at_level(logging.ERROR, logger="investor_vesting.ledger"):
            host.complete(receipt.transfer_id, succeeded=False)

        assert snapshot(initialized, ALICE) == before
        with pytest.raises(TransferFailed):
            receipt.resolution.result(timeout=1)
        record = initialized.get_transfer(receipt.transfer_id)
        assert record.status is TransferStatus.ROLLED_BACK
        assert "receiver is not registered" in record.error
        assert any("reverted claim" in message for message in caplog.messages)
        assert_invariants(initialized, ALICE)

    def test_rollback_after_interleaved_operations(self, initialized, host):
        allocate(initialized, ALICE, 12 * ONE_TOKEN)
        fund(initialized, 12 * ONE_TOKEN)
        host.clock = HALFWAY
        receipt = initialized.claim(paid(ALICE))

        # Other operations run while the transfer is in flight.
        fund(initialized, 3 * ONE_TOKEN)
        allocate(initialized, ALICE, 15 * ONE_TOKEN)
        allocate(initialized, BOB, ONE_TOKEN)

        host.complete(receipt.transfer_id, succeeded=False)
        pool = initialized.get_state().pool
        assert initialized.get_investor(ALICE).claimed == 0
        assert initialized.get_investor(ALICE).total_allocation == 15 * ONE_TOKEN
        assert pool.total_claimed == 0
        assert pool.pool_balance == 15 * ONE_TOKEN
        assert_invariants(initialized, ALICE, BOB)

    def test_transfer_that_cannot_start_is_rolled_back(self, initialized, host):
        allocate(initialized, ALICE, 12 * ONE_TOKEN)
        fund(initialized, 12 * ONE_TOKEN)
        host.clock = HALFWAY
        host.fail_to_start = True
        before = snapshot(initialized, ALICE)

        receipt = initialized.claim(paid(ALICE))
        with pytest.raises(TransferFailed):
            receipt.resolution.result(timeout=1)
        assert snapshot(initialized, ALICE) == before

    def test_continuation_is_self_only(self, initialized, host):
        allocate(initialized, ALICE, 12 * ONE_TOKEN)
        fund(initialized, 12 * ONE_TOKEN)
        host.clock = HALFWAY
        receipt = initialized.claim(paid(ALICE))

        for caller in (ALICE, OWNER, TOKEN):
            with pytest.raises(Unauthorized):
                initialized.on_claim_complete(ctx(caller), receipt.transfer_id, False)
        assert initialized.get_transfer(receipt.transfer_id).status is TransferStatus.PENDING
        assert initialized.get_investor(ALICE).claimed == receipt.amount

    def test_resolution_applies_once(self, initialized, host):
        allocate(initialized, ALICE, 12 * ONE_TOKEN)
        fund(initialized, 12 * ONE_TOKEN)
        host.clock = HALFWAY
        receipt = initialized.claim(paid(ALICE))
        host.complete(receipt.transfer_id, succeeded=False)
        before = snapshot(initialized, ALICE)

        with pytest.raises(TransferAlreadyResolved):
            initialized.on_claim_complete(ctx(LEDGER), receipt.transfer_id, False)
        assert snapshot(initialized, ALICE) == before

    def test_unknown_transfer(self, initialized):
        with pytest.raises(UnknownTransfer):
            initialized.on_claim_complete(ctx(LEDGER), "missing", True)


class TestWithdraw:

    def test_withdraw_surplus(self, initialized, host):
        fund(initialized, 30 * ONE_TOKEN)
        receipt = initialized.withdraw_unallocated(paid(OWNER), str(10 * ONE_TOKEN))
        assert receipt.kind is TransferKind.WITHDRAW
        assert receipt.account_id == OWNER
        assert host.transfers[receipt.transfer_id].memo == "vesting-withdrawal"
        pool = initialized.get_state().pool
        assert pool.pool_balance == 20 * ONE_TOKEN
        assert pool.total_withdrawn == 10 * ONE_TOKEN

        host.complete(receipt.transfer_id)
        assert receipt.resolution.result(timeout=1) is TransferStatus.COMMITTED
        assert host.balances[OWNER] == 10 * ONE_TOKEN
        assert_invariants(initialized)

    def test_withdraw_to_recipient_with_memo(self, initialized, host):
        fund(initialized, 5)
        receipt = initialized.withdraw_unallocated(paid(OWNER), 5, recipient="treasury.test", memo="unused")
        transfer = host.transfers[receipt.transfer_id]
        assert (transfer.receiver_id, transfer.amount, transfer.memo) == ("treasury.test", 5, "unused")
        assert initialized.get_state().pool.pool_balance == 0

    def test_withdraw_exceeding_pool_is_rejected(self, initialized):
        fund(initialized, 10)
        before = initialized.get_state().pool
        with pytest.raises(InvalidWithdrawAmount, match="exceeds"):
            initialized.withdraw_unallocated(paid(OWNER), 11)
        assert initialized.get_state().pool == before

    @pytest.mark.parametrize("amount", [0, -5, None])
    def test_withdraw_requires_positive_amount(self, initialized, amount):
        fund(initialized, 10)
        with pytest.raises(InvalidWithdrawAmount):
            initialized.withdraw_unallocated(paid(OWNER), amount)

    def test_withdraw_guards(self, initialized):
        fund(initialized, 10)
        with pytest.raises(Unauthorized):
            initialized.withdraw_unallocated(paid(ALICE), 5)
        with pytest.raises(MissingMinimalDeposit):
            initialized.withdraw_unallocated(ctx(OWNER), 5)

    def test_failed_withdrawal_is_compensated(self, initialized, host):
        fund(initialized, 10)
        before = initialized.get_state().pool
        receipt = initialized.withdraw_unallocated(paid(OWNER), 7)
        host.complete(receipt.transfer_id, succeeded=False)
        with pytest.raises(TransferFailed):
            receipt.resolution.result(timeout=1)
        assert initialized.get_state().pool == before
        assert initialized.get_transfer(receipt.transfer_id).status is TransferStatus.ROLLED_BACK

    def test_withdraw_continuation_rejects_claim_ids(self, initialized, host):
        allocate(initialized, ALICE, 12 * ONE_TOKEN)
        fund(initialized, 12 * ONE_TOKEN)
        host.clock = HALFWAY
        receipt = initialized.claim(paid(ALICE))
        with pytest.raises(UnknownTransfer):
            initialized.on_withdraw_complete(ctx(LEDGER), receipt.transfer_id, False)


class TestReconciliation:

    def test_restart_resolves_pending_transfers(self, engine, initialized, host):
        allocate(initialized, ALICE, 12 * ONE_TOKEN)
        allocate(initialized, BOB, 12 * ONE_TOKEN)
        fund(initialized, 40 * ONE_TOKEN)
        host.clock = HALFWAY
        before = snapshot(initialized, ALICE)
        failed = initialized.claim(paid(ALICE))
        succeeded = initialized.claim(paid(BOB))
        unknown = initialized.withdraw_unallocated(paid(OWNER), ONE_TOKEN)

        restarted = VestingLedger(engine, host)
        host.outcomes[failed.transfer_id] = False
        host.outcomes[succeeded.transfer_id] = True

        counts = restarted.reconcile_pending()
        assert counts == {"committed": 1, "rolled_back": 1, "pending": 1}
        assert initialized.get_investor(ALICE).claimed == before[0]
        assert initialized.get_investor(BOB).claimed == succeeded.amount
        assert [t.transfer_id for t in restarted.pending_transfers()] == [unknown.transfer_id]
        assert_invariants(restarted, ALICE, BOB)

    def test_in_flight_transfers_are_skipped(self, initialized, host):
        fund(initialized, 10)
        receipt = initialized.withdraw_unallocated(paid(OWNER), 4)
        host.outcomes[receipt.transfer_id] = False
        assert initialized.reconcile_pending() == {"committed": 0, "rolled_back": 0, "pending": 1}
        assert initialized.get_transfer(receipt.transfer_id).status is TransferStatus.PENDING

    def test_one_failing_record_does_not_stop_the_pass(self, engine, initialized, host, monkeypatch):
        allocate(initialized, ALICE, 12 * ONE_TOKEN)
        fund(initialized, 20 * ONE_TOKEN)
        host.clock = HALFWAY
        claim = initialized.claim(paid(ALICE))
        withdrawal = initialized.withdraw_unallocated(paid(OWNER), ONE_TOKEN)
        host.outcomes[claim.transfer_id] = False
        host.outcomes[withdrawal.transfer_id] = True

        restarted = VestingLedger(engine, host)

        def broken(*args, **kwargs):
            raise LedgerInvariantError("investor record missing")

        monkeypatch.setattr(restarted, "on_claim_complete", broken)
        assert restarted.reconcile_pending() == {"committed": 1, "rolled_back": 0, "pending": 1}
        assert restarted.get_transfer(withdrawal.transfer_id).status is TransferStatus.COMMITTED
        assert restarted.get_transfer(claim.transfer_id).status is TransferStatus.PENDING


class TestLostTransferOutcome:
    """The token service may have moved the funds; nothing is reverted until it says otherwise."""

    def test_lost_answer_keeps_claim_pending(self, initialized, host):
        allocate(initialized, ALICE, 12 * ONE_TOKEN)
        fund(initialized, 12 * ONE_TOKEN)
        host.clock = HALFWAY
        receipt = initialized.claim(paid(ALICE))

        host.lose_answer(receipt.transfer_id)
        assert initialized.get_transfer(receipt.transfer_id).status is TransferStatus.PENDING
        assert initialized.get_investor(ALICE).claimed == receipt.amount
        assert not receipt.resolution.done()
        with pytest.raises(NothingToClaim):
            initialized.claim(paid(ALICE))

        host.outcomes[receipt.transfer_id] = True
        assert initialized.reconcile_pending() == {"committed": 1, "rolled_back": 0, "pending": 0}
        assert receipt.resolution.result(timeout=1) is TransferStatus.COMMITTED
        assert_invariants(initialized, ALICE)

    def test_reported_failure_after_lost_answer_reverts(self, initialized, host):
        fund(initialized, 10)
        before = initialized.get_state().pool
        receipt = initialized.withdraw_unallocated(paid(OWNER), 7)
        host.lose_answer(receipt.transfer_id)
        assert initialized.reconcile_pending()["pending"] == 1

        host.outcomes[receipt.transfer_id] = False
        assert initialized.reconcile_pending()["rolled_back"] == 1
        with pytest.raises(TransferFailed):
            receipt.resolution.result(timeout=1)
        assert initialized.get_state().pool == before

    def test_token_service_timeout_keeps_claim_pending(self, engine, monkeypatch):
        session = MagicMock(spec=requests.Session)
        session.headers = {}
        session.post.side_effect = requests.ReadTimeout("read timed out")
        status_response = MagicMock()
        status_response.status_code = 200
        status_response.json.return_value = {"status": "succeeded"}
        session.get.return_value = status_response

        host = TokenServiceHost(TokenServiceClient("http://token.local", LEDGER, session=session), max_workers=1)
        monkeypatch.setattr(host, "now", lambda: HALFWAY)
        ledger = VestingLedger(engine, host)
        try:
            ledger.init(ctx(OWNER), TOKEN, TGE, GROUPS)
            allocate(ledger, ALICE, 12 * ONE_TOKEN)
            fund(ledger, 12 * ONE_TOKEN)
            receipt = ledger.claim(paid(ALICE))
        finally:
            # Waits for the transfer worker, and so for its done-callback.
            host.shutdown()

        assert ledger.get_transfer(receipt.transfer_id).status is TransferStatus.PENDING
        assert ledger.get_investor(ALICE).claimed == 6 * ONE_TOKEN
        assert ledger.get_state().pool.pool_balance == 6 * ONE_TOKEN
        assert not receipt.resolution.done()

        assert ledger.reconcile_pending()["committed"] == 1
        assert session.get.call_args.args[0] == f"http://token.local/transfers/{receipt.transfer_id}"
        assert receipt.resolution.result(timeout=1) is TransferStatus.COMMITTED
        assert ledger.get_investor(ALICE).claimed == 6 * ONE_TOKEN


class TestViews:

    def test_reads_wait_for_running_operation(self, initialized):
        holding = threading.Event()
        release = threading.Event()

        def operation():
            with initialized._lock:
                holding.set()
                release.wait(5)

        worker = threading.Thread(target=operation)
        worker.start()
        assert holding.wait(5)
        with ThreadPoolExecutor(max_workers=1) as pool:
            view = pool.submit(initialized.get_state)
            time.sleep(0.05)
            assert not view.done()
            release.set()
            assert view.result(timeout=5).owner == OWNER
        worker.join(5)
