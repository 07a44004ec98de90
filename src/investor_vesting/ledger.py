"""Vesting ledger service.

Owns the group registry, the investor ledger and the pool counters, and is
the only component that moves funds out of the pool. Outbound transfers are a
two-step saga: the ledger commits an optimistic mutation together with a
durable pending record, asks the host to transfer, and later either confirms
the record or reverses the mutation by exactly the recorded amount.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from functools import partial
from typing import Any, Callable, Iterable, Mapping, Optional

from sqlalchemy.engine import Connection, Engine

from . import db
from .access import (
    CallContext,
    require_minimal_deposit,
    require_owner,
    require_self,
    require_token_service,
)
from .errors import (
    AlreadyInitialized,
    InsufficientPoolBalance,
    InvalidDepositAmount,
    InvalidInvestorEntry,
    InvalidScheduleOverlay,
    InvalidWithdrawAmount,
    LedgerInvariantError,
    NoAllocation,
    NotInitialized,
    NothingToClaim,
    TransferAlreadyResolved,
    TransferFailed,
    TransferOutcomeUnknown,
    Unauthorized,
    UnknownTransfer,
)
from .groups import build_registry
from .host import Host
from .investors import plan_upsert
from .models import (
    GroupConfig,
    InvestorEntry,
    InvestorRecord,
    LedgerState,
    PendingTransfer,
    ScheduleOverlay,
    TransferKind,
    TransferStatus,
)
from .protocol import CLAIM_MEMO, WITHDRAW_MEMO, TransferReceipt, new_pending, resolve
from .utils import parse_int, parse_timestamp
from .vesting import BPS_DENOMINATOR, claimable_amount

LOGGER = logging.getLogger(__name__)

Continuation = Callable[[CallContext, str, bool, Optional[str]], TransferStatus]


def build_overlay(
    tge_timestamp: int,
    initial_claim_bps: Optional[int],
    initial_claim_available_at: Optional[int],
) -> ScheduleOverlay:
    """Validate and assemble the global schedule overlay."""

    bps = initial_claim_bps or 0
    if not 0 <= bps <= BPS_DENOMINATOR:
        raise InvalidScheduleOverlay(
            f"initial_claim_bps must be within [0, {BPS_DENOMINATOR}]", {"initial_claim_bps": bps}
        )
    if initial_claim_available_at is not None and initial_claim_available_at < 0:
        raise InvalidScheduleOverlay("initial_claim_available_at must be non-negative")
    if bps > 0 and initial_claim_available_at is None:
        raise InvalidScheduleOverlay(
            "initial_claim_available_at is required when initial_claim_bps is positive"
        )
    return ScheduleOverlay(
        tge_timestamp=tge_timestamp,
        initial_claim_bps=bps,
        initial_claim_available_at=initial_claim_available_at,
    )


def _amount(value: Any, error_cls: type, label: str) -> int:
    if value is None or value == "":
        raise error_cls(f"{label} is required")
    try:
        return parse_int(value)
    except ValueError as exc:
        raise error_cls(f"Invalid {label.lower()}: {value!r}") from exc


class VestingLedger:
    """Ledger operations, each executed atomically against the database.

    Operations and reads are serialised in-process with a re-entrant lock and,
    across processes, by locking the state row inside each transaction. Reads
    share the lock because an in-memory SQLite engine hands every thread the
    same connection.
    """

    def __init__(self, engine: Engine, host: Host) -> None:
        self.engine = engine
        self.host = host
        self._lock = threading.RLock()
        self._in_flight: set[str] = set()
        self._unresolved: dict[str, "Future[TransferStatus]"] = {}

    # ==================== helpers ====================

    def _state(self, conn: Connection, *, for_update: bool = True) -> Mapping[str, Any]:
        row = db.load_state_row(conn, for_update=for_update)
        if row is None:
            raise NotInitialized("Ledger is not initialized")
        return row

    def _self_context(self) -> CallContext:
        return CallContext(caller_id=self.host.account_id)

    # ==================== administration ====================

    def init(
        self,
        ctx: CallContext,
        token_service_id: str,
        tge_timestamp: Any,
        groups: Iterable[Mapping[str, Any] | GroupConfig],
        owner: Optional[str] = None,
        initial_claim_bps: Any = None,
        initial_claim_available_at: Any = None,
    ) -> None:
        """Initialise the ledger once: owner, token service, schedule overlay and groups."""

        with self._lock, db.session(self.engine) as conn:
            if db.load_state_row(conn, for_update=True) is not None:
                raise AlreadyInitialized("Ledger already initialized")
            if not token_service_id:
                raise InvalidScheduleOverlay("token_service_id is required")
            try:
                tge = parse_timestamp(tge_timestamp)
                bps = parse_int(initial_claim_bps)
                available_at = parse_timestamp(initial_claim_available_at)
            except (ValueError, OverflowError) as exc:
                raise InvalidScheduleOverlay(str(exc)) from exc
            if tge is None:
                raise InvalidScheduleOverlay("tge_timestamp is required")
            overlay = build_overlay(tge, bps, available_at)
            registry = build_registry(groups)

            resolved_owner = owner or ctx.caller_id
            db.insert_state(
                conn,
                owner=resolved_owner,
                token_service_id=token_service_id,
                ledger_account_id=self.host.account_id,
                overlay=overlay,
            )
            db.replace_groups(conn, registry)
        LOGGER.info(
            "Initialized ledger for owner %s with token service %s and %d groups",
            resolved_owner,
            token_service_id,
            len(registry),
        )

    def configure_groups(
        self, ctx: CallContext, groups: Iterable[Mapping[str, Any] | GroupConfig]
    ) -> dict[str, GroupConfig]:
        """Replace the whole group registry. Investor records are left untouched."""

        with self._lock, db.session(self.engine) as conn:
            row = self._state(conn)
            require_owner(ctx, row["owner"])
            registry = build_registry(groups)
            db.replace_groups(conn, registry)
        return registry

    def configure_initial_claim(
        self, ctx: CallContext, bps: Any = None, available_at: Any = None
    ) -> ScheduleOverlay:
        """Adjust the global initial-claim overlay; unspecified fields keep their value."""

        with self._lock, db.session(self.engine) as conn:
            row = self._state(conn)
            require_owner(ctx, row["owner"])
            if bps is None and available_at is None:
                raise InvalidScheduleOverlay(
                    "Provide initial_claim_bps or initial_claim_available_at"
                )
            try:
                new_bps = parse_int(bps)
                new_available_at = parse_timestamp(available_at)
            except (ValueError, OverflowError) as exc:
                raise InvalidScheduleOverlay(str(exc)) from exc

            current = db.overlay_from_row(row)
            overlay = build_overlay(
                current.tge_timestamp,
                current.initial_claim_bps if new_bps is None else new_bps,
                current.initial_claim_available_at if new_available_at is None else new_available_at,
            )
            db.store_overlay(conn, overlay)
        LOGGER.info(
            "Initial claim set to %d bps available at %s",
            overlay.initial_claim_bps,
            overlay.initial_claim_available_at,
        )
        return overlay

    def upsert_investors(
        self, ctx: CallContext, entries: Iterable[Mapping[str, Any] | InvestorEntry]
    ) -> list[InvestorRecord]:
        """Create or update allocations. The batch is applied all-or-nothing."""

        with self._lock, db.session(self.engine) as conn:
            row = self._state(conn)
            require_owner(ctx, row["owner"])
            batch = list(entries or [])
            account_ids = [
                entry.account_id if isinstance(entry, InvestorEntry) else entry.get("account_id")
                for entry in batch
            ]
            existing = db.load_investors(conn, [account for account in account_ids if account])
            records = plan_upsert(batch, existing, db.load_groups(conn))
            db.upsert_investor_records(conn, records)
        LOGGER.info("Upserted %d investor allocations", len(records))
        return records

    # ==================== claims ====================

    def claim(self, ctx: CallContext, account_id: Optional[str] = None) -> TransferReceipt:
        """Release everything currently claimable to ``account_id`` (default: the caller).

        Only the owner may claim on behalf of another account.
        """

        require_minimal_deposit(ctx)
        with self._lock:
            with db.session(self.engine) as conn:
                row = self._state(conn)
                claimant = account_id or ctx.caller_id
                if claimant != ctx.caller_id and ctx.caller_id != row["owner"]:
                    raise Unauthorized(
                        "Only owner can claim on behalf of investors", {"caller": ctx.caller_id}
                    )

                record = db.load_investor(conn, claimant, for_update=True)
                if record is None:
                    raise NoAllocation("No allocation found for this account", {"account_id": claimant})

                claimable = claimable_amount(
                    record, db.load_groups(conn), db.overlay_from_row(row), self.host.now()
                )
                if claimable <= 0:
                    raise NothingToClaim("Nothing to claim at this time", {"account_id": claimant})

                pool = db.pool_from_row(row)
                if claimable > pool.pool_balance:
                    raise InsufficientPoolBalance(
                        "Insufficient available pool balance; try again later",
                        {"claimable": str(claimable), "pool_balance": str(pool.pool_balance)},
                    )

                # Deduct before the transfer so concurrent claims see the funds as spent.
                db.store_claimed(conn, claimant, record.claimed + claimable)
                pool.reserve_claim(claimable)
                db.store_pool(conn, pool)
                pending = new_pending(TransferKind.CLAIM, claimant, claimable, CLAIM_MEMO)
                db.insert_pending(conn, pending)

            LOGGER.info("Processing claim of %s tokens for %s", claimable, claimant)
            return self._dispatch(pending, self.on_claim_complete)

    def on_claim_complete(
        self,
        ctx: CallContext,
        transfer_id: str,
        succeeded: bool,
        error: Optional[str] = None,
    ) -> TransferStatus:
        """Resolve a claim transfer. Only the ledger itself may invoke this."""

        require_self(ctx, self.host.account_id)
        with self._lock:
            with db.session(self.engine) as conn:
                row = self._state(conn)
                pending = self._load_pending(conn, transfer_id, TransferKind.CLAIM)
                resolved = resolve(pending, succeeded, error)
                if not succeeded:
                    record = db.load_investor(conn, pending.account_id, for_update=True)
                    if record is None:
                        raise LedgerInvariantError("Investor record missing during claim revert")
                    db.store_claimed(conn, record.account_id, record.claimed - pending.amount)
                    pool = db.pool_from_row(row)
                    pool.release_claim(pending.amount)
                    db.store_pool(conn, pool)
                db.store_pending_status(conn, resolved)

        if succeeded:
            LOGGER.info("Claim completed for %s", pending.account_id)
            return resolved.status
        LOGGER.error(
            "Token transfer failed for %s, reverted claim of %s (%s)",
            pending.account_id,
            pending.amount,
            resolved.error,
        )
        raise TransferFailed(
            "Token transfer failed",
            {"transfer_id": transfer_id, "account_id": pending.account_id, "amount": str(pending.amount)},
        )

    # ==================== withdrawals ====================

    def withdraw_unallocated(
        self,
        ctx: CallContext,
        amount: Any,
        recipient: Optional[str] = None,
        memo: Optional[str] = None,
    ) -> TransferReceipt:
        """Move surplus pool funds to ``recipient`` (default: the owner)."""

        with self._lock:
            with db.session(self.engine) as conn:
                row = self._state(conn)
                require_owner(ctx, row["owner"])
                require_minimal_deposit(ctx)
                withdrawal = _amount(amount, InvalidWithdrawAmount, "Amount")
                if withdrawal <= 0:
                    raise InvalidWithdrawAmount("Withdrawal amount must be positive")
                pool = db.pool_from_row(row)
                if withdrawal > pool.pool_balance:
                    raise InvalidWithdrawAmount(
                        "Amount exceeds available pool balance",
                        {"amount": str(withdrawal), "pool_balance": str(pool.pool_balance)},
                    )

                target = recipient or row["owner"]
                pool.reserve_withdrawal(withdrawal)
                db.store_pool(conn, pool)
                pending = new_pending(TransferKind.WITHDRAW, target, withdrawal, memo or WITHDRAW_MEMO)
                db.insert_pending(conn, pending)

            LOGGER.info("Withdrawing %s tokens to %s", withdrawal, target)
            return self._dispatch(pending, self.on_withdraw_complete)

    def on_withdraw_complete(
        self,
        ctx: CallContext,
        transfer_id: str,
        succeeded: bool,
        error: Optional[str] = None,
    ) -> TransferStatus:
        """Resolve a withdrawal transfer. Only the ledger itself may invoke this."""

        require_self(ctx, self.host.account_id)
        with self._lock:
            with db.session(self.engine) as conn:
                row = self._state(conn)
                pending = self._load_pending(conn, transfer_id, TransferKind.WITHDRAW)
                resolved = resolve(pending, succeeded, error)
                if not succeeded:
                    pool = db.pool_from_row(row)
                    pool.release_withdrawal(pending.amount)
                    db.store_pool(conn, pool)
                db.store_pending_status(conn, resolved)

        if succeeded:
            LOGGER.info("Withdrawal completed to %s", pending.account_id)
            return resolved.status
        LOGGER.error(
            "Withdrawal transfer failed for %s, reverted withdrawal of %s (%s)",
            pending.account_id,
            pending.amount,
            resolved.error,
        )
        raise TransferFailed(
            "Token transfer failed",
            {"transfer_id": transfer_id, "account_id": pending.account_id, "amount": str(pending.amount)},
        )

    # ==================== funding ====================

    def on_deposit(self, ctx: CallContext, sender_id: str, amount: Any, memo: str = "") -> int:
        """Credit an inbound transfer to the pool. Returns the refused amount (always 0)."""

        with self._lock, db.session(self.engine) as conn:
            row = self._state(conn)
            require_token_service(ctx, row["token_service_id"])
            deposit = _amount(amount, InvalidDepositAmount, "Amount")
            if deposit <= 0:
                raise InvalidDepositAmount("Deposit amount must be positive")
            pool = db.pool_from_row(row)
            pool.deposit(deposit)
            db.store_pool(conn, pool)
        LOGGER.info("Received %s tokens from %s%s", deposit, sender_id, f" ({memo})" if memo else "")
        return 0

    # ==================== views ====================

    def get_state(self) -> LedgerState:
        with self._lock, self.engine.connect() as conn:
            row = self._state(conn, for_update=False)
            return LedgerState(
                owner=row["owner"],
                token_service_id=row["token_service_id"],
                ledger_account_id=row["ledger_account_id"],
                overlay=db.overlay_from_row(row),
                pool=db.pool_from_row(row),
                groups=db.load_groups(conn),
            )

    def get_investor(self, account_id: str) -> Optional[InvestorRecord]:
        if not account_id:
            raise InvalidInvestorEntry("account_id is required")
        with self._lock, self.engine.connect() as conn:
            return db.load_investor(conn, account_id)

    def get_claimable(self, account_id: str, at: Optional[int] = None) -> int:
        """Claimable amount for ``account_id`` now, or at the instant ``at``."""

        if not account_id:
            raise InvalidInvestorEntry("account_id is required")
        with self._lock, self.engine.connect() as conn:
            row = self._state(conn, for_update=False)
            return claimable_amount(
                db.load_investor(conn, account_id),
                db.load_groups(conn),
                db.overlay_from_row(row),
                self.host.now() if at is None else at,
            )

    def pending_transfers(self) -> list[PendingTransfer]:
        with self._lock:
            return db.fetch_transfers(self.engine, TransferStatus.PENDING)

    def get_transfer(self, transfer_id: str) -> PendingTransfer:
        with self._lock, self.engine.connect() as conn:
            record = db.load_pending(conn, transfer_id)
        if record is None:
            raise UnknownTransfer(f"Unknown transfer {transfer_id}")
        return record

    # ==================== transfer saga ====================

    def _load_pending(self, conn: Connection, transfer_id: str, kind: TransferKind) -> PendingTransfer:
        pending = db.load_pending(conn, transfer_id, for_update=True)
        if pending is None or pending.kind is not kind:
            raise UnknownTransfer(f"Unknown {kind.value} transfer {transfer_id}")
        return pending

    def _dispatch(self, pending: PendingTransfer, continuation: Continuation) -> TransferReceipt:
        resolution: "Future[TransferStatus]" = Future()
        self._in_flight.add(pending.transfer_id)
        try:
            handle = self.host.transfer(
                pending.account_id, pending.amount, pending.memo, pending.transfer_id
            )
        except Exception as exc:  # a transfer that cannot start is a failed transfer
            LOGGER.exception("Could not start transfer %s", pending.transfer_id)
            handle = Future()
            handle.set_exception(exc)
        handle.add_done_callback(
            partial(self._on_transfer_done, pending.transfer_id, continuation, resolution)
        )
        return TransferReceipt(
            transfer_id=pending.transfer_id,
            kind=pending.kind,
            account_id=pending.account_id,
            amount=pending.amount,
            resolution=resolution,
        )

    def _on_transfer_done(
        self,
        transfer_id: str,
        continuation: Continuation,
        resolution: "Future[TransferStatus]",
        handle: "Future[None]",
    ) -> None:
        with self._lock:
            self._in_flight.discard(transfer_id)
        if handle.cancelled():
            LOGGER.warning("Transfer %s was cancelled; leaving it for reconciliation", transfer_id)
            self._park(transfer_id, resolution)
            return
        error = handle.exception()
        if isinstance(error, TransferOutcomeUnknown):
            LOGGER.warning("Outcome of transfer %s is unknown (%s); leaving it pending", transfer_id, error)
            self._park(transfer_id, resolution)
            return
        try:
            status = continuation(
                self._self_context(), transfer_id, error is None, None if error is None else str(error)
            )
        except Exception as exc:  # TransferFailed, or a resolution that could not be applied
            if not isinstance(exc, TransferFailed):
                LOGGER.exception("Could not resolve transfer %s", transfer_id)
            resolution.set_exception(exc)
        else:
            resolution.set_result(status)

    def _park(self, transfer_id: str, resolution: "Future[TransferStatus]") -> None:
        with self._lock:
            self._unresolved[transfer_id] = resolution

    def reconcile_pending(self) -> dict[str, int]:
        """Resolve pending transfers whose outcome was lost (timeout, restart).

        Transfers still in flight in this process are skipped. Transfers whose
        outcome the host cannot tell yet stay pending, and so does a record
        whose resolution raises; the pass carries on with the next one.
        """

        counts = {"committed": 0, "rolled_back": 0, "pending": 0}
        for pending in self.pending_transfers():
            transfer_id = pending.transfer_id
            with self._lock:
                if transfer_id in self._in_flight:
                    counts["pending"] += 1
                    continue
            try:
                outcome = self.host.transfer_outcome(transfer_id)
            except Exception:  # pragma: no cover - defensive logging
                LOGGER.exception("Failed to look up transfer %s", transfer_id)
                counts["pending"] += 1
                continue
            if outcome is None:
                LOGGER.debug("Transfer %s is still in flight", transfer_id)
                counts["pending"] += 1
                continue

            continuation = (
                self.on_claim_complete
                if pending.kind is TransferKind.CLAIM
                else self.on_withdraw_complete
            )
            with self._lock:
                resolution = self._unresolved.pop(transfer_id, None)
            try:
                status = continuation(
                    self._self_context(),
                    transfer_id,
                    outcome,
                    None if outcome else "Token transfer failed (reconciled)",
                )
            except TransferFailed as exc:
                counts["rolled_back"] += 1
                if resolution is not None:
                    resolution.set_exception(exc)
            except TransferAlreadyResolved:
                LOGGER.debug("Transfer %s was resolved concurrently", transfer_id)
            except Exception:
                LOGGER.exception("Could not reconcile transfer %s; leaving it pending", transfer_id)
                counts["pending"] += 1
                if resolution is not None:
                    self._park(transfer_id, resolution)
            else:
                counts["committed"] += 1
                if resolution is not None:
                    resolution.set_result(status)
        if any(counts.values()):
            LOGGER.info(
                "Reconciled transfers: %d committed, %d rolled back, %d still pending",
                counts["committed"],
                counts["rolled_back"],
                counts["pending"],
            )
        return counts


__all__ = ["VestingLedger", "build_overlay"]
