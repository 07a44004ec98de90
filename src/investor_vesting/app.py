"""FastAPI application exposing the vesting ledger."""
from __future__ import annotations

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import Depends, FastAPI, Header, Request, status
from fastapi.responses import JSONResponse

from .access import CallContext
from .config import Settings
from .db import create_db_engine, ensure_schema
from .errors import MissingMinimalDeposit, Unauthorized, VestingError
from .host import TokenServiceHost
from .ledger import VestingLedger
from .logging_utils import configure_logging
from .schemas import (
    ClaimRequest,
    DepositNotification,
    GroupsRequest,
    InitialClaimRequest,
    InitRequest,
    InvestorOut,
    InvestorsRequest,
    StateOut,
    TransferOut,
    WithdrawRequest,
)
from .token_client import TokenServiceClient
from .utils import parse_int

LOGGER = logging.getLogger(__name__)

JOB_ID = "reconcile-pending-transfers"
DEFAULT_RECONCILE_INTERVAL = 60.0


def call_context(
    x_caller_id: Optional[str] = Header(default=None),
    x_attached_deposit: Optional[str] = Header(default=None),
) -> CallContext:
    """Caller identity and attached value, as asserted by the hosting gateway."""

    if not x_caller_id:
        raise Unauthorized("X-Caller-Id header is required")
    try:
        deposit = parse_int(x_attached_deposit) or 0
    except ValueError as exc:
        raise MissingMinimalDeposit("X-Attached-Deposit must be an integer") from exc
    return CallContext(caller_id=x_caller_id, attached_deposit=deposit)


def build_ledger(settings: Settings) -> VestingLedger:
    """Wire the production ledger: database engine plus token service host."""

    engine = create_db_engine(settings.database_url)
    client = TokenServiceClient(
        settings.token_service_url,
        settings.ledger_account_id,
        timeout=settings.transfer_timeout,
    )
    host = TokenServiceHost(client, max_workers=settings.max_transfer_workers)
    return VestingLedger(engine, host)


def create_app(settings: Settings | None = None, ledger: VestingLedger | None = None) -> FastAPI:
    """Build the application; serve with ``uvicorn --factory investor_vesting.app:create_app``."""

    if ledger is None:
        configure_logging()
        settings = settings or Settings.load()
        ledger = build_ledger(settings)
    reconcile_interval = settings.reconcile_interval if settings else DEFAULT_RECONCILE_INTERVAL

    scheduler = AsyncIOScheduler()
    app = FastAPI(title="Investor Vesting")
    app.state.ledger = ledger
    app.state.scheduler = scheduler

    def _reconcile_job() -> None:
        """Wrapper for running reconciliation within the scheduler."""

        try:
            ledger.reconcile_pending()
        except Exception:  # pragma: no cover - defensive logging
            LOGGER.exception("Scheduled reconciliation run failed")

    @app.exception_handler(VestingError)
    async def vesting_error_handler(request: Request, exc: VestingError) -> JSONResponse:
        LOGGER.warning("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.kind, "message": exc.message, "details": exc.details},
        )

    @app.on_event("startup")
    async def startup_event() -> None:
        LOGGER.info("Starting vesting ledger API")
        ensure_schema(ledger.engine)
        scheduler.add_job(
            _reconcile_job,
            trigger=IntervalTrigger(seconds=reconcile_interval),
            id=JOB_ID,
            replace_existing=True,
        )
        if not scheduler.running:
            scheduler.start()
            LOGGER.info("Scheduled reconciliation every %.0f seconds", reconcile_interval)

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        if scheduler.running:
            scheduler.shutdown()
            LOGGER.info("Scheduler shut down")

    @app.post("/init", status_code=status.HTTP_201_CREATED)
    def init(body: InitRequest, ctx: CallContext = Depends(call_context)) -> StateOut:
        ledger.init(
            ctx,
            token_service_id=body.token_service_id,
            tge_timestamp=body.tge_timestamp,
            groups=[group.model_dump() for group in body.groups],
            owner=body.owner,
            initial_claim_bps=body.initial_claim_bps,
            initial_claim_available_at=body.initial_claim_available_at,
        )
        return StateOut.from_model(ledger.get_state())

    @app.post("/groups")
    def configure_groups(body: GroupsRequest, ctx: CallContext = Depends(call_context)) -> StateOut:
        ledger.configure_groups(ctx, [group.model_dump() for group in body.groups])
        return StateOut.from_model(ledger.get_state())

    @app.post("/initial-claim")
    def configure_initial_claim(
        body: InitialClaimRequest, ctx: CallContext = Depends(call_context)
    ) -> StateOut:
        ledger.configure_initial_claim(
            ctx, bps=body.initial_claim_bps, available_at=body.initial_claim_available_at
        )
        return StateOut.from_model(ledger.get_state())

    @app.post("/investors")
    def upsert_investors(
        body: InvestorsRequest, ctx: CallContext = Depends(call_context)
    ) -> dict[str, InvestorOut]:
        records = ledger.upsert_investors(ctx, [entry.model_dump() for entry in body.investors])
        return {record.account_id: InvestorOut.from_model(record) for record in records}

    @app.post("/claim", status_code=status.HTTP_202_ACCEPTED)
    def claim(body: ClaimRequest, ctx: CallContext = Depends(call_context)) -> TransferOut:
        receipt = ledger.claim(ctx, body.account_id)
        return TransferOut.from_model(ledger.get_transfer(receipt.transfer_id))

    @app.post("/withdraw", status_code=status.HTTP_202_ACCEPTED)
    def withdraw(body: WithdrawRequest, ctx: CallContext = Depends(call_context)) -> TransferOut:
        receipt = ledger.withdraw_unallocated(ctx, body.amount, body.recipient, body.memo)
        return TransferOut.from_model(ledger.get_transfer(receipt.transfer_id))

    @app.post("/ft_on_transfer")
    def ft_on_transfer(body: DepositNotification, ctx: CallContext = Depends(call_context)) -> str:
        return str(ledger.on_deposit(ctx, body.sender_id, body.amount, body.msg))

    @app.get("/state")
    def get_state() -> StateOut:
        return StateOut.from_model(ledger.get_state())

    @app.get("/investors/{account_id}")
    def get_investor(account_id: str) -> Optional[InvestorOut]:
        record = ledger.get_investor(account_id)
        return InvestorOut.from_model(record) if record is not None else None

    @app.get("/investors/{account_id}/claimable")
    def get_claimable(account_id: str) -> str:
        return str(ledger.get_claimable(account_id))

    @app.get("/transfers/pending")
    def pending_transfers() -> list[TransferOut]:
        return [TransferOut.from_model(record) for record in ledger.pending_transfers()]

    @app.get("/transfers/{transfer_id}")
    def get_transfer(transfer_id: str) -> TransferOut:
        return TransferOut.from_model(ledger.get_transfer(transfer_id))

    return app


__all__ = ["create_app", "build_ledger", "call_context"]
