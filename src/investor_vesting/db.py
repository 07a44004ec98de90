"""Database integration utilities."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, Mapping, Optional

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from .models import (
    GroupConfig,
    InvestorRecord,
    PendingTransfer,
    PoolAccount,
    ScheduleOverlay,
    TransferKind,
    TransferStatus,
)


metadata = MetaData()

LOGGER = logging.getLogger(__name__)

STATE_ROW_ID = 1


class TokenAmount(TypeDecorator):
    """Arbitrary-precision integer persisted as a decimal string."""

    impl = String(80)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(int(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


ledger_state = Table(
    "ledger_state",
    metadata,
    Column("id", Integer, primary_key=True, default=STATE_ROW_ID),
    Column("owner", String(128), nullable=False),
    Column("token_service_id", String(128), nullable=False),
    Column("ledger_account_id", String(128), nullable=False),
    Column("tge_timestamp", TokenAmount, nullable=False),
    Column("initial_claim_bps", Integer, nullable=False, default=0),
    Column("initial_claim_available_at", TokenAmount, nullable=True),
    Column("total_deposited", TokenAmount, nullable=False, default=0),
    Column("total_claimed", TokenAmount, nullable=False, default=0),
    Column("total_withdrawn", TokenAmount, nullable=False, default=0),
    Column("pool_balance", TokenAmount, nullable=False, default=0),
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
    Column(
        "updated_at", DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    ),
)

vesting_groups = Table(
    "vesting_groups",
    metadata,
    Column("group_id", String(128), primary_key=True),
    Column("position", Integer, nullable=False),
    Column("cliff_duration", TokenAmount, nullable=False),
    Column("vesting_duration", TokenAmount, nullable=False),
    Column("initial_unlock_bps", Integer, nullable=False, default=0),
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
)

# group_id is not a foreign key; investors may outlive their group.
investors = Table(
    "investors",
    metadata,
    Column("account_id", String(128), primary_key=True),
    Column("group_id", String(128), nullable=False),
    Column("total_allocation", TokenAmount, nullable=False),
    Column("claimed", TokenAmount, nullable=False, default=0),
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
    Column(
        "updated_at", DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    ),
)

pending_transfers = Table(
    "pending_transfers",
    metadata,
    Column("transfer_id", String(64), primary_key=True),
    Column("kind", String(16), nullable=False),
    Column("account_id", String(128), nullable=False),
    Column("amount", TokenAmount, nullable=False),
    Column("memo", String(256), nullable=False),
    Column("status", String(16), nullable=False, index=True),
    Column("error", String(1024), nullable=True),
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
    Column("resolved_at", DateTime, nullable=True),
)


def create_db_engine(database_url: str) -> Engine:
    """Create a SQLAlchemy engine."""

    LOGGER.debug("Creating database engine")
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        options: dict[str, object] = {"connect_args": {"check_same_thread": False}}
        if url.database in (None, "", ":memory:"):
            # One shared connection, otherwise every checkout sees an empty database.
            options["poolclass"] = StaticPool
        return create_engine(database_url, future=True, **options)
    return create_engine(database_url, future=True, pool_pre_ping=True)


@contextmanager
def session(engine: Engine) -> Iterator[Connection]:
    """Provide a transactional scope around a series of operations."""

    with engine.begin() as conn:
        yield conn


def ensure_schema(engine: Engine) -> None:
    """Create tables if they do not exist."""

    LOGGER.debug("Ensuring database schema is present")
    metadata.create_all(engine)


def _insert(conn: Connection, table: Table):
    dialect = conn.dialect.name
    if dialect == "postgresql":
        return pg_insert(table)
    if dialect == "sqlite":
        return sqlite_insert(table)
    raise RuntimeError(f"Unsupported database dialect: {dialect}")


# ==================== ledger_state ====================


def load_state_row(conn: Connection, *, for_update: bool = False) -> Optional[Mapping[str, object]]:
    """Return the single ledger state row, locking it when ``for_update`` is set."""

    stmt = select(ledger_state).where(ledger_state.c.id == STATE_ROW_ID)
    if for_update:
        stmt = stmt.with_for_update()
    row = conn.execute(stmt).first()
    return row._mapping if row is not None else None


def overlay_from_row(row: Mapping[str, object]) -> ScheduleOverlay:
    return ScheduleOverlay(
        tge_timestamp=row["tge_timestamp"],
        initial_claim_bps=row["initial_claim_bps"],
        initial_claim_available_at=row["initial_claim_available_at"],
    )


def pool_from_row(row: Mapping[str, object]) -> PoolAccount:
    return PoolAccount(
        total_deposited=row["total_deposited"],
        total_claimed=row["total_claimed"],
        total_withdrawn=row["total_withdrawn"],
        pool_balance=row["pool_balance"],
    )


def insert_state(
    conn: Connection,
    *,
    owner: str,
    token_service_id: str,
    ledger_account_id: str,
    overlay: ScheduleOverlay,
) -> None:
    conn.execute(
        insert(ledger_state).values(
            id=STATE_ROW_ID,
            owner=owner,
            token_service_id=token_service_id,
            ledger_account_id=ledger_account_id,
            tge_timestamp=overlay.tge_timestamp,
            initial_claim_bps=overlay.initial_claim_bps,
            initial_claim_available_at=overlay.initial_claim_available_at,
            total_deposited=0,
            total_claimed=0,
            total_withdrawn=0,
            pool_balance=0,
        )
    )


def store_overlay(conn: Connection, overlay: ScheduleOverlay) -> None:
    conn.execute(
        update(ledger_state)
        .where(ledger_state.c.id == STATE_ROW_ID)
        .values(
            tge_timestamp=overlay.tge_timestamp,
            initial_claim_bps=overlay.initial_claim_bps,
            initial_claim_available_at=overlay.initial_claim_available_at,
            updated_at=datetime.utcnow(),
        )
    )


def store_pool(conn: Connection, pool: PoolAccount) -> None:
    pool.check()
    conn.execute(
        update(ledger_state)
        .where(ledger_state.c.id == STATE_ROW_ID)
        .values(
            total_deposited=pool.total_deposited,
            total_claimed=pool.total_claimed,
            total_withdrawn=pool.total_withdrawn,
            pool_balance=pool.pool_balance,
            updated_at=datetime.utcnow(),
        )
    )


# ==================== vesting_groups ====================


def load_groups(conn: Connection) -> dict[str, GroupConfig]:
    rows = conn.execute(select(vesting_groups).order_by(vesting_groups.c.position)).all()
    return {
        row.group_id: GroupConfig(
            group_id=row.group_id,
            cliff_duration=row.cliff_duration,
            vesting_duration=row.vesting_duration,
            initial_unlock_bps=row.initial_unlock_bps,
        )
        for row in rows
    }


def replace_groups(conn: Connection, registry: Mapping[str, GroupConfig]) -> None:
    """Swap the whole group registry inside the caller's transaction."""

    conn.execute(delete(vesting_groups))
    now = datetime.utcnow()
    conn.execute(
        insert(vesting_groups),
        [
            {
                "group_id": group.group_id,
                "position": position,
                "cliff_duration": group.cliff_duration,
                "vesting_duration": group.vesting_duration,
                "initial_unlock_bps": group.initial_unlock_bps,
                "created_at": now,
            }
            for position, group in enumerate(registry.values())
        ],
    )
    LOGGER.info("Replaced vesting group registry with %d groups", len(registry))


# ==================== investors ====================


def _investor_from_row(row) -> InvestorRecord:
    return InvestorRecord(
        account_id=row.account_id,
        group_id=row.group_id,
        total_allocation=row.total_allocation,
        claimed=row.claimed,
    )


def load_investor(
    conn: Connection, account_id: str, *, for_update: bool = False
) -> Optional[InvestorRecord]:
    stmt = select(investors).where(investors.c.account_id == account_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = conn.execute(stmt).first()
    return _investor_from_row(row) if row is not None else None


def load_investors(conn: Connection, account_ids: Iterable[str]) -> dict[str, InvestorRecord]:
    ids = list(account_ids)
    if not ids:
        return {}
    stmt = select(investors).where(investors.c.account_id.in_(ids)).with_for_update()
    return {row.account_id: _investor_from_row(row) for row in conn.execute(stmt).all()}


def upsert_investor_records(conn: Connection, records: Iterable[InvestorRecord]) -> int:
    count = 0
    for record in records:
        stmt = _insert(conn, investors).values(
            account_id=record.account_id,
            group_id=record.group_id,
            total_allocation=record.total_allocation,
            claimed=record.claimed,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[investors.c.account_id],
            set_={
                "group_id": stmt.excluded.group_id,
                "total_allocation": stmt.excluded.total_allocation,
                "updated_at": datetime.utcnow(),
            },
        )
        conn.execute(stmt)
        count += 1
    return count


def store_claimed(conn: Connection, account_id: str, claimed: int) -> None:
    conn.execute(
        update(investors)
        .where(investors.c.account_id == account_id)
        .values(claimed=claimed, updated_at=datetime.utcnow())
    )


# ==================== pending_transfers ====================


def _pending_from_row(row) -> PendingTransfer:
    return PendingTransfer(
        transfer_id=row.transfer_id,
        kind=TransferKind(row.kind),
        account_id=row.account_id,
        amount=row.amount,
        memo=row.memo,
        status=TransferStatus(row.status),
        error=row.error,
        created_at=row.created_at,
        resolved_at=row.resolved_at,
    )


def insert_pending(conn: Connection, record: PendingTransfer) -> None:
    conn.execute(
        insert(pending_transfers).values(
            transfer_id=record.transfer_id,
            kind=record.kind.value,
            account_id=record.account_id,
            amount=record.amount,
            memo=record.memo,
            status=record.status.value,
            error=record.error,
            created_at=record.created_at or datetime.utcnow(),
        )
    )


def load_pending(
    conn: Connection, transfer_id: str, *, for_update: bool = False
) -> Optional[PendingTransfer]:
    stmt = select(pending_transfers).where(pending_transfers.c.transfer_id == transfer_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = conn.execute(stmt).first()
    return _pending_from_row(row) if row is not None else None


def store_pending_status(conn: Connection, record: PendingTransfer) -> None:
    conn.execute(
        update(pending_transfers)
        .where(pending_transfers.c.transfer_id == record.transfer_id)
        .values(status=record.status.value, error=record.error, resolved_at=record.resolved_at)
    )


def fetch_transfers(
    engine: Engine, status: Optional[TransferStatus] = TransferStatus.PENDING
) -> list[PendingTransfer]:
    """Return transfer records, oldest first, optionally filtered by status."""

    LOGGER.debug("Loading transfer records (status=%s)", status.value if status else "any")
    with engine.connect() as conn:
        stmt = select(pending_transfers).order_by(pending_transfers.c.created_at)
        if status is not None:
            stmt = stmt.where(pending_transfers.c.status == status.value)
        rows = conn.execute(stmt).all()
    return [_pending_from_row(row) for row in rows]


__all__ = [
    "TokenAmount",
    "create_db_engine",
    "session",
    "ensure_schema",
    "metadata",
    "ledger_state",
    "vesting_groups",
    "investors",
    "pending_transfers",
    "load_state_row",
    "overlay_from_row",
    "pool_from_row",
    "insert_state",
    "store_overlay",
    "store_pool",
    "load_groups",
    "replace_groups",
    "load_investor",
    "load_investors",
    "upsert_investor_records",
    "store_claimed",
    "insert_pending",
    "load_pending",
    "store_pending_status",
    "fetch_transfers",
]
