"""Command line entry point for vesting ledger operations."""
from __future__ import annotations

import argparse
import json
import logging
from typing import Iterable

from .app import build_ledger
from .config import Settings
from .db import ensure_schema
from .ledger import VestingLedger
from .logging_utils import configure_logging
from .schemas import StateOut
from .utils import parse_timestamp

LOGGER = logging.getLogger(__name__)


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def run_init_db(ledger: VestingLedger, options: argparse.Namespace) -> None:
    ensure_schema(ledger.engine)
    LOGGER.info("Database schema is ready")


def run_state(ledger: VestingLedger, options: argparse.Namespace) -> None:
    _print_json(StateOut.from_model(ledger.get_state()).model_dump())


def run_claimable(ledger: VestingLedger, options: argparse.Namespace) -> None:
    at = parse_timestamp(options.at) if options.at else None
    _print_json({"account_id": options.account_id, "claimable": str(ledger.get_claimable(options.account_id, at))})


def run_reconcile(ledger: VestingLedger, options: argparse.Namespace) -> None:
    _print_json(ledger.reconcile_pending())


COMMANDS = {
    "init-db": run_init_db,
    "state": run_state,
    "claimable": run_claimable,
    "reconcile": run_reconcile,
}


def parse_args(args: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging output",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("init-db", help="Create the ledger tables")
    subparsers.add_parser("state", help="Print owner, schedule, pool counters and groups")
    claimable = subparsers.add_parser("claimable", help="Print the claimable amount of an account")
    claimable.add_argument("account_id")
    claimable.add_argument(
        "--at",
        help="Evaluate at this instant (nanoseconds or any date dateutil understands)",
    )
    subparsers.add_parser("reconcile", help="Resolve transfers left pending by a restart")
    return parser.parse_args(args=args)


def main(argv: Iterable[str] | None = None) -> None:
    options = parse_args(argv)
    configure_logging(logging.DEBUG if options.verbose else None)
    ledger = build_ledger(Settings.load())
    try:
        COMMANDS[options.command](ledger, options)
    finally:
        ledger.host.shutdown()


if __name__ == "__main__":  # pragma: no cover
    main()
