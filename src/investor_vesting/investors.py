"""Batch validation for investor allocation upserts."""
from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from .errors import InvalidInvestorEntry, UnknownGroup
from .models import GroupConfig, InvestorEntry, InvestorRecord
from .utils import parse_int

LOGGER = logging.getLogger(__name__)


def parse_entry(raw: Mapping[str, Any] | InvestorEntry) -> InvestorEntry:
    if isinstance(raw, InvestorEntry):
        return raw
    account_id = raw.get("account_id")
    group_id = raw.get("group_id")
    amount = raw.get("amount")
    if not account_id or not group_id or amount in (None, ""):
        raise InvalidInvestorEntry("Each investor must include account_id, group_id, and amount")
    try:
        parsed = parse_int(amount)
    except ValueError as exc:
        raise InvalidInvestorEntry(f"Invalid amount for {account_id}: {amount!r}") from exc
    return InvestorEntry(account_id=account_id, group_id=group_id, amount=parsed)


def plan_upsert(
    entries: Iterable[Mapping[str, Any] | InvestorEntry],
    existing: Mapping[str, InvestorRecord],
    groups: Mapping[str, GroupConfig],
) -> list[InvestorRecord]:
    """Validate a whole batch and return the records to write.

    The batch is rejected as a unit: the first invalid entry raises and no
    record is returned, so callers only write once everything has passed.
    """

    batch = list(entries or [])
    if not batch:
        raise InvalidInvestorEntry("investors array required")

    seen: set[str] = set()
    planned: list[InvestorRecord] = []
    for raw in batch:
        entry = parse_entry(raw)
        if entry.group_id not in groups:
            raise UnknownGroup(f"Unknown group_id {entry.group_id}", {"account_id": entry.account_id})
        if entry.amount <= 0:
            raise InvalidInvestorEntry(f"Investor amount must be positive for {entry.account_id}")
        if entry.account_id in seen:
            raise InvalidInvestorEntry(f"Duplicate account {entry.account_id} in batch")
        seen.add(entry.account_id)

        current = existing.get(entry.account_id)
        claimed = current.claimed if current is not None else 0
        if entry.amount < claimed:
            raise InvalidInvestorEntry(
                f"New allocation for {entry.account_id} cannot be less than claimed amount",
                {"amount": str(entry.amount), "claimed": str(claimed)},
            )
        planned.append(
            InvestorRecord(
                account_id=entry.account_id,
                group_id=entry.group_id,
                total_allocation=entry.amount,
                claimed=claimed,
            )
        )
    LOGGER.debug("Validated %d investor entries", len(planned))
    return planned


__all__ = ["parse_entry", "plan_upsert"]
