"""Investor token vesting ledger with claim and withdrawal transfers."""
from __future__ import annotations

from .access import CallContext
from .ledger import VestingLedger

__all__ = ["CallContext", "VestingLedger"]
