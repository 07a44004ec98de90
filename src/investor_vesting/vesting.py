"""Vested and claimable amount calculations.

Pure functions over integers. All division truncates toward zero; inputs are
non-negative so floor division is equivalent.
"""
from __future__ import annotations

from typing import Mapping, Optional

from .models import GroupConfig, InvestorRecord, ScheduleOverlay

BPS_DENOMINATOR = 10_000


def _bps_share(total: int, bps: int) -> int:
    return total * bps // BPS_DENOMINATOR


def initial_claim_portion(total: int, overlay: ScheduleOverlay, now: int) -> int:
    """Portion unlocked for everyone once the global initial-claim timestamp passes."""

    available_at = overlay.initial_claim_available_at
    if available_at is None or now < available_at:
        return 0
    return min(total, _bps_share(total, overlay.initial_claim_bps))


def vested_amount(total: int, group: GroupConfig, overlay: ScheduleOverlay, now: int) -> int:
    """Return how much of ``total`` has unlocked at ``now``.

    The global initial claim unlocks first. From ``tge + cliff`` the group's
    instant unlock applies, and the remainder vests linearly over
    ``vesting_duration``.
    """

    initial = initial_claim_portion(total, overlay, now)
    remaining_after_initial = total - initial

    cliff_end = overlay.tge_timestamp + group.cliff_duration
    if now < cliff_end:
        return min(initial, total)

    post_cliff = min(remaining_after_initial, _bps_share(total, group.initial_unlock_bps))
    linear_base = total - initial - post_cliff

    if group.vesting_duration == 0:
        return total
    elapsed = now - cliff_end
    if elapsed >= group.vesting_duration:
        return total
    return initial + post_cliff + linear_base * elapsed // group.vesting_duration


def claimable_amount(
    record: Optional[InvestorRecord],
    groups: Mapping[str, GroupConfig],
    overlay: ScheduleOverlay,
    now: int,
) -> int:
    """Unlocked but not yet claimed amount; ``0`` for unknown accounts or groups."""

    if record is None:
        return 0
    group = groups.get(record.group_id)
    if group is None:
        return 0
    if record.claimed >= record.total_allocation:
        return 0
    vested = vested_amount(record.total_allocation, group, overlay, now)
    return max(0, vested - record.claimed)


__all__ = ["BPS_DENOMINATOR", "initial_claim_portion", "vested_amount", "claimable_amount"]
