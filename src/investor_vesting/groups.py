"""Validation of vesting group configurations."""
from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from .errors import InvalidGroupConfig
from .models import GroupConfig
from .utils import parse_int
from .vesting import BPS_DENOMINATOR

LOGGER = logging.getLogger(__name__)


def _field(raw: Mapping[str, Any], name: str, group_id: str, default: int | None = None) -> int:
    try:
        value = parse_int(raw.get(name))
    except ValueError as exc:
        raise InvalidGroupConfig(f"{name} of group {group_id} must be an integer") from exc
    if value is None:
        if default is None:
            raise InvalidGroupConfig(f"{name} is required for group {group_id}")
        return default
    return value


def parse_group(raw: Mapping[str, Any] | GroupConfig) -> GroupConfig:
    """Turn one wire-level group definition into a validated :class:`GroupConfig`."""

    if isinstance(raw, GroupConfig):
        raw = {
            "id": raw.group_id,
            "cliff_duration": raw.cliff_duration,
            "vesting_duration": raw.vesting_duration,
            "initial_unlock_bps": raw.initial_unlock_bps,
        }
    group_id = raw.get("id")
    if not group_id or not isinstance(group_id, str):
        raise InvalidGroupConfig("group id is required")

    cliff = _field(raw, "cliff_duration", group_id)
    vesting = _field(raw, "vesting_duration", group_id)
    if cliff < 0 or vesting < 0:
        raise InvalidGroupConfig(
            f"Durations of group {group_id} must be non-negative",
            {"cliff_duration": cliff, "vesting_duration": vesting},
        )

    bps = _field(raw, "initial_unlock_bps", group_id, default=0)
    if not 0 <= bps <= BPS_DENOMINATOR:
        raise InvalidGroupConfig(
            f"initial_unlock_bps of group {group_id} must be within [0, {BPS_DENOMINATOR}]",
            {"initial_unlock_bps": bps},
        )
    return GroupConfig(
        group_id=group_id,
        cliff_duration=cliff,
        vesting_duration=vesting,
        initial_unlock_bps=bps,
    )


def build_registry(groups: Iterable[Mapping[str, Any] | GroupConfig]) -> dict[str, GroupConfig]:
    """Validate a complete group list and return the registry that replaces the current one.

    Nothing is returned unless every entry is valid, so a failed call never
    leaves a partially replaced registry behind.
    """

    registry: dict[str, GroupConfig] = {}
    for raw in list(groups or []):
        group = parse_group(raw)
        if group.group_id in registry:
            raise InvalidGroupConfig(f"Duplicate group id {group.group_id}")
        registry[group.group_id] = group
    if not registry:
        raise InvalidGroupConfig("groups must be a non-empty list")
    LOGGER.debug("Validated %d vesting groups", len(registry))
    return registry


__all__ = ["parse_group", "build_registry"]
