"""Authorization guards shared by the mutating ledger operations."""
from __future__ import annotations

from dataclasses import dataclass

from .errors import MissingMinimalDeposit, Unauthorized

# Smallest indivisible unit of the host currency. Attached to value-moving
# calls to rule out accidental or cross-call invocation; it is not a fee.
ONE_YOCTO = 1


@dataclass(frozen=True, slots=True)
class CallContext:
    """Identity and attached value of one invocation, as reported by the host."""

    caller_id: str
    attached_deposit: int = 0


def require_owner(ctx: CallContext, owner: str) -> None:
    if ctx.caller_id != owner:
        raise Unauthorized("Only owner can call this function", {"caller": ctx.caller_id})


def require_self(ctx: CallContext, ledger_account_id: str) -> None:
    if ctx.caller_id != ledger_account_id:
        raise Unauthorized("Only the ledger may call this function", {"caller": ctx.caller_id})


def require_token_service(ctx: CallContext, token_service_id: str) -> None:
    if ctx.caller_id != token_service_id:
        raise Unauthorized(
            "Only the configured token service can deposit funds", {"caller": ctx.caller_id}
        )


def require_minimal_deposit(ctx: CallContext) -> None:
    if ctx.attached_deposit != ONE_YOCTO:
        raise MissingMinimalDeposit(
            f"Requires attached deposit of exactly {ONE_YOCTO}",
            {"attached_deposit": str(ctx.attached_deposit)},
        )


__all__ = [
    "ONE_YOCTO",
    "CallContext",
    "require_owner",
    "require_self",
    "require_token_service",
    "require_minimal_deposit",
]
