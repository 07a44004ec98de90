"""Host capability: the ledger's only window onto its environment."""
from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

from .token_client import TokenServiceClient

LOGGER = logging.getLogger(__name__)


class Host(ABC):
    """Clock, identity and value-transfer primitives used by the ledger."""

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id

    @abstractmethod
    def now(self) -> int:
        """Current time in nanoseconds."""

    @abstractmethod
    def transfer(self, receiver_id: str, amount: int, memo: str, transfer_id: str) -> "Future[None]":
        """Start moving ``amount`` to ``receiver_id``.

        The returned future completes when the outcome is known and raises if
        the transfer failed. It raises
        :class:`~investor_vesting.errors.TransferOutcomeUnknown` when the
        funds may have moved but no answer arrived.
        """

    @abstractmethod
    def transfer_outcome(self, transfer_id: str) -> Optional[bool]:
        """Outcome of an earlier transfer, or ``None`` while still unknown."""

    def shutdown(self, wait: bool = True) -> None:
        """Release resources held for in-flight transfers."""


class TokenServiceHost(Host):
    """Production host backed by the token service's HTTP API."""

    def __init__(self, client: TokenServiceClient, max_workers: int = 4) -> None:
        super().__init__(client.ledger_account_id)
        self.client = client
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="transfer")

    def now(self) -> int:
        return time.time_ns()

    def transfer(self, receiver_id: str, amount: int, memo: str, transfer_id: str) -> "Future[None]":
        LOGGER.debug("Submitting transfer %s", transfer_id)
        return self._executor.submit(self.client.ft_transfer, receiver_id, amount, memo, transfer_id)

    def transfer_outcome(self, transfer_id: str) -> Optional[bool]:
        return self.client.transfer_status(transfer_id)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


__all__ = ["Host", "TokenServiceHost"]
