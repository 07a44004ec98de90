"""HTTP client for the fungible-token service."""
from __future__ import annotations

import logging
from typing import Optional

import requests

from .access import ONE_YOCTO
from .errors import TransferOutcomeUnknown

LOGGER = logging.getLogger(__name__)

CALLER_HEADER = "X-Caller-Id"
DEPOSIT_HEADER = "X-Attached-Deposit"


class TokenServiceClient:
    """Thin wrapper over the token service's transfer endpoints.

    Amounts travel as decimal strings. Every call identifies the ledger as the
    caller and attaches the one-unit deposit the token service requires for
    transfers.
    """

    def __init__(
        self,
        base_url: str,
        ledger_account_id: str,
        timeout: float = 30,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.ledger_account_id = ledger_account_id
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                CALLER_HEADER: ledger_account_id,
                "accept": "application/json",
            }
        )

    def ft_transfer(self, receiver_id: str, amount: int, memo: str, transfer_id: str) -> None:
        """Move ``amount`` from the ledger's balance to ``receiver_id``.

        Raises :class:`requests.HTTPError` when the token service rejects the
        transfer (4xx) and :class:`requests.ConnectTimeout` when the request
        never reached it. Any other transport error or a 5xx answer raises
        :class:`TransferOutcomeUnknown`: the transfer may have happened.
        """

        LOGGER.debug("Requesting ft_transfer of %s to %s (%s)", amount, receiver_id, transfer_id)
        try:
            response = self.session.post(
                f"{self.base_url}/ft_transfer",
                json={
                    "receiver_id": receiver_id,
                    "amount": str(amount),
                    "memo": memo,
                    "transfer_id": transfer_id,
                },
                headers={DEPOSIT_HEADER: str(ONE_YOCTO)},
                timeout=self.timeout,
            )
        except requests.ConnectTimeout:
            raise
        except requests.RequestException as exc:
            raise TransferOutcomeUnknown(
                f"No answer from token service for transfer {transfer_id}: {exc}",
                {"transfer_id": transfer_id},
            ) from exc
        if response.status_code >= 500:
            raise TransferOutcomeUnknown(
                f"Token service answered {response.status_code} for transfer {transfer_id}",
                {"transfer_id": transfer_id},
            )
        response.raise_for_status()

    def transfer_status(self, transfer_id: str) -> Optional[bool]:
        """Look up a previously requested transfer.

        Returns ``True`` when it succeeded, ``False`` when it failed or was
        never received, and ``None`` while it is still in flight.
        """

        response = self.session.get(f"{self.base_url}/transfers/{transfer_id}", timeout=self.timeout)
        if response.status_code == 404:
            return False
        response.raise_for_status()
        status = str(response.json().get("status", "")).lower()
        if status == "succeeded":
            return True
        if status == "failed":
            return False
        return None


__all__ = ["TokenServiceClient", "CALLER_HEADER", "DEPOSIT_HEADER"]
