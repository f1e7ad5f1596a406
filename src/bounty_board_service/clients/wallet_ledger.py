"""Boundary contract for the external wallet ledger that clears fund transfers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from decimal import Decimal


class WalletLedgerError(Exception):
    """Base error raised by wallet ledger adapters."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class WalletTransientError(WalletLedgerError):
    """The outcome is unknown or the ledger is temporarily unavailable."""


class WalletPermanentError(WalletLedgerError):
    """The transfer can never succeed as requested (funds, address, secret)."""


@dataclass(frozen=True)
class TransferReceipt:
    tx_hash: str
    idempotency_key: str
    source_address: str
    destination_address: str
    asset: str
    amount: Decimal
    done_at: str


class WalletLedger(Protocol):
    """
    Moves funds between wallet addresses.

    Implementations must treat ``idempotency_key`` as at-most-once: a second
    ``transfer`` with a key that already cleared returns the original receipt
    instead of moving funds again.
    """

    async def transfer(
        self,
        *,
        source_address: str,
        destination_address: str,
        asset: str,
        amount: Decimal,
        idempotency_key: str,
        secret_ref: str,
    ) -> TransferReceipt: ...

    async def balance(self, address: str, asset: str) -> Decimal: ...

    async def find_transfer(self, idempotency_key: str) -> TransferReceipt | None: ...
