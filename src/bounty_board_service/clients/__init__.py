"""Boundary adapters for the wallet ledger and secret resolution."""

from bounty_board_service.clients.local_wallet_ledger import LocalWalletLedger
from bounty_board_service.clients.secret_store import EnvSecretStore, SecretStore
from bounty_board_service.clients.wallet_ledger import (
    TransferReceipt,
    WalletLedger,
    WalletLedgerError,
    WalletPermanentError,
    WalletTransientError,
)

__all__ = [
    "EnvSecretStore",
    "LocalWalletLedger",
    "SecretStore",
    "TransferReceipt",
    "WalletLedger",
    "WalletLedgerError",
    "WalletPermanentError",
    "WalletTransientError",
]
