"""SQLite-backed wallet ledger used as the reference adapter."""

from __future__ import annotations

import contextlib
import sqlite3
import uuid
from decimal import Decimal
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING

from bounty_board_service.clients.wallet_ledger import TransferReceipt, WalletPermanentError
from bounty_board_service.logging import get_logger
from bounty_board_service.models import now_iso

if TYPE_CHECKING:
    from bounty_board_service.clients.secret_store import SecretStore


class LocalWalletLedger:
    """
    Holds per-(address, asset) balances and a log of cleared transfers.

    Balance mutations and the transfer log entry happen in a single database
    transaction. The idempotency key is unique in the log, so a repeated
    transfer returns the original receipt.
    """

    def __init__(self, db_path: str, secret_store: SecretStore | None = None) -> None:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = RLock()
        self._secret_store = secret_store
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._logger = get_logger(__name__)
        self._init_schema()

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS balances (
                    address TEXT NOT NULL,
                    asset TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    PRIMARY KEY (address, asset)
                );

                CREATE TABLE IF NOT EXISTS transfers (
                    tx_hash TEXT PRIMARY KEY,
                    idempotency_key TEXT NOT NULL UNIQUE,
                    source_address TEXT NOT NULL,
                    destination_address TEXT NOT NULL,
                    asset TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    done_at TEXT NOT NULL
                );
                """
            )
            self._db.commit()

    def _read_balance(self, address: str, asset: str) -> Decimal:
        row = self._db.execute(
            "SELECT amount FROM balances WHERE address = ? AND asset = ?",
            (address, asset),
        ).fetchone()
        return Decimal(row[0]) if row is not None else Decimal("0")

    def _write_balance(self, address: str, asset: str, amount: Decimal) -> None:
        self._db.execute(
            "INSERT INTO balances (address, asset, amount) VALUES (?, ?, ?) "
            "ON CONFLICT(address, asset) DO UPDATE SET amount = excluded.amount",
            (address, asset, str(amount)),
        )

    def _read_transfer(self, idempotency_key: str) -> TransferReceipt | None:
        row = self._db.execute(
            "SELECT tx_hash, idempotency_key, source_address, destination_address, asset, "
            "amount, done_at FROM transfers WHERE idempotency_key = ?",
            (idempotency_key,),
        ).fetchone()
        if row is None:
            return None
        return TransferReceipt(
            tx_hash=row[0],
            idempotency_key=row[1],
            source_address=row[2],
            destination_address=row[3],
            asset=row[4],
            amount=Decimal(row[5]),
            done_at=row[6],
        )

    def credit(self, address: str, asset: str, amount: Decimal) -> Decimal:
        """Add funds to an address (operator minting). Returns the new balance."""
        if amount <= 0:
            raise WalletPermanentError("INVALID_AMOUNT", "Amount must be positive")
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                new_balance = self._read_balance(address, asset) + amount
                self._write_balance(address, asset, new_balance)
                self._db.commit()
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.rollback()
                raise
        return new_balance

    async def balance(self, address: str, asset: str) -> Decimal:
        with self._lock:
            return self._read_balance(address, asset)

    async def find_transfer(self, idempotency_key: str) -> TransferReceipt | None:
        with self._lock:
            return self._read_transfer(idempotency_key)

    async def transfer(
        self,
        *,
        source_address: str,
        destination_address: str,
        asset: str,
        amount: Decimal,
        idempotency_key: str,
        secret_ref: str,
    ) -> TransferReceipt:
        """
        Move ``amount`` of ``asset`` between two addresses.

        Raises:
            WalletPermanentError: INVALID_AMOUNT, INVALID_ADDRESS, UNKNOWN_SECRET,
                IDEMPOTENCY_MISMATCH or INSUFFICIENT_FUNDS.
        """
        if amount <= 0:
            raise WalletPermanentError("INVALID_AMOUNT", "Amount must be positive")
        if not source_address or not destination_address:
            raise WalletPermanentError("INVALID_ADDRESS", "Source and destination are required")
        if source_address == destination_address:
            raise WalletPermanentError(
                "INVALID_ADDRESS", "Source and destination must be different addresses"
            )
        if self._secret_store is not None and self._secret_store.resolve(secret_ref) is None:
            raise WalletPermanentError(
                "UNKNOWN_SECRET", f"No signing secret for reference {secret_ref!r}"
            )

        with self._lock:
            existing = self._read_transfer(idempotency_key)
            if existing is not None:
                if (
                    existing.source_address != source_address
                    or existing.destination_address != destination_address
                    or existing.asset != asset
                    or existing.amount != amount
                ):
                    raise WalletPermanentError(
                        "IDEMPOTENCY_MISMATCH",
                        f"Key {idempotency_key!r} already used for a different transfer",
                    )
                self._logger.info(
                    "Transfer already cleared",
                    extra={"idempotency_key": idempotency_key, "tx_hash": existing.tx_hash},
                )
                return existing

            receipt = TransferReceipt(
                tx_hash=uuid.uuid4().hex,
                idempotency_key=idempotency_key,
                source_address=source_address,
                destination_address=destination_address,
                asset=asset,
                amount=amount,
                done_at=now_iso(),
            )
            try:
                self._db.execute("BEGIN IMMEDIATE")
                source_balance = self._read_balance(source_address, asset)
                if source_balance < amount:
                    raise WalletPermanentError(
                        "INSUFFICIENT_FUNDS",
                        f"{source_address} holds {source_balance} {asset}, needs {amount}",
                    )
                self._write_balance(source_address, asset, source_balance - amount)
                self._write_balance(
                    destination_address,
                    asset,
                    self._read_balance(destination_address, asset) + amount,
                )
                self._db.execute(
                    "INSERT INTO transfers (tx_hash, idempotency_key, source_address, "
                    "destination_address, asset, amount, done_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        receipt.tx_hash,
                        receipt.idempotency_key,
                        receipt.source_address,
                        receipt.destination_address,
                        receipt.asset,
                        str(receipt.amount),
                        receipt.done_at,
                    ),
                )
                self._db.commit()
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.rollback()
                raise

        self._logger.info(
            "Transfer cleared",
            extra={
                "idempotency_key": idempotency_key,
                "tx_hash": receipt.tx_hash,
                "asset": asset,
                "amount": str(amount),
            },
        )
        return receipt

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
