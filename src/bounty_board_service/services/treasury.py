"""Caller-initiated fund movements: escrow top-ups, withdrawals and swap records."""

from __future__ import annotations

import asyncio
import uuid
from decimal import Decimal
from typing import TYPE_CHECKING

from bounty_board_service.clients.wallet_ledger import (
    WalletPermanentError,
    WalletTransientError,
)
from bounty_board_service.core.exceptions import NotFound, ServiceError, ValidationFailed
from bounty_board_service.logging import get_logger
from bounty_board_service.models import (
    MANAGE_TASKS,
    TransactionCategory,
    TransactionRecord,
)
from bounty_board_service.services.engine_store import DuplicateTransactionError

if TYPE_CHECKING:
    from bounty_board_service.clients.wallet_ledger import TransferReceipt, WalletLedger
    from bounty_board_service.services.engine_store import EngineStore
    from bounty_board_service.services.permission_resolver import PermissionResolver

_SWAP_CATEGORIES = frozenset({TransactionCategory.SWAP_USDC, TransactionCategory.SWAP_XLM})


def _validate_amount(amount: Decimal) -> None:
    if not amount.is_finite() or amount <= 0:
        raise ValidationFailed("INVALID_AMOUNT", "Amount must be positive")


class Treasury:
    """
    Records TOP_UP, WITHDRAWAL and SWAP_* transactions.

    These never touch task state. A repeated ``idempotency_key`` (or
    ``tx_hash`` for swaps) returns the row recorded the first time.
    """

    def __init__(
        self,
        store: EngineStore,
        wallet_ledger: WalletLedger,
        resolver: PermissionResolver,
        timeout_seconds: float,
    ) -> None:
        self._store = store
        self._wallet_ledger = wallet_ledger
        self._resolver = resolver
        self._timeout_seconds = timeout_seconds
        self._logger = get_logger(__name__)

    async def _transfer(
        self,
        *,
        source_address: str,
        destination_address: str,
        asset: str,
        amount: Decimal,
        idempotency_key: str,
        secret_ref: str,
    ) -> TransferReceipt:
        """Run a ledger transfer and translate ledger errors into ServiceErrors."""
        try:
            async with asyncio.timeout(self._timeout_seconds):
                return await self._wallet_ledger.transfer(
                    source_address=source_address,
                    destination_address=destination_address,
                    asset=asset,
                    amount=amount,
                    idempotency_key=idempotency_key,
                    secret_ref=secret_ref,
                )
        except (TimeoutError, WalletTransientError) as exc:
            self._logger.warning(
                "Wallet ledger unavailable",
                extra={"idempotency_key": idempotency_key, "error": str(exc)},
            )
            raise ServiceError(
                "WALLET_LEDGER_UNAVAILABLE",
                "Wallet ledger did not complete the transfer; retry with the same key",
                502,
                {"idempotency_key": idempotency_key},
            ) from exc
        except WalletPermanentError as exc:
            raise ValidationFailed(
                exc.code,
                exc.message,
                402 if exc.code == "INSUFFICIENT_FUNDS" else 400,
                idempotency_key=idempotency_key,
            ) from exc

    def _record(self, record: TransactionRecord) -> TransactionRecord:
        try:
            with self._store.unit_of_work() as uow:
                uow.insert_transaction(record)
        except DuplicateTransactionError:
            existing = self._store.get_transaction_by_hash(record.tx_hash)
            if existing is None:
                raise
            return existing
        self._logger.info(
            "Transaction recorded",
            extra={
                "tx_hash": record.tx_hash,
                "category": record.category.value,
                "amount": str(record.amount),
            },
        )
        return record

    async def fund_escrow(
        self,
        installation_id: str,
        amount: Decimal,
        asset: str,
        acting_user_id: str,
        idempotency_key: str | None = None,
    ) -> TransactionRecord:
        """Move funds from the installation's operating wallet into its escrow wallet."""
        _validate_amount(amount)
        installation = self._store.get_installation(installation_id)
        if installation is None:
            raise NotFound("installation", installation_id)
        self._resolver.require(acting_user_id, installation_id, MANAGE_TASKS)

        key = idempotency_key or f"topup-{uuid.uuid4()}"
        receipt = await self._transfer(
            source_address=installation.wallet.address,
            destination_address=installation.escrow_wallet.address,
            asset=asset,
            amount=amount,
            idempotency_key=key,
            secret_ref=installation.wallet.secret_ref,
        )
        return self._record(
            TransactionRecord(
                transaction_id=f"tx-{uuid.uuid4()}",
                tx_hash=receipt.tx_hash,
                category=TransactionCategory.TOP_UP,
                amount=receipt.amount,
                asset=receipt.asset,
                source_address=receipt.source_address,
                destination_address=receipt.destination_address,
                asset_from=None,
                asset_to=None,
                task_id=None,
                installation_id=installation_id,
                user_id=acting_user_id,
                done_at=receipt.done_at,
            )
        )

    async def withdraw_funds(
        self,
        user_id: str,
        destination_address: str,
        amount: Decimal,
        asset: str,
        idempotency_key: str | None = None,
    ) -> TransactionRecord:
        """Send funds from the user's primary wallet to an external address."""
        _validate_amount(amount)
        user = self._store.get_user(user_id)
        if user is None:
            raise NotFound("user", user_id)

        key = idempotency_key or f"withdraw-{uuid.uuid4()}"
        receipt = await self._transfer(
            source_address=user.wallet.address,
            destination_address=destination_address,
            asset=asset,
            amount=amount,
            idempotency_key=key,
            secret_ref=user.wallet.secret_ref,
        )
        return self._record(
            TransactionRecord(
                transaction_id=f"tx-{uuid.uuid4()}",
                tx_hash=receipt.tx_hash,
                category=TransactionCategory.WITHDRAWAL,
                amount=receipt.amount,
                asset=receipt.asset,
                source_address=receipt.source_address,
                destination_address=receipt.destination_address,
                asset_from=None,
                asset_to=None,
                task_id=None,
                installation_id=None,
                user_id=user_id,
                done_at=receipt.done_at,
            )
        )

    def record_swap(
        self,
        *,
        user_id: str,
        tx_hash: str,
        category: TransactionCategory,
        amount: Decimal,
        asset_from: str,
        asset_to: str,
        done_at: str,
        installation_id: str | None = None,
    ) -> TransactionRecord:
        """Record a currency conversion that cleared on the settlement network."""
        if category not in _SWAP_CATEGORIES:
            raise ValidationFailed(
                "INVALID_CATEGORY",
                "Swaps must be recorded as SWAP_USDC or SWAP_XLM",
                category=category.value,
            )
        _validate_amount(amount)
        if not tx_hash:
            raise ValidationFailed("INVALID_TX_HASH", "tx_hash is required")
        user = self._store.get_user(user_id)
        if user is None:
            raise NotFound("user", user_id)

        return self._record(
            TransactionRecord(
                transaction_id=f"tx-{uuid.uuid4()}",
                tx_hash=tx_hash,
                category=category,
                amount=amount,
                asset=asset_to,
                source_address=user.wallet.address,
                destination_address=user.wallet.address,
                asset_from=asset_from,
                asset_to=asset_to,
                task_id=None,
                installation_id=installation_id,
                user_id=user_id,
                done_at=done_at,
            )
        )
