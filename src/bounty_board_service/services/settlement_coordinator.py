"""Escrow settlement: move a completed task's bounty to its contributor exactly once."""

from __future__ import annotations

import asyncio
import uuid
from typing import TYPE_CHECKING

from bounty_board_service.clients.wallet_ledger import (
    WalletPermanentError,
    WalletTransientError,
)
from bounty_board_service.core.exceptions import (
    NotFound,
    NotReadyToSettle,
    ServiceError,
    SettlementFailed,
    SettlementRetryable,
)
from bounty_board_service.logging import get_logger
from bounty_board_service.models import (
    SettlementResult,
    Task,
    TaskStatus,
    TransactionCategory,
    TransactionRecord,
)

if TYPE_CHECKING:
    from bounty_board_service.clients.wallet_ledger import TransferReceipt, WalletLedger
    from bounty_board_service.services.engine_store import EngineStore, UnitOfWork
    from bounty_board_service.services.task_state_machine import TaskStateMachine


class SettlementCoordinator:
    """
    Transfers a task's bounty from the installation escrow wallet to the
    contributor and finalizes the task.

    The idempotency key is the task_id. Re-invocation is safe because every
    attempt first checks for an existing BOUNTY row and then asks the ledger
    whether the key already cleared before transferring. The transfer itself
    runs outside any storage transaction; the BOUNTY row, the COMPLETED/settled
    update, the SETTLED activity and the summary delta commit together.
    """

    def __init__(
        self,
        store: EngineStore,
        wallet_ledger: WalletLedger,
        state_machine: TaskStateMachine,
        timeout_seconds: float,
    ) -> None:
        self._store = store
        self._wallet_ledger = wallet_ledger
        self._state_machine = state_machine
        self._timeout_seconds = timeout_seconds
        self._logger = get_logger(__name__)

    @staticmethod
    def _check_ready(task: Task) -> None:
        if task.status != TaskStatus.MARKED_AS_COMPLETED or task.settled:
            raise NotReadyToSettle(
                "Task is not awaiting settlement",
                task_id=task.task_id,
                status=task.status.value,
                constraint="status=MARKED_AS_COMPLETED and settled=false",
            )
        if task.settlement_error is not None:
            raise SettlementFailed(
                "Settlement is blocked until an administrator clears the failure",
                task_id=task.task_id,
                status=task.status.value,
                constraint=task.settlement_error,
            )
        if task.contributor_id is None:
            raise NotReadyToSettle(
                "Task has no contributor to pay",
                task_id=task.task_id,
                status=task.status.value,
                constraint="contributor_required",
            )

    def _finalize_existing(
        self, uow: UnitOfWork, task: Task, transaction: TransactionRecord
    ) -> SettlementResult:
        self._logger.info(
            "BOUNTY transaction already recorded, finalizing",
            extra={"task_id": task.task_id, "tx_hash": transaction.tx_hash},
        )
        task = self._state_machine.finalize(uow, task, transaction)
        return SettlementResult(task=task, transaction=transaction, already_settled=False)

    async def settle(self, task_id: str) -> SettlementResult:
        """
        Settle a MARKED_AS_COMPLETED task.

        Raises:
            NotReadyToSettle: wrong status or already settled.
            SettlementRetryable: timeout, transient or unrecognized ledger
                failure; the task stays MARKED_AS_COMPLETED and settle may be
                called again.
            SettlementFailed: permanent ledger failure, or the task is blocked
                by an earlier one.
        """
        # Phase 1: validate and short-circuit when the ledger row already exists.
        with self._store.unit_of_work() as uow:
            task = uow.get_task(task_id)
            if task is None:
                raise NotFound("task", task_id)
            self._check_ready(task)
            existing = uow.get_bounty_transaction(task_id)
            if existing is not None:
                return self._finalize_existing(uow, task, existing)
            installation = uow.get_installation(task.installation_id)
            contributor = uow.get_user(task.contributor_id) if task.contributor_id else None
        if installation is None:
            raise NotFound("installation", task.installation_id)
        if contributor is None:
            raise NotFound("user", str(task.contributor_id))

        # Phase 2: transfer outside the storage transaction.
        self._logger.info(
            "Settlement attempt",
            extra={
                "task_id": task_id,
                "amount": str(task.bounty),
                "asset": task.asset,
                "contributor_id": contributor.user_id,
            },
        )
        try:
            async with asyncio.timeout(self._timeout_seconds):
                receipt = await self._wallet_ledger.find_transfer(task_id)
                if receipt is None:
                    receipt = await self._wallet_ledger.transfer(
                        source_address=installation.escrow_wallet.address,
                        destination_address=contributor.wallet.address,
                        asset=task.asset,
                        amount=task.bounty,
                        idempotency_key=task_id,
                        secret_ref=installation.escrow_wallet.secret_ref,
                    )
        except TimeoutError as exc:
            self._logger.warning(
                "Settlement transfer timed out, outcome unknown",
                extra={"task_id": task_id, "timeout_seconds": self._timeout_seconds},
            )
            raise SettlementRetryable(
                "Wallet ledger did not answer in time; retry settlement",
                task_id=task_id,
                status=task.status.value,
                constraint="timeout",
            ) from exc
        except WalletTransientError as exc:
            self._logger.warning(
                "Settlement transfer failed transiently",
                extra={"task_id": task_id, "ledger_error": exc.code},
            )
            raise SettlementRetryable(
                exc.message,
                task_id=task_id,
                status=task.status.value,
                constraint=exc.code,
            ) from exc
        except WalletPermanentError as exc:
            self._record_permanent_failure(task_id, exc)
            raise SettlementFailed(
                exc.message,
                task_id=task_id,
                status=task.status.value,
                constraint=exc.code,
            ) from exc
        except Exception as exc:
            # Unmapped adapter failure: the transfer may or may not have cleared.
            self._logger.warning(
                "Settlement transfer failed unexpectedly, outcome unknown",
                extra={"task_id": task_id, "error_type": type(exc).__name__},
            )
            raise SettlementRetryable(
                "Wallet ledger call failed; retry settlement",
                task_id=task_id,
                status=task.status.value,
                constraint="ledger_unavailable",
            ) from exc

        # Phase 3: re-read and commit ledger row, finalize, activity and summary.
        return self._commit(task_id, receipt)

    def _commit(self, task_id: str, receipt: TransferReceipt) -> SettlementResult:
        with self._store.unit_of_work() as uow:
            task = uow.get_task(task_id)
            if task is None:
                raise NotFound("task", task_id)
            existing = uow.get_bounty_transaction(task_id)

            if task.status == TaskStatus.COMPLETED and task.settled and existing is not None:
                return SettlementResult(task=task, transaction=existing, already_settled=True)
            if existing is not None:
                return self._finalize_existing(uow, task, existing)

            transaction = TransactionRecord(
                transaction_id=f"tx-{uuid.uuid4()}",
                tx_hash=receipt.tx_hash,
                category=TransactionCategory.BOUNTY,
                amount=receipt.amount,
                asset=receipt.asset,
                source_address=receipt.source_address,
                destination_address=receipt.destination_address,
                asset_from=None,
                asset_to=None,
                task_id=task_id,
                installation_id=task.installation_id,
                user_id=task.contributor_id,
                done_at=receipt.done_at,
            )
            uow.insert_transaction(transaction)
            task = self._state_machine.finalize(uow, task, transaction)

        self._logger.info(
            "Task settled",
            extra={"task_id": task_id, "tx_hash": transaction.tx_hash},
        )
        return SettlementResult(task=task, transaction=transaction, already_settled=False)

    def _record_permanent_failure(self, task_id: str, exc: WalletPermanentError) -> None:
        self._logger.error(
            "Settlement transfer failed permanently",
            extra={"task_id": task_id, "ledger_error": exc.code, "reason": exc.message},
        )
        with self._store.unit_of_work() as uow:
            task = uow.get_task(task_id)
            if task is None or task.status != TaskStatus.MARKED_AS_COMPLETED:
                return
            self._state_machine.record_settlement_failure(uow, task, exc.code, exc.message)

    async def retry_pending_settlements(self) -> list[SettlementResult]:
        """
        Re-attempt every unblocked MARKED_AS_COMPLETED task.

        Failures are logged and left for the next sweep; a permanent failure
        blocks its task, which then drops out of the sweep.
        """
        results: list[SettlementResult] = []
        for task in self._store.list_tasks(pending_settlement=True):
            try:
                results.append(await self.settle(task.task_id))
            except ServiceError as exc:
                self._logger.warning(
                    "Pending settlement retry failed",
                    extra={"task_id": task.task_id, "error_code": exc.error},
                )
            except Exception:
                self._logger.exception(
                    "Pending settlement retry crashed", extra={"task_id": task.task_id}
                )
        return results
