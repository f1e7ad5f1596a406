"""Unit tests for escrow settlement: idempotency, timeouts and failure handling."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from bounty_board_service.clients.wallet_ledger import (
    WalletPermanentError,
    WalletTransientError,
)
from bounty_board_service.core.exceptions import (
    NotMember,
    NotReadyToSettle,
    PermissionDenied,
    SettlementFailed,
    SettlementRetryable,
)
from bounty_board_service.core.lifespan import run_settlement_sweep
from bounty_board_service.models import (
    ActivityType,
    TaskStatus,
    TransactionCategory,
    TransactionRecord,
)
from bounty_board_service.services.task_manager import build_task_manager
from tests.helpers import (
    ESCROW_WALLET,
    FlakyWalletLedger,
    create_task_with_submission,
    seed_marketplace,
    user_wallet,
)


def _manager(store, wallet_ledger, *, timeout: float = 2, funded: bool = True):
    return build_task_manager(
        store,
        wallet_ledger,
        settlement_timeout_seconds=timeout,
        default_asset="USDC",
        require_funded_escrow=funded,
    )


def _bounty_rows(store, task_id: str):
    return store.list_transactions(task_id=task_id, category=TransactionCategory.BOUNTY)


@pytest.mark.unit
async def test_timeout_then_retry_finalizes_without_second_transfer(store, ledger) -> None:
    """The first transfer clears but answers too late; the retry finds it and finalizes."""
    flaky = FlakyWalletLedger(ledger, hang_after=5.0)
    manager = _manager(store, flaky, timeout=0.05)
    market = await seed_marketplace(manager, ledger)
    task = await create_task_with_submission(manager, market)

    task = await manager.mark_task_completed(task.task_id, market.creator_id)

    assert task.status == TaskStatus.MARKED_AS_COMPLETED
    assert task.settled is False
    assert _bounty_rows(store, task.task_id) == []
    assert flaky.transfer_calls == 1
    # Funds moved on the ledger even though the engine saw a timeout.
    assert await ledger.balance(ESCROW_WALLET.address, "USDC") == Decimal("900")

    result = await manager.settle_task(task.task_id)

    assert result.already_settled is False
    assert result.task.status == TaskStatus.COMPLETED
    assert result.task.settled is True
    assert flaky.transfer_calls == 1
    assert len(_bounty_rows(store, task.task_id)) == 1
    assert await ledger.balance(ESCROW_WALLET.address, "USDC") == Decimal("900")
    assert await ledger.balance(user_wallet(market.alice_id).address, "USDC") == Decimal("100")

    summary = await manager.get_contribution_summary(market.alice_id)
    assert summary.tasks_completed == 1
    assert summary.total_earnings == Decimal("100")
    assert summary.active_tasks == 0


@pytest.mark.unit
async def test_transient_error_leaves_task_marked_and_retryable(store, ledger) -> None:
    flaky = FlakyWalletLedger(
        ledger, fail_before=WalletTransientError("LEDGER_BUSY", "try again later")
    )
    manager = _manager(store, flaky)
    market = await seed_marketplace(manager, ledger)
    task = await create_task_with_submission(manager, market)

    task = await manager.mark_task_completed(task.task_id, market.creator_id)
    assert task.status == TaskStatus.MARKED_AS_COMPLETED
    assert task.settlement_error is None
    assert manager.get_stats()["pending_settlements"] == 1

    results = await manager.retry_pending_settlements()

    assert len(results) == 1
    assert results[0].task.status == TaskStatus.COMPLETED
    assert flaky.transfer_calls == 2
    assert manager.get_stats()["pending_settlements"] == 0


@pytest.mark.unit
async def test_settle_raises_retryable_on_timeout(store, ledger) -> None:
    slow = AsyncMock()
    slow.balance = AsyncMock(return_value=Decimal("1000"))
    slow.find_transfer = AsyncMock(return_value=None)

    async def never_answers(**_kwargs):
        await asyncio.sleep(5)

    slow.transfer = AsyncMock(side_effect=never_answers)
    manager = _manager(store, slow, timeout=0.05)
    market = await seed_marketplace(manager, ledger)
    task = await create_task_with_submission(manager, market)
    task = await manager.mark_task_completed(task.task_id, market.creator_id)

    with pytest.raises(SettlementRetryable) as exc_info:
        await manager.settle_task(task.task_id)

    assert exc_info.value.retryable is True
    assert exc_info.value.status_code == 503
    assert exc_info.value.details["constraint"] == "timeout"
    assert (await manager.get_task(task.task_id)).status == TaskStatus.MARKED_AS_COMPLETED


@pytest.mark.unit
async def test_permanent_failure_blocks_until_unblocked(store, ledger) -> None:
    manager = _manager(store, ledger, funded=False)
    market = await seed_marketplace(manager, ledger, escrow_funds=Decimal("0"))
    task = await create_task_with_submission(manager, market)

    with pytest.raises(SettlementFailed) as exc_info:
        await manager.mark_task_completed(task.task_id, market.creator_id)

    assert exc_info.value.details["constraint"] == "INSUFFICIENT_FUNDS"
    blocked = await manager.get_task(task.task_id)
    assert blocked.status == TaskStatus.MARKED_AS_COMPLETED
    assert blocked.settled is False
    assert blocked.settlement_error is not None
    assert blocked.settlement_error.startswith("INSUFFICIENT_FUNDS")
    activity_types = [a.activity_type for a in await manager.list_task_activities(task.task_id)]
    assert activity_types[-1] == ActivityType.SETTLEMENT_FAILED

    # Blocked tasks are neither settled on demand nor picked up by the sweep.
    with pytest.raises(SettlementFailed):
        await manager.settle_task(task.task_id)
    assert await manager.retry_pending_settlements() == []

    ledger.credit(ESCROW_WALLET.address, "USDC", Decimal("500"))
    with pytest.raises(NotMember):
        await manager.unblock_settlement(task.task_id, market.alice_id)
    await manager.grant_permission(
        market.installation_id, market.bob_id, {"MANAGE_TASKS"}, market.creator_id
    )
    with pytest.raises(PermissionDenied):
        await manager.unblock_settlement(task.task_id, market.bob_id)

    unblocked = await manager.unblock_settlement(task.task_id, market.creator_id)
    assert unblocked.settlement_error is None

    result = await manager.settle_task(task.task_id)
    assert result.task.status == TaskStatus.COMPLETED
    assert await ledger.balance(ESCROW_WALLET.address, "USDC") == Decimal("400")


@pytest.mark.unit
async def test_permanent_error_from_adapter_is_recorded(store, ledger) -> None:
    flaky = FlakyWalletLedger(
        ledger, fail_before=WalletPermanentError("INVALID_ADDRESS", "no such account")
    )
    manager = _manager(store, flaky)
    market = await seed_marketplace(manager, ledger)
    task = await create_task_with_submission(manager, market)

    with pytest.raises(SettlementFailed) as exc_info:
        await manager.mark_task_completed(task.task_id, market.creator_id)

    assert exc_info.value.retryable is False
    assert exc_info.value.status_code == 502
    failed = [
        a
        for a in await manager.list_task_activities(task.task_id)
        if a.activity_type == ActivityType.SETTLEMENT_FAILED
    ]
    assert len(failed) == 1
    assert failed[0].details["code"] == "INVALID_ADDRESS"


@pytest.mark.unit
async def test_settle_rejects_tasks_not_marked(manager, market) -> None:
    task = await create_task_with_submission(manager, market)

    with pytest.raises(NotReadyToSettle) as exc_info:
        await manager.settle_task(task.task_id)

    assert exc_info.value.details["status"] == TaskStatus.IN_PROGRESS.value


@pytest.mark.unit
async def test_settle_after_completion_is_rejected(manager, market, store) -> None:
    task = await create_task_with_submission(manager, market)
    task = await manager.mark_task_completed(task.task_id, market.creator_id)
    assert task.settled is True

    with pytest.raises(NotReadyToSettle):
        await manager.settle_task(task.task_id)

    assert len(_bounty_rows(store, task.task_id)) == 1


@pytest.mark.unit
async def test_concurrent_settles_record_one_bounty(store, ledger) -> None:
    flaky = FlakyWalletLedger(
        ledger,
        fail_before=WalletTransientError("LEDGER_BUSY", "busy"),
        yield_on_lookup=True,
    )
    manager = _manager(store, flaky)
    market = await seed_marketplace(manager, ledger)
    task = await create_task_with_submission(manager, market)
    task = await manager.mark_task_completed(task.task_id, market.creator_id)
    assert task.status == TaskStatus.MARKED_AS_COMPLETED

    results = await asyncio.gather(
        *(manager.settle_task(task.task_id) for _ in range(4)),
        return_exceptions=True,
    )

    errors = [result for result in results if isinstance(result, BaseException)]
    settled = [result for result in results if not isinstance(result, BaseException)]
    assert all(isinstance(error, NotReadyToSettle) for error in errors)
    assert len([result for result in settled if not result.already_settled]) == 1
    assert len(_bounty_rows(store, task.task_id)) == 1
    assert await ledger.balance(ESCROW_WALLET.address, "USDC") == Decimal("900")

    summary = await manager.get_contribution_summary(market.alice_id)
    assert summary.tasks_completed == 1
    assert summary.total_earnings == Decimal("100")


@pytest.mark.unit
async def test_existing_bounty_row_is_finalized_without_transfer(store, ledger) -> None:
    """Recovery path: the BOUNTY row committed but the task was never finalized."""
    flaky = FlakyWalletLedger(
        ledger, fail_before=WalletTransientError("LEDGER_BUSY", "busy")
    )
    manager = _manager(store, flaky)
    market = await seed_marketplace(manager, ledger)
    task = await create_task_with_submission(manager, market)
    task = await manager.mark_task_completed(task.task_id, market.creator_id)

    with store.unit_of_work() as uow:
        uow.insert_transaction(
            TransactionRecord(
                transaction_id="tx-recovered",
                tx_hash="hash-recovered",
                category=TransactionCategory.BOUNTY,
                amount=Decimal("100"),
                asset="USDC",
                source_address=ESCROW_WALLET.address,
                destination_address=user_wallet(market.alice_id).address,
                asset_from=None,
                asset_to=None,
                task_id=task.task_id,
                installation_id=market.installation_id,
                user_id=market.alice_id,
                done_at="2026-01-01T00:00:00.000000Z",
            )
        )

    result = await manager.settle_task(task.task_id)

    assert result.transaction.tx_hash == "hash-recovered"
    assert result.task.status == TaskStatus.COMPLETED
    assert flaky.transfer_calls == 1
    assert flaky.find_calls == 1


@pytest.mark.unit
async def test_cancelled_attempt_is_recovered_by_next_settle(store, ledger) -> None:
    """Cancelling mid-transfer leaves the task MARKED; the next settle finds the transfer."""
    busy = FlakyWalletLedger(ledger, fail_before=WalletTransientError("LEDGER_BUSY", "busy"))
    market = await seed_marketplace(_manager(store, busy), ledger)
    task = await create_task_with_submission(_manager(store, busy), market)
    task = await _manager(store, busy).mark_task_completed(task.task_id, market.creator_id)
    assert task.status == TaskStatus.MARKED_AS_COMPLETED

    hanging = _manager(store, FlakyWalletLedger(ledger, hang_after=5.0), timeout=10)
    attempt = asyncio.create_task(hanging.settle_task(task.task_id))
    await asyncio.sleep(0.05)
    attempt.cancel()
    with pytest.raises(asyncio.CancelledError):
        await attempt

    assert (await hanging.get_task(task.task_id)).status == TaskStatus.MARKED_AS_COMPLETED

    result = await _manager(store, ledger).settle_task(task.task_id)

    assert result.task.settled is True
    assert await ledger.balance(ESCROW_WALLET.address, "USDC") == Decimal("900")
    assert len(_bounty_rows(store, task.task_id)) == 1


@pytest.mark.unit
async def test_unexpected_ledger_error_is_retryable(store, ledger) -> None:
    broken = FlakyWalletLedger(ledger, fail_before=ConnectionError("socket reset"))
    manager = _manager(store, broken)
    market = await seed_marketplace(manager, ledger)
    task = await create_task_with_submission(manager, market)

    task = await manager.mark_task_completed(task.task_id, market.creator_id)

    assert task.status == TaskStatus.MARKED_AS_COMPLETED
    assert task.settlement_error is None
    assert _bounty_rows(store, task.task_id) == []

    result = await manager.settle_task(task.task_id)
    assert result.task.settled is True


@pytest.mark.unit
async def test_sweep_continues_past_unexpected_ledger_error(store, ledger) -> None:
    busy = FlakyWalletLedger(
        ledger, fail_before=WalletTransientError("LEDGER_BUSY", "busy"), failures=2
    )
    manager = _manager(store, busy)
    market = await seed_marketplace(manager, ledger)
    first = await create_task_with_submission(manager, market)
    first = await manager.mark_task_completed(first.task_id, market.creator_id)
    second = await create_task_with_submission(manager, market)
    second = await manager.mark_task_completed(second.task_id, market.creator_id)
    assert manager.get_stats()["pending_settlements"] == 2

    broken = FlakyWalletLedger(ledger, fail_before=ConnectionError("socket reset"))
    sweeper = _manager(store, broken)

    results = await sweeper.retry_pending_settlements()

    assert len(results) == 1
    assert broken.transfer_calls == 2
    assert sweeper.get_stats()["pending_settlements"] == 1

    results = await sweeper.retry_pending_settlements()
    assert len(results) == 1
    assert sweeper.get_stats()["pending_settlements"] == 0
    assert await ledger.balance(ESCROW_WALLET.address, "USDC") == Decimal("800")


@pytest.mark.unit
async def test_settlement_sweep_survives_crashing_iteration() -> None:
    calls: list[int] = []
    third_call = asyncio.Event()

    async def retry_pending_settlements():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("store unavailable")
        if len(calls) == 3:
            third_call.set()
        return []

    task_manager = SimpleNamespace(retry_pending_settlements=retry_pending_settlements)
    sweep = asyncio.create_task(run_settlement_sweep(task_manager, 0))

    await asyncio.wait_for(third_call.wait(), timeout=1)
    sweep.cancel()
    with pytest.raises(asyncio.CancelledError):
        await sweep

    assert len(calls) >= 3
