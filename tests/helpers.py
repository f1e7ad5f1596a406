"""Shared test helpers for seeding a marketplace and injecting ledger faults."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from bounty_board_service.models import WalletRef

if TYPE_CHECKING:
    from bounty_board_service.clients.local_wallet_ledger import LocalWalletLedger
    from bounty_board_service.clients.wallet_ledger import TransferReceipt
    from bounty_board_service.models import Task
    from bounty_board_service.services.task_manager import TaskManager

INSTALLATION_ID = "inst-acme"
CREATOR_ID = "u-creator"
ALICE_ID = "u-alice"
BOB_ID = "u-bob"
MALLORY_ID = "u-mallory"

INSTALLATION_WALLET = WalletRef("addr-inst-acme", "inst-acme/wallet")
ESCROW_WALLET = WalletRef("addr-inst-acme-escrow", "inst-acme/escrow")


def user_wallet(user_id: str) -> WalletRef:
    """Deterministic primary wallet for a test user."""
    return WalletRef(f"addr-{user_id}", f"{user_id}/wallet")


@dataclass
class Marketplace:
    installation_id: str
    creator_id: str
    alice_id: str
    bob_id: str
    mallory_id: str
    escrow_address: str


async def seed_marketplace(
    manager: TaskManager,
    ledger: LocalWalletLedger,
    *,
    escrow_funds: Decimal = Decimal("1000"),
    asset: str = "USDC",
) -> Marketplace:
    """
    Register four users and one installation owned by the creator.

    Alice and Bob are outside contributors, Mallory is registered but belongs
    to no installation. The escrow wallet is credited with ``escrow_funds``.
    """
    for user_id in (CREATOR_ID, ALICE_ID, BOB_ID, MALLORY_ID):
        await manager.register_user(user_id, user_id.removeprefix("u-"), user_wallet(user_id))
    await manager.create_installation(
        INSTALLATION_ID, CREATOR_ID, INSTALLATION_WALLET, ESCROW_WALLET
    )
    if escrow_funds > 0:
        ledger.credit(ESCROW_WALLET.address, asset, escrow_funds)
    return Marketplace(
        installation_id=INSTALLATION_ID,
        creator_id=CREATOR_ID,
        alice_id=ALICE_ID,
        bob_id=BOB_ID,
        mallory_id=MALLORY_ID,
        escrow_address=ESCROW_WALLET.address,
    )


async def create_open_task(
    manager: TaskManager, market: Marketplace, bounty: str = "100", **kwargs: Any
) -> Task:
    return await manager.create_task(
        market.installation_id,
        market.creator_id,
        {"repository": "acme/widgets", "number": 42, "title": "Fix the flux capacitor"},
        bounty,
        **kwargs,
    )


async def create_task_in_progress(
    manager: TaskManager, market: Marketplace, bounty: str = "100"
) -> Task:
    """Create a task, have Alice apply, and accept her."""
    task = await create_open_task(manager, market, bounty)
    await manager.apply_to_task(task.task_id, market.alice_id)
    return await manager.accept_applicant(task.task_id, market.alice_id, market.creator_id)


async def create_task_with_submission(
    manager: TaskManager, market: Marketplace, bounty: str = "100"
) -> Task:
    task = await create_task_in_progress(manager, market, bounty)
    return await manager.submit_work(
        task.task_id, market.alice_id, "https://github.com/acme/widgets/pull/7"
    )


class FlakyWalletLedger:
    """
    Wraps a real ledger and injects failures into the first ``failures`` transfers.

    ``fail_before`` raises before the inner transfer runs. ``hang_after``
    performs the inner transfer and then sleeps, so a caller's timeout fires
    although the funds already moved.
    """

    def __init__(
        self,
        inner: LocalWalletLedger,
        *,
        fail_before: Exception | None = None,
        hang_after: float | None = None,
        failures: int = 1,
        yield_on_lookup: bool = False,
    ) -> None:
        self.inner = inner
        self.transfer_calls = 0
        self.find_calls = 0
        self._fail_before = fail_before
        self._hang_after = hang_after
        self._remaining = failures
        self._yield_on_lookup = yield_on_lookup

    async def transfer(self, **kwargs: Any) -> TransferReceipt:
        self.transfer_calls += 1
        failing = self._remaining > 0
        if failing:
            self._remaining -= 1
        if failing and self._fail_before is not None:
            raise self._fail_before
        receipt = await self.inner.transfer(**kwargs)
        if failing and self._hang_after is not None:
            await asyncio.sleep(self._hang_after)
        return receipt

    async def balance(self, address: str, asset: str) -> Decimal:
        return await self.inner.balance(address, asset)

    async def find_transfer(self, idempotency_key: str) -> TransferReceipt | None:
        self.find_calls += 1
        if self._yield_on_lookup:
            await asyncio.sleep(0)
        return await self.inner.find_transfer(idempotency_key)
