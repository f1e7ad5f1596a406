"""Unit test fixtures: cache clearing plus an engine on temporary SQLite files."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from bounty_board_service.clients.local_wallet_ledger import LocalWalletLedger
from bounty_board_service.config import clear_settings_cache
from bounty_board_service.core.state import reset_app_state
from bounty_board_service.services.engine_store import EngineStore
from bounty_board_service.services.task_manager import TaskManager, build_task_manager
from tests.helpers import Marketplace, seed_marketplace

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _clear_caches():
    """Clear settings cache and app state between tests."""
    clear_settings_cache()
    reset_app_state()
    yield
    clear_settings_cache()
    reset_app_state()


@pytest.fixture
def store(tmp_path: Path) -> Iterator[EngineStore]:
    engine_store = EngineStore(db_path=str(tmp_path / "bounty-board.db"))
    yield engine_store
    engine_store.close()


@pytest.fixture
def ledger(tmp_path: Path) -> Iterator[LocalWalletLedger]:
    wallet_ledger = LocalWalletLedger(str(tmp_path / "wallet-ledger.db"))
    yield wallet_ledger
    wallet_ledger.close()


@pytest.fixture
def manager(store: EngineStore, ledger: LocalWalletLedger) -> TaskManager:
    return build_task_manager(
        store,
        ledger,
        settlement_timeout_seconds=2,
        default_asset="USDC",
        require_funded_escrow=True,
    )


@pytest.fixture
async def market(manager: TaskManager, ledger: LocalWalletLedger) -> Marketplace:
    return await seed_marketplace(manager, ledger)
