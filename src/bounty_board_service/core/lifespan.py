"""Application lifecycle management."""

from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from bounty_board_service.clients.local_wallet_ledger import LocalWalletLedger
from bounty_board_service.clients.secret_store import EnvSecretStore
from bounty_board_service.config import get_settings
from bounty_board_service.core.state import init_app_state
from bounty_board_service.logging import get_logger, setup_logging
from bounty_board_service.services.engine_store import EngineStore
from bounty_board_service.services.task_manager import build_task_manager

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI

    from bounty_board_service.services.task_manager import TaskManager


async def run_settlement_sweep(task_manager: TaskManager, interval_seconds: float) -> None:
    """Retry pending settlements every ``interval_seconds`` until cancelled."""
    logger = get_logger(__name__)
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            results = await task_manager.retry_pending_settlements()
        except Exception:
            logger.exception("Settlement sweep failed, retrying next interval")
            continue
        if results:
            logger.info("Settlement sweep finished", extra={"settled": len(results)})


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    secret_store = (
        EnvSecretStore(settings.ledger.secret_env_prefix)
        if settings.ledger.secret_env_prefix
        else None
    )
    wallet_ledger = LocalWalletLedger(settings.ledger.path, secret_store=secret_store)
    state.wallet_ledger = wallet_ledger

    store = EngineStore(db_path=settings.database.path)
    state.store = store

    task_manager = build_task_manager(
        store,
        wallet_ledger,
        settlement_timeout_seconds=settings.settlement.timeout_seconds,
        default_asset=settings.settlement.default_asset,
        require_funded_escrow=settings.settlement.require_funded_escrow,
    )
    state.task_manager = task_manager

    if settings.settlement.retry_interval_seconds > 0:
        state.retry_task = asyncio.create_task(
            run_settlement_sweep(task_manager, settings.settlement.retry_interval_seconds)
        )

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": settings.database.path,
            "ledger_path": settings.ledger.path,
            "retry_interval_seconds": settings.settlement.retry_interval_seconds,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    if state.retry_task is not None:
        state.retry_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await state.retry_task

    store.close()
    wallet_ledger.close()
