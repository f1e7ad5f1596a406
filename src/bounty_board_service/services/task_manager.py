"""Task lifecycle management: the engine's exposed call surface."""

from __future__ import annotations

import asyncio
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from bounty_board_service.clients.wallet_ledger import WalletLedgerError
from bounty_board_service.core.exceptions import (
    NotFound,
    ServiceError,
    SettlementRetryable,
    ValidationFailed,
)
from bounty_board_service.logging import get_logger
from bounty_board_service.models import (
    MANAGE_TASKS,
    ContributionSummary,
    TaskStatus,
    User,
    now_iso,
)
from bounty_board_service.services.activity_recorder import ActivityRecorder
from bounty_board_service.services.application_manager import ApplicationManager
from bounty_board_service.services.engine_store import DuplicateUserError
from bounty_board_service.services.permission_resolver import PermissionResolver
from bounty_board_service.services.settlement_coordinator import SettlementCoordinator
from bounty_board_service.services.task_state_machine import TaskStateMachine
from bounty_board_service.services.team_manager import TeamManager
from bounty_board_service.services.treasury import Treasury

if TYPE_CHECKING:
    from bounty_board_service.clients.wallet_ledger import WalletLedger
    from bounty_board_service.models import (
        Installation,
        PermissionGrant,
        SettlementResult,
        Task,
        TaskActivity,
        TaskSubmission,
        TimelineType,
        TransactionCategory,
        TransactionRecord,
        WalletRef,
    )
    from bounty_board_service.services.engine_store import EngineStore


def _to_decimal(value: Decimal | str | int, field: str) -> Decimal:
    """Coerce an amount to Decimal, rejecting floats and non-numeric input."""
    if isinstance(value, bool | float):
        raise ValidationFailed("INVALID_AMOUNT", f"{field} must be a decimal string or integer")
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationFailed("INVALID_AMOUNT", f"{field} is not a valid amount") from exc


class TaskManager:
    """
    Manages the full bounty lifecycle: registration, onboarding, task
    creation, applications, acceptance, submission, completion, settlement
    and the treasury operations around it.

    Every mutating call re-reads storage and runs as one storage transaction;
    the only awaited work is the wallet ledger. Errors are ServiceError
    subclasses carrying task_id, status and the violated constraint.
    """

    def __init__(
        self,
        store: EngineStore,
        resolver: PermissionResolver,
        recorder: ActivityRecorder,
        state_machine: TaskStateMachine,
        applications: ApplicationManager,
        settlement: SettlementCoordinator,
        team: TeamManager,
        treasury: Treasury,
        wallet_ledger: WalletLedger,
        *,
        default_asset: str,
        require_funded_escrow: bool,
        ledger_timeout_seconds: float,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._recorder = recorder
        self._state_machine = state_machine
        self._applications = applications
        self._settlement = settlement
        self._team = team
        self._treasury = treasury
        self._wallet_ledger = wallet_ledger
        self._default_asset = default_asset
        self._require_funded_escrow = require_funded_escrow
        self._ledger_timeout_seconds = ledger_timeout_seconds
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Users and installations
    # ------------------------------------------------------------------

    async def register_user(
        self,
        user_id: str,
        username: str,
        wallet: WalletRef,
        address_book: list[dict[str, Any]] | None = None,
    ) -> User:
        """Create a user together with an empty contribution summary."""
        if not user_id or not username:
            raise ValidationFailed("INVALID_USER", "user_id and username are required")
        now = now_iso()
        user = User(
            user_id=user_id,
            username=username,
            wallet=wallet,
            address_book=list(address_book or []),
            created_at=now,
            updated_at=now,
        )
        try:
            with self._store.unit_of_work() as uow:
                uow.insert_user(user)
                self._recorder.init_summary(uow, user_id)
        except DuplicateUserError as exc:
            raise ValidationFailed(
                "USER_EXISTS", "User id or username already registered", 409, user_id=user_id
            ) from exc
        self._logger.info("User registered", extra={"user_id": user_id})
        return user

    async def add_address_book_entry(self, user_id: str, entry: dict[str, Any]) -> User:
        """Append an opaque entry to the user's address book. Entries are never removed."""
        with self._store.unit_of_work() as uow:
            user = uow.get_user(user_id)
            if user is None:
                raise NotFound("user", user_id)
            address_book = [*user.address_book, dict(entry)]
            uow.set_address_book(user_id, address_book, now_iso())
            updated = uow.get_user(user_id)
        if updated is None:
            raise NotFound("user", user_id)
        return updated

    async def create_installation(
        self,
        installation_id: str,
        owner_id: str,
        wallet: WalletRef,
        escrow_wallet: WalletRef,
        subscription_package_id: str | None = None,
    ) -> Installation:
        return self._team.create_installation(
            installation_id=installation_id,
            owner_id=owner_id,
            wallet=wallet,
            escrow_wallet=escrow_wallet,
            subscription_package_id=subscription_package_id,
        )

    # ------------------------------------------------------------------
    # Task lifecycle
    # ------------------------------------------------------------------

    async def _check_escrow_coverage(
        self, installation_id: str, bounty: Decimal, asset: str
    ) -> None:
        installation = self._store.get_installation(installation_id)
        if installation is None:
            raise NotFound("installation", installation_id)
        try:
            async with asyncio.timeout(self._ledger_timeout_seconds):
                balance = await self._wallet_ledger.balance(
                    installation.escrow_wallet.address, asset
                )
        except (TimeoutError, WalletLedgerError) as exc:
            raise ServiceError(
                "WALLET_LEDGER_UNAVAILABLE",
                "Could not read the escrow balance",
                502,
                {"installation_id": installation_id},
            ) from exc

        committed = sum(
            (
                task.bounty
                for task in self._store.list_tasks(installation_id=installation_id)
                if not task.settled and task.asset == asset
            ),
            Decimal("0"),
        )
        if balance < committed + bounty:
            raise ValidationFailed(
                "INSUFFICIENT_ESCROW",
                "Escrow wallet does not cover the open bounties plus this one",
                402,
                installation_id=installation_id,
                balance=str(balance),
                committed=str(committed),
                bounty=str(bounty),
            )

    async def create_task(
        self,
        installation_id: str,
        creator_id: str,
        issue: dict[str, Any],
        bounty: Decimal | str | int,
        asset: str | None = None,
        timeline: float | None = None,
        timeline_type: TimelineType | None = None,
    ) -> Task:
        """
        Create an OPEN task.

        Raises:
            NotMember / PermissionDenied: creator lacks MANAGE_TASKS.
            ValidationFailed: INVALID_BOUNTY, INVALID_TIMELINE, TASK_LIMIT_REACHED,
                INSUFFICIENT_ESCROW (402).
        """
        amount = _to_decimal(bounty, "bounty")
        task_asset = asset or self._default_asset
        self._resolver.require(creator_id, installation_id, MANAGE_TASKS)
        if self._require_funded_escrow and amount > 0:
            await self._check_escrow_coverage(installation_id, amount, task_asset)

        return self._state_machine.open_task(
            installation_id=installation_id,
            creator_id=creator_id,
            issue=issue,
            bounty=amount,
            asset=task_asset,
            timeline=timeline,
            timeline_type=timeline_type,
        )

    async def apply_to_task(self, task_id: str, user_id: str) -> Task:
        return self._applications.apply(task_id, user_id)

    async def withdraw_application(self, task_id: str, user_id: str) -> Task:
        return self._applications.withdraw_application(task_id, user_id)

    async def accept_applicant(
        self,
        task_id: str,
        contributor_id: str,
        acting_user_id: str,
        expected_version: int | None = None,
    ) -> Task:
        return self._state_machine.accept(
            task_id, contributor_id, acting_user_id, expected_version=expected_version
        )

    async def reassign_contributor(
        self, task_id: str, new_contributor_id: str, acting_user_id: str
    ) -> Task:
        return self._state_machine.reassign_contributor(
            task_id, new_contributor_id, acting_user_id
        )

    async def submit_work(
        self,
        task_id: str,
        contributor_id: str,
        pull_request: str,
        attachment_url: str | None = None,
    ) -> Task:
        task, _submission = self._applications.submit(
            task_id, contributor_id, pull_request, attachment_url
        )
        return task

    async def mark_task_completed(
        self,
        task_id: str,
        acting_user_id: str,
        expected_version: int | None = None,
    ) -> Task:
        """
        Mark the task completed and attempt settlement.

        A retryable settlement failure is logged and the task is returned in
        MARKED_AS_COMPLETED for the background sweep. SettlementFailed
        propagates after the failure has been recorded on the task.
        """
        task = self._state_machine.mark_completed(
            task_id, acting_user_id, expected_version=expected_version
        )
        try:
            result = await self._settlement.settle(task.task_id)
        except SettlementRetryable as exc:
            self._logger.warning(
                "Settlement deferred",
                extra={"task_id": task_id, "constraint": exc.details.get("constraint")},
            )
            return await self.get_task(task_id)
        return result.task

    async def settle_task(self, task_id: str) -> SettlementResult:
        return await self._settlement.settle(task_id)

    async def retry_pending_settlements(self) -> list[SettlementResult]:
        return await self._settlement.retry_pending_settlements()

    async def reopen_task(
        self,
        task_id: str,
        acting_user_id: str,
        expected_version: int | None = None,
    ) -> Task:
        return self._state_machine.reopen(
            task_id, acting_user_id, expected_version=expected_version
        )

    async def update_task_bounty(
        self, task_id: str, bounty: Decimal | str | int, acting_user_id: str
    ) -> Task:
        amount = _to_decimal(bounty, "bounty")
        if self._require_funded_escrow:
            task = await self.get_task(task_id)
            if amount > task.bounty:
                await self._check_escrow_coverage(
                    task.installation_id, amount - task.bounty, task.asset
                )
        return self._state_machine.update_bounty(task_id, amount, acting_user_id)

    async def update_task_timeline(
        self,
        task_id: str,
        timeline: float | None,
        timeline_type: TimelineType | None,
        acting_user_id: str,
    ) -> Task:
        return self._state_machine.update_timeline(
            task_id, timeline, timeline_type, acting_user_id
        )

    async def extend_task_timeline(
        self,
        task_id: str,
        requested: float,
        timeline_type: TimelineType,
        acting_user_id: str,
    ) -> Task:
        """Approve a timeline extension on an IN_PROGRESS task."""
        return self._state_machine.extend_timeline(
            task_id, requested, timeline_type, acting_user_id
        )

    async def unblock_settlement(self, task_id: str, acting_user_id: str) -> Task:
        return self._state_machine.clear_settlement_failure(task_id, acting_user_id)

    # ------------------------------------------------------------------
    # Team
    # ------------------------------------------------------------------

    async def grant_permission(
        self,
        installation_id: str,
        user_id: str,
        codes: set[str] | frozenset[str],
        acting_user_id: str,
    ) -> PermissionGrant:
        return self._team.grant_permission(installation_id, user_id, codes, acting_user_id)

    async def revoke_permission(
        self,
        installation_id: str,
        user_id: str,
        acting_user_id: str,
        codes: set[str] | frozenset[str] | None = None,
    ) -> PermissionGrant | None:
        return self._team.revoke_permission(installation_id, user_id, acting_user_id, codes)

    async def get_effective_permissions(
        self, user_id: str, installation_id: str
    ) -> frozenset[str]:
        return self._resolver.resolve(user_id, installation_id)

    # ------------------------------------------------------------------
    # Treasury
    # ------------------------------------------------------------------

    async def fund_escrow(
        self,
        installation_id: str,
        amount: Decimal | str | int,
        acting_user_id: str,
        asset: str | None = None,
        idempotency_key: str | None = None,
    ) -> TransactionRecord:
        return await self._treasury.fund_escrow(
            installation_id,
            _to_decimal(amount, "amount"),
            asset or self._default_asset,
            acting_user_id,
            idempotency_key,
        )

    async def withdraw_funds(
        self,
        user_id: str,
        destination_address: str,
        amount: Decimal | str | int,
        asset: str | None = None,
        idempotency_key: str | None = None,
    ) -> TransactionRecord:
        return await self._treasury.withdraw_funds(
            user_id,
            destination_address,
            _to_decimal(amount, "amount"),
            asset or self._default_asset,
            idempotency_key,
        )

    async def record_swap(
        self,
        user_id: str,
        tx_hash: str,
        category: TransactionCategory,
        amount: Decimal | str | int,
        asset_from: str,
        asset_to: str,
        installation_id: str | None = None,
    ) -> TransactionRecord:
        return self._treasury.record_swap(
            user_id=user_id,
            tx_hash=tx_hash,
            category=category,
            amount=_to_decimal(amount, "amount"),
            asset_from=asset_from,
            asset_to=asset_to,
            done_at=now_iso(),
            installation_id=installation_id,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_task(self, task_id: str) -> Task:
        """
        Get a single task by ID.

        Raises:
            NotFound: TASK_NOT_FOUND
        """
        task = self._store.get_task(task_id)
        if task is None:
            raise NotFound("task", task_id)
        return task

    async def list_tasks(
        self,
        installation_id: str | None = None,
        status: TaskStatus | None = None,
        contributor_id: str | None = None,
    ) -> list[Task]:
        return self._store.list_tasks(
            installation_id=installation_id, status=status, contributor_id=contributor_id
        )

    async def list_task_activities(self, task_id: str) -> list[TaskActivity]:
        await self.get_task(task_id)
        return self._store.list_activities(task_id)

    async def list_submissions(self, task_id: str) -> list[TaskSubmission]:
        await self.get_task(task_id)
        return self._store.list_submissions(task_id)

    async def get_contribution_summary(self, user_id: str) -> ContributionSummary:
        summary = self._store.get_summary(user_id)
        if summary is None:
            raise NotFound("user", user_id)
        return summary

    async def list_transactions(
        self,
        task_id: str | None = None,
        installation_id: str | None = None,
        user_id: str | None = None,
    ) -> list[TransactionRecord]:
        return self._store.list_transactions(
            task_id=task_id, installation_id=installation_id, user_id=user_id
        )

    def get_stats(self) -> dict[str, Any]:
        return self._store.get_stats()


def build_task_manager(
    store: EngineStore,
    wallet_ledger: WalletLedger,
    *,
    settlement_timeout_seconds: float,
    default_asset: str,
    require_funded_escrow: bool,
) -> TaskManager:
    """Wire the engine components around one store and one wallet ledger."""
    resolver = PermissionResolver(store)
    recorder = ActivityRecorder()
    state_machine = TaskStateMachine(store, resolver, recorder)
    return TaskManager(
        store=store,
        resolver=resolver,
        recorder=recorder,
        state_machine=state_machine,
        applications=ApplicationManager(state_machine),
        settlement=SettlementCoordinator(
            store, wallet_ledger, state_machine, settlement_timeout_seconds
        ),
        team=TeamManager(store, resolver),
        treasury=Treasury(store, wallet_ledger, resolver, settlement_timeout_seconds),
        wallet_ledger=wallet_ledger,
        default_asset=default_asset,
        require_funded_escrow=require_funded_escrow,
        ledger_timeout_seconds=settlement_timeout_seconds,
    )
