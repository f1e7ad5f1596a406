"""Task status transitions and their guards."""

from __future__ import annotations

import json
import uuid
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from bounty_board_service.core.exceptions import (
    AlreadyAccepted,
    ConcurrentModification,
    InvalidApplicant,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    ValidationFailed,
)
from bounty_board_service.logging import get_logger
from bounty_board_service.models import (
    ADMIN,
    MANAGE_TASKS,
    ActivityType,
    Task,
    TaskStatus,
    TaskSubmission,
    TimelineType,
    now_iso,
)

if TYPE_CHECKING:
    from bounty_board_service.models import TransactionRecord
    from bounty_board_service.services.activity_recorder import ActivityRecorder
    from bounty_board_service.services.engine_store import EngineStore, UnitOfWork
    from bounty_board_service.services.permission_resolver import PermissionResolver

_DAYS_PER_WEEK = 7


def normalize_timeline(
    timeline: float | None, timeline_type: TimelineType | None
) -> tuple[float | None, TimelineType | None]:
    """
    Fold day counts above six into weeks.

    The result is expressed as ``weeks + days / 10`` with type WEEK, so
    ten days become ``1.3`` weeks.
    """
    if timeline is None:
        return None, None
    if timeline_type is None:
        raise ValidationFailed(
            "INVALID_TIMELINE", "timeline_type is required when timeline is set"
        )
    if timeline <= 0:
        raise ValidationFailed("INVALID_TIMELINE", "timeline must be positive")
    if timeline_type == TimelineType.DAY and timeline > _DAYS_PER_WEEK - 1:
        weeks, days = divmod(int(timeline), _DAYS_PER_WEEK)
        return weeks + days / 10, TimelineType.WEEK
    return float(timeline), timeline_type


def _timeline_days(timeline: float, timeline_type: TimelineType) -> int:
    if timeline_type == TimelineType.DAY:
        return round(timeline)
    weeks = int(timeline)
    return weeks * _DAYS_PER_WEEK + round((timeline - weeks) * 10)


def extend_timeline_value(
    current: float | None,
    current_type: TimelineType | None,
    requested: float,
    requested_type: TimelineType,
) -> tuple[float, TimelineType]:
    """
    Add an approved extension to a task's timeline.

    Both sides are counted in days; the sum stays DAY only when both sides are
    DAY and it fits in six days, otherwise it is folded to ``weeks + days / 10``.
    """
    requested, requested_type = normalize_timeline(requested, requested_type)
    if current is None or current_type is None:
        return requested, requested_type

    total = _timeline_days(current, current_type) + _timeline_days(requested, requested_type)
    if (
        current_type == TimelineType.DAY
        and requested_type == TimelineType.DAY
        and total < _DAYS_PER_WEEK
    ):
        return float(total), TimelineType.DAY
    weeks, days = divmod(total, _DAYS_PER_WEEK)
    return weeks + days / 10, TimelineType.WEEK


def _validate_bounty(bounty: Decimal) -> None:
    if not bounty.is_finite() or bounty <= 0:
        raise ValidationFailed("INVALID_BOUNTY", "Bounty must be a positive amount")


class TaskStateMachine:
    """
    Drives a task through OPEN -> IN_PROGRESS -> MARKED_AS_COMPLETED -> COMPLETED.

    Each public transition runs in its own unit of work: the guard checks,
    the versioned row update and the audit activity commit together or not
    at all. ``finalize`` and ``record_settlement_failure`` take the caller's
    unit of work because settlement owns that transaction.

    Callers that read a task earlier may pass ``expected_version``; a
    mismatch raises ConcurrentModification before anything is written.
    """

    def __init__(
        self,
        store: EngineStore,
        resolver: PermissionResolver,
        recorder: ActivityRecorder,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._recorder = recorder
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _load(uow: UnitOfWork, task_id: str, expected_version: int | None = None) -> Task:
        task = uow.get_task(task_id)
        if task is None:
            raise NotFound("task", task_id)
        if expected_version is not None and task.version != expected_version:
            raise ConcurrentModification(
                "Task was modified by another operation",
                task_id=task_id,
                status=task.status.value,
                constraint=f"version={expected_version}",
            )
        return task

    @staticmethod
    def _write(uow: UnitOfWork, task: Task, updates: dict[str, Any]) -> Task:
        """Write ``updates`` guarded by the task's version and return the fresh row."""
        affected = uow.update_task(
            task.task_id,
            updates,
            expected_version=task.version,
            updated_at=now_iso(),
        )
        if affected == 0:
            raise ConcurrentModification(
                "Task was modified by another operation",
                task_id=task.task_id,
                status=task.status.value,
                constraint=f"version={task.version}",
            )
        fresh = uow.get_task(task.task_id)
        if fresh is None:
            raise NotFound("task", task.task_id)
        return fresh

    @staticmethod
    def _require_status(task: Task, *allowed: TaskStatus, action: str) -> None:
        if task.status not in allowed:
            raise InvalidTransition(
                f"Cannot {action} a task in status {task.status.value}",
                task_id=task.task_id,
                status=task.status.value,
                constraint=f"status in {[status.value for status in allowed]}",
            )

    @staticmethod
    def _require_user(uow: UnitOfWork, user_id: str) -> None:
        if uow.get_user(user_id) is None:
            raise NotFound("user", user_id)

    def _require_manager(self, uow: UnitOfWork, task: Task, acting_user_id: str) -> None:
        self._resolver.require(
            acting_user_id, task.installation_id, MANAGE_TASKS, uow, task_id=task.task_id
        )

    # ------------------------------------------------------------------
    # Creation and applications
    # ------------------------------------------------------------------

    def open_task(
        self,
        *,
        installation_id: str,
        creator_id: str,
        issue: dict[str, Any],
        bounty: Decimal,
        asset: str,
        timeline: float | None = None,
        timeline_type: TimelineType | None = None,
    ) -> Task:
        """Insert a new OPEN task. The creator needs MANAGE_TASKS on the installation."""
        _validate_bounty(bounty)
        timeline, timeline_type = normalize_timeline(timeline, timeline_type)
        try:
            json.dumps(issue)
        except (TypeError, ValueError) as exc:
            raise ValidationFailed("INVALID_ISSUE", "Issue must be a JSON document") from exc

        with self._store.unit_of_work() as uow:
            installation = uow.get_installation(installation_id)
            if installation is None:
                raise NotFound("installation", installation_id)
            self._resolver.require(creator_id, installation_id, MANAGE_TASKS, uow)

            if installation.subscription_package_id is not None:
                package = uow.get_subscription_package(installation.subscription_package_id)
                if package is not None and (
                    uow.count_unfinished_tasks(installation_id) >= package.max_tasks
                ):
                    raise ValidationFailed(
                        "TASK_LIMIT_REACHED",
                        f"Subscription {package.name} allows {package.max_tasks} open tasks",
                        403,
                        installation_id=installation_id,
                        constraint=f"max_tasks={package.max_tasks}",
                    )

            now = now_iso()
            task = Task(
                task_id=f"t-{uuid.uuid4()}",
                installation_id=installation_id,
                creator_id=creator_id,
                contributor_id=None,
                issue=issue,
                bounty=bounty,
                asset=asset,
                timeline=timeline,
                timeline_type=timeline_type,
                status=TaskStatus.OPEN,
                settled=False,
                accepted_at=None,
                completed_at=None,
                settlement_error=None,
                created_at=now,
                updated_at=now,
                version=1,
            )
            uow.insert_task(task)
            self._recorder.record(
                uow,
                task,
                ActivityType.TASK_CREATED,
                user_id=creator_id,
                details={"bounty": str(bounty), "asset": asset},
            )

        self._logger.info(
            "Task opened",
            extra={"task_id": task.task_id, "installation_id": installation_id},
        )
        return task

    def apply(self, task_id: str, user_id: str) -> Task:
        """Add ``user_id`` to the applicant set. Re-applying is a silent no-op."""
        with self._store.unit_of_work() as uow:
            task = self._load(uow, task_id)
            self._require_status(task, TaskStatus.OPEN, action="apply to")
            self._require_user(uow, user_id)
            if user_id == task.creator_id:
                raise ValidationFailed(
                    "SELF_APPLICATION",
                    "Task creators cannot apply to their own task",
                    task_id=task_id,
                    status=task.status.value,
                )
            if user_id in task.applicants:
                return task

            uow.add_applicant(task_id, user_id, now_iso())
            task = self._write(uow, task, {})
            self._recorder.record(uow, task, ActivityType.APPLIED, user_id=user_id)
        return task

    def withdraw_application(self, task_id: str, user_id: str) -> Task:
        with self._store.unit_of_work() as uow:
            task = self._load(uow, task_id)
            self._require_status(task, TaskStatus.OPEN, action="withdraw from")
            if user_id not in task.applicants:
                return task

            uow.remove_applicant(task_id, user_id)
            task = self._write(uow, task, {})
            self._recorder.record(
                uow, task, ActivityType.APPLICATION_WITHDRAWN, user_id=user_id
            )
        return task

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    def accept(
        self,
        task_id: str,
        contributor_id: str,
        acting_user_id: str,
        *,
        expected_version: int | None = None,
    ) -> Task:
        with self._store.unit_of_work() as uow:
            task = self._load(uow, task_id)
            self._require_manager(uow, task, acting_user_id)
            # A lost accept race reports AlreadyAccepted, not a version conflict.
            if task.status != TaskStatus.OPEN:
                raise AlreadyAccepted(
                    "Task already has an accepted contributor",
                    task_id=task_id,
                    status=task.status.value,
                    contributor_id=task.contributor_id,
                )
            if expected_version is not None and task.version != expected_version:
                raise ConcurrentModification(
                    "Task was modified by another operation",
                    task_id=task_id,
                    status=task.status.value,
                    constraint=f"version={expected_version}",
                )
            if contributor_id not in task.applicants:
                raise InvalidApplicant(
                    "Contributor has not applied to this task",
                    task_id=task_id,
                    status=task.status.value,
                    contributor_id=contributor_id,
                )

            task = self._write(
                uow,
                task,
                {
                    "status": TaskStatus.IN_PROGRESS,
                    "contributor_id": contributor_id,
                    "accepted_at": now_iso(),
                },
            )
            self._recorder.record(
                uow,
                task,
                ActivityType.ACCEPTED,
                user_id=acting_user_id,
                details={"contributor_id": contributor_id},
            )

        self._logger.info(
            "Applicant accepted",
            extra={"task_id": task_id, "contributor_id": contributor_id},
        )
        return task

    def reassign_contributor(
        self,
        task_id: str,
        new_contributor_id: str,
        acting_user_id: str,
        *,
        expected_version: int | None = None,
    ) -> Task:
        with self._store.unit_of_work() as uow:
            task = self._load(uow, task_id, expected_version)
            self._require_manager(uow, task, acting_user_id)
            self._require_status(task, TaskStatus.IN_PROGRESS, action="reassign")
            if uow.count_submissions(task_id) > 0:
                raise InvalidTransition(
                    "Cannot reassign a task that already has submissions",
                    task_id=task_id,
                    status=task.status.value,
                    constraint="no_submissions",
                )
            if new_contributor_id == task.contributor_id:
                raise InvalidApplicant(
                    "Contributor is already assigned",
                    task_id=task_id,
                    status=task.status.value,
                    contributor_id=new_contributor_id,
                )
            if new_contributor_id not in task.applicants:
                raise InvalidApplicant(
                    "Contributor has not applied to this task",
                    task_id=task_id,
                    status=task.status.value,
                    contributor_id=new_contributor_id,
                )

            previous = task.contributor_id
            task = self._write(
                uow,
                task,
                {"contributor_id": new_contributor_id, "accepted_at": now_iso()},
            )
            self._recorder.record(
                uow,
                task,
                ActivityType.CONTRIBUTOR_REASSIGNED,
                user_id=acting_user_id,
                details={
                    "previous_contributor_id": previous,
                    "contributor_id": new_contributor_id,
                },
            )
        return task

    def reopen(
        self,
        task_id: str,
        acting_user_id: str,
        *,
        expected_version: int | None = None,
    ) -> Task:
        """Return an IN_PROGRESS task without submissions to OPEN, clearing its contributor."""
        with self._store.unit_of_work() as uow:
            task = self._load(uow, task_id, expected_version)
            self._require_manager(uow, task, acting_user_id)
            self._require_status(task, TaskStatus.IN_PROGRESS, action="reopen")
            if uow.count_submissions(task_id) > 0:
                raise InvalidTransition(
                    "Cannot reopen a task that already has submissions",
                    task_id=task_id,
                    status=task.status.value,
                    constraint="no_submissions",
                )

            previous = task.contributor_id
            task = self._write(
                uow,
                task,
                {"status": TaskStatus.OPEN, "contributor_id": None, "accepted_at": None},
            )
            self._recorder.record(
                uow,
                task,
                ActivityType.REOPENED,
                user_id=acting_user_id,
                details={"previous_contributor_id": previous},
            )
        return task

    # ------------------------------------------------------------------
    # Work and completion
    # ------------------------------------------------------------------

    def submit(
        self,
        task_id: str,
        contributor_id: str,
        pull_request: str,
        attachment_url: str | None = None,
    ) -> tuple[Task, TaskSubmission]:
        """Record the contributor's submission. Status is unchanged."""
        with self._store.unit_of_work() as uow:
            task = self._load(uow, task_id)
            self._require_status(task, TaskStatus.IN_PROGRESS, action="submit work for")
            if task.contributor_id != contributor_id:
                raise PermissionDenied(
                    "Only the assigned contributor can submit work",
                    task_id=task_id,
                    status=task.status.value,
                    user_id=contributor_id,
                    constraint="assigned_contributor",
                )

            now = now_iso()
            submission = TaskSubmission(
                submission_id=f"sub-{uuid.uuid4()}",
                task_id=task_id,
                user_id=contributor_id,
                installation_id=task.installation_id,
                pull_request=pull_request,
                attachment_url=attachment_url,
                created_at=now,
                updated_at=now,
            )
            uow.insert_submission(submission)
            task = self._write(uow, task, {})
            self._recorder.record(
                uow,
                task,
                ActivityType.SUBMITTED,
                user_id=contributor_id,
                submission_id=submission.submission_id,
                details={"pull_request": pull_request},
            )
        return task, submission

    def mark_completed(
        self,
        task_id: str,
        acting_user_id: str,
        *,
        expected_version: int | None = None,
    ) -> Task:
        with self._store.unit_of_work() as uow:
            task = self._load(uow, task_id, expected_version)
            codes = self._resolver.resolve(acting_user_id, task.installation_id, uow)
            if acting_user_id != task.creator_id and not (
                MANAGE_TASKS in codes or ADMIN in codes
            ):
                raise PermissionDenied(
                    "Only the creator or a task manager can mark completion",
                    task_id=task_id,
                    status=task.status.value,
                    user_id=acting_user_id,
                    constraint=MANAGE_TASKS,
                )
            self._require_status(task, TaskStatus.IN_PROGRESS, action="mark completed")
            if uow.count_submissions(task_id) == 0:
                raise InvalidTransition(
                    "Cannot mark a task completed without a submission",
                    task_id=task_id,
                    status=task.status.value,
                    constraint="submission_required",
                )

            task = self._write(
                uow,
                task,
                {"status": TaskStatus.MARKED_AS_COMPLETED, "completed_at": now_iso()},
            )
            self._recorder.record(
                uow, task, ActivityType.MARKED_COMPLETED, user_id=acting_user_id
            )
        return task

    def finalize(self, uow: UnitOfWork, task: Task, transaction: TransactionRecord) -> Task:
        """Move a MARKED_AS_COMPLETED task to COMPLETED and settled in one row update."""
        self._require_status(task, TaskStatus.MARKED_AS_COMPLETED, action="finalize")
        task = self._write(uow, task, {"status": TaskStatus.COMPLETED, "settled": True})
        self._recorder.record(
            uow,
            task,
            ActivityType.SETTLED,
            user_id=task.contributor_id,
            details={
                "tx_hash": transaction.tx_hash,
                "amount": str(transaction.amount),
                "asset": transaction.asset,
            },
        )
        return task

    # ------------------------------------------------------------------
    # Settlement blocking
    # ------------------------------------------------------------------

    def record_settlement_failure(
        self, uow: UnitOfWork, task: Task, code: str, reason: str
    ) -> Task:
        task = self._write(uow, task, {"settlement_error": f"{code}: {reason}"})
        self._recorder.record(
            uow,
            task,
            ActivityType.SETTLEMENT_FAILED,
            details={"code": code, "reason": reason},
        )
        return task

    def clear_settlement_failure(self, task_id: str, acting_user_id: str) -> Task:
        """Unblock a task after an operator fixed the cause of a permanent failure."""
        with self._store.unit_of_work() as uow:
            task = self._load(uow, task_id)
            codes = self._resolver.resolve(acting_user_id, task.installation_id, uow)
            if ADMIN not in codes:
                raise PermissionDenied(
                    "Only an administrator can unblock settlement",
                    task_id=task_id,
                    status=task.status.value,
                    user_id=acting_user_id,
                    constraint=ADMIN,
                )
            self._require_status(
                task, TaskStatus.MARKED_AS_COMPLETED, action="unblock settlement for"
            )
            if task.settlement_error is None:
                return task

            previous_error = task.settlement_error
            task = self._write(uow, task, {"settlement_error": None})
            self._recorder.record(
                uow,
                task,
                ActivityType.SETTLEMENT_UNBLOCKED,
                user_id=acting_user_id,
                details={"previous_error": previous_error},
            )
        return task

    # ------------------------------------------------------------------
    # Edits while OPEN
    # ------------------------------------------------------------------

    def _load_editable(self, uow: UnitOfWork, task_id: str, acting_user_id: str) -> Task:
        task = self._load(uow, task_id)
        self._require_manager(uow, task, acting_user_id)
        self._require_status(task, TaskStatus.OPEN, action="edit")
        if task.applicants:
            raise InvalidTransition(
                "Cannot edit a task that already has applicants",
                task_id=task_id,
                status=task.status.value,
                constraint="no_applicants",
            )
        return task

    def update_bounty(self, task_id: str, bounty: Decimal, acting_user_id: str) -> Task:
        _validate_bounty(bounty)
        with self._store.unit_of_work() as uow:
            task = self._load_editable(uow, task_id, acting_user_id)
            if bounty == task.bounty:
                raise ValidationFailed(
                    "BOUNTY_UNCHANGED",
                    "New bounty must differ from the current bounty",
                    task_id=task_id,
                )
            previous = task.bounty
            task = self._write(uow, task, {"bounty": bounty})
            self._recorder.record(
                uow,
                task,
                ActivityType.BOUNTY_UPDATED,
                user_id=acting_user_id,
                details={"previous": str(previous), "bounty": str(bounty)},
            )
        return task

    def update_timeline(
        self,
        task_id: str,
        timeline: float | None,
        timeline_type: TimelineType | None,
        acting_user_id: str,
    ) -> Task:
        timeline, timeline_type = normalize_timeline(timeline, timeline_type)
        with self._store.unit_of_work() as uow:
            task = self._load_editable(uow, task_id, acting_user_id)
            task = self._write(
                uow, task, {"timeline": timeline, "timeline_type": timeline_type}
            )
            self._recorder.record(
                uow,
                task,
                ActivityType.TIMELINE_UPDATED,
                user_id=acting_user_id,
                details={
                    "timeline": timeline,
                    "timeline_type": timeline_type.value if timeline_type else None,
                },
            )
        return task

    # ------------------------------------------------------------------
    # Edits while IN_PROGRESS
    # ------------------------------------------------------------------

    def extend_timeline(
        self,
        task_id: str,
        requested: float,
        timeline_type: TimelineType,
        acting_user_id: str,
    ) -> Task:
        """Apply an approved timeline extension to an IN_PROGRESS task."""
        with self._store.unit_of_work() as uow:
            task = self._load(uow, task_id)
            codes = self._resolver.resolve(acting_user_id, task.installation_id, uow)
            if acting_user_id != task.creator_id and not (
                MANAGE_TASKS in codes or ADMIN in codes
            ):
                raise PermissionDenied(
                    "Only the creator or a task manager can extend the timeline",
                    task_id=task_id,
                    status=task.status.value,
                    user_id=acting_user_id,
                    constraint=MANAGE_TASKS,
                )
            self._require_status(task, TaskStatus.IN_PROGRESS, action="extend the timeline of")

            timeline, new_type = extend_timeline_value(
                task.timeline, task.timeline_type, requested, timeline_type
            )
            previous = task.timeline
            previous_type = task.timeline_type
            task = self._write(uow, task, {"timeline": timeline, "timeline_type": new_type})
            self._recorder.record(
                uow,
                task,
                ActivityType.TIMELINE_EXTENDED,
                user_id=acting_user_id,
                details={
                    "requested": requested,
                    "requested_type": timeline_type.value,
                    "previous": previous,
                    "previous_type": previous_type.value if previous_type else None,
                    "timeline": timeline,
                    "timeline_type": new_type.value,
                },
            )
        return task
