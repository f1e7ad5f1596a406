"""Append-only activity log and the contribution summaries derived from it."""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from bounty_board_service.logging import get_logger
from bounty_board_service.models import (
    ActivityType,
    ContributionSummary,
    TaskActivity,
    TaskStatus,
    now_iso,
)

if TYPE_CHECKING:
    from bounty_board_service.models import Task
    from bounty_board_service.services.engine_store import UnitOfWork


class ActivityRecorder:
    """
    Appends TaskActivity rows and applies the matching summary deltas.

    Always called with the caller's unit of work, so the activity, the summary
    change and the task mutation that caused them commit or roll back together.
    Transitions that move a contributor off a task (reassign, reopen) carry the
    previous contributor in ``details["previous_contributor_id"]``.
    """

    def __init__(self) -> None:
        self._logger = get_logger(__name__)

    def init_summary(self, uow: UnitOfWork, user_id: str) -> ContributionSummary:
        """Create the empty summary for a newly registered user."""
        summary = ContributionSummary(
            user_id=user_id,
            tasks_completed=0,
            active_tasks=0,
            total_earnings=Decimal("0"),
        )
        uow.save_summary(summary)
        return summary

    def record(
        self,
        uow: UnitOfWork,
        task: Task,
        activity_type: ActivityType,
        *,
        user_id: str | None = None,
        submission_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> TaskActivity:
        activity = TaskActivity(
            activity_id=f"act-{uuid.uuid4()}",
            task_id=task.task_id,
            activity_type=activity_type,
            user_id=user_id,
            submission_id=submission_id,
            details=dict(details or {}),
            created_at=now_iso(),
        )
        uow.insert_activity(activity)
        self._apply_summary_deltas(uow, task, activity)

        self._logger.info(
            "Activity recorded",
            extra={
                "task_id": task.task_id,
                "activity_type": activity_type.value,
                "user_id": user_id,
            },
        )
        return activity

    def _apply_summary_deltas(
        self, uow: UnitOfWork, task: Task, activity: TaskActivity
    ) -> None:
        previous = activity.details.get("previous_contributor_id")

        match activity.activity_type:
            case ActivityType.ACCEPTED if task.contributor_id:
                self._adjust(uow, task.contributor_id, active=1)
            case ActivityType.CONTRIBUTOR_REASSIGNED:
                if previous:
                    self._adjust(uow, previous, active=-1)
                if task.contributor_id:
                    self._adjust(uow, task.contributor_id, active=1)
            case ActivityType.REOPENED if previous:
                self._adjust(uow, previous, active=-1)
            case ActivityType.SETTLED if (
                task.status == TaskStatus.COMPLETED and task.settled and task.contributor_id
            ):
                self._adjust(
                    uow,
                    task.contributor_id,
                    completed=1,
                    active=-1,
                    earnings=task.bounty,
                )
            case _:
                pass

    @staticmethod
    def _adjust(
        uow: UnitOfWork,
        user_id: str,
        *,
        completed: int = 0,
        active: int = 0,
        earnings: Decimal = Decimal("0"),
    ) -> None:
        summary = uow.get_summary(user_id) or ContributionSummary(
            user_id=user_id,
            tasks_completed=0,
            active_tasks=0,
            total_earnings=Decimal("0"),
        )
        uow.save_summary(
            ContributionSummary(
                user_id=user_id,
                tasks_completed=summary.tasks_completed + completed,
                active_tasks=summary.active_tasks + active,
                total_earnings=summary.total_earnings + earnings,
            )
        )
