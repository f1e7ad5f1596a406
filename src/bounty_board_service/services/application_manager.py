"""Applications and work submissions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from bounty_board_service.core.exceptions import DuplicateSubmission, ValidationFailed
from bounty_board_service.models import TaskStatus
from bounty_board_service.services.engine_store import DuplicateSubmissionError

if TYPE_CHECKING:
    from bounty_board_service.models import Task, TaskSubmission
    from bounty_board_service.services.task_state_machine import TaskStateMachine


class ApplicationManager:
    """Thin layer over the state machine for the contributor-facing actions."""

    def __init__(self, state_machine: TaskStateMachine) -> None:
        self._state_machine = state_machine

    def apply(self, task_id: str, user_id: str) -> Task:
        return self._state_machine.apply(task_id, user_id)

    def withdraw_application(self, task_id: str, user_id: str) -> Task:
        return self._state_machine.withdraw_application(task_id, user_id)

    def submit(
        self,
        task_id: str,
        contributor_id: str,
        pull_request: str,
        attachment_url: str | None = None,
    ) -> tuple[Task, TaskSubmission]:
        """
        Record a submission for the contributor's task.

        Raises DuplicateSubmission when the contributor already submitted.
        """
        pull_request = pull_request.strip() if isinstance(pull_request, str) else ""
        if not pull_request:
            raise ValidationFailed(
                "INVALID_SUBMISSION",
                "A pull request reference is required",
                task_id=task_id,
            )
        if attachment_url is not None and not attachment_url.strip():
            attachment_url = None

        try:
            return self._state_machine.submit(
                task_id, contributor_id, pull_request, attachment_url
            )
        except DuplicateSubmissionError as exc:
            raise DuplicateSubmission(
                "Contributor already submitted work for this task",
                task_id=task_id,
                status=TaskStatus.IN_PROGRESS.value,
                user_id=contributor_id,
                constraint="unique(task_id, user_id)",
            ) from exc
