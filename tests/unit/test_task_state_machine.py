"""Unit tests for task status transitions and their guards."""

import asyncio

import pytest

from bounty_board_service.core.exceptions import (
    AlreadyAccepted,
    ConcurrentModification,
    DuplicateSubmission,
    InvalidApplicant,
    InvalidTransition,
    NotFound,
    NotMember,
    PermissionDenied,
    ValidationFailed,
)
from bounty_board_service.models import MANAGE_TASKS, ActivityType, TaskStatus, TimelineType
from bounty_board_service.services.task_state_machine import (
    extend_timeline_value,
    normalize_timeline,
)
from tests.helpers import create_open_task, create_task_in_progress, create_task_with_submission


@pytest.mark.unit
@pytest.mark.parametrize(
    ("timeline", "timeline_type", "expected"),
    [
        (None, None, (None, None)),
        (3, TimelineType.DAY, (3.0, TimelineType.DAY)),
        (6, TimelineType.DAY, (6.0, TimelineType.DAY)),
        (7, TimelineType.DAY, (1.0, TimelineType.WEEK)),
        (10, TimelineType.DAY, (1.3, TimelineType.WEEK)),
        (2, TimelineType.WEEK, (2.0, TimelineType.WEEK)),
    ],
)
def test_normalize_timeline(timeline, timeline_type, expected) -> None:
    value, kind = normalize_timeline(timeline, timeline_type)

    assert kind == expected[1]
    assert value == (pytest.approx(expected[0]) if expected[0] is not None else None)


@pytest.mark.unit
@pytest.mark.parametrize(("timeline", "timeline_type"), [(0, TimelineType.DAY), (3, None)])
def test_normalize_timeline_rejects_invalid(timeline, timeline_type) -> None:
    with pytest.raises(ValidationFailed) as exc_info:
        normalize_timeline(timeline, timeline_type)

    assert exc_info.value.error == "INVALID_TIMELINE"


@pytest.mark.unit
async def test_apply_is_idempotent(manager, market) -> None:
    task = await create_open_task(manager, market)

    first = await manager.apply_to_task(task.task_id, market.alice_id)
    second = await manager.apply_to_task(task.task_id, market.alice_id)

    assert first.applicants == (market.alice_id,)
    assert second.version == first.version
    applied = [
        a
        for a in await manager.list_task_activities(task.task_id)
        if a.activity_type == ActivityType.APPLIED
    ]
    assert len(applied) == 1


@pytest.mark.unit
async def test_apply_guards(manager, market) -> None:
    task = await create_open_task(manager, market)

    with pytest.raises(ValidationFailed) as own_task:
        await manager.apply_to_task(task.task_id, market.creator_id)
    with pytest.raises(NotFound) as ghost:
        await manager.apply_to_task(task.task_id, "u-ghost")

    assert own_task.value.error == "SELF_APPLICATION"
    assert ghost.value.error == "USER_NOT_FOUND"

    in_progress = await create_task_in_progress(manager, market)
    with pytest.raises(InvalidTransition):
        await manager.apply_to_task(in_progress.task_id, market.bob_id)


@pytest.mark.unit
async def test_withdraw_application(manager, market) -> None:
    task = await create_open_task(manager, market)
    await manager.apply_to_task(task.task_id, market.alice_id)

    task = await manager.withdraw_application(task.task_id, market.alice_id)
    unchanged = await manager.withdraw_application(task.task_id, market.alice_id)

    assert task.applicants == ()
    assert unchanged.version == task.version
    with pytest.raises(InvalidApplicant):
        await manager.accept_applicant(task.task_id, market.alice_id, market.creator_id)


@pytest.mark.unit
async def test_accept_with_stale_version_on_open_task(manager, market) -> None:
    task = await create_open_task(manager, market)
    task = await manager.apply_to_task(task.task_id, market.alice_id)

    with pytest.raises(ConcurrentModification) as exc_info:
        await manager.accept_applicant(
            task.task_id, market.alice_id, market.creator_id, expected_version=task.version - 1
        )
    assert exc_info.value.retryable is True

    seen = task.version
    task = await manager.accept_applicant(
        task.task_id, market.alice_id, market.creator_id, expected_version=seen
    )
    with pytest.raises(AlreadyAccepted) as again:
        await manager.accept_applicant(
            task.task_id, market.alice_id, market.creator_id, expected_version=seen
        )
    assert again.value.details["contributor_id"] == market.alice_id


@pytest.mark.unit
async def test_racing_accepts_with_same_version(manager, market) -> None:
    task = await create_open_task(manager, market)
    await manager.apply_to_task(task.task_id, market.alice_id)
    task = await manager.apply_to_task(task.task_id, market.bob_id)
    seen = task.version

    results = await asyncio.gather(
        manager.accept_applicant(
            task.task_id, market.alice_id, market.creator_id, expected_version=seen
        ),
        manager.accept_applicant(
            task.task_id, market.bob_id, market.creator_id, expected_version=seen
        ),
        return_exceptions=True,
    )

    accepted = [result for result in results if not isinstance(result, BaseException)]
    errors = [result for result in results if isinstance(result, BaseException)]
    assert len(accepted) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], AlreadyAccepted)
    assert (await manager.get_task(task.task_id)).contributor_id == accepted[0].contributor_id


@pytest.mark.unit
async def test_accept_requires_manage_tasks(manager, market) -> None:
    task = await create_open_task(manager, market)
    await manager.apply_to_task(task.task_id, market.alice_id)
    await manager.grant_permission(market.installation_id, market.bob_id, set(), market.creator_id)

    with pytest.raises(PermissionDenied) as exc_info:
        await manager.accept_applicant(task.task_id, market.alice_id, market.bob_id)

    assert exc_info.value.details["constraint"] == MANAGE_TASKS
    assert exc_info.value.details["task_id"] == task.task_id


@pytest.mark.unit
async def test_submit_guards(manager, market) -> None:
    open_task = await create_open_task(manager, market)
    with pytest.raises(InvalidTransition):
        await manager.submit_work(open_task.task_id, market.alice_id, "https://x/pull/1")

    task = await create_task_in_progress(manager, market)
    with pytest.raises(PermissionDenied) as wrong_user:
        await manager.submit_work(task.task_id, market.bob_id, "https://x/pull/1")
    assert wrong_user.value.details["constraint"] == "assigned_contributor"

    await manager.submit_work(task.task_id, market.alice_id, "https://x/pull/1")
    with pytest.raises(DuplicateSubmission):
        await manager.submit_work(task.task_id, market.alice_id, "https://x/pull/2")

    submissions = await manager.list_submissions(task.task_id)
    assert [submission.pull_request for submission in submissions] == ["https://x/pull/1"]


@pytest.mark.unit
async def test_mark_completed_requires_submission(manager, market) -> None:
    task = await create_task_in_progress(manager, market)

    with pytest.raises(InvalidTransition) as exc_info:
        await manager.mark_task_completed(task.task_id, market.creator_id)

    assert exc_info.value.details["constraint"] == "submission_required"
    assert (await manager.get_task(task.task_id)).status == TaskStatus.IN_PROGRESS


@pytest.mark.unit
async def test_mark_completed_by_plain_member_is_denied(manager, market) -> None:
    task = await create_task_with_submission(manager, market)
    await manager.grant_permission(market.installation_id, market.bob_id, set(), market.creator_id)

    with pytest.raises(PermissionDenied):
        await manager.mark_task_completed(task.task_id, market.bob_id)

    await manager.grant_permission(
        market.installation_id, market.bob_id, {MANAGE_TASKS}, market.creator_id
    )
    task = await manager.mark_task_completed(task.task_id, market.bob_id)
    assert task.status == TaskStatus.COMPLETED


@pytest.mark.unit
async def test_edits_only_before_applications(manager, market) -> None:
    task = await create_open_task(manager, market, "100")

    with pytest.raises(ValidationFailed) as unchanged:
        await manager.update_task_bounty(task.task_id, "100", market.creator_id)
    assert unchanged.value.error == "BOUNTY_UNCHANGED"

    task = await manager.update_task_timeline(
        task.task_id, 2, TimelineType.WEEK, market.creator_id
    )
    assert task.timeline == 2.0

    await manager.apply_to_task(task.task_id, market.alice_id)
    with pytest.raises(InvalidTransition) as locked:
        await manager.update_task_bounty(task.task_id, "50", market.creator_id)
    assert locked.value.details["constraint"] == "no_applicants"

    activity_types = [a.activity_type for a in await manager.list_task_activities(task.task_id)]
    assert ActivityType.TIMELINE_UPDATED in activity_types
    assert ActivityType.BOUNTY_UPDATED not in activity_types


@pytest.mark.unit
async def test_reopened_task_can_be_accepted_again(manager, market) -> None:
    task = await create_task_in_progress(manager, market)
    task = await manager.reopen_task(task.task_id, market.creator_id)

    assert task.applicants == (market.alice_id,)
    task = await manager.accept_applicant(task.task_id, market.alice_id, market.creator_id)
    assert task.status == TaskStatus.IN_PROGRESS


@pytest.mark.unit
@pytest.mark.parametrize(
    ("current", "current_type", "requested", "requested_type", "expected"),
    [
        (2, TimelineType.WEEK, 1, TimelineType.WEEK, (3.0, TimelineType.WEEK)),
        (3, TimelineType.DAY, 2, TimelineType.DAY, (5.0, TimelineType.DAY)),
        (4, TimelineType.DAY, 5, TimelineType.DAY, (1.2, TimelineType.WEEK)),
        (1.3, TimelineType.WEEK, 5, TimelineType.DAY, (2.1, TimelineType.WEEK)),
        (1.3, TimelineType.WEEK, 7, TimelineType.DAY, (2.3, TimelineType.WEEK)),
        (3, TimelineType.DAY, 2, TimelineType.WEEK, (2.3, TimelineType.WEEK)),
        (None, None, 4, TimelineType.DAY, (4.0, TimelineType.DAY)),
    ],
)
def test_extend_timeline_value(
    current, current_type, requested, requested_type, expected
) -> None:
    value, kind = extend_timeline_value(current, current_type, requested, requested_type)

    assert kind == expected[1]
    assert value == pytest.approx(expected[0])


@pytest.mark.unit
async def test_extend_timeline_on_task_in_progress(manager, market) -> None:
    task = await create_open_task(
        manager, market, "100", timeline=3, timeline_type=TimelineType.DAY
    )
    with pytest.raises(InvalidTransition):
        await manager.extend_task_timeline(
            task.task_id, 2, TimelineType.DAY, market.creator_id
        )

    await manager.apply_to_task(task.task_id, market.alice_id)
    await manager.accept_applicant(task.task_id, market.alice_id, market.creator_id)
    await manager.grant_permission(market.installation_id, market.bob_id, set(), market.creator_id)
    with pytest.raises(NotMember):
        await manager.extend_task_timeline(task.task_id, 2, TimelineType.DAY, market.alice_id)
    with pytest.raises(PermissionDenied):
        await manager.extend_task_timeline(task.task_id, 2, TimelineType.DAY, market.bob_id)

    task = await manager.extend_task_timeline(
        task.task_id, 5, TimelineType.DAY, market.creator_id
    )

    assert task.status == TaskStatus.IN_PROGRESS
    assert task.timeline == pytest.approx(1.1)
    assert task.timeline_type == TimelineType.WEEK
    extended = [
        a
        for a in await manager.list_task_activities(task.task_id)
        if a.activity_type == ActivityType.TIMELINE_EXTENDED
    ]
    assert len(extended) == 1
    assert extended[0].details["previous_type"] == "DAY"
    assert extended[0].details["timeline_type"] == "WEEK"
