"""Domain records and closed enums shared by the engine components."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any


class TaskStatus(StrEnum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    MARKED_AS_COMPLETED = "MARKED_AS_COMPLETED"
    COMPLETED = "COMPLETED"


class TimelineType(StrEnum):
    WEEK = "WEEK"
    DAY = "DAY"


class TransactionCategory(StrEnum):
    BOUNTY = "BOUNTY"
    SWAP_USDC = "SWAP_USDC"
    SWAP_XLM = "SWAP_XLM"
    WITHDRAWAL = "WITHDRAWAL"
    TOP_UP = "TOP_UP"


class ActivityType(StrEnum):
    TASK_CREATED = "TASK_CREATED"
    APPLIED = "APPLIED"
    APPLICATION_WITHDRAWN = "APPLICATION_WITHDRAWN"
    ACCEPTED = "ACCEPTED"
    CONTRIBUTOR_REASSIGNED = "CONTRIBUTOR_REASSIGNED"
    SUBMITTED = "SUBMITTED"
    MARKED_COMPLETED = "MARKED_COMPLETED"
    REOPENED = "REOPENED"
    SETTLED = "SETTLED"
    SETTLEMENT_FAILED = "SETTLEMENT_FAILED"
    SETTLEMENT_UNBLOCKED = "SETTLEMENT_UNBLOCKED"
    BOUNTY_UPDATED = "BOUNTY_UPDATED"
    TIMELINE_UPDATED = "TIMELINE_UPDATED"
    TIMELINE_EXTENDED = "TIMELINE_EXTENDED"


# Permission codes in the seeded catalog.
ADMIN = "ADMIN"
MANAGE_TASKS = "MANAGE_TASKS"
VIEW_TASKS = "VIEW_TASKS"
APPLY_TASKS = "APPLY_TASKS"


def now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class WalletRef:
    """A wallet address plus an opaque reference into the secret store."""

    address: str
    secret_ref: str


@dataclass
class User:
    user_id: str
    username: str
    wallet: WalletRef
    address_book: list[dict[str, Any]]
    created_at: str
    updated_at: str


@dataclass
class SubscriptionPackage:
    package_id: str
    name: str
    description: str
    max_tasks: int
    max_users: int
    price: Decimal
    paid: bool
    active: bool


@dataclass
class Installation:
    installation_id: str
    wallet: WalletRef
    escrow_wallet: WalletRef
    subscription_package_id: str | None
    created_at: str


@dataclass
class Task:
    """The central aggregate. ``applicants`` is loaded from its association table."""

    task_id: str
    installation_id: str
    creator_id: str
    contributor_id: str | None
    issue: dict[str, Any]
    bounty: Decimal
    asset: str
    timeline: float | None
    timeline_type: TimelineType | None
    status: TaskStatus
    settled: bool
    accepted_at: str | None
    completed_at: str | None
    settlement_error: str | None
    created_at: str
    updated_at: str
    version: int
    applicants: tuple[str, ...] = field(default=())


@dataclass
class TaskSubmission:
    submission_id: str
    task_id: str
    user_id: str
    installation_id: str
    pull_request: str
    attachment_url: str | None
    created_at: str
    updated_at: str


@dataclass
class TaskActivity:
    activity_id: str
    task_id: str
    activity_type: ActivityType
    user_id: str | None
    submission_id: str | None
    details: dict[str, Any]
    created_at: str


@dataclass
class Permission:
    code: str
    name: str
    is_default: bool


@dataclass
class PermissionGrant:
    """A user's membership in an installation with its explicit permission codes."""

    grant_id: str
    user_id: str
    installation_id: str
    permission_codes: tuple[str, ...]
    assigned_by: str | None
    assigned_at: str


@dataclass
class TransactionRecord:
    transaction_id: str
    tx_hash: str
    category: TransactionCategory
    amount: Decimal
    asset: str | None
    source_address: str | None
    destination_address: str | None
    asset_from: str | None
    asset_to: str | None
    task_id: str | None
    installation_id: str | None
    user_id: str | None
    done_at: str


@dataclass
class ContributionSummary:
    user_id: str
    tasks_completed: int
    active_tasks: int
    total_earnings: Decimal


@dataclass
class SettlementResult:
    """Outcome of a settle call. ``already_settled`` marks a no-op re-invocation."""

    task: Task
    transaction: TransactionRecord
    already_settled: bool


DEFAULT_PERMISSION_CATALOG: tuple[Permission, ...] = (
    Permission(code=ADMIN, name="Administrator", is_default=False),
    Permission(code=MANAGE_TASKS, name="Manage Tasks", is_default=False),
    Permission(code=VIEW_TASKS, name="View Tasks", is_default=True),
    Permission(code=APPLY_TASKS, name="Apply to Tasks", is_default=True),
)
