"""SQLite-backed engine storage with a transactional unit of work."""

from __future__ import annotations

import contextlib
import json
import sqlite3
from contextlib import contextmanager
from decimal import Decimal
from enum import Enum
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING, Any

from bounty_board_service.models import (
    DEFAULT_PERMISSION_CATALOG,
    ActivityType,
    ContributionSummary,
    Installation,
    Permission,
    PermissionGrant,
    SubscriptionPackage,
    Task,
    TaskActivity,
    TaskStatus,
    TaskSubmission,
    TimelineType,
    TransactionCategory,
    TransactionRecord,
    User,
    WalletRef,
)

if TYPE_CHECKING:
    from collections.abc import Iterator


class DuplicateUserError(Exception):
    """Raised when a user_id or username is already registered."""


class DuplicateInstallationError(Exception):
    """Raised when an installation_id already exists."""


class DuplicateGrantError(Exception):
    """Raised when a (user_id, installation_id) grant already exists."""


class DuplicateSubmissionError(Exception):
    """Raised when a (task_id, user_id) submission already exists."""


class DuplicateTransactionError(Exception):
    """Raised on a repeated tx_hash or a second BOUNTY transaction for a task."""


_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    user_id TEXT PRIMARY KEY,
    username TEXT NOT NULL UNIQUE,
    wallet_address TEXT NOT NULL,
    wallet_secret_ref TEXT NOT NULL,
    address_book TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS contribution_summaries (
    user_id TEXT PRIMARY KEY REFERENCES users(user_id),
    tasks_completed INTEGER NOT NULL DEFAULT 0 CHECK (tasks_completed >= 0),
    active_tasks INTEGER NOT NULL DEFAULT 0 CHECK (active_tasks >= 0),
    total_earnings TEXT NOT NULL DEFAULT '0'
);

CREATE TABLE IF NOT EXISTS subscription_packages (
    package_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT NOT NULL,
    max_tasks INTEGER NOT NULL,
    max_users INTEGER NOT NULL,
    price TEXT NOT NULL,
    paid INTEGER NOT NULL DEFAULT 1,
    active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS installations (
    installation_id TEXT PRIMARY KEY,
    wallet_address TEXT NOT NULL,
    wallet_secret_ref TEXT NOT NULL,
    escrow_address TEXT NOT NULL,
    escrow_secret_ref TEXT NOT NULL,
    subscription_package_id TEXT REFERENCES subscription_packages(package_id),
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS permissions (
    code TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    is_default INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS permission_grants (
    grant_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(user_id),
    installation_id TEXT NOT NULL REFERENCES installations(installation_id),
    permission_codes TEXT NOT NULL,
    assigned_by TEXT,
    assigned_at TEXT NOT NULL,
    UNIQUE(user_id, installation_id)
);

CREATE TABLE IF NOT EXISTS permission_grant_codes (
    grant_id TEXT NOT NULL REFERENCES permission_grants(grant_id) ON DELETE CASCADE,
    code TEXT NOT NULL REFERENCES permissions(code),
    PRIMARY KEY (grant_id, code)
);

CREATE TABLE IF NOT EXISTS tasks (
    task_id TEXT PRIMARY KEY,
    installation_id TEXT NOT NULL REFERENCES installations(installation_id),
    creator_id TEXT NOT NULL REFERENCES users(user_id),
    contributor_id TEXT REFERENCES users(user_id),
    issue TEXT NOT NULL,
    bounty TEXT NOT NULL,
    asset TEXT NOT NULL,
    timeline REAL,
    timeline_type TEXT CHECK (timeline_type IS NULL OR timeline_type IN ('WEEK', 'DAY')),
    status TEXT NOT NULL DEFAULT 'OPEN'
        CHECK (status IN ('OPEN', 'IN_PROGRESS', 'MARKED_AS_COMPLETED', 'COMPLETED')),
    settled INTEGER NOT NULL DEFAULT 0,
    accepted_at TEXT,
    completed_at TEXT,
    settlement_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    CHECK (settled = 0 OR status = 'COMPLETED')
);

CREATE INDEX IF NOT EXISTS ix_tasks_installation_status
    ON tasks(installation_id, status);

CREATE TABLE IF NOT EXISTS task_applicants (
    task_id TEXT NOT NULL REFERENCES tasks(task_id),
    user_id TEXT NOT NULL REFERENCES users(user_id),
    applied_at TEXT NOT NULL,
    PRIMARY KEY (task_id, user_id)
);

CREATE TABLE IF NOT EXISTS task_submissions (
    submission_id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(task_id),
    user_id TEXT NOT NULL REFERENCES users(user_id),
    installation_id TEXT NOT NULL REFERENCES installations(installation_id),
    pull_request TEXT NOT NULL,
    attachment_url TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(task_id, user_id)
);

CREATE TABLE IF NOT EXISTS task_activities (
    activity_id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(task_id),
    activity_type TEXT NOT NULL,
    user_id TEXT REFERENCES users(user_id),
    submission_id TEXT REFERENCES task_submissions(submission_id),
    details TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS ix_task_activities_task
    ON task_activities(task_id, created_at);

CREATE TRIGGER IF NOT EXISTS trg_task_activities_no_update
    BEFORE UPDATE ON task_activities
BEGIN
    SELECT RAISE(ABORT, 'task_activities is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_task_activities_no_delete
    BEFORE DELETE ON task_activities
BEGIN
    SELECT RAISE(ABORT, 'task_activities is append-only');
END;

CREATE TABLE IF NOT EXISTS transactions (
    transaction_id TEXT PRIMARY KEY,
    tx_hash TEXT NOT NULL UNIQUE,
    category TEXT NOT NULL
        CHECK (category IN ('BOUNTY', 'SWAP_USDC', 'SWAP_XLM', 'WITHDRAWAL', 'TOP_UP')),
    amount TEXT NOT NULL,
    asset TEXT,
    source_address TEXT,
    destination_address TEXT,
    asset_from TEXT,
    asset_to TEXT,
    task_id TEXT REFERENCES tasks(task_id),
    installation_id TEXT REFERENCES installations(installation_id),
    user_id TEXT REFERENCES users(user_id),
    done_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_bounty_transaction_per_task
    ON transactions(task_id)
    WHERE category = 'BOUNTY';

CREATE INDEX IF NOT EXISTS ix_transactions_installation
    ON transactions(installation_id, done_at);

CREATE TRIGGER IF NOT EXISTS trg_transactions_no_update
    BEFORE UPDATE ON transactions
BEGIN
    SELECT RAISE(ABORT, 'transactions are immutable');
END;

CREATE TRIGGER IF NOT EXISTS trg_transactions_no_delete
    BEFORE DELETE ON transactions
BEGIN
    SELECT RAISE(ABORT, 'transactions are immutable');
END;
"""

_TASK_UPDATABLE_COLUMNS = frozenset(
    {
        "contributor_id",
        "bounty",
        "timeline",
        "timeline_type",
        "status",
        "settled",
        "accepted_at",
        "completed_at",
        "settlement_error",
    }
)


def _encode(value: Any) -> Any:
    """Convert a domain value into a SQLite column value."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict | list | tuple):
        return json.dumps(value, sort_keys=True, default=str)
    return value


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        user_id=str(row["user_id"]),
        username=str(row["username"]),
        wallet=WalletRef(str(row["wallet_address"]), str(row["wallet_secret_ref"])),
        address_book=list(json.loads(row["address_book"])),
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )


def _row_to_installation(row: sqlite3.Row) -> Installation:
    return Installation(
        installation_id=str(row["installation_id"]),
        wallet=WalletRef(str(row["wallet_address"]), str(row["wallet_secret_ref"])),
        escrow_wallet=WalletRef(str(row["escrow_address"]), str(row["escrow_secret_ref"])),
        subscription_package_id=(
            str(row["subscription_package_id"])
            if row["subscription_package_id"] is not None
            else None
        ),
        created_at=str(row["created_at"]),
    )


def _row_to_grant(row: sqlite3.Row) -> PermissionGrant:
    return PermissionGrant(
        grant_id=str(row["grant_id"]),
        user_id=str(row["user_id"]),
        installation_id=str(row["installation_id"]),
        permission_codes=tuple(json.loads(row["permission_codes"])),
        assigned_by=str(row["assigned_by"]) if row["assigned_by"] is not None else None,
        assigned_at=str(row["assigned_at"]),
    )


def _row_to_task(row: sqlite3.Row, applicants: tuple[str, ...]) -> Task:
    return Task(
        task_id=str(row["task_id"]),
        installation_id=str(row["installation_id"]),
        creator_id=str(row["creator_id"]),
        contributor_id=str(row["contributor_id"]) if row["contributor_id"] is not None else None,
        issue=dict(json.loads(row["issue"])),
        bounty=Decimal(row["bounty"]),
        asset=str(row["asset"]),
        timeline=float(row["timeline"]) if row["timeline"] is not None else None,
        timeline_type=(
            TimelineType(row["timeline_type"]) if row["timeline_type"] is not None else None
        ),
        status=TaskStatus(row["status"]),
        settled=bool(row["settled"]),
        accepted_at=row["accepted_at"],
        completed_at=row["completed_at"],
        settlement_error=row["settlement_error"],
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
        version=int(row["version"]),
        applicants=applicants,
    )


def _row_to_submission(row: sqlite3.Row) -> TaskSubmission:
    return TaskSubmission(
        submission_id=str(row["submission_id"]),
        task_id=str(row["task_id"]),
        user_id=str(row["user_id"]),
        installation_id=str(row["installation_id"]),
        pull_request=str(row["pull_request"]),
        attachment_url=row["attachment_url"],
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )


def _row_to_activity(row: sqlite3.Row) -> TaskActivity:
    return TaskActivity(
        activity_id=str(row["activity_id"]),
        task_id=str(row["task_id"]),
        activity_type=ActivityType(row["activity_type"]),
        user_id=row["user_id"],
        submission_id=row["submission_id"],
        details=dict(json.loads(row["details"])),
        created_at=str(row["created_at"]),
    )


def _row_to_transaction(row: sqlite3.Row) -> TransactionRecord:
    return TransactionRecord(
        transaction_id=str(row["transaction_id"]),
        tx_hash=str(row["tx_hash"]),
        category=TransactionCategory(row["category"]),
        amount=Decimal(row["amount"]),
        asset=row["asset"],
        source_address=row["source_address"],
        destination_address=row["destination_address"],
        asset_from=row["asset_from"],
        asset_to=row["asset_to"],
        task_id=row["task_id"],
        installation_id=row["installation_id"],
        user_id=row["user_id"],
        done_at=str(row["done_at"]),
    )


class _Reader:
    """Read queries shared by the store and by open units of work."""

    def __init__(self, db: sqlite3.Connection, lock: RLock) -> None:
        self._db = db
        self._lock = lock

    def _fetchone(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Row | None:
        with self._lock:
            row: sqlite3.Row | None = self._db.execute(query, params).fetchone()
        return row

    def _fetchall(self, query: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        with self._lock:
            rows: list[sqlite3.Row] = self._db.execute(query, params).fetchall()
        return rows

    # --- users / installations -------------------------------------------

    def get_user(self, user_id: str) -> User | None:
        row = self._fetchone("SELECT * FROM users WHERE user_id = ?", (user_id,))
        return _row_to_user(row) if row is not None else None

    def get_installation(self, installation_id: str) -> Installation | None:
        row = self._fetchone(
            "SELECT * FROM installations WHERE installation_id = ?", (installation_id,)
        )
        return _row_to_installation(row) if row is not None else None

    def get_subscription_package(self, package_id: str) -> SubscriptionPackage | None:
        row = self._fetchone(
            "SELECT * FROM subscription_packages WHERE package_id = ?", (package_id,)
        )
        if row is None:
            return None
        return SubscriptionPackage(
            package_id=str(row["package_id"]),
            name=str(row["name"]),
            description=str(row["description"]),
            max_tasks=int(row["max_tasks"]),
            max_users=int(row["max_users"]),
            price=Decimal(row["price"]),
            paid=bool(row["paid"]),
            active=bool(row["active"]),
        )

    # --- permissions -----------------------------------------------------

    def list_permissions(self) -> list[Permission]:
        rows = self._fetchall("SELECT code, name, is_default FROM permissions ORDER BY code")
        return [
            Permission(code=str(row["code"]), name=str(row["name"]), is_default=bool(row[2]))
            for row in rows
        ]

    def get_default_permission_codes(self) -> frozenset[str]:
        rows = self._fetchall("SELECT code FROM permissions WHERE is_default = 1")
        return frozenset(str(row["code"]) for row in rows)

    def get_grant(self, user_id: str, installation_id: str) -> PermissionGrant | None:
        row = self._fetchone(
            "SELECT * FROM permission_grants WHERE user_id = ? AND installation_id = ?",
            (user_id, installation_id),
        )
        return _row_to_grant(row) if row is not None else None

    def get_grant_catalog_codes(self, grant_id: str) -> frozenset[str]:
        rows = self._fetchall(
            "SELECT code FROM permission_grant_codes WHERE grant_id = ?", (grant_id,)
        )
        return frozenset(str(row["code"]) for row in rows)

    def list_grants(self, installation_id: str) -> list[PermissionGrant]:
        rows = self._fetchall(
            "SELECT * FROM permission_grants WHERE installation_id = ? ORDER BY assigned_at",
            (installation_id,),
        )
        return [_row_to_grant(row) for row in rows]

    def count_members(self, installation_id: str) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) FROM permission_grants WHERE installation_id = ?",
            (installation_id,),
        )
        return int(row[0]) if row is not None else 0

    # --- tasks -----------------------------------------------------------

    def get_applicants(self, task_id: str) -> tuple[str, ...]:
        rows = self._fetchall(
            "SELECT user_id FROM task_applicants WHERE task_id = ? ORDER BY applied_at, user_id",
            (task_id,),
        )
        return tuple(str(row["user_id"]) for row in rows)

    def get_task(self, task_id: str) -> Task | None:
        row = self._fetchone("SELECT * FROM tasks WHERE task_id = ?", (task_id,))
        if row is None:
            return None
        return _row_to_task(row, self.get_applicants(task_id))

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        installation_id: str | None = None,
        contributor_id: str | None = None,
        pending_settlement: bool = False,
    ) -> list[Task]:
        """List tasks with optional filters. ``pending_settlement`` selects unblocked,
        unsettled MARKED_AS_COMPLETED tasks."""
        query = "SELECT * FROM tasks"
        clauses: list[str] = []
        params: list[object] = []

        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if installation_id is not None:
            clauses.append("installation_id = ?")
            params.append(installation_id)
        if contributor_id is not None:
            clauses.append("contributor_id = ?")
            params.append(contributor_id)
        if pending_settlement:
            clauses.append("status = 'MARKED_AS_COMPLETED'")
            clauses.append("settled = 0")
            clauses.append("settlement_error IS NULL")

        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at, task_id"

        rows = self._fetchall(query, tuple(params))
        return [_row_to_task(row, self.get_applicants(str(row["task_id"]))) for row in rows]

    def count_tasks(self) -> int:
        row = self._fetchone("SELECT COUNT(*) FROM tasks")
        return int(row[0]) if row is not None else 0

    def count_tasks_by_status(self) -> dict[str, int]:
        rows = self._fetchall("SELECT status, COUNT(*) FROM tasks GROUP BY status")
        return {str(row[0]): int(row[1]) for row in rows}

    def count_unfinished_tasks(self, installation_id: str) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) FROM tasks WHERE installation_id = ? AND status != 'COMPLETED'",
            (installation_id,),
        )
        return int(row[0]) if row is not None else 0

    # --- submissions / activities ---------------------------------------

    def get_submission(self, task_id: str, user_id: str) -> TaskSubmission | None:
        row = self._fetchone(
            "SELECT * FROM task_submissions WHERE task_id = ? AND user_id = ?",
            (task_id, user_id),
        )
        return _row_to_submission(row) if row is not None else None

    def list_submissions(self, task_id: str) -> list[TaskSubmission]:
        rows = self._fetchall(
            "SELECT * FROM task_submissions WHERE task_id = ? ORDER BY created_at",
            (task_id,),
        )
        return [_row_to_submission(row) for row in rows]

    def count_submissions(self, task_id: str) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) FROM task_submissions WHERE task_id = ?", (task_id,)
        )
        return int(row[0]) if row is not None else 0

    def list_activities(self, task_id: str) -> list[TaskActivity]:
        rows = self._fetchall(
            "SELECT * FROM task_activities WHERE task_id = ? ORDER BY created_at, rowid",
            (task_id,),
        )
        return [_row_to_activity(row) for row in rows]

    # --- summaries / transactions ----------------------------------------

    def get_summary(self, user_id: str) -> ContributionSummary | None:
        row = self._fetchone(
            "SELECT * FROM contribution_summaries WHERE user_id = ?", (user_id,)
        )
        if row is None:
            return None
        return ContributionSummary(
            user_id=str(row["user_id"]),
            tasks_completed=int(row["tasks_completed"]),
            active_tasks=int(row["active_tasks"]),
            total_earnings=Decimal(row["total_earnings"]),
        )

    def get_bounty_transaction(self, task_id: str) -> TransactionRecord | None:
        row = self._fetchone(
            "SELECT * FROM transactions WHERE task_id = ? AND category = 'BOUNTY'",
            (task_id,),
        )
        return _row_to_transaction(row) if row is not None else None

    def get_transaction_by_hash(self, tx_hash: str) -> TransactionRecord | None:
        row = self._fetchone("SELECT * FROM transactions WHERE tx_hash = ?", (tx_hash,))
        return _row_to_transaction(row) if row is not None else None

    def list_transactions(
        self,
        *,
        task_id: str | None = None,
        installation_id: str | None = None,
        user_id: str | None = None,
        category: TransactionCategory | None = None,
    ) -> list[TransactionRecord]:
        query = "SELECT * FROM transactions"
        clauses: list[str] = []
        params: list[object] = []
        for column, value in (
            ("task_id", task_id),
            ("installation_id", installation_id),
            ("user_id", user_id),
            ("category", category.value if category is not None else None),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY done_at, rowid"
        return [_row_to_transaction(row) for row in self._fetchall(query, tuple(params))]


class UnitOfWork(_Reader):
    """
    Write access inside one ``BEGIN IMMEDIATE`` transaction.

    Only obtainable from ``EngineStore.unit_of_work()``; every write made
    through it commits or rolls back together.
    """

    def insert_user(self, user: User) -> None:
        try:
            self._db.execute(
                "INSERT INTO users (user_id, username, wallet_address, wallet_secret_ref, "
                "address_book, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    user.user_id,
                    user.username,
                    user.wallet.address,
                    user.wallet.secret_ref,
                    _encode(user.address_book),
                    user.created_at,
                    user.updated_at,
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateUserError(f"User {user.user_id} or {user.username} exists") from exc

    def set_address_book(
        self, user_id: str, address_book: list[dict[str, Any]], updated_at: str
    ) -> None:
        self._db.execute(
            "UPDATE users SET address_book = ?, updated_at = ? WHERE user_id = ?",
            (_encode(address_book), updated_at, user_id),
        )

    def insert_installation(self, installation: Installation) -> None:
        try:
            self._db.execute(
                "INSERT INTO installations (installation_id, wallet_address, wallet_secret_ref, "
                "escrow_address, escrow_secret_ref, subscription_package_id, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    installation.installation_id,
                    installation.wallet.address,
                    installation.wallet.secret_ref,
                    installation.escrow_wallet.address,
                    installation.escrow_wallet.secret_ref,
                    installation.subscription_package_id,
                    installation.created_at,
                ),
            )
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateInstallationError(
                    f"Installation {installation.installation_id} already exists"
                ) from exc
            raise

    def insert_subscription_package(self, package: SubscriptionPackage) -> None:
        self._db.execute(
            "INSERT INTO subscription_packages (package_id, name, description, max_tasks, "
            "max_users, price, paid, active) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                package.package_id,
                package.name,
                package.description,
                package.max_tasks,
                package.max_users,
                _encode(package.price),
                _encode(package.paid),
                _encode(package.active),
            ),
        )

    def upsert_permission(self, permission: Permission) -> None:
        self._db.execute(
            "INSERT INTO permissions (code, name, is_default) VALUES (?, ?, ?) "
            "ON CONFLICT(code) DO UPDATE SET name = excluded.name, "
            "is_default = excluded.is_default",
            (permission.code, permission.name, _encode(permission.is_default)),
        )

    def _write_grant_codes(self, grant_id: str, codes: tuple[str, ...]) -> None:
        self._db.execute("DELETE FROM permission_grant_codes WHERE grant_id = ?", (grant_id,))
        self._db.executemany(
            "INSERT INTO permission_grant_codes (grant_id, code) VALUES (?, ?)",
            [(grant_id, code) for code in codes],
        )

    def insert_grant(self, grant: PermissionGrant) -> None:
        try:
            self._db.execute(
                "INSERT INTO permission_grants (grant_id, user_id, installation_id, "
                "permission_codes, assigned_by, assigned_at) VALUES (?, ?, ?, ?, ?, ?)",
                (
                    grant.grant_id,
                    grant.user_id,
                    grant.installation_id,
                    _encode(list(grant.permission_codes)),
                    grant.assigned_by,
                    grant.assigned_at,
                ),
            )
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateGrantError(
                    f"Grant for {grant.user_id} on {grant.installation_id} already exists"
                ) from exc
            raise
        self._write_grant_codes(grant.grant_id, grant.permission_codes)

    def replace_grant_codes(
        self,
        grant_id: str,
        codes: tuple[str, ...],
        assigned_by: str | None,
        assigned_at: str,
    ) -> None:
        self._db.execute(
            "UPDATE permission_grants SET permission_codes = ?, assigned_by = ?, "
            "assigned_at = ? WHERE grant_id = ?",
            (_encode(list(codes)), assigned_by, assigned_at, grant_id),
        )
        self._write_grant_codes(grant_id, codes)

    def delete_grant(self, grant_id: str) -> None:
        self._db.execute("DELETE FROM permission_grants WHERE grant_id = ?", (grant_id,))

    def insert_task(self, task: Task) -> None:
        self._db.execute(
            "INSERT INTO tasks (task_id, installation_id, creator_id, contributor_id, issue, "
            "bounty, asset, timeline, timeline_type, status, settled, accepted_at, "
            "completed_at, settlement_error, created_at, updated_at, version) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                task.task_id,
                task.installation_id,
                task.creator_id,
                task.contributor_id,
                _encode(task.issue),
                _encode(task.bounty),
                task.asset,
                task.timeline,
                _encode(task.timeline_type),
                _encode(task.status),
                _encode(task.settled),
                task.accepted_at,
                task.completed_at,
                task.settlement_error,
                task.created_at,
                task.updated_at,
                task.version,
            ),
        )

    def update_task(
        self,
        task_id: str,
        updates: dict[str, Any],
        *,
        expected_version: int,
        updated_at: str,
    ) -> int:
        """Apply updates guarded by the version token and return the affected row count."""
        if any(column not in _TASK_UPDATABLE_COLUMNS for column in updates):
            msg = "Attempted to update unknown or immutable task column"
            raise ValueError(msg)

        assignments = [f"{column} = ?" for column in updates]
        assignments.extend(["updated_at = ?", "version = version + 1"])
        params: list[object] = [_encode(value) for value in updates.values()]
        params.extend([updated_at, task_id, expected_version])

        query = (
            "UPDATE tasks SET "  # nosec B608
            + ", ".join(assignments)
            + " WHERE task_id = ? AND version = ?"
        )
        cursor = self._db.execute(query, params)
        return int(cursor.rowcount)

    def add_applicant(self, task_id: str, user_id: str, applied_at: str) -> bool:
        cursor = self._db.execute(
            "INSERT OR IGNORE INTO task_applicants (task_id, user_id, applied_at) "
            "VALUES (?, ?, ?)",
            (task_id, user_id, applied_at),
        )
        return cursor.rowcount == 1

    def remove_applicant(self, task_id: str, user_id: str) -> bool:
        cursor = self._db.execute(
            "DELETE FROM task_applicants WHERE task_id = ? AND user_id = ?",
            (task_id, user_id),
        )
        return cursor.rowcount == 1

    def insert_submission(self, submission: TaskSubmission) -> None:
        try:
            self._db.execute(
                "INSERT INTO task_submissions (submission_id, task_id, user_id, "
                "installation_id, pull_request, attachment_url, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    submission.submission_id,
                    submission.task_id,
                    submission.user_id,
                    submission.installation_id,
                    submission.pull_request,
                    submission.attachment_url,
                    submission.created_at,
                    submission.updated_at,
                ),
            )
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateSubmissionError(
                    f"User {submission.user_id} already submitted for {submission.task_id}"
                ) from exc
            raise

    def insert_activity(self, activity: TaskActivity) -> None:
        self._db.execute(
            "INSERT INTO task_activities (activity_id, task_id, activity_type, user_id, "
            "submission_id, details, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                activity.activity_id,
                activity.task_id,
                _encode(activity.activity_type),
                activity.user_id,
                activity.submission_id,
                _encode(activity.details),
                activity.created_at,
            ),
        )

    def save_summary(self, summary: ContributionSummary) -> None:
        self._db.execute(
            "INSERT INTO contribution_summaries (user_id, tasks_completed, active_tasks, "
            "total_earnings) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(user_id) DO UPDATE SET tasks_completed = excluded.tasks_completed, "
            "active_tasks = excluded.active_tasks, total_earnings = excluded.total_earnings",
            (
                summary.user_id,
                summary.tasks_completed,
                summary.active_tasks,
                _encode(summary.total_earnings),
            ),
        )

    def insert_transaction(self, record: TransactionRecord) -> None:
        try:
            self._db.execute(
                "INSERT INTO transactions (transaction_id, tx_hash, category, amount, asset, "
                "source_address, destination_address, asset_from, asset_to, task_id, "
                "installation_id, user_id, done_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.transaction_id,
                    record.tx_hash,
                    _encode(record.category),
                    _encode(record.amount),
                    record.asset,
                    record.source_address,
                    record.destination_address,
                    record.asset_from,
                    record.asset_to,
                    record.task_id,
                    record.installation_id,
                    record.user_id,
                    record.done_at,
                ),
            )
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateTransactionError(
                    f"Transaction {record.tx_hash} already recorded"
                ) from exc
            raise


class EngineStore(_Reader):
    """SQLite-backed storage for every engine entity."""

    def __init__(self, db_path: str) -> None:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        db = sqlite3.connect(db_path, check_same_thread=False)
        db.row_factory = sqlite3.Row
        db.execute("PRAGMA journal_mode=WAL")
        db.execute("PRAGMA foreign_keys=ON")
        db.execute("PRAGMA busy_timeout=5000")
        super().__init__(db, RLock())
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(_SCHEMA)
            self._db.commit()
        with self.unit_of_work() as uow:
            for permission in DEFAULT_PERMISSION_CATALOG:
                if not self._fetchone(
                    "SELECT 1 FROM permissions WHERE code = ?", (permission.code,)
                ):
                    uow.upsert_permission(permission)

    @contextmanager
    def unit_of_work(self) -> Iterator[UnitOfWork]:
        """
        Open a write transaction.

        Holds the store lock for the whole block, so callers must not await
        inside it. Any exception rolls every write back.
        """
        with self._lock:
            self._db.execute("BEGIN IMMEDIATE")
            try:
                yield UnitOfWork(self._db, self._lock)
                self._db.commit()
            except BaseException:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise

    def get_stats(self) -> dict[str, Any]:
        """Return task counts for health reporting."""
        by_status = {status.value: 0 for status in TaskStatus}
        by_status.update(self.count_tasks_by_status())
        return {
            "total_tasks": self.count_tasks(),
            "tasks_by_status": by_status,
            "pending_settlements": len(self.list_tasks(pending_settlement=True)),
        }

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
