"""Installation-scoped permission resolution."""

from __future__ import annotations

from typing import TYPE_CHECKING

from bounty_board_service.core.exceptions import NotMember, PermissionDenied
from bounty_board_service.models import ADMIN

if TYPE_CHECKING:
    from bounty_board_service.services.engine_store import EngineStore, UnitOfWork


class PermissionResolver:
    """
    Computes a user's effective permission codes within an installation.

    Effective codes are the grant's explicit codes plus every catalog code
    flagged as default. Nothing is cached: each call reads storage, so a
    revoked grant takes effect on the very next check. Pass ``reader`` to run
    the check inside an open unit of work.
    """

    def __init__(self, store: EngineStore) -> None:
        self._store = store

    def resolve(
        self,
        user_id: str,
        installation_id: str,
        reader: UnitOfWork | None = None,
    ) -> frozenset[str]:
        source = reader if reader is not None else self._store
        grant = source.get_grant(user_id, installation_id)
        if grant is None:
            raise NotMember(
                "User is not a member of this installation",
                user_id=user_id,
                installation_id=installation_id,
            )
        return frozenset(grant.permission_codes) | source.get_default_permission_codes()

    @staticmethod
    def _holds(codes: frozenset[str], code: str) -> bool:
        return code in codes or ADMIN in codes

    def authorize(
        self,
        user_id: str,
        installation_id: str,
        code: str,
        reader: UnitOfWork | None = None,
    ) -> bool:
        """Return True when the user is a member holding ``code`` or ADMIN."""
        try:
            codes = self.resolve(user_id, installation_id, reader)
        except NotMember:
            return False
        return self._holds(codes, code)

    def require(
        self,
        user_id: str,
        installation_id: str,
        code: str,
        reader: UnitOfWork | None = None,
        *,
        task_id: str | None = None,
    ) -> None:
        """Raise NotMember for outsiders and PermissionDenied for members lacking ``code``."""
        codes = self.resolve(user_id, installation_id, reader)
        if not self._holds(codes, code):
            raise PermissionDenied(
                f"Permission {code} required",
                user_id=user_id,
                installation_id=installation_id,
                task_id=task_id,
                constraint=code,
            )
