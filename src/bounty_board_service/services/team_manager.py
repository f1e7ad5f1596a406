"""Installation onboarding and membership grants."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from bounty_board_service.core.exceptions import NotFound, ValidationFailed
from bounty_board_service.logging import get_logger
from bounty_board_service.models import ADMIN, Installation, PermissionGrant, now_iso
from bounty_board_service.services.engine_store import DuplicateInstallationError

if TYPE_CHECKING:
    from bounty_board_service.models import WalletRef
    from bounty_board_service.services.engine_store import EngineStore, UnitOfWork
    from bounty_board_service.services.permission_resolver import PermissionResolver


def _ordered_codes(codes: set[str] | frozenset[str]) -> tuple[str, ...]:
    return tuple(sorted(codes))


class TeamManager:
    """
    Creates installations and manages who holds which permission codes on them.

    Grants are keyed by (user_id, installation_id). Granting to an existing
    member replaces their explicit codes. An installation always keeps at
    least one ADMIN.
    """

    def __init__(self, store: EngineStore, resolver: PermissionResolver) -> None:
        self._store = store
        self._resolver = resolver
        self._logger = get_logger(__name__)

    def create_installation(
        self,
        *,
        installation_id: str,
        owner_id: str,
        wallet: WalletRef,
        escrow_wallet: WalletRef,
        subscription_package_id: str | None = None,
    ) -> Installation:
        """Create the installation with both wallets and the owner's ADMIN grant."""
        if wallet.address == escrow_wallet.address:
            raise ValidationFailed(
                "INVALID_ADDRESS", "Operating and escrow wallets must be distinct"
            )

        with self._store.unit_of_work() as uow:
            if uow.get_user(owner_id) is None:
                raise NotFound("user", owner_id)
            if (
                subscription_package_id is not None
                and uow.get_subscription_package(subscription_package_id) is None
            ):
                raise NotFound("subscription_package", subscription_package_id)

            installation = Installation(
                installation_id=installation_id,
                wallet=wallet,
                escrow_wallet=escrow_wallet,
                subscription_package_id=subscription_package_id,
                created_at=now_iso(),
            )
            try:
                uow.insert_installation(installation)
            except DuplicateInstallationError as exc:
                raise ValidationFailed(
                    "INSTALLATION_EXISTS",
                    "Installation already exists",
                    409,
                    installation_id=installation_id,
                ) from exc
            uow.insert_grant(
                PermissionGrant(
                    grant_id=f"grant-{uuid.uuid4()}",
                    user_id=owner_id,
                    installation_id=installation_id,
                    permission_codes=(ADMIN,),
                    assigned_by=None,
                    assigned_at=installation.created_at,
                )
            )

        self._logger.info(
            "Installation created",
            extra={"installation_id": installation_id, "owner_id": owner_id},
        )
        return installation

    def _validate_codes(self, uow: UnitOfWork, codes: set[str]) -> None:
        catalog = {permission.code for permission in uow.list_permissions()}
        unknown = sorted(codes - catalog)
        if unknown:
            raise ValidationFailed(
                "UNKNOWN_PERMISSION",
                f"Unknown permission codes: {', '.join(unknown)}",
                codes=unknown,
            )

    def _require_admin(self, uow: UnitOfWork, installation_id: str, acting_user_id: str) -> None:
        if uow.get_installation(installation_id) is None:
            raise NotFound("installation", installation_id)
        self._resolver.require(acting_user_id, installation_id, ADMIN, uow)

    @staticmethod
    def _guard_last_admin(
        uow: UnitOfWork, grant: PermissionGrant, remaining: set[str] | None
    ) -> None:
        if ADMIN not in grant.permission_codes:
            return
        if remaining is not None and ADMIN in remaining:
            return
        admins = [
            other
            for other in uow.list_grants(grant.installation_id)
            if ADMIN in other.permission_codes
        ]
        if len(admins) <= 1:
            raise ValidationFailed(
                "LAST_ADMIN",
                "An installation must keep at least one administrator",
                409,
                installation_id=grant.installation_id,
                user_id=grant.user_id,
                constraint=ADMIN,
            )

    def grant_permission(
        self,
        installation_id: str,
        user_id: str,
        codes: set[str] | frozenset[str],
        acting_user_id: str,
    ) -> PermissionGrant:
        """Add ``user_id`` as a member with ``codes``, or replace an existing member's codes."""
        requested = set(codes)
        with self._store.unit_of_work() as uow:
            self._require_admin(uow, installation_id, acting_user_id)
            self._validate_codes(uow, requested)
            if uow.get_user(user_id) is None:
                raise NotFound("user", user_id)

            now = now_iso()
            existing = uow.get_grant(user_id, installation_id)
            if existing is not None:
                self._guard_last_admin(uow, existing, requested)
                uow.replace_grant_codes(
                    existing.grant_id, _ordered_codes(requested), acting_user_id, now
                )
            else:
                installation = uow.get_installation(installation_id)
                package_id = installation.subscription_package_id if installation else None
                package = uow.get_subscription_package(package_id) if package_id else None
                if package is not None and uow.count_members(installation_id) >= package.max_users:
                    raise ValidationFailed(
                        "USER_LIMIT_REACHED",
                        f"Subscription {package.name} allows {package.max_users} members",
                        403,
                        installation_id=installation_id,
                        constraint=f"max_users={package.max_users}",
                    )
                uow.insert_grant(
                    PermissionGrant(
                        grant_id=f"grant-{uuid.uuid4()}",
                        user_id=user_id,
                        installation_id=installation_id,
                        permission_codes=_ordered_codes(requested),
                        assigned_by=acting_user_id,
                        assigned_at=now,
                    )
                )
            grant = uow.get_grant(user_id, installation_id)

        if grant is None:
            raise NotFound("grant", f"{user_id}@{installation_id}")
        self._logger.info(
            "Permissions granted",
            extra={
                "installation_id": installation_id,
                "user_id": user_id,
                "codes": list(grant.permission_codes),
            },
        )
        return grant

    def revoke_permission(
        self,
        installation_id: str,
        user_id: str,
        acting_user_id: str,
        codes: set[str] | frozenset[str] | None = None,
    ) -> PermissionGrant | None:
        """
        Remove ``codes`` from a member, or the whole membership when ``codes`` is None.

        Returns the remaining grant, or None once the membership is gone.
        """
        with self._store.unit_of_work() as uow:
            self._require_admin(uow, installation_id, acting_user_id)
            grant = uow.get_grant(user_id, installation_id)
            if grant is None:
                raise NotFound("grant", f"{user_id}@{installation_id}")

            if codes is None:
                self._guard_last_admin(uow, grant, None)
                uow.delete_grant(grant.grant_id)
                result = None
            else:
                self._validate_codes(uow, set(codes))
                remaining = set(grant.permission_codes) - set(codes)
                self._guard_last_admin(uow, grant, remaining)
                uow.replace_grant_codes(
                    grant.grant_id, _ordered_codes(remaining), acting_user_id, now_iso()
                )
                result = uow.get_grant(user_id, installation_id)

        self._logger.info(
            "Permissions revoked",
            extra={
                "installation_id": installation_id,
                "user_id": user_id,
                "codes": sorted(codes) if codes is not None else None,
            },
        )
        return result
