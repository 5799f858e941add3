from __future__ import annotations

from services.ami.app.db.models import AppUser, Permission, RolePermission, UserRole
from services.ami.app.services.authz_base import Authorizer
from sqlalchemy import select
from sqlalchemy.orm import Session


class RoleTableAuthorizer(Authorizer):
    """Resolves permissions through app_users -> user_roles -> role_permissions."""

    name = "ROLES"

    def __init__(self, db: Session) -> None:
        self._db = db

    def is_allowed(self, identity: str, permission: str) -> bool:
        stmt = (
            select(Permission.id)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .join(UserRole, UserRole.role_id == RolePermission.role_id)
            .join(AppUser, AppUser.id == UserRole.user_id)
            .where(
                AppUser.username == identity,
                AppUser.is_active.is_(True),
                Permission.name == permission,
            )
            .limit(1)
        )
        return self._db.scalar(stmt) is not None
