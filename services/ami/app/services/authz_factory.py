from __future__ import annotations

import os

from services.ami.app.services.authz_base import Authorizer
from services.ami.app.services.authz_static import AllowAllAuthorizer
from sqlalchemy.orm import Session


def get_authorizer(db: Session) -> Authorizer:
    """Select the authorizer based on AMI_AUTHZ_PROVIDER.

    Defaults to allow-all so tests and local dev need no RBAC seed data.
    """

    provider = os.getenv("AMI_AUTHZ_PROVIDER", "allow_all").strip().lower()

    if provider in ("allow_all", "none"):
        return AllowAllAuthorizer()

    if provider in ("roles", "rbac"):
        from services.ami.app.services.authz_roles import RoleTableAuthorizer

        return RoleTableAuthorizer(db)

    raise ValueError(f"Unknown AMI_AUTHZ_PROVIDER={provider!r}. Expected allow_all or roles.")
