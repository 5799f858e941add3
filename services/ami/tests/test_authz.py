from __future__ import annotations

from pathlib import Path

import pytest
from services.ami.app.db.models import AppUser, Permission, Role, RolePermission, UserRole
from services.ami.app.services.authz_base import (
    PERMISSION_APPROVE_COMMAND,
    PERMISSION_CREATE_COMMAND,
)
from services.ami.app.services.authz_factory import get_authorizer
from services.ami.app.services.authz_roles import RoleTableAuthorizer
from services.ami.app.services.authz_static import AllowAllAuthorizer
from sqlalchemy.orm import Session


@pytest.fixture()
def db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Session:
    db_path = tmp_path / "ami_authz.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+pysqlite:///{db_path}")
    monkeypatch.setenv("AMI_DB_AUTO_CREATE", "true")

    from services.ami.app.db.database import db_session
    from services.ami.app.db.init_db import init_db

    init_db()

    session = db_session()
    create = Permission(name=PERMISSION_CREATE_COMMAND)
    approve = Permission(name=PERMISSION_APPROVE_COMMAND)
    operator = Role(name="operator")
    supervisor = Role(name="supervisor")
    alice = AppUser(username="alice", display_name="Alice")
    bob = AppUser(username="bob", display_name="Bob")
    carol = AppUser(username="carol", display_name="Carol", is_active=False)
    session.add_all([create, approve, operator, supervisor, alice, bob, carol])
    session.flush()

    session.add_all(
        [
            RolePermission(role_id=operator.id, permission_id=create.id),
            RolePermission(role_id=supervisor.id, permission_id=create.id),
            RolePermission(role_id=supervisor.id, permission_id=approve.id),
            UserRole(user_id=alice.id, role_id=operator.id),
            UserRole(user_id=bob.id, role_id=supervisor.id),
            UserRole(user_id=carol.id, role_id=supervisor.id),
        ]
    )
    session.commit()

    try:
        yield session
    finally:
        session.close()


def test_allow_all_requires_an_identity() -> None:
    authorizer = AllowAllAuthorizer()
    assert authorizer.is_allowed("anyone", PERMISSION_APPROVE_COMMAND)
    assert not authorizer.is_allowed("  ", PERMISSION_APPROVE_COMMAND)


def test_role_table_resolves_permissions_through_roles(db: Session) -> None:
    authorizer = RoleTableAuthorizer(db)

    assert authorizer.is_allowed("alice", PERMISSION_CREATE_COMMAND)
    assert not authorizer.is_allowed("alice", PERMISSION_APPROVE_COMMAND)
    assert authorizer.is_allowed("bob", PERMISSION_APPROVE_COMMAND)
    assert not authorizer.is_allowed("nobody", PERMISSION_CREATE_COMMAND)


def test_role_table_ignores_inactive_users(db: Session) -> None:
    assert not RoleTableAuthorizer(db).is_allowed("carol", PERMISSION_APPROVE_COMMAND)


def test_factory_selects_provider(db: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("AMI_AUTHZ_PROVIDER", raising=False)
    assert get_authorizer(db).name == "ALLOW_ALL"

    monkeypatch.setenv("AMI_AUTHZ_PROVIDER", "roles")
    assert get_authorizer(db).name == "ROLES"

    monkeypatch.setenv("AMI_AUTHZ_PROVIDER", "ldap")
    with pytest.raises(ValueError):
        get_authorizer(db)
