from __future__ import annotations

import argparse
from decimal import Decimal

from packages.shared.schemas.command_v1 import MeterStatusV1
from services.ami.app.db.database import db_session
from services.ami.app.db.init_db import init_db
from services.ami.app.db.models import (
    AppUser,
    Consumer,
    Meter,
    Permission,
    PrepaidBalance,
    Role,
    RolePermission,
    UserRole,
)
from services.ami.app.services.authz_base import (
    PERMISSION_APPROVE_COMMAND,
    PERMISSION_APPROVE_IMPORT,
    PERMISSION_CREATE_COMMAND,
)
from sqlalchemy import select

# role name -> permissions
_ROLES = {
    "operator": (PERMISSION_CREATE_COMMAND,),
    "supervisor": (
        PERMISSION_CREATE_COMMAND,
        PERMISSION_APPROVE_COMMAND,
        PERMISSION_APPROVE_IMPORT,
    ),
}


def _get_or_create_role(db, name: str) -> Role:
    role = db.scalar(select(Role).where(Role.name == name))
    if role is None:
        role = Role(name=name)
        db.add(role)
        db.flush()
    return role


def _get_or_create_permission(db, name: str) -> Permission:
    perm = db.scalar(select(Permission).where(Permission.name == name))
    if perm is None:
        perm = Permission(name=name)
        db.add(perm)
        db.flush()
    return perm


def _ensure_user(db, username: str, role: Role) -> None:
    user = db.scalar(select(AppUser).where(AppUser.username == username))
    if user is None:
        user = AppUser(username=username, display_name=username.title())
        db.add(user)
        db.flush()
    if db.get(UserRole, (user.id, role.id)) is None:
        db.add(UserRole(user_id=user.id, role_id=role.id))


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed minimal AMI command service data")
    parser.add_argument("--consumer-id", type=int, default=5)
    parser.add_argument("--consumer-name", default="Consumer 5")
    parser.add_argument("--meters", default="M1,M2,M3", help="Comma-separated meter serials")
    parser.add_argument("--inactive-meter", default="M9")
    parser.add_argument("--opening-balance", default="500.00")
    parser.add_argument("--threshold", default="100.00")
    parser.add_argument("--operator", default="operator-1")
    parser.add_argument("--supervisor", default="supervisor-1")
    args = parser.parse_args()

    init_db()

    db = db_session()
    try:
        if db.get(Consumer, args.consumer_id) is None:
            db.add(Consumer(id=args.consumer_id, name=args.consumer_name))
            db.flush()

        serials = [s.strip() for s in args.meters.split(",") if s.strip()]
        for serial in serials:
            if db.get(Meter, serial) is None:
                db.add(Meter(meter_serial_no=serial, consumer_id=args.consumer_id))

        if args.inactive_meter and db.get(Meter, args.inactive_meter) is None:
            db.add(
                Meter(
                    meter_serial_no=args.inactive_meter,
                    consumer_id=args.consumer_id,
                    status=MeterStatusV1.INACTIVE,
                )
            )
        db.flush()

        # Consumer-level balance (no meter)
        existing_balance = db.scalar(
            select(PrepaidBalance).where(
                PrepaidBalance.consumer_id == args.consumer_id,
                PrepaidBalance.meter_serial_no.is_(None),
            )
        )
        if existing_balance is None:
            db.add(
                PrepaidBalance(
                    consumer_id=args.consumer_id,
                    meter_serial_no=None,
                    balance_amount=Decimal(args.opening_balance),
                    threshold_amount=Decimal(args.threshold),
                )
            )

        # RBAC
        roles: dict[str, Role] = {}
        for role_name, permissions in _ROLES.items():
            role = _get_or_create_role(db, role_name)
            roles[role_name] = role
            for perm_name in permissions:
                perm = _get_or_create_permission(db, perm_name)
                if db.get(RolePermission, (role.id, perm.id)) is None:
                    db.add(RolePermission(role_id=role.id, permission_id=perm.id))

        _ensure_user(db, args.operator, roles["operator"])
        _ensure_user(db, args.supervisor, roles["supervisor"])

        db.commit()
        print(f"Seeded consumer={args.consumer_id} meters={','.join(serials)}")
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    raise SystemExit(main())
