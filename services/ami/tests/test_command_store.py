from __future__ import annotations

from pathlib import Path

import pytest
from packages.shared.schemas.command_v1 import (
    CommandTypeV1,
    ItemStateV1,
    MeterStatusV1,
    RequestStateV1,
)
from services.ami.app.db.models import CommandRequest, Consumer, Meter
from services.ami.app.services import command_store
from services.ami.app.services.authz_static import AllowAllAuthorizer
from services.ami.app.services.errors import AuthorizationError, NotFoundError, ValidationError
from services.ami.app.services.meter_registry import DbMeterRegistry
from sqlalchemy import func, select
from sqlalchemy.orm import Session


class _DenyAllAuthorizer:
    name = "DENY_ALL"

    def is_allowed(self, identity: str, permission: str) -> bool:
        return False


@pytest.fixture()
def db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Session:
    db_path = tmp_path / "ami_store.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+pysqlite:///{db_path}")
    monkeypatch.setenv("AMI_DB_AUTO_CREATE", "true")

    from services.ami.app.db.database import db_session
    from services.ami.app.db.init_db import init_db

    init_db()

    session = db_session()
    session.add(Consumer(id=5, name="Consumer 5"))
    session.flush()
    for serial in ("M1", "M2", "M3"):
        session.add(Meter(meter_serial_no=serial, consumer_id=5))
    session.add(Meter(meter_serial_no="M9", consumer_id=5, status=MeterStatusV1.INACTIVE))
    session.commit()

    try:
        yield session
    finally:
        session.close()


def _create(db: Session, serials: list[str], **kwargs) -> str:
    return command_store.create_request(
        db,
        command_type=kwargs.pop("command_type", CommandTypeV1.DISCONNECT),
        requested_by=kwargs.pop("requested_by", "operator-1"),
        meter_serials=serials,
        registry=DbMeterRegistry(db),
        authorizer=kwargs.pop("authorizer", AllowAllAuthorizer()),
        **kwargs,
    )


def _request_count(db: Session) -> int:
    return db.scalar(select(func.count(CommandRequest.id)))


def test_create_request_makes_one_pending_item_per_meter(db: Session) -> None:
    request_id = _create(db, ["M1", "M2", "M3"], reason="Non-payment")

    request = command_store.get_request(db, request_id)
    assert request.state == RequestStateV1.DRAFT
    assert request.type == CommandTypeV1.DISCONNECT
    assert request.requested_by == "operator-1"
    assert request.reason == "Non-payment"

    items = command_store.list_request_items(db, request_id)
    assert [i.meter_serial_no for i in items] == ["M1", "M2", "M3"]
    assert all(i.state == ItemStateV1.PENDING_APPROVAL for i in items)
    assert all(i.attempts == 0 for i in items)
    assert all(i.last_error is None for i in items)
    assert {i.idempotency_key for i in items} == {
        f"{request_id}:M1",
        f"{request_id}:M2",
        f"{request_id}:M3",
    }


def test_duplicate_meters_collapse_to_one_item(db: Session) -> None:
    request_id = _create(db, ["M1", " M1 ", "M2"])

    items = command_store.list_request_items(db, request_id)
    assert [i.meter_serial_no for i in items] == ["M1", "M2"]


def test_empty_meter_list_is_rejected(db: Session) -> None:
    with pytest.raises(ValidationError):
        _create(db, [])
    assert _request_count(db) == 0


def test_blank_meter_serial_is_rejected(db: Session) -> None:
    with pytest.raises(ValidationError):
        _create(db, ["M1", "  "])


def test_missing_requester_is_rejected(db: Session) -> None:
    with pytest.raises(ValidationError):
        _create(db, ["M1"], requested_by=" ")


def test_unknown_or_inactive_meters_reject_the_whole_request(db: Session) -> None:
    with pytest.raises(ValidationError) as exc:
        _create(db, ["M1", "NOPE", "M9"])

    assert "NOPE" in str(exc.value)
    assert "M9" in str(exc.value)
    assert _request_count(db) == 0


def test_requester_without_permission_is_refused(db: Session) -> None:
    with pytest.raises(AuthorizationError):
        _create(db, ["M1"], authorizer=_DenyAllAuthorizer())
    assert _request_count(db) == 0


def test_get_request_and_item_raise_not_found(db: Session) -> None:
    with pytest.raises(NotFoundError):
        command_store.get_request(db, "missing")
    with pytest.raises(NotFoundError):
        command_store.get_item(db, 999)
    with pytest.raises(NotFoundError):
        command_store.list_item_logs(db, 999)


def test_list_items_by_state(db: Session) -> None:
    _create(db, ["M1", "M2"])
    _create(db, ["M3"])

    pending = command_store.list_items_by_state(db, ItemStateV1.PENDING_APPROVAL)
    assert [i.meter_serial_no for i in pending] == ["M1", "M2", "M3"]
    assert command_store.list_items_by_state(db, ItemStateV1.APPROVED) == []
    assert len(command_store.list_items_by_state(db, ItemStateV1.PENDING_APPROVAL, limit=2)) == 2
