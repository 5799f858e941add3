from __future__ import annotations

import logging
from uuid import uuid4

from packages.shared.schemas.command_v1 import (
    CommandTypeV1,
    ItemStateV1,
    RequestStateV1,
)
from services.ami.app.db.models import CommandItem, CommandLog, CommandRequest
from services.ami.app.services.authz_base import PERMISSION_CREATE_COMMAND, Authorizer
from services.ami.app.services.errors import AuthorizationError, NotFoundError, ValidationError
from services.ami.app.services.meter_registry import MeterRegistry
from sqlalchemy import select
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


def _normalize_meter_serials(meter_serials: list[str] | set[str] | tuple[str, ...]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for raw in meter_serials:
        serial = str(raw or "").strip()
        if not serial:
            raise ValidationError("Meter serial numbers must not be blank")
        if serial in seen:
            continue
        seen.add(serial)
        out.append(serial)
    return out


def idempotency_key_for(request_id: str, meter_serial_no: str) -> str:
    return f"{request_id}:{meter_serial_no}"


def add_request(
    db: Session,
    *,
    command_type: CommandTypeV1,
    requested_by: str,
    meter_serials: list[str] | set[str] | tuple[str, ...],
    registry: MeterRegistry,
    authorizer: Authorizer,
    reason: str | None = None,
    state: RequestStateV1 = RequestStateV1.DRAFT,
    source_batch_id: str | None = None,
) -> tuple[str, int]:
    """Add a request and its PendingApproval items to the session without committing.

    Returns the new request id and the number of items.
    """

    requested_by = (requested_by or "").strip()
    if not requested_by:
        raise ValidationError("requested_by is required")

    serials = _normalize_meter_serials(meter_serials)
    if not serials:
        raise ValidationError("At least one target meter is required")

    if not authorizer.is_allowed(requested_by, PERMISSION_CREATE_COMMAND):
        raise AuthorizationError(requested_by, PERMISSION_CREATE_COMMAND)

    rejected = registry.unknown_or_inactive(serials)
    if rejected:
        raise ValidationError(f"Unknown or inactive meters: {', '.join(rejected)}")

    request_id = uuid4().hex
    db.add(
        CommandRequest(
            id=request_id,
            type=command_type,
            requested_by=requested_by,
            state=state,
            reason=(reason or "").strip()[:300] or None,
            source_batch_id=source_batch_id,
        )
    )
    for serial in serials:
        db.add(
            CommandItem(
                request_id=request_id,
                meter_serial_no=serial,
                state=ItemStateV1.PENDING_APPROVAL,
                attempts=0,
                idempotency_key=idempotency_key_for(request_id, serial),
            )
        )
    return request_id, len(serials)


def create_request(
    db: Session,
    *,
    command_type: CommandTypeV1,
    requested_by: str,
    meter_serials: list[str] | set[str] | tuple[str, ...],
    registry: MeterRegistry,
    authorizer: Authorizer,
    reason: str | None = None,
) -> str:
    """Create a Draft request with one PendingApproval item per target meter."""

    try:
        request_id, item_count = add_request(
            db,
            command_type=command_type,
            requested_by=requested_by,
            meter_serials=meter_serials,
            registry=registry,
            authorizer=authorizer,
            reason=reason,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "command.request.created request_id=%s type=%s requested_by=%s items=%s",
        request_id,
        command_type.value,
        requested_by.strip(),
        item_count,
    )
    return request_id


def get_request(db: Session, request_id: str) -> CommandRequest:
    request = db.get(CommandRequest, request_id)
    if request is None:
        raise NotFoundError("CommandRequest", request_id)
    return request


def list_request_items(db: Session, request_id: str) -> list[CommandItem]:
    return list(
        db.scalars(
            select(CommandItem).where(CommandItem.request_id == request_id).order_by(CommandItem.id)
        )
    )


def get_item(db: Session, item_id: int) -> CommandItem:
    item = db.get(CommandItem, item_id)
    if item is None:
        raise NotFoundError("CommandItem", item_id)
    return item


def list_items_by_state(db: Session, state: ItemStateV1, *, limit: int = 200) -> list[CommandItem]:
    return list(
        db.scalars(
            select(CommandItem)
            .where(CommandItem.state == state)
            .order_by(CommandItem.id.asc())
            .limit(limit)
        )
    )


def list_item_logs(db: Session, item_id: int) -> list[CommandLog]:
    get_item(db, item_id)
    return list(
        db.scalars(
            select(CommandLog)
            .where(CommandLog.item_id == item_id)
            .order_by(CommandLog.at.asc(), CommandLog.id.asc())
        )
    )
