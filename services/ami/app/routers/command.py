from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from packages.shared.schemas.command_v1 import CommandItemV1, CommandRequestV1, ItemStateV1
from services.ami.app.db.database import get_db
from services.ami.app.db.models import CommandItem, CommandRequest
from services.ami.app.models.command import (
    CommandCreateRequest,
    CommandDecisionRequest,
    CommandSubmitRequest,
)
from services.ami.app.routers.errors import raise_service_http_error
from services.ami.app.services import approval, command_store
from services.ami.app.services.authz_factory import get_authorizer
from services.ami.app.services.errors import CommandServiceError
from services.ami.app.services.meter_registry import DbMeterRegistry
from sqlalchemy.orm import Session

router = APIRouter()


@router.post("/v1/commands", response_model=CommandRequestV1)
def create_command(
    payload: CommandCreateRequest, db: Session = Depends(get_db)
) -> CommandRequestV1:
    try:
        request_id = command_store.create_request(
            db,
            command_type=payload.type,
            requested_by=payload.requested_by,
            reason=payload.reason,
            meter_serials=payload.meter_serials,
            registry=DbMeterRegistry(db),
            authorizer=get_authorizer(db),
        )
        return _request_out(db, command_store.get_request(db, request_id))
    except CommandServiceError as e:
        raise_service_http_error(e)


@router.get("/v1/commands/{request_id}", response_model=CommandRequestV1)
def get_command(request_id: str, db: Session = Depends(get_db)) -> CommandRequestV1:
    try:
        return _request_out(db, command_store.get_request(db, request_id))
    except CommandServiceError as e:
        raise_service_http_error(e)


@router.post("/v1/commands/{request_id}/submit", response_model=CommandRequestV1)
def submit_command(
    request_id: str, payload: CommandSubmitRequest, db: Session = Depends(get_db)
) -> CommandRequestV1:
    try:
        request = approval.submit(db, request_id, submitted_by=payload.submitted_by)
        return _request_out(db, request)
    except CommandServiceError as e:
        raise_service_http_error(e)


@router.post("/v1/commands/{request_id}/approve", response_model=CommandRequestV1)
def approve_command(
    request_id: str, payload: CommandDecisionRequest, db: Session = Depends(get_db)
) -> CommandRequestV1:
    try:
        request = approval.approve(
            db,
            request_id,
            approver_id=payload.approver_id,
            authorizer=get_authorizer(db),
        )
        return _request_out(db, request)
    except CommandServiceError as e:
        raise_service_http_error(e)


@router.post("/v1/commands/{request_id}/reject", response_model=CommandRequestV1)
def reject_command(
    request_id: str, payload: CommandDecisionRequest, db: Session = Depends(get_db)
) -> CommandRequestV1:
    try:
        request = approval.reject(
            db,
            request_id,
            approver_id=payload.approver_id,
            authorizer=get_authorizer(db),
            reason=payload.reason,
        )
        return _request_out(db, request)
    except CommandServiceError as e:
        raise_service_http_error(e)


@router.post("/v1/command-items/{item_id}/reject", response_model=CommandItemV1)
def reject_command_item(
    item_id: int, payload: CommandDecisionRequest, db: Session = Depends(get_db)
) -> CommandItemV1:
    try:
        item = approval.reject_item(
            db,
            item_id,
            approver_id=payload.approver_id,
            authorizer=get_authorizer(db),
            reason=payload.reason,
        )
        return item_out(item)
    except CommandServiceError as e:
        raise_service_http_error(e)


@router.get("/v1/command-items", response_model=list[CommandItemV1])
def list_command_items(
    state: ItemStateV1,
    limit: int = Query(default=200, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[CommandItemV1]:
    return [item_out(i) for i in command_store.list_items_by_state(db, state, limit=limit)]


def item_out(item: CommandItem) -> CommandItemV1:
    return CommandItemV1(
        id=item.id,
        request_id=item.request_id,
        meter_serial_no=item.meter_serial_no,
        state=item.state,
        attempts=item.attempts,
        last_error=item.last_error,
        idempotency_key=item.idempotency_key,
    )


def _request_out(db: Session, request: CommandRequest) -> CommandRequestV1:
    items = command_store.list_request_items(db, request.id)
    return CommandRequestV1(
        id=request.id,
        type=request.type,
        requested_by=request.requested_by,
        requested_at=request.requested_at.isoformat(),
        state=request.state,
        reason=request.reason,
        source_batch_id=request.source_batch_id,
        approved_by=request.approved_by,
        decided_at=request.decided_at.isoformat() if request.decided_at else None,
        items=[item_out(i) for i in items],
    )
