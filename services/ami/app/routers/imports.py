from __future__ import annotations

from fastapi import APIRouter, Depends
from packages.shared.schemas.import_v1 import ImportBatchV1, ImportRowV1
from services.ami.app.db.database import get_db
from services.ami.app.db.models import ImportBatch
from services.ami.app.models.imports import CommandImportCreateRequest, ImportDecisionRequest
from services.ami.app.routers.errors import raise_service_http_error
from services.ami.app.services import command_import
from services.ami.app.services.authz_factory import get_authorizer
from services.ami.app.services.errors import CommandServiceError
from services.ami.app.services.meter_registry import DbMeterRegistry
from sqlalchemy.orm import Session

router = APIRouter()


@router.post("/v1/imports/commands", response_model=ImportBatchV1)
def stage_command_import(
    payload: CommandImportCreateRequest, db: Session = Depends(get_db)
) -> ImportBatchV1:
    try:
        batch_id = command_import.stage_command_batch(
            db,
            file_name=payload.file_name,
            created_by=payload.created_by,
            rows=payload.rows,
            authorizer=get_authorizer(db),
        )
        return _batch_out(db, command_import.get_batch(db, batch_id))
    except CommandServiceError as e:
        raise_service_http_error(e)


@router.get("/v1/imports/{batch_id}", response_model=ImportBatchV1)
def get_import(batch_id: str, db: Session = Depends(get_db)) -> ImportBatchV1:
    try:
        return _batch_out(db, command_import.get_batch(db, batch_id))
    except CommandServiceError as e:
        raise_service_http_error(e)


@router.post("/v1/imports/{batch_id}/validate", response_model=ImportBatchV1)
def validate_import(batch_id: str, db: Session = Depends(get_db)) -> ImportBatchV1:
    try:
        batch = command_import.validate_batch(db, batch_id, registry=DbMeterRegistry(db))
        return _batch_out(db, batch)
    except CommandServiceError as e:
        raise_service_http_error(e)


@router.post("/v1/imports/{batch_id}/approve", response_model=ImportBatchV1)
def approve_import(
    batch_id: str, payload: ImportDecisionRequest, db: Session = Depends(get_db)
) -> ImportBatchV1:
    try:
        command_import.approve_batch(
            db,
            batch_id,
            approver_id=payload.approver_id,
            authorizer=get_authorizer(db),
            registry=DbMeterRegistry(db),
        )
        return _batch_out(db, command_import.get_batch(db, batch_id))
    except CommandServiceError as e:
        raise_service_http_error(e)


@router.post("/v1/imports/{batch_id}/reject", response_model=ImportBatchV1)
def reject_import(
    batch_id: str, payload: ImportDecisionRequest, db: Session = Depends(get_db)
) -> ImportBatchV1:
    try:
        batch = command_import.reject_batch(
            db, batch_id, approver_id=payload.approver_id, authorizer=get_authorizer(db)
        )
        return _batch_out(db, batch)
    except CommandServiceError as e:
        raise_service_http_error(e)


def _batch_out(db: Session, batch: ImportBatch) -> ImportBatchV1:
    rows = command_import.list_batch_rows(db, batch.batch_id)
    requests = command_import.list_batch_requests(db, batch.batch_id)
    return ImportBatchV1(
        batch_id=batch.batch_id,
        type=batch.type,
        file_name=batch.file_name,
        row_count=batch.row_count,
        valid_count=batch.valid_count,
        invalid_count=batch.invalid_count,
        created_by=batch.created_by,
        created_at=batch.created_at.isoformat(),
        status=batch.status,
        decided_by=batch.decided_by,
        decided_at=batch.decided_at.isoformat() if batch.decided_at else None,
        request_ids=[r.id for r in requests],
        rows=[
            ImportRowV1(
                staging_id=row.staging_id,
                row=row.row_json,
                row_status=row.row_status,
                errors=row.errors or [],
            )
            for row in rows
        ],
    )
