"""Bulk command import.

Rows are staged as a batch, validated against the meter registry, and then approved or
rejected as a whole: New -> Validated -> Approved | Rejected (a New batch may also be
rejected). Approval turns the Valid rows into one PendingApproval command request per
command type, so imported commands still go through the normal request approval.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any
from uuid import uuid4

from packages.shared.schemas.command_v1 import CommandTypeV1, RequestStateV1
from packages.shared.schemas.import_v1 import ImportStatusV1, ImportTypeV1, RowStatusV1
from services.ami.app.db.models import CommandRequest, ImportBatch, ImportStaging, utcnow
from services.ami.app.services import command_store
from services.ami.app.services.authz_base import (
    PERMISSION_APPROVE_IMPORT,
    PERMISSION_CREATE_COMMAND,
    Authorizer,
)
from services.ami.app.services.errors import (
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from services.ami.app.services.meter_registry import MeterRegistry
from sqlalchemy import select, update
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

MAX_IMPORT_ROWS = 5000


def _require_identity(authorizer: Authorizer, identity: str, field: str, permission: str) -> str:
    identity = (identity or "").strip()
    if not identity:
        raise ValidationError(f"{field} is required")
    if not authorizer.is_allowed(identity, permission):
        raise AuthorizationError(identity, permission)
    return identity


def _load_batch(db: Session, batch_id: str) -> ImportBatch:
    batch = db.get(ImportBatch, batch_id)
    if batch is None:
        raise NotFoundError("ImportBatch", batch_id)
    return batch


def _move_batch(
    db: Session,
    batch: ImportBatch,
    sources: tuple[ImportStatusV1, ...],
    target: ImportStatusV1,
    **values,
) -> None:
    result = db.execute(
        update(ImportBatch)
        .where(ImportBatch.batch_id == batch.batch_id, ImportBatch.status.in_(sources))
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        db.refresh(batch)
        raise InvalidStateError(
            "ImportBatch", batch.batch_id, batch.status, " or ".join(s.value for s in sources)
        )
    db.expire(batch)


def _parse_row(row: Mapping[str, Any]) -> tuple[CommandTypeV1 | None, str, list[str]]:
    errors: list[str] = []

    command: CommandTypeV1 | None = None
    raw_command = str(row.get("command") or "").strip()
    if not raw_command:
        errors.append("command is required")
    else:
        try:
            command = CommandTypeV1(raw_command)
        except ValueError:
            errors.append(f"Unknown command: {raw_command}")

    serial = str(row.get("meter_serial_no") or "").strip()
    if not serial:
        errors.append("meter_serial_no is required")

    return command, serial, errors


def stage_command_batch(
    db: Session,
    *,
    file_name: str,
    created_by: str,
    rows: Sequence[Mapping[str, Any]],
    authorizer: Authorizer,
) -> str:
    """Store raw rows as a New batch. Nothing is checked per row until validation."""

    created_by = _require_identity(authorizer, created_by, "created_by", PERMISSION_CREATE_COMMAND)

    file_name = (file_name or "").strip()
    if not file_name:
        raise ValidationError("file_name is required")
    if not rows:
        raise ValidationError("An import needs at least one row")
    if len(rows) > MAX_IMPORT_ROWS:
        raise ValidationError(f"An import is limited to {MAX_IMPORT_ROWS} rows")

    batch_id = uuid4().hex
    try:
        db.add(
            ImportBatch(
                batch_id=batch_id,
                type=ImportTypeV1.COMMANDS,
                file_name=file_name[:260],
                row_count=len(rows),
                created_by=created_by,
                status=ImportStatusV1.NEW,
            )
        )
        for row in rows:
            db.add(ImportStaging(batch_id=batch_id, row_json=dict(row)))
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "command.import.staged batch_id=%s file=%s rows=%s by=%s",
        batch_id,
        file_name,
        len(rows),
        created_by,
    )
    return batch_id


def validate_batch(db: Session, batch_id: str, *, registry: MeterRegistry) -> ImportBatch:
    """Classify every staged row as Valid, Invalid or Duplicate and move the batch to Validated.

    A row is Invalid when its command or meter is missing or unknown, or the meter is not
    active. A repeat of an earlier (command, meter) pair in the same batch is a Duplicate.
    Duplicates count as invalid.
    """

    batch = _load_batch(db, batch_id)
    if batch.status != ImportStatusV1.NEW:
        raise InvalidStateError("ImportBatch", batch_id, batch.status, ImportStatusV1.NEW.value)

    rows = list_batch_rows(db, batch_id)
    parsed = [(row, *_parse_row(row.row_json)) for row in rows]

    well_formed = [serial for _, _, serial, errors in parsed if not errors]
    unusable = set(registry.unknown_or_inactive(list(dict.fromkeys(well_formed))))

    seen: set[tuple[CommandTypeV1, str]] = set()
    valid = invalid = 0
    try:
        for row, command, serial, errors in parsed:
            if not errors and serial in unusable:
                errors.append(f"Unknown or inactive meter: {serial}")

            if errors:
                row.row_status = RowStatusV1.INVALID
                row.errors = errors
                invalid += 1
                continue

            if (command, serial) in seen:
                row.row_status = RowStatusV1.DUPLICATE
                row.errors = [f"Repeats an earlier {command.value} row for meter {serial}"]
                invalid += 1
                continue

            seen.add((command, serial))
            row.row_status = RowStatusV1.VALID
            row.errors = None
            valid += 1

        db.flush()
        _move_batch(
            db,
            batch,
            (ImportStatusV1.NEW,),
            ImportStatusV1.VALIDATED,
            valid_count=valid,
            invalid_count=invalid,
        )
        db.commit()
    except InvalidStateError:
        raise
    except Exception:
        db.rollback()
        raise

    logger.info(
        "command.import.validated batch_id=%s valid=%s invalid=%s", batch_id, valid, invalid
    )
    return batch


def approve_batch(
    db: Session,
    batch_id: str,
    *,
    approver_id: str,
    authorizer: Authorizer,
    registry: MeterRegistry,
) -> list[str]:
    """Approve a Validated batch and create its command requests in the same transaction.

    Returns the ids of the new PendingApproval requests, one per command type.
    """

    batch = _load_batch(db, batch_id)
    approver_id = _require_identity(
        authorizer, approver_id, "approver_id", PERMISSION_APPROVE_IMPORT
    )

    if batch.status != ImportStatusV1.VALIDATED:
        raise InvalidStateError(
            "ImportBatch", batch_id, batch.status, ImportStatusV1.VALIDATED.value
        )

    targets: dict[CommandTypeV1, list[str]] = {}
    for row in list_batch_rows(db, batch_id):
        if row.row_status != RowStatusV1.VALID:
            continue
        command, serial, _ = _parse_row(row.row_json)
        targets.setdefault(command, []).append(serial)

    if not targets:
        raise InvalidStateError("ImportBatch", batch_id, batch.status, "at least one valid row")

    created_by = batch.created_by
    reason = f"Imported from {batch.file_name}"

    request_ids: list[str] = []
    try:
        _move_batch(
            db,
            batch,
            (ImportStatusV1.VALIDATED,),
            ImportStatusV1.APPROVED,
            decided_by=approver_id,
            decided_at=utcnow(),
        )
        for command, serials in targets.items():
            request_id, _ = command_store.add_request(
                db,
                command_type=command,
                requested_by=created_by,
                meter_serials=serials,
                registry=registry,
                authorizer=authorizer,
                reason=reason,
                state=RequestStateV1.PENDING_APPROVAL,
                source_batch_id=batch_id,
            )
            request_ids.append(request_id)
        db.commit()
    except InvalidStateError:
        raise
    except Exception:
        db.rollback()
        raise

    logger.info(
        "command.import.approved batch_id=%s approver=%s requests=%s",
        batch_id,
        approver_id,
        request_ids,
    )
    return request_ids


def reject_batch(
    db: Session, batch_id: str, *, approver_id: str, authorizer: Authorizer
) -> ImportBatch:
    batch = _load_batch(db, batch_id)
    approver_id = _require_identity(
        authorizer, approver_id, "approver_id", PERMISSION_APPROVE_IMPORT
    )

    try:
        _move_batch(
            db,
            batch,
            (ImportStatusV1.NEW, ImportStatusV1.VALIDATED),
            ImportStatusV1.REJECTED,
            decided_by=approver_id,
            decided_at=utcnow(),
        )
        db.commit()
    except InvalidStateError:
        raise
    except Exception:
        db.rollback()
        raise

    logger.info("command.import.rejected batch_id=%s approver=%s", batch_id, approver_id)
    return batch


def get_batch(db: Session, batch_id: str) -> ImportBatch:
    return _load_batch(db, batch_id)


def list_batch_rows(db: Session, batch_id: str) -> list[ImportStaging]:
    return list(
        db.scalars(
            select(ImportStaging)
            .where(ImportStaging.batch_id == batch_id)
            .order_by(ImportStaging.staging_id.asc())
        )
    )


def list_batch_requests(db: Session, batch_id: str) -> list[CommandRequest]:
    return list(
        db.scalars(
            select(CommandRequest)
            .where(CommandRequest.source_batch_id == batch_id)
            .order_by(CommandRequest.requested_at.asc(), CommandRequest.id.asc())
        )
    )
