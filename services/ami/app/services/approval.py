"""Approval workflow for command requests.

Draft -> PendingApproval -> Approved | Rejected. The Dispatcher later moves Approved
requests to Dispatched. Request transitions are conditional updates, so of two concurrent
approvers only one can win; the loser gets InvalidStateError.
"""

from __future__ import annotations

import logging

from packages.shared.schemas.command_v1 import ItemStateV1, RequestStateV1
from services.ami.app.db.models import CommandItem, CommandRequest, utcnow
from services.ami.app.services.authz_base import PERMISSION_APPROVE_COMMAND, Authorizer
from services.ami.app.services.errors import (
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


def _load_request(db: Session, request_id: str) -> CommandRequest:
    request = db.get(CommandRequest, request_id)
    if request is None:
        raise NotFoundError("CommandRequest", request_id)
    return request


def _require_approver(authorizer: Authorizer, approver_id: str) -> str:
    approver_id = (approver_id or "").strip()
    if not approver_id:
        raise ValidationError("approver_id is required")
    if not authorizer.is_allowed(approver_id, PERMISSION_APPROVE_COMMAND):
        raise AuthorizationError(approver_id, PERMISSION_APPROVE_COMMAND)
    return approver_id


def _move_request(
    db: Session,
    request: CommandRequest,
    source: RequestStateV1,
    target: RequestStateV1,
    **values,
) -> None:
    result = db.execute(
        update(CommandRequest)
        .where(CommandRequest.id == request.id, CommandRequest.state == source)
        .values(state=target, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        db.refresh(request)
        raise InvalidStateError("CommandRequest", request.id, request.state, source.value)
    db.expire(request)


def _pending_item_count(db: Session, request_id: str) -> int:
    return db.scalar(
        select(func.count(CommandItem.id)).where(
            CommandItem.request_id == request_id,
            CommandItem.state == ItemStateV1.PENDING_APPROVAL,
        )
    )


def _cascade_pending_items(db: Session, request_id: str, target: ItemStateV1) -> int:
    result = db.execute(
        update(CommandItem)
        .where(
            CommandItem.request_id == request_id,
            CommandItem.state == ItemStateV1.PENDING_APPROVAL,
        )
        .values(state=target, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def submit(db: Session, request_id: str, *, submitted_by: str) -> CommandRequest:
    """Send a Draft request for approval."""

    request = _load_request(db, request_id)
    if request.state != RequestStateV1.DRAFT:
        raise InvalidStateError(
            "CommandRequest", request_id, request.state, RequestStateV1.DRAFT.value
        )

    try:
        _move_request(db, request, RequestStateV1.DRAFT, RequestStateV1.PENDING_APPROVAL)
        db.commit()
    except InvalidStateError:
        raise
    except Exception:
        db.rollback()
        raise

    logger.info("command.request.submitted request_id=%s by=%s", request_id, submitted_by)
    return request


def approve(
    db: Session, request_id: str, *, approver_id: str, authorizer: Authorizer
) -> CommandRequest:
    """Approve a pending request; its still-pending items become dispatchable.

    Items rejected individually beforehand stay Rejected.
    """

    request = _load_request(db, request_id)
    approver_id = _require_approver(authorizer, approver_id)

    if request.state != RequestStateV1.PENDING_APPROVAL:
        raise InvalidStateError(
            "CommandRequest", request_id, request.state, RequestStateV1.PENDING_APPROVAL.value
        )

    if not _pending_item_count(db, request_id):
        raise InvalidStateError(
            "CommandRequest", request_id, request.state, "at least one pending item"
        )

    try:
        _move_request(
            db,
            request,
            RequestStateV1.PENDING_APPROVAL,
            RequestStateV1.APPROVED,
            approved_by=approver_id,
            decided_at=utcnow(),
        )
        approved = _cascade_pending_items(db, request_id, ItemStateV1.APPROVED)
        if not approved:
            # The last pending item was rejected after the count above.
            db.rollback()
            db.refresh(request)
            raise InvalidStateError(
                "CommandRequest", request_id, request.state, "at least one pending item"
            )
        db.commit()
    except InvalidStateError:
        raise
    except Exception:
        db.rollback()
        raise

    logger.info(
        "command.request.approved request_id=%s approver=%s items=%s",
        request_id,
        approver_id,
        approved,
    )
    return request


def reject(
    db: Session,
    request_id: str,
    *,
    approver_id: str,
    authorizer: Authorizer,
    reason: str | None = None,
) -> CommandRequest:
    request = _load_request(db, request_id)
    approver_id = _require_approver(authorizer, approver_id)

    if request.state != RequestStateV1.PENDING_APPROVAL:
        raise InvalidStateError(
            "CommandRequest", request_id, request.state, RequestStateV1.PENDING_APPROVAL.value
        )

    values = {"approved_by": approver_id, "decided_at": utcnow()}
    if reason:
        values["reason"] = reason.strip()[:300]

    try:
        _move_request(
            db, request, RequestStateV1.PENDING_APPROVAL, RequestStateV1.REJECTED, **values
        )
        rejected = _cascade_pending_items(db, request_id, ItemStateV1.REJECTED)
        db.commit()
    except InvalidStateError:
        raise
    except Exception:
        db.rollback()
        raise

    logger.info(
        "command.request.rejected request_id=%s approver=%s items=%s",
        request_id,
        approver_id,
        rejected,
    )
    return request


def reject_item(
    db: Session,
    item_id: int,
    *,
    approver_id: str,
    authorizer: Authorizer,
    reason: str | None = None,
) -> CommandItem:
    """Reject a single item of a pending request (partial approval)."""

    item = db.get(CommandItem, item_id)
    if item is None:
        raise NotFoundError("CommandItem", item_id)

    approver_id = _require_approver(authorizer, approver_id)

    request = _load_request(db, item.request_id)
    if request.state != RequestStateV1.PENDING_APPROVAL:
        raise InvalidStateError(
            "CommandRequest",
            request.id,
            request.state,
            RequestStateV1.PENDING_APPROVAL.value,
        )

    try:
        result = db.execute(
            update(CommandItem)
            .where(
                CommandItem.id == item_id,
                CommandItem.state == ItemStateV1.PENDING_APPROVAL,
            )
            .values(
                state=ItemStateV1.REJECTED,
                last_error=(reason or "Rejected by approver").strip()[:500],
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            db.refresh(item)
            raise InvalidStateError(
                "CommandItem", item_id, item.state, ItemStateV1.PENDING_APPROVAL.value
            )
        db.commit()
    except InvalidStateError:
        raise
    except Exception:
        db.rollback()
        raise

    db.refresh(item)
    logger.info("command.item.rejected item_id=%s approver=%s", item_id, approver_id)
    return item
