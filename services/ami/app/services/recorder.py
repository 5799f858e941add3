"""Append-only audit trail for command items.

Every item state change made after approval goes through `apply_transition`, which writes
the CommandLog row and the item update in the caller's transaction. `record` is the
self-committing variant used when a single outcome has to be persisted on its own.
"""

from __future__ import annotations

import logging

from packages.shared.schemas.command_v1 import ItemStateV1, LogStatusV1
from services.ami.app.db.models import CommandItem, CommandLog, utcnow
from services.ami.app.services.errors import InvalidStateError, NotFoundError
from sqlalchemy import update
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

# log status -> (allowed item states before, item state after)
TRANSITIONS: dict[LogStatusV1, tuple[frozenset[ItemStateV1], ItemStateV1]] = {
    LogStatusV1.DISPATCHED: (frozenset({ItemStateV1.APPROVED}), ItemStateV1.DISPATCHED),
    LogStatusV1.ACKED: (frozenset({ItemStateV1.DISPATCHED}), ItemStateV1.ACKED),
    LogStatusV1.FAILED: (frozenset({ItemStateV1.DISPATCHED}), ItemStateV1.FAILED),
    LogStatusV1.RETRIED: (frozenset({ItemStateV1.DISPATCHED}), ItemStateV1.APPROVED),
    LogStatusV1.MOVED_TO_DLQ: (frozenset({ItemStateV1.DISPATCHED}), ItemStateV1.DLQ),
}

_MESSAGE_MAX = 500


def item_state_for(status: LogStatusV1) -> ItemStateV1:
    return TRANSITIONS[status][1]


def apply_transition(
    db: Session,
    item_id: int,
    status: LogStatusV1,
    message: str | None = None,
    *,
    increment_attempts: bool = False,
    last_error: str | None = None,
    claimed_by: str | None = None,
) -> CommandLog:
    """Move an item along `status` and append the matching log row. Does not commit.

    The update is conditional on the item still being in an allowed source state, so a
    concurrent writer that moved the item first makes this call fail with
    InvalidStateError instead of overwriting its result.
    """

    allowed, target = TRANSITIONS[status]
    now = utcnow()

    values: dict = {"state": target, "updated_at": now}
    if increment_attempts:
        values["attempts"] = CommandItem.attempts + 1
    if last_error is not None:
        values["last_error"] = last_error[:_MESSAGE_MAX]
    if status == LogStatusV1.DISPATCHED:
        values["claimed_by"] = claimed_by
        values["claimed_at"] = now
    elif target != ItemStateV1.DISPATCHED:
        values["claimed_by"] = None
        values["claimed_at"] = None

    result = db.execute(
        update(CommandItem)
        .where(CommandItem.id == item_id, CommandItem.state.in_(allowed))
        .values(**values)
        .execution_options(synchronize_session=False)
    )

    cached = db.identity_map.get(db.identity_key(CommandItem, item_id))
    if cached is not None:
        db.expire(cached)

    if result.rowcount != 1:
        item = db.get(CommandItem, item_id)
        if item is None:
            raise NotFoundError("CommandItem", item_id)
        raise InvalidStateError(
            "CommandItem",
            item_id,
            item.state,
            " or ".join(sorted(s.value for s in allowed)),
        )

    log = CommandLog(
        item_id=item_id,
        status=status,
        at=now,
        message=message[:_MESSAGE_MAX] if message else None,
    )
    db.add(log)
    db.flush()
    return log


def record(
    db: Session,
    item_id: int,
    status: LogStatusV1,
    message: str | None = None,
    *,
    increment_attempts: bool = False,
    last_error: str | None = None,
) -> CommandLog:
    """Append a log row and apply its item transition as one committed unit."""

    try:
        log = apply_transition(
            db,
            item_id,
            status,
            message,
            increment_attempts=increment_attempts,
            last_error=last_error,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "command.item.recorded item_id=%s status=%s state=%s",
        item_id,
        status.value,
        item_state_for(status).value,
    )
    return log
