"""Prepaid ledger: an append-only stream of balance deltas plus the current balance.

Each ledger append and its balance update share one transaction. PrepaidBalance carries a
version column, so a writer working from a stale balance fails at flush time with
ConcurrentModificationError instead of overwriting the other writer's total.
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from packages.shared.schemas.prepaid_v1 import LedgerReasonV1, RechargeModeV1
from services.ami.app.db.models import (
    Consumer,
    Meter,
    PrepaidBalance,
    PrepaidLedger,
    RechargeTransaction,
    utcnow,
)
from services.ami.app.services.errors import (
    ConcurrentModificationError,
    NotFoundError,
    ValidationError,
)
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


def to_amount(value: object) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid amount: {value!r}") from e
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return amount.quantize(_CENT, rounding=ROUND_HALF_UP)


def _validate_delta(delta: Decimal, reason: LedgerReasonV1) -> None:
    if reason == LedgerReasonV1.CONSUMPTION and delta >= 0:
        raise ValidationError("Consumption entries must have a negative delta")
    if reason == LedgerReasonV1.RECHARGE and delta <= 0:
        raise ValidationError("Recharge entries must have a positive delta")
    if delta == 0:
        raise ValidationError("Ledger entries must have a non-zero delta")


def _balance_query(consumer_id: int, meter_serial_no: str | None):
    stmt = select(PrepaidBalance).where(PrepaidBalance.consumer_id == consumer_id)
    if meter_serial_no is None:
        return stmt.where(PrepaidBalance.meter_serial_no.is_(None))
    return stmt.where(PrepaidBalance.meter_serial_no == meter_serial_no)


def _load_or_open_balance(
    db: Session, consumer_id: int, meter_serial_no: str | None
) -> PrepaidBalance:
    balance = db.scalars(_balance_query(consumer_id, meter_serial_no)).first()
    if balance is not None:
        return balance

    balance = PrepaidBalance(
        consumer_id=consumer_id,
        meter_serial_no=meter_serial_no,
        balance_amount=Decimal("0.00"),
        threshold_amount=Decimal("0.00"),
    )
    db.add(balance)
    try:
        db.flush()
    except IntegrityError as e:
        db.rollback()
        raise ConcurrentModificationError(
            f"Prepaid balance for consumer {consumer_id} was opened concurrently; retry"
        ) from e
    return balance


def _append_ledger_entry(
    db: Session,
    *,
    consumer_id: int,
    meter_serial_no: str | None,
    delta_amount: Decimal,
    reason: LedgerReasonV1,
) -> PrepaidLedger:
    if db.get(Consumer, consumer_id) is None:
        raise NotFoundError("Consumer", consumer_id)
    if meter_serial_no is not None and db.get(Meter, meter_serial_no) is None:
        raise NotFoundError("Meter", meter_serial_no)

    balance = _load_or_open_balance(db, consumer_id, meter_serial_no)

    # Read before the flush: a failed flush deactivates the session.
    balance_id = balance.id
    now = utcnow()
    new_total = (balance.balance_amount + delta_amount).quantize(_CENT, rounding=ROUND_HALF_UP)
    balance.balance_amount = new_total
    balance.updated_at = now

    try:
        db.flush()
    except StaleDataError as e:
        db.rollback()
        raise ConcurrentModificationError(
            f"Prepaid balance {balance_id} was modified concurrently; retry"
        ) from e

    entry = PrepaidLedger(
        consumer_id=consumer_id,
        meter_serial_no=meter_serial_no,
        ts=now,
        delta_amount=delta_amount,
        reason=reason,
        balance_after=new_total,
    )
    db.add(entry)
    db.flush()

    if new_total < balance.threshold_amount:
        logger.warning(
            "prepaid.balance.below_threshold consumer_id=%s meter=%s balance=%s threshold=%s",
            consumer_id,
            meter_serial_no,
            new_total,
            balance.threshold_amount,
        )
    return entry


def record_ledger_entry(
    db: Session,
    *,
    consumer_id: int,
    meter_serial_no: str | None,
    delta_amount: Decimal | str | int,
    reason: LedgerReasonV1,
) -> PrepaidLedger:
    """Append a ledger row and move the balance by `delta_amount`, atomically.

    Raises ConcurrentModificationError when another writer updated the balance first; the
    caller should retry the whole call.
    """

    delta = to_amount(delta_amount)
    _validate_delta(delta, reason)

    try:
        entry = _append_ledger_entry(
            db,
            consumer_id=consumer_id,
            meter_serial_no=meter_serial_no,
            delta_amount=delta,
            reason=reason,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "prepaid.ledger.appended ledger_id=%s consumer_id=%s reason=%s delta=%s balance_after=%s",
        entry.id,
        consumer_id,
        reason.value,
        delta,
        entry.balance_after,
    )
    return entry


def recharge(
    db: Session,
    *,
    consumer_id: int,
    meter_serial_no: str | None,
    amount: Decimal | str | int,
    mode: RechargeModeV1,
    reference: str | None = None,
) -> tuple[RechargeTransaction, PrepaidLedger]:
    """Record a recharge payment and its Recharge ledger entry in one transaction."""

    value = to_amount(amount)
    if value <= 0:
        raise ValidationError("Recharge amount must be positive")

    try:
        entry = _append_ledger_entry(
            db,
            consumer_id=consumer_id,
            meter_serial_no=meter_serial_no,
            delta_amount=value,
            reason=LedgerReasonV1.RECHARGE,
        )
        txn = RechargeTransaction(
            consumer_id=consumer_id,
            meter_serial_no=meter_serial_no,
            amount=value,
            mode=mode,
            reference=(reference or "").strip() or None,
            ledger_id=entry.id,
            at=entry.ts,
        )
        db.add(txn)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "prepaid.recharge.recorded recharge_id=%s consumer_id=%s amount=%s mode=%s",
        txn.id,
        consumer_id,
        value,
        mode.value,
    )
    return txn, entry


def get_balance(
    db: Session, consumer_id: int, meter_serial_no: str | None = None
) -> PrepaidBalance:
    balance = db.scalars(_balance_query(consumer_id, meter_serial_no)).first()
    if balance is None:
        raise NotFoundError("PrepaidBalance", f"{consumer_id}/{meter_serial_no or '-'}")
    return balance


def list_ledger(
    db: Session,
    consumer_id: int,
    *,
    meter_serial_no: str | None = None,
    limit: int = 200,
) -> list[PrepaidLedger]:
    stmt = select(PrepaidLedger).where(PrepaidLedger.consumer_id == consumer_id)
    if meter_serial_no is not None:
        stmt = stmt.where(PrepaidLedger.meter_serial_no == meter_serial_no)
    stmt = stmt.order_by(PrepaidLedger.ts.desc(), PrepaidLedger.id.desc()).limit(limit)
    return list(db.scalars(stmt))
