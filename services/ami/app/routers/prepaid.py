from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from packages.shared.schemas.prepaid_v1 import BalanceV1, LedgerEntryV1
from services.ami.app.db.database import get_db
from services.ami.app.db.models import PrepaidBalance, PrepaidLedger
from services.ami.app.models.prepaid import (
    LedgerEntryCreateRequest,
    RechargeCreateRequest,
    RechargeOut,
)
from services.ami.app.routers.errors import raise_service_http_error
from services.ami.app.services import prepaid
from services.ami.app.services.errors import CommandServiceError
from sqlalchemy.orm import Session

router = APIRouter()


@router.post("/v1/prepaid/ledger", response_model=LedgerEntryV1)
def create_ledger_entry(
    payload: LedgerEntryCreateRequest, db: Session = Depends(get_db)
) -> LedgerEntryV1:
    try:
        entry = prepaid.record_ledger_entry(
            db,
            consumer_id=payload.consumer_id,
            meter_serial_no=payload.meter_serial_no,
            delta_amount=payload.delta_amount,
            reason=payload.reason,
        )
    except CommandServiceError as e:
        raise_service_http_error(e)

    return _ledger_out(entry)


@router.get("/v1/prepaid/ledger", response_model=list[LedgerEntryV1])
def list_ledger_entries(
    consumer_id: int,
    meter_serial_no: str | None = None,
    limit: int = Query(default=200, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[LedgerEntryV1]:
    entries = prepaid.list_ledger(db, consumer_id, meter_serial_no=meter_serial_no, limit=limit)
    return [_ledger_out(e) for e in entries]


@router.post("/v1/prepaid/recharges", response_model=RechargeOut)
def create_recharge(payload: RechargeCreateRequest, db: Session = Depends(get_db)) -> RechargeOut:
    try:
        txn, entry = prepaid.recharge(
            db,
            consumer_id=payload.consumer_id,
            meter_serial_no=payload.meter_serial_no,
            amount=payload.amount,
            mode=payload.mode,
            reference=payload.reference,
        )
    except CommandServiceError as e:
        raise_service_http_error(e)

    return RechargeOut(
        recharge_id=txn.id,
        amount=txn.amount,
        mode=txn.mode,
        reference=txn.reference,
        at=txn.at.isoformat(),
        ledger_entry=_ledger_out(entry),
    )


@router.get("/v1/prepaid/balances/{consumer_id}", response_model=BalanceV1)
def get_balance(
    consumer_id: int,
    meter_serial_no: str | None = None,
    db: Session = Depends(get_db),
) -> BalanceV1:
    try:
        balance = prepaid.get_balance(db, consumer_id, meter_serial_no)
    except CommandServiceError as e:
        raise_service_http_error(e)

    return _balance_out(balance)


def _ledger_out(entry: PrepaidLedger) -> LedgerEntryV1:
    return LedgerEntryV1(
        id=entry.id,
        consumer_id=entry.consumer_id,
        meter_serial_no=entry.meter_serial_no,
        ts=entry.ts.isoformat(),
        delta_amount=entry.delta_amount,
        reason=entry.reason,
        balance_after=entry.balance_after,
    )


def _balance_out(balance: PrepaidBalance) -> BalanceV1:
    return BalanceV1(
        consumer_id=balance.consumer_id,
        meter_serial_no=balance.meter_serial_no,
        balance_amount=balance.balance_amount,
        threshold_amount=balance.threshold_amount,
        below_threshold=balance.balance_amount < balance.threshold_amount,
        updated_at=balance.updated_at.isoformat(),
    )
