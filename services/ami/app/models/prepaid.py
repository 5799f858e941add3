from __future__ import annotations

from decimal import Decimal

from packages.shared.schemas.prepaid_v1 import LedgerEntryV1, LedgerReasonV1, RechargeModeV1
from pydantic import BaseModel, Field


class LedgerEntryCreateRequest(BaseModel):
    consumer_id: int
    meter_serial_no: str | None = None
    delta_amount: Decimal
    reason: LedgerReasonV1


class RechargeCreateRequest(BaseModel):
    consumer_id: int
    meter_serial_no: str | None = None
    amount: Decimal = Field(..., gt=0)
    mode: RechargeModeV1
    reference: str | None = Field(default=None, max_length=100)


class RechargeOut(BaseModel):
    recharge_id: int
    amount: Decimal
    mode: RechargeModeV1
    reference: str | None = None
    at: str
    ledger_entry: LedgerEntryV1
