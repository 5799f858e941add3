"""Shared prepaid ledger schema (v1).

Amounts are decimals with two places and serialize as strings.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel


class LedgerReasonV1(str, Enum):
    CONSUMPTION = "Consumption"
    RECHARGE = "Recharge"
    ADJUSTMENT = "Adjustment"


class RechargeModeV1(str, Enum):
    CASH = "Cash"
    UPI = "UPI"
    CARD = "Card"
    ONLINE = "Online"


class LedgerEntryV1(BaseModel):
    id: int
    consumer_id: int
    meter_serial_no: str | None = None
    ts: str
    delta_amount: Decimal
    reason: LedgerReasonV1
    balance_after: Decimal


class BalanceV1(BaseModel):
    consumer_id: int
    meter_serial_no: str | None = None
    balance_amount: Decimal
    threshold_amount: Decimal
    below_threshold: bool
    updated_at: str
