"""Shared command dispatch schema (v1).

Enum values match the persisted column values, so they must remain stable once shipped.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class CommandTypeV1(str, Enum):
    CONNECT = "Connect"
    DISCONNECT = "Disconnect"
    PING = "Ping"
    RELAY_STATUS = "RelayStatus"


class RequestStateV1(str, Enum):
    DRAFT = "Draft"
    PENDING_APPROVAL = "PendingApproval"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    DISPATCHED = "Dispatched"


class ItemStateV1(str, Enum):
    PENDING_APPROVAL = "PendingApproval"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    DISPATCHED = "Dispatched"
    ACKED = "Acked"
    FAILED = "Failed"
    DLQ = "Dlq"


class LogStatusV1(str, Enum):
    DISPATCHED = "Dispatched"
    ACKED = "Acked"
    FAILED = "Failed"
    RETRIED = "Retried"
    MOVED_TO_DLQ = "MovedToDlq"


class SendOutcomeV1(str, Enum):
    ACK = "Ack"
    NACK = "Nack"
    TIMEOUT = "Timeout"


class MeterStatusV1(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    DECOMMISSIONED = "Decommissioned"


class CommandLogV1(BaseModel):
    id: int
    item_id: int
    status: LogStatusV1
    at: str
    message: str | None = None


class CommandItemV1(BaseModel):
    id: int
    request_id: str
    meter_serial_no: str
    state: ItemStateV1
    attempts: int = Field(..., ge=0)
    last_error: str | None = None
    idempotency_key: str


class CommandRequestV1(BaseModel):
    id: str
    type: CommandTypeV1
    requested_by: str
    requested_at: str
    state: RequestStateV1
    reason: str | None = None
    source_batch_id: str | None = None

    approved_by: str | None = None
    decided_at: str | None = None

    items: list[CommandItemV1] = Field(default_factory=list)
