from __future__ import annotations

from packages.shared.schemas.command_v1 import CommandTypeV1
from pydantic import BaseModel, Field


class CommandCreateRequest(BaseModel):
    type: CommandTypeV1
    requested_by: str = Field(..., min_length=1, max_length=100)
    reason: str | None = Field(default=None, max_length=300)

    # Duplicates collapse to a single item per meter.
    meter_serials: list[str] = Field(..., min_length=1)


class CommandSubmitRequest(BaseModel):
    submitted_by: str = Field(..., min_length=1)


class CommandDecisionRequest(BaseModel):
    approver_id: str = Field(..., min_length=1)
    reason: str | None = Field(default=None, max_length=300)
