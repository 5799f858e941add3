"""Shared bulk-import schema (v1)."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ImportTypeV1(str, Enum):
    COMMANDS = "Commands"


class ImportStatusV1(str, Enum):
    NEW = "New"
    VALIDATED = "Validated"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class RowStatusV1(str, Enum):
    VALID = "Valid"
    INVALID = "Invalid"
    DUPLICATE = "Duplicate"


class ImportRowV1(BaseModel):
    staging_id: int
    row: dict[str, Any]
    # None until the batch is validated.
    row_status: RowStatusV1 | None = None
    errors: list[str] = Field(default_factory=list)


class ImportBatchV1(BaseModel):
    batch_id: str
    type: ImportTypeV1
    file_name: str
    row_count: int = Field(..., ge=0)
    valid_count: int = Field(..., ge=0)
    invalid_count: int = Field(..., ge=0)
    created_by: str
    created_at: str
    status: ImportStatusV1

    decided_by: str | None = None
    decided_at: str | None = None

    request_ids: list[str] = Field(default_factory=list)
    rows: list[ImportRowV1] = Field(default_factory=list)
