from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class CommandImportCreateRequest(BaseModel):
    file_name: str = Field(..., min_length=1, max_length=260)
    created_by: str = Field(..., min_length=1, max_length=100)

    # Each row: {"command": "Disconnect", "meter_serial_no": "M1"}. Rows are checked on validate.
    rows: list[dict[str, Any]] = Field(..., min_length=1)


class ImportDecisionRequest(BaseModel):
    approver_id: str = Field(..., min_length=1)
