from __future__ import annotations

from typing import NoReturn

from fastapi import HTTPException
from services.ami.app.services.errors import (
    AuthorizationError,
    ConcurrentModificationError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)


def raise_service_http_error(e: Exception) -> NoReturn:
    if isinstance(e, NotFoundError):
        raise HTTPException(status_code=404, detail=str(e)) from e

    if isinstance(e, ValidationError):
        raise HTTPException(status_code=422, detail=str(e)) from e

    if isinstance(e, AuthorizationError):
        raise HTTPException(status_code=403, detail=str(e)) from e

    if isinstance(e, (InvalidStateError, ConcurrentModificationError)):
        raise HTTPException(status_code=409, detail=str(e)) from e

    raise HTTPException(status_code=500, detail="Internal Server Error") from e
