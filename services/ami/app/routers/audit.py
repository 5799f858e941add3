from __future__ import annotations

from fastapi import APIRouter, Depends
from packages.shared.schemas.command_v1 import CommandLogV1
from services.ami.app.db.database import get_db
from services.ami.app.routers.errors import raise_service_http_error
from services.ami.app.services import command_store
from services.ami.app.services.errors import CommandServiceError
from sqlalchemy.orm import Session

router = APIRouter()


@router.get("/v1/command-items/{item_id}/logs", response_model=list[CommandLogV1])
def get_item_logs(item_id: int, db: Session = Depends(get_db)) -> list[CommandLogV1]:
    try:
        logs = command_store.list_item_logs(db, item_id)
    except CommandServiceError as e:
        raise_service_http_error(e)

    return [
        CommandLogV1(
            id=log.id,
            item_id=log.item_id,
            status=log.status,
            at=log.at.isoformat(),
            message=log.message,
        )
        for log in logs
    ]
