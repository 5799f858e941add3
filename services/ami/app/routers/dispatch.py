from __future__ import annotations

from fastapi import APIRouter, HTTPException
from services.ami.app.db.database import db_session
from services.ami.app.models.dispatch import DispatchRunRequest, DispatchRunResponse
from services.ami.app.services.dispatcher import Dispatcher
from services.ami.app.services.meter_channel_base import MeterChannelError
from services.ami.app.services.meter_channel_factory import get_meter_channel
from services.ami.app.services.settings import DispatchSettings

router = APIRouter()


@router.post("/v1/dispatch/run", response_model=DispatchRunResponse)
def run_dispatch(payload: DispatchRunRequest) -> DispatchRunResponse:
    try:
        channel = get_meter_channel()
        settings = DispatchSettings.from_env()
    except ValueError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e
    except MeterChannelError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e

    with Dispatcher(db_session, channel, settings) as dispatcher:
        recovered = dispatcher.recover_stale_claims() if payload.recover_stale else 0
        summary = dispatcher.run_once(payload.batch_size)

    return DispatchRunResponse(
        worker_id=dispatcher.worker_id,
        channel=channel.name,
        claimed=summary.claimed,
        acked=summary.acked,
        retried=summary.retried,
        dead_lettered=summary.dead_lettered,
        failed=summary.failed,
        skipped=summary.skipped,
        recovered=recovered,
        item_ids=summary.item_ids,
    )
