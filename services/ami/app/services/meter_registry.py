from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from packages.shared.schemas.command_v1 import MeterStatusV1
from services.ami.app.db.models import Meter
from sqlalchemy import select
from sqlalchemy.orm import Session


class MeterRegistry(Protocol):
    def unknown_or_inactive(self, meter_serials: Iterable[str]) -> list[str]: ...

    def is_active(self, meter_serial_no: str) -> bool: ...


class DbMeterRegistry:
    """Meter registry backed by the meters table."""

    def __init__(self, db: Session) -> None:
        self._db = db

    def unknown_or_inactive(self, meter_serials: Iterable[str]) -> list[str]:
        wanted = list(meter_serials)
        if not wanted:
            return []

        active = set(
            self._db.scalars(
                select(Meter.meter_serial_no).where(
                    Meter.meter_serial_no.in_(wanted),
                    Meter.status == MeterStatusV1.ACTIVE,
                )
            )
        )
        return [serial for serial in wanted if serial not in active]

    def is_active(self, meter_serial_no: str) -> bool:
        meter = self._db.get(Meter, meter_serial_no)
        return meter is not None and meter.status == MeterStatusV1.ACTIVE
