from __future__ import annotations

import os
import threading

from packages.shared.schemas.command_v1 import CommandTypeV1, SendOutcomeV1
from services.ami.app.services.meter_channel_base import MeterChannel, SendResult


def _nack_meters_from_env() -> frozenset[str]:
    raw = os.getenv("AMI_MOCK_NACK_METERS", "")
    return frozenset(s.strip() for s in raw.split(",") if s.strip())


class MockMeterChannel(MeterChannel):
    """Deterministic head-end stand-in.

    Acks every command except for meters listed in AMI_MOCK_NACK_METERS. A repeated
    idempotency key replays the first Ack instead of executing the command again.
    """

    name = "MOCK_HES"

    def __init__(self, nack_meters: frozenset[str] | None = None) -> None:
        self._nack_meters = _nack_meters_from_env() if nack_meters is None else nack_meters
        self._delivered: dict[str, SendResult] = {}
        self._lock = threading.Lock()
        self.executed: list[tuple[str, CommandTypeV1]] = []

    def send(
        self,
        meter_serial_no: str,
        command_type: CommandTypeV1,
        *,
        idempotency_key: str,
    ) -> SendResult:
        with self._lock:
            previous = self._delivered.get(idempotency_key)
            if previous is not None:
                return SendResult(SendOutcomeV1.ACK, f"Duplicate suppressed: {previous.message}")

            if meter_serial_no in self._nack_meters:
                return SendResult(SendOutcomeV1.NACK, f"Meter {meter_serial_no} rejected command")

            self.executed.append((meter_serial_no, command_type))
            result = SendResult(
                SendOutcomeV1.ACK, f"{command_type.value} executed on {meter_serial_no}"
            )
            self._delivered[idempotency_key] = result
            return result
