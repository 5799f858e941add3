from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from packages.shared.schemas.command_v1 import CommandTypeV1, SendOutcomeV1


class MeterChannelError(Exception):
    """Base class for meter communication errors.

    The dispatcher treats a raised MeterChannelError as a Nack.
    """


class MeterChannelConfigError(MeterChannelError):
    def __init__(self, setting: str) -> None:
        super().__init__(f"Meter channel is not configured. Set {setting}.")
        self.setting = setting


@dataclass(frozen=True, slots=True)
class SendResult:
    outcome: SendOutcomeV1
    message: str = ""

    @property
    def acked(self) -> bool:
        return self.outcome == SendOutcomeV1.ACK


class MeterChannel(Protocol):
    name: str

    def send(
        self,
        meter_serial_no: str,
        command_type: CommandTypeV1,
        *,
        idempotency_key: str,
    ) -> SendResult: ...
