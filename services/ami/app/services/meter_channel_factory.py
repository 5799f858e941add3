from __future__ import annotations

import os

from services.ami.app.services.meter_channel_base import MeterChannel
from services.ami.app.services.meter_channel_mock import MockMeterChannel


def get_meter_channel() -> MeterChannel:
    """Select the meter communication channel based on AMI_METER_CHANNEL.

    Defaults to the mock channel so tests and local dev are deterministic unless explicitly
    configured otherwise.
    """

    mode = os.getenv("AMI_METER_CHANNEL", "mock").strip().lower()

    if mode == "mock":
        return MockMeterChannel()

    if mode in ("http", "hes"):
        from services.ami.app.services.meter_channel_http import HttpHeadEndChannel

        return HttpHeadEndChannel.from_env()

    raise ValueError(f"Unknown AMI_METER_CHANNEL={mode!r}. Expected mock or http.")
