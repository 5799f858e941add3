from __future__ import annotations

import json
import os
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass

from packages.shared.schemas.command_v1 import CommandTypeV1, SendOutcomeV1
from services.ami.app.services.meter_channel_base import (
    MeterChannel,
    MeterChannelConfigError,
    MeterChannelError,
    SendResult,
)


@dataclass(frozen=True, slots=True)
class _HeadEndConfig:
    base_url: str
    api_key: str
    timeout_seconds: float


class HttpHeadEndChannel(MeterChannel):
    """Meter channel that relays commands to a head-end system (HES) over HTTP.

    Request: POST {base_url}/commands with JSON
    {"meter_serial_no", "command", "idempotency_key"} and an Idempotency-Key header.

    Response: JSON {"status": "ACK" | "NACK", "message": str}. A 409 means the HES
    already accepted this idempotency key and is reported as an Ack.

    Env vars:
    - AMI_METER_CHANNEL=http
    - AMI_HES_BASE_URL (required)
    - AMI_HES_API_KEY (optional bearer token)
    - AMI_HES_TIMEOUT_SECONDS (default: 8)
    """

    name = "HTTP_HES"

    def __init__(self, cfg: _HeadEndConfig) -> None:
        self._cfg = cfg

    @classmethod
    def from_env(cls) -> "HttpHeadEndChannel":
        base_url = os.getenv("AMI_HES_BASE_URL", "").strip().rstrip("/")
        if not base_url:
            raise MeterChannelConfigError("AMI_HES_BASE_URL")

        return cls(
            _HeadEndConfig(
                base_url=base_url,
                api_key=os.getenv("AMI_HES_API_KEY", "").strip(),
                timeout_seconds=float(os.getenv("AMI_HES_TIMEOUT_SECONDS", "8")),
            )
        )

    def send(
        self,
        meter_serial_no: str,
        command_type: CommandTypeV1,
        *,
        idempotency_key: str,
    ) -> SendResult:
        body = {
            "meter_serial_no": meter_serial_no,
            "command": command_type.value,
            "idempotency_key": idempotency_key,
        }

        req = urllib.request.Request(f"{self._cfg.base_url}/commands", method="POST")
        req.add_header("Content-Type", "application/json")
        req.add_header("Idempotency-Key", idempotency_key)
        if self._cfg.api_key:
            req.add_header("Authorization", f"Bearer {self._cfg.api_key}")

        try:
            with urllib.request.urlopen(
                req,
                data=json.dumps(body).encode("utf-8"),
                timeout=self._cfg.timeout_seconds,
            ) as resp:
                payload = json.loads(resp.read().decode("utf-8") or "{}")
        except urllib.error.HTTPError as e:
            raw = e.read().decode("utf-8", errors="replace")
            if e.code == 409:
                return SendResult(SendOutcomeV1.ACK, f"Already delivered: {raw}")
            if e.code in (504, 408):
                return SendResult(SendOutcomeV1.TIMEOUT, f"HES HTTP {e.code}: {raw}")
            return SendResult(SendOutcomeV1.NACK, f"HES HTTP {e.code}: {raw}")
        except (TimeoutError, socket.timeout):
            return SendResult(SendOutcomeV1.TIMEOUT, "HES did not respond in time")
        except urllib.error.URLError as e:
            if isinstance(e.reason, (TimeoutError, socket.timeout)):
                return SendResult(SendOutcomeV1.TIMEOUT, "HES did not respond in time")
            raise MeterChannelError(f"HES unreachable: {e.reason}") from e

        return _result_from_payload(payload)


def _result_from_payload(payload: object) -> SendResult:
    if not isinstance(payload, dict):
        raise MeterChannelError(f"Unexpected HES response shape: {payload!r}")

    status = str(payload.get("status") or "").strip().upper()
    message = str(payload.get("message") or "")

    if status == "ACK":
        return SendResult(SendOutcomeV1.ACK, message)
    if status == "NACK":
        return SendResult(SendOutcomeV1.NACK, message)
    if status == "TIMEOUT":
        return SendResult(SendOutcomeV1.TIMEOUT, message)

    raise MeterChannelError(f"Unexpected HES status: {status!r}")
