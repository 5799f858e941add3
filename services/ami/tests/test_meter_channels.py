from __future__ import annotations

import io
import json
import socket
import urllib.error
import urllib.request

import pytest
from packages.shared.schemas.command_v1 import CommandTypeV1, SendOutcomeV1
from services.ami.app.services.meter_channel_base import MeterChannelConfigError, MeterChannelError
from services.ami.app.services.meter_channel_factory import get_meter_channel
from services.ami.app.services.meter_channel_http import HttpHeadEndChannel
from services.ami.app.services.meter_channel_mock import MockMeterChannel


class _FakeResponse:
    def __init__(self, payload: dict) -> None:
        self._body = json.dumps(payload).encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, *exc: object) -> None:
        return None


def _http_channel(monkeypatch: pytest.MonkeyPatch) -> HttpHeadEndChannel:
    monkeypatch.setenv("AMI_HES_BASE_URL", "https://hes.example.test/")
    monkeypatch.setenv("AMI_HES_API_KEY", "secret")
    return HttpHeadEndChannel.from_env()


def test_mock_channel_acks_and_suppresses_duplicates() -> None:
    channel = MockMeterChannel(nack_meters=frozenset())

    first = channel.send("M1", CommandTypeV1.DISCONNECT, idempotency_key="r1:M1")
    again = channel.send("M1", CommandTypeV1.DISCONNECT, idempotency_key="r1:M1")

    assert first.acked
    assert again.acked
    assert again.message.startswith("Duplicate suppressed")
    assert channel.executed == [("M1", CommandTypeV1.DISCONNECT)]


def test_mock_channel_nacks_configured_meters(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AMI_MOCK_NACK_METERS", "M2, M3")
    channel = MockMeterChannel()

    result = channel.send("M2", CommandTypeV1.PING, idempotency_key="r1:M2")

    assert result.outcome == SendOutcomeV1.NACK
    assert channel.executed == []


def test_factory_defaults_to_mock(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("AMI_METER_CHANNEL", raising=False)
    assert get_meter_channel().name == "MOCK_HES"


def test_factory_http_requires_base_url(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AMI_METER_CHANNEL", "http")
    monkeypatch.delenv("AMI_HES_BASE_URL", raising=False)

    with pytest.raises(MeterChannelConfigError) as exc:
        get_meter_channel()
    assert exc.value.setting == "AMI_HES_BASE_URL"


def test_factory_http_builds_channel(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AMI_METER_CHANNEL", "hes")
    monkeypatch.setenv("AMI_HES_BASE_URL", "https://hes.example.test")
    assert get_meter_channel().name == "HTTP_HES"


def test_factory_rejects_unknown_channel(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AMI_METER_CHANNEL", "carrier-pigeon")
    with pytest.raises(ValueError):
        get_meter_channel()


def test_http_channel_posts_command_with_idempotency_key(monkeypatch: pytest.MonkeyPatch) -> None:
    channel = _http_channel(monkeypatch)
    seen: dict = {}

    def fake_urlopen(req, data=None, timeout=None):
        seen["url"] = req.full_url
        seen["headers"] = dict(req.header_items())
        seen["body"] = json.loads(data.decode("utf-8"))
        seen["timeout"] = timeout
        return _FakeResponse({"status": "ACK", "message": "relay open"})

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)

    result = channel.send("M1", CommandTypeV1.DISCONNECT, idempotency_key="r1:M1")

    assert result.acked
    assert result.message == "relay open"
    assert seen["url"] == "https://hes.example.test/commands"
    assert seen["headers"]["Idempotency-key"] == "r1:M1"
    assert seen["headers"]["Authorization"] == "Bearer secret"
    assert seen["body"] == {
        "meter_serial_no": "M1",
        "command": "Disconnect",
        "idempotency_key": "r1:M1",
    }
    assert seen["timeout"] == 8.0


def test_http_channel_maps_nack_payload(monkeypatch: pytest.MonkeyPatch) -> None:
    channel = _http_channel(monkeypatch)
    monkeypatch.setattr(
        urllib.request,
        "urlopen",
        lambda req, data=None, timeout=None: _FakeResponse({"status": "nack", "message": "busy"}),
    )

    result = channel.send("M1", CommandTypeV1.CONNECT, idempotency_key="r1:M1")

    assert result.outcome == SendOutcomeV1.NACK
    assert result.message == "busy"


def test_http_channel_treats_conflict_as_already_delivered(monkeypatch: pytest.MonkeyPatch) -> None:
    channel = _http_channel(monkeypatch)

    def fake_urlopen(req, data=None, timeout=None):
        raise urllib.error.HTTPError(req.full_url, 409, "Conflict", {}, io.BytesIO(b"seen"))

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)

    result = channel.send("M1", CommandTypeV1.CONNECT, idempotency_key="r1:M1")
    assert result.acked
    assert result.message.startswith("Already delivered")


def test_http_channel_maps_gateway_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    channel = _http_channel(monkeypatch)

    def fake_urlopen(req, data=None, timeout=None):
        raise urllib.error.HTTPError(req.full_url, 504, "Gateway Timeout", {}, io.BytesIO(b""))

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)

    result = channel.send("M1", CommandTypeV1.CONNECT, idempotency_key="r1:M1")
    assert result.outcome == SendOutcomeV1.TIMEOUT


def test_http_channel_maps_socket_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    channel = _http_channel(monkeypatch)

    def fake_urlopen(req, data=None, timeout=None):
        raise socket.timeout("timed out")

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)

    result = channel.send("M1", CommandTypeV1.CONNECT, idempotency_key="r1:M1")
    assert result.outcome == SendOutcomeV1.TIMEOUT


def test_http_channel_raises_when_unreachable(monkeypatch: pytest.MonkeyPatch) -> None:
    channel = _http_channel(monkeypatch)

    def fake_urlopen(req, data=None, timeout=None):
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)

    with pytest.raises(MeterChannelError):
        channel.send("M1", CommandTypeV1.CONNECT, idempotency_key="r1:M1")


def test_http_channel_rejects_unknown_status(monkeypatch: pytest.MonkeyPatch) -> None:
    channel = _http_channel(monkeypatch)
    monkeypatch.setattr(
        urllib.request,
        "urlopen",
        lambda req, data=None, timeout=None: _FakeResponse({"status": "MAYBE"}),
    )

    with pytest.raises(MeterChannelError):
        channel.send("M1", CommandTypeV1.CONNECT, idempotency_key="r1:M1")
