from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient


@pytest.fixture()
def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    db_path = tmp_path / "ami_api.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+pysqlite:///{db_path}")
    monkeypatch.setenv("AMI_DB_AUTO_CREATE", "true")
    monkeypatch.setenv("AMI_METER_CHANNEL", "mock")
    monkeypatch.setenv("AMI_AUTHZ_PROVIDER", "allow_all")
    monkeypatch.delenv("AMI_MOCK_NACK_METERS", raising=False)

    from services.ami.app.main import app

    with TestClient(app) as c:
        _seed_meters()
        yield c


def _seed_meters() -> None:
    from services.ami.app.db.database import db_session
    from services.ami.app.db.models import Consumer, Meter

    db = db_session()
    try:
        db.add(Consumer(id=5, name="Consumer 5"))
        db.flush()
        for serial in ("M1", "M2"):
            db.add(Meter(meter_serial_no=serial, consumer_id=5))
        db.commit()
    finally:
        db.close()


def _create(client: TestClient, serials: list[str]) -> dict:
    resp = client.post(
        "/v1/commands",
        json={
            "type": "Disconnect",
            "requested_by": "operator-1",
            "reason": "Non-payment",
            "meter_serials": serials,
        },
    )
    assert resp.status_code == 200
    return resp.json()


def test_health(client: TestClient) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_create_submit_approve_dispatch_flow(client: TestClient) -> None:
    created = _create(client, ["M1", "M2"])
    request_id = created["id"]
    assert created["state"] == "Draft"
    assert [i["state"] for i in created["items"]] == ["PendingApproval", "PendingApproval"]

    submitted = client.post(
        f"/v1/commands/{request_id}/submit", json={"submitted_by": "operator-1"}
    )
    assert submitted.status_code == 200
    assert submitted.json()["state"] == "PendingApproval"

    approved = client.post(
        f"/v1/commands/{request_id}/approve", json={"approver_id": "supervisor-1"}
    )
    assert approved.status_code == 200
    body = approved.json()
    assert body["state"] == "Approved"
    assert body["approved_by"] == "supervisor-1"
    assert body["decided_at"]
    assert {i["state"] for i in body["items"]} == {"Approved"}

    run = client.post("/v1/dispatch/run", json={})
    assert run.status_code == 200
    summary = run.json()
    assert summary["channel"] == "MOCK_HES"
    assert summary["claimed"] == 2
    assert summary["acked"] == 2

    detail = client.get(f"/v1/commands/{request_id}").json()
    assert detail["state"] == "Dispatched"
    assert {i["state"] for i in detail["items"]} == {"Acked"}
    assert all(i["attempts"] == 1 for i in detail["items"])

    item_id = detail["items"][0]["id"]
    logs = client.get(f"/v1/command-items/{item_id}/logs")
    assert logs.status_code == 200
    assert [row["status"] for row in logs.json()] == ["Dispatched", "Acked"]

    acked = client.get("/v1/command-items", params={"state": "Acked"})
    assert acked.status_code == 200
    assert len(acked.json()) == 2


def test_nacked_items_are_retried_then_dead_lettered(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("AMI_MOCK_NACK_METERS", "M2")
    monkeypatch.setenv("AMI_DISPATCH_MAX_ATTEMPTS", "2")

    request_id = _create(client, ["M2"])["id"]
    client.post(f"/v1/commands/{request_id}/submit", json={"submitted_by": "operator-1"})
    client.post(f"/v1/commands/{request_id}/approve", json={"approver_id": "supervisor-1"})

    assert client.post("/v1/dispatch/run", json={}).json()["retried"] == 1
    assert client.post("/v1/dispatch/run", json={}).json()["dead_lettered"] == 1

    dlq = client.get("/v1/command-items", params={"state": "Dlq"}).json()
    assert len(dlq) == 1
    assert dlq[0]["attempts"] == 2
    assert dlq[0]["last_error"].startswith("Nack")


def test_partial_rejection(client: TestClient) -> None:
    created = _create(client, ["M1", "M2"])
    request_id = created["id"]
    m2_id = next(i["id"] for i in created["items"] if i["meter_serial_no"] == "M2")
    client.post(f"/v1/commands/{request_id}/submit", json={"submitted_by": "operator-1"})

    rejected = client.post(
        f"/v1/command-items/{m2_id}/reject",
        json={"approver_id": "supervisor-1", "reason": "Meter under inspection"},
    )
    assert rejected.status_code == 200
    assert rejected.json()["state"] == "Rejected"
    assert rejected.json()["last_error"] == "Meter under inspection"

    approved = client.post(
        f"/v1/commands/{request_id}/approve", json={"approver_id": "supervisor-1"}
    ).json()
    states = {i["meter_serial_no"]: i["state"] for i in approved["items"]}
    assert states == {"M1": "Approved", "M2": "Rejected"}


def test_reject_request(client: TestClient) -> None:
    request_id = _create(client, ["M1"])["id"]
    client.post(f"/v1/commands/{request_id}/submit", json={"submitted_by": "operator-1"})

    resp = client.post(
        f"/v1/commands/{request_id}/reject",
        json={"approver_id": "supervisor-1", "reason": "Duplicate request"},
    )
    assert resp.status_code == 200
    assert resp.json()["state"] == "Rejected"
    assert resp.json()["items"][0]["state"] == "Rejected"


def test_create_validation_errors(client: TestClient) -> None:
    empty = client.post(
        "/v1/commands",
        json={"type": "Connect", "requested_by": "operator-1", "meter_serials": []},
    )
    assert empty.status_code == 422

    unknown = client.post(
        "/v1/commands",
        json={"type": "Connect", "requested_by": "operator-1", "meter_serials": ["M1", "ZZ"]},
    )
    assert unknown.status_code == 422
    assert "ZZ" in unknown.json()["detail"]

    bad_type = client.post(
        "/v1/commands",
        json={"type": "Explode", "requested_by": "operator-1", "meter_serials": ["M1"]},
    )
    assert bad_type.status_code == 422


def test_missing_request_and_item_are_404(client: TestClient) -> None:
    assert client.get("/v1/commands/missing").status_code == 404
    assert client.get("/v1/command-items/999/logs").status_code == 404
    resp = client.post("/v1/commands/missing/approve", json={"approver_id": "supervisor-1"})
    assert resp.status_code == 404


def test_approving_a_draft_is_a_conflict(client: TestClient) -> None:
    request_id = _create(client, ["M1"])["id"]

    resp = client.post(f"/v1/commands/{request_id}/approve", json={"approver_id": "supervisor-1"})
    assert resp.status_code == 409


def test_role_authorizer_refuses_unknown_approver(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    request_id = _create(client, ["M1"])["id"]
    client.post(f"/v1/commands/{request_id}/submit", json={"submitted_by": "operator-1"})

    monkeypatch.setenv("AMI_AUTHZ_PROVIDER", "roles")
    resp = client.post(f"/v1/commands/{request_id}/approve", json={"approver_id": "mallory"})
    assert resp.status_code == 403

    assert client.get(f"/v1/commands/{request_id}").json()["state"] == "PendingApproval"


def test_command_import_flow(client: TestClient) -> None:
    staged = client.post(
        "/v1/imports/commands",
        json={
            "file_name": "disconnects.csv",
            "created_by": "operator-1",
            "rows": [
                {"command": "Disconnect", "meter_serial_no": "M1"},
                {"command": "Disconnect", "meter_serial_no": "M1"},
                {"command": "Disconnect", "meter_serial_no": "M404"},
            ],
        },
    )
    assert staged.status_code == 200
    batch = staged.json()
    batch_id = batch["batch_id"]
    assert batch["type"] == "Commands"
    assert batch["status"] == "New"
    assert batch["row_count"] == 3
    assert [r["row_status"] for r in batch["rows"]] == [None, None, None]

    approve_early = client.post(
        f"/v1/imports/{batch_id}/approve", json={"approver_id": "supervisor-1"}
    )
    assert approve_early.status_code == 409

    validated = client.post(f"/v1/imports/{batch_id}/validate")
    assert validated.status_code == 200
    body = validated.json()
    assert body["status"] == "Validated"
    assert (body["valid_count"], body["invalid_count"]) == (1, 2)
    assert [r["row_status"] for r in body["rows"]] == ["Valid", "Duplicate", "Invalid"]

    approved = client.post(
        f"/v1/imports/{batch_id}/approve", json={"approver_id": "supervisor-1"}
    )
    assert approved.status_code == 200
    body = approved.json()
    assert body["status"] == "Approved"
    assert body["decided_by"] == "supervisor-1"
    assert len(body["request_ids"]) == 1

    request = client.get(f"/v1/commands/{body['request_ids'][0]}").json()
    assert request["state"] == "PendingApproval"
    assert request["source_batch_id"] == batch_id
    assert [i["meter_serial_no"] for i in request["items"]] == ["M1"]

    # Imported requests still need the normal command approval.
    decided = client.post(
        f"/v1/commands/{request['id']}/approve", json={"approver_id": "supervisor-1"}
    )
    assert decided.status_code == 200
    assert decided.json()["state"] == "Approved"


def test_command_import_errors(client: TestClient) -> None:
    assert client.get("/v1/imports/nope").status_code == 404
    assert client.post("/v1/imports/nope/validate").status_code == 404

    empty = client.post(
        "/v1/imports/commands",
        json={"file_name": "empty.csv", "created_by": "operator-1", "rows": []},
    )
    assert empty.status_code == 422

    staged = client.post(
        "/v1/imports/commands",
        json={
            "file_name": "pings.csv",
            "created_by": "operator-1",
            "rows": [{"command": "Ping", "meter_serial_no": "M2"}],
        },
    ).json()
    rejected = client.post(
        f"/v1/imports/{staged['batch_id']}/reject", json={"approver_id": "supervisor-1"}
    )
    assert rejected.status_code == 200
    assert rejected.json()["status"] == "Rejected"

    again = client.post(f"/v1/imports/{staged['batch_id']}/validate")
    assert again.status_code == 409
