import pytest
from fastapi.testclient import TestClient

from src.api.main import app
from src.api.services.runtime import reset_services_for_tests
from tests.factories import VALID_CNPJ, VALID_CNJ, onboarding_template


@pytest.fixture
def sql_client(monkeypatch, tmp_path):
    monkeypatch.setenv("JOURNEY_TEMPLATE_ADMIN_APIS_ENABLED", "true")
    monkeypatch.setenv("JOURNEY_STORE_BACKEND", "SQL")
    monkeypatch.setenv("JOURNEY_SQL_PATH", str(tmp_path / "journeys.db"))
    monkeypatch.setenv("TICKET_STORE_BACKEND", "SQL")
    monkeypatch.setenv("TICKET_SQL_PATH", str(tmp_path / "tickets.db"))
    monkeypatch.delenv("APP_PERSISTENCE_PROFILE", raising=False)
    reset_services_for_tests()
    with TestClient(app) as client:
        yield client
    reset_services_for_tests()


def _stage_ids(journey: dict) -> list[str]:
    return [item["stage"]["stage_id"] for item in journey["stages"]]


def test_journey_survives_service_rebuild_on_sql_store(sql_client):
    template = sql_client.post(
        "/journey-templates", json=onboarding_template("jt_sql").model_dump(mode="json")
    )
    assert template.status_code == 201
    started = sql_client.post(
        "/journeys",
        json={
            "template_id": "jt_sql",
            "subject": {"client_tax_id": VALID_CNPJ, "case_number": VALID_CNJ},
            "owner_ref": "oab_123",
            "actor_ref": "oab_123",
        },
        headers={"Idempotency-Key": "sql-start-1"},
    )
    assert started.status_code == 201
    journey = started.json()
    journey_id = journey["journey"]["journey_id"]
    assert journey["journey"]["subject"] == {
        "client_tax_id": "11222333000181",
        "case_number": VALID_CNJ,
    }
    meeting_id = _stage_ids(journey)[0]
    assert sql_client.post(
        f"/stages/{meeting_id}/complete", json={"actor_ref": "oab_123"}
    ).status_code == 200

    reset_services_for_tests()

    reloaded = sql_client.get(f"/journeys/{journey_id}").json()
    assert reloaded["journey"]["progress_pct"] == 25
    assert reloaded["journey"]["version"] == 2
    assert [item["stage"]["status"] for item in reloaded["stages"]] == [
        "completed",
        "pending",
        "pending",
        "pending",
    ]
    replay = sql_client.post(
        "/journeys",
        json={
            "template_id": "jt_sql",
            "subject": {"client_tax_id": VALID_CNPJ, "case_number": VALID_CNJ},
            "owner_ref": "oab_123",
            "actor_ref": "oab_123",
        },
        headers={"Idempotency-Key": "sql-start-1"},
    )
    assert replay.json()["journey"]["journey_id"] == journey_id
    events = sql_client.get(f"/journeys/{journey_id}/events").json()["events"]
    assert [event["event_type"] for event in events] == ["JourneyStarted", "StageCompleted"]


def test_gate_and_review_flow_on_sql_store(sql_client):
    sql_client.post(
        "/journey-templates", json=onboarding_template("jt_sql_gate").model_dump(mode="json")
    )
    journey = sql_client.post(
        "/journeys",
        json={
            "template_id": "jt_sql_gate",
            "subject": {"client_tax_id": VALID_CNPJ},
            "owner_ref": "oab_123",
            "actor_ref": "oab_123",
        },
    ).json()
    upload_stage_id = _stage_ids(journey)[1]
    gate = sql_client.get(f"/stages/{upload_stage_id}/gate").json()
    assert gate["satisfied"] is False
    rg_id = next(
        item["requirement_id"] for item in gate["pending_requirements"] if item["name"] == "RG"
    )

    submitted = sql_client.post(
        f"/stages/{upload_stage_id}/documents",
        json={
            "actor_ref": "client_42",
            "requirement_id": rg_id,
            "filename": "rg.png",
            "size_bytes": 4096,
            "mime_type": "image/png",
        },
    ).json()
    rejected = sql_client.post(
        f"/documents/{submitted['upload']['upload_id']}/review",
        json={"actor_ref": "oab_123", "decision": "reject", "notes": "Foto ilegível"},
    ).json()
    assert rejected["upload"]["status"] == "rejected"
    assert rejected["journey"]["next_action"]["type"] == "submit_documents"

    too_large = sql_client.post(
        f"/stages/{upload_stage_id}/documents",
        json={
            "actor_ref": "client_42",
            "requirement_id": rg_id,
            "filename": "rg.pdf",
            "size_bytes": 6 * 1024 * 1024,
            "mime_type": "application/pdf",
        },
    )
    assert too_large.status_code == 422
    assert too_large.json()["detail"]["code"] == "UPLOAD_TOO_LARGE"

    resubmitted = sql_client.post(
        f"/stages/{upload_stage_id}/documents",
        json={
            "actor_ref": "client_42",
            "requirement_id": rg_id,
            "filename": "rg.pdf",
            "size_bytes": 4096,
            "mime_type": "application/pdf",
        },
    ).json()
    sql_client.post(
        f"/documents/{resubmitted['upload']['upload_id']}/review",
        json={"actor_ref": "oab_123", "decision": "approve"},
    )
    completed = sql_client.post(
        f"/stages/{upload_stage_id}/complete", json={"actor_ref": "oab_123"}
    )
    assert completed.status_code == 200
    assert completed.json()["stage"]["completed_by"] == "oab_123"


def test_ticket_lifecycle_on_sql_store(sql_client):
    opened = sql_client.post(
        "/tickets",
        json={
            "subject": "Atualização do processo",
            "requester_ref": "client_42",
            "priority": "alta",
            "actor_ref": "client_42",
        },
    ).json()

    reset_services_for_tests()

    view = sql_client.get(f"/tickets/{opened['ticket_id']}").json()
    assert view["ticket"]["priority"] == "alta"
    resolved = sql_client.post(
        f"/tickets/{opened['ticket_id']}/resolve", json={"actor_ref": "oab_123"}
    ).json()
    assert resolved["status"] == "resolvido"
    assert resolved["first_response_at"] == resolved["resolved_at"]
