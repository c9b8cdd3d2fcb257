from concurrent.futures import ThreadPoolExecutor
import threading

import pytest
from fastapi.testclient import TestClient

from gate_intel.config import settings
from gate_intel.dependencies import get_db
from gate_intel.main import app
from gate_intel.services.gate_pipeline_service import gate_pipeline_service

from tests.factories import VENUE, gps_cluster, make_event, no_gps_checkins

HEADERS = {"X-API-Key": settings.API_KEY}


@pytest.fixture
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def event_id(db_session):
    event = make_event(db_session)
    gps_cluster(db_session, event, VENUE, 100)
    return event.id


def test_root_and_health(client):
    assert client.get("/").json()["service"] == "Gate Intelligence"

    health = client.get("/health").json()
    assert health["database"] == "healthy"
    assert health["lock_backend"] == "memory"


def test_quality_and_preview(client, event_id):
    quality = client.get(f"/gate-engine/events/{event_id}/quality")
    assert quality.status_code == 200
    assert quality.json()["checkins_with_usable_gps"] == 100

    preview = client.get(f"/gate-engine/events/{event_id}/preview")
    assert preview.status_code == 200
    body = preview.json()
    assert body["ranked_gates"][0]["proposed_name"] == "General Gate 1"
    assert "members" not in body["physical_candidates"][0]


def test_unknown_event_is_404(client):
    response = client.get("/gate-engine/events/missing/quality")
    assert response.status_code == 404
    assert response.json()["detail"]["error"] == "unknown_event"


def test_execute_requires_api_key(client, event_id):
    response = client.post(f"/gate-engine/events/{event_id}/execute", json={"run_token": "run-1"})
    assert response.status_code == 401


def test_execute_and_replay(client, event_id):
    first = client.post(
        f"/gate-engine/events/{event_id}/execute", json={"run_token": "run-1"}, headers=HEADERS
    )
    second = client.post(
        f"/gate-engine/events/{event_id}/execute", json={"run_token": "run-1"}, headers=HEADERS
    )

    assert first.status_code == 200
    assert first.json()["replayed"] is False
    assert second.json()["replayed"] is True
    assert second.json()["created_gates"] == first.json()["created_gates"]


def test_preview_is_served_while_execute_is_running(client, event_id, monkeypatch):
    derive = gate_pipeline_service.derive
    execute_started = threading.Event()
    release_execute = threading.Event()
    calls = []

    def held_derive(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            execute_started.set()
            release_execute.wait(10)
        return derive(*args, **kwargs)

    monkeypatch.setattr(gate_pipeline_service, "derive", held_derive)

    with client, ThreadPoolExecutor(max_workers=2) as pool:
        execute = pool.submit(
            client.post,
            f"/gate-engine/events/{event_id}/execute",
            json={"run_token": "run-1"},
            headers=HEADERS,
        )
        assert execute_started.wait(5)

        preview = pool.submit(client.get, f"/gate-engine/events/{event_id}/preview")
        try:
            preview_response = preview.result(timeout=5)
            execute_still_running = not execute.done()
        finally:
            release_execute.set()

        assert preview_response.status_code == 200
        assert execute_still_running
        assert execute.result(timeout=10).status_code == 200


def test_insufficient_data_is_422(client, db_session):
    event = make_event(db_session)
    no_gps_checkins(db_session, event, 20)

    response = client.post(
        f"/gate-engine/events/{event.id}/execute",
        json={"run_token": "run-1", "require_sufficient_data": True},
        headers=HEADERS,
    )
    assert response.status_code == 422
    assert response.json()["detail"]["error"] == "insufficient_data"


def test_gate_state_lifecycle(client, event_id):
    result = client.post(
        f"/gate-engine/events/{event_id}/execute", json={"run_token": "run-1"}, headers=HEADERS
    ).json()
    gate_id = result["created_gates"][0]["id"]

    state = client.get(f"/gate-engine/gates/{gate_id}/state").json()
    assert state["status"] == "learning"

    invalid = client.post(f"/gate-engine/gates/{gate_id}/state", json={"target": "active"}, headers=HEADERS)
    assert invalid.status_code == 409

    unknown = client.post(f"/gate-engine/gates/{gate_id}/state", json={"target": "asleep"}, headers=HEADERS)
    assert unknown.status_code == 422

    paused = client.post(
        f"/gate-engine/gates/{gate_id}/state", json={"target": "paused", "actor_id": "ops-1"}, headers=HEADERS
    )
    assert paused.json()["status"] == "paused"

    resumed = client.post(f"/gate-engine/gates/{gate_id}/state", json={"target": "resume"}, headers=HEADERS)
    assert resumed.json()["status"] == "learning"


def test_record_outcome(client, event_id):
    result = client.post(
        f"/gate-engine/events/{event_id}/execute", json={"run_token": "run-1"}, headers=HEADERS
    ).json()
    gate_id = result["created_gates"][0]["id"]
    decision_id = result["decision_events"][0]["id"]

    response = client.post(
        f"/gate-engine/gates/{gate_id}/outcomes",
        json={"decision_event_id": decision_id, "outcome_success": True, "response_time_ms": 150},
        headers=HEADERS,
    )
    assert response.status_code == 200
    assert response.json()["decisions_count"] == 1

    missing = client.post(
        f"/gate-engine/gates/{gate_id}/outcomes",
        json={"decision_event_id": "missing", "outcome_success": True, "response_time_ms": 150},
        headers=HEADERS,
    )
    assert missing.status_code == 404


def test_review_flow(client, db_session):
    event = make_event(db_session)
    no_gps_checkins(db_session, event, 40)
    client.post(f"/gate-engine/events/{event.id}/execute", json={"run_token": "run-1"}, headers=HEADERS)

    queue = client.get("/gate-engine/decisions/review-queue", params={"event_id": event.id}).json()
    assert len(queue) == 1
    decision_id = queue[0]["id"]

    review = client.post(
        f"/gate-engine/decisions/{decision_id}/review",
        json={"verdict": "rejected", "reviewer_id": "reviewer-1"},
        headers=HEADERS,
    )
    assert review.status_code == 200
    assert review.json()["review_status"] == "rejected"

    again = client.post(
        f"/gate-engine/decisions/{decision_id}/review",
        json={"verdict": "approved", "reviewer_id": "reviewer-2"},
        headers=HEADERS,
    )
    assert again.status_code == 409

    corrected = client.post(
        f"/gate-engine/decisions/{decision_id}/correct", json={"actor_id": "ops-1"}, headers=HEADERS
    )
    assert corrected.status_code == 200
    assert corrected.json()["event_type"] == "auto_correction"

    history = client.get(f"/gate-engine/events/{event.id}/decisions").json()
    assert {d["event_type"] for d in history} == {"gate_creation", "threshold_adjustment", "auto_correction"}
