from gate_intel.db.models import Gate
from gate_intel.services.locks import pipeline_lock_service
from gate_intel.worker import tasks

from tests.factories import VENUE, gps_cluster, make_event


def test_scheduled_token_is_hourly():
    token = tasks.scheduled_run_token("evt-1")
    assert token.startswith("scheduled:evt-1:")
    assert len(token.rsplit(":", 1)[1]) == len("2026101809")


def test_run_gate_pipeline_task(db_session, session_factory, monkeypatch):
    event = make_event(db_session)
    gps_cluster(db_session, event, VENUE, 100)
    monkeypatch.setattr(tasks, "get_db_session", session_factory)

    first = tasks.run_gate_pipeline.apply(args=[event.id], kwargs={"run_token": "nightly"}).get()
    second = tasks.run_gate_pipeline.apply(args=[event.id], kwargs={"run_token": "nightly"}).get()

    assert len(first["created_gates"]) == 1
    assert second["replayed"] is True
    assert db_session.query(Gate).count() == 1


def test_busy_event_is_skipped(db_session, session_factory, monkeypatch):
    event = make_event(db_session)
    gps_cluster(db_session, event, VENUE, 20)
    monkeypatch.setattr(tasks, "get_db_session", session_factory)

    with pipeline_lock_service.acquire(event.id):
        result = tasks.run_gate_pipeline.apply(args=[event.id]).get()

    assert result["skipped"] is True
    assert result["error"] == "pipeline_busy"


def test_unknown_event_is_reported(session_factory, monkeypatch):
    monkeypatch.setattr(tasks, "get_db_session", session_factory)

    result = tasks.run_gate_pipeline.apply(args=["missing"]).get()

    assert result["error"] == "unknown_event"
    assert result["retryable"] is False
