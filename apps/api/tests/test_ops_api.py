from __future__ import annotations

from datetime import UTC, datetime
from uuid import UUID, uuid4

from fastapi.testclient import TestClient
from sqlalchemy import text
from sqlalchemy.orm import Session

from inbox.core.config import get_settings
from inbox.main import create_app
from inbox.models.enums import Channel
from inbox.services.ingest.admit import admit
from inbox.services.ingest.types import CanonicalEvent
from inbox.worker.queue import enqueue_outbound_job


def _job(session: Session, provider_message_id: str) -> UUID:
    res = admit(
        session=session,
        event=CanonicalEvent(
            channel=Channel.whatsapp,
            event_type="message",
            provider_message_id=provider_message_id,
            timestamp=datetime.now(UTC),
            sender_id="971501234567",
            sender_phone="971501234567",
            text="Hello",
        ),
    )
    job_id = enqueue_outbound_job(
        session=session,
        message_id=res.message_id,
        conversation_id=res.conversation_id,
        inbound_provider_message_id=provider_message_id,
    )
    session.commit()
    return job_id


def test_runner_and_ops_endpoints_require_token() -> None:
    client = TestClient(create_app())

    assert client.post("/run-outbound").status_code == 401
    assert client.post("/run-outbound", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.get("/ops/jobs/summary").status_code == 401
    assert client.get("/ops/jobs/summary", params={"token": "wrong"}).status_code == 401


def test_run_outbound_accepts_query_token_and_bearer(runner_headers: dict[str, str]) -> None:
    client = TestClient(create_app())
    token = runner_headers["Authorization"].removeprefix("Bearer ")

    by_query = client.get("/run-outbound", params={"token": token})
    assert by_query.status_code == 200
    assert by_query.json() == {"processed": 0, "failed": 0, "job_ids": {"processed": [], "failed": []}}

    by_header = client.post("/run-outbound", headers=runner_headers)
    assert by_header.status_code == 200

    assert client.post("/run-outbound", params={"max": 0}, headers=runner_headers).status_code == 422


def test_jobs_summary_stuck_failed_and_replay(db_session: Session, runner_headers: dict[str, str]) -> None:
    queued = _job(db_session, "wamid.Q")
    stuck = _job(db_session, "wamid.S")
    failed = _job(db_session, "wamid.F")
    db_session.execute(
        text(
            """
            UPDATE outbound_jobs
            SET status = 'running', attempts = 1, started_at = now() - interval '1 hour', locked_by = 'w1'
            WHERE id = :id
            """
        ),
        {"id": str(stuck)},
    )
    db_session.execute(
        text("UPDATE outbound_jobs SET status = 'failed', attempts = 3, last_error = 'boom' WHERE id = :id"),
        {"id": str(failed)},
    )
    db_session.commit()
    client = TestClient(create_app())

    summary = client.get("/ops/jobs/summary", headers=runner_headers)
    assert summary.status_code == 200
    body = summary.json()
    assert body["counts"] == {"queued": 1, "running": 1, "done": 0, "failed": 1}
    assert body["stuck"] == 1
    assert body["oldest_queued_at"] is not None
    assert body["stuck_threshold_seconds"] == get_settings().STUCK_JOB_THRESHOLD_SECONDS

    stuck_items = client.get("/ops/jobs/stuck", headers=runner_headers).json()["items"]
    assert [i["id"] for i in stuck_items] == [str(stuck)]
    assert stuck_items[0]["locked_by"] == "w1"

    failed_items = client.get("/ops/jobs/failed", headers=runner_headers).json()["items"]
    assert [i["id"] for i in failed_items] == [str(failed)]
    assert failed_items[0]["last_error"] == "boom"

    assert client.post(f"/ops/jobs/{queued}/replay", headers=runner_headers).status_code == 404
    assert client.post(f"/ops/jobs/{uuid4()}/replay", headers=runner_headers).status_code == 404

    for job_id in (failed, stuck):
        res = client.post(f"/ops/jobs/{job_id}/replay", headers=runner_headers)
        assert res.status_code == 200
        assert res.json() == {"status": "queued", "job_id": str(job_id)}

    rows = db_session.execute(
        text("SELECT status, attempts, last_error, locked_by FROM outbound_jobs WHERE id IN (:a, :b)"),
        {"a": str(failed), "b": str(stuck)},
    ).mappings().all()
    assert all(str(r["status"]) == "queued" for r in rows)
    assert all(r["attempts"] == 0 for r in rows)
    assert all(r["last_error"] is None and r["locked_by"] is None for r in rows)


def test_channel_check_reports_missing_configuration(monkeypatch, runner_headers: dict[str, str]) -> None:
    for key in (
        "WHATSAPP_VERIFY_TOKEN",
        "META_VERIFY_TOKEN",
        "WHATSAPP_ACCESS_TOKEN",
        "WHATSAPP_PHONE_NUMBER_ID",
        "META_PAGE_ACCESS_TOKEN",
    ):
        monkeypatch.setenv(key, "")
    get_settings.cache_clear()
    client = TestClient(create_app())

    res = client.get("/ops/channels/check", headers=runner_headers)
    assert res.status_code == 500
    body = res.json()
    assert body["ok"] is False
    by_channel = {c["channel"]: c for c in body["channels"]}
    assert "WHATSAPP_ACCESS_TOKEN" in by_channel["whatsapp"]["missing"]
    assert by_channel["meta-leads"]["missing"] == ["META_VERIFY_TOKEN"]

    monkeypatch.setenv("META_VERIFY_TOKEN", "verify")
    monkeypatch.setenv("WHATSAPP_ACCESS_TOKEN", "wa")
    monkeypatch.setenv("WHATSAPP_PHONE_NUMBER_ID", "1000")
    monkeypatch.setenv("META_PAGE_ACCESS_TOKEN", "page")
    get_settings.cache_clear()

    ok = client.get("/ops/channels/check", headers=runner_headers)
    assert ok.status_code == 200
    assert ok.json()["ok"] is True
