from __future__ import annotations

from collections.abc import Generator
from datetime import UTC, datetime

from fastapi.testclient import TestClient
from sqlalchemy import text
from sqlalchemy.orm import Session

from inbox.core.config import get_settings
from inbox.db.session import get_session, get_sessionmaker
from inbox.main import create_app
from inbox.models.enums import Channel
from inbox.services.ingest.admit import admit
from inbox.services.ingest.types import CanonicalEvent
from inbox.worker.queue import enqueue_outbound_job


def test_healthz_reports_version() -> None:
    client = TestClient(create_app())
    res = client.get("/healthz")
    assert res.status_code == 200
    assert res.json() == {"status": "ok", "version": get_settings().VERSION}


def test_readyz_reports_empty_queue(db_session: Session) -> None:
    client = TestClient(create_app())
    res = client.get("/readyz")
    assert res.status_code == 200
    assert res.json() == {"status": "ready", "queued_jobs": 0, "oldest_queued_age_seconds": None}


def test_readyz_reports_queued_reply_jobs(db_session: Session) -> None:
    res = admit(
        session=db_session,
        event=CanonicalEvent(
            channel=Channel.whatsapp,
            event_type="message",
            provider_message_id="wamid.READY",
            timestamp=datetime.now(UTC),
            sender_id="971501234567",
            sender_phone="971501234567",
            text="Hello",
        ),
    )
    enqueue_outbound_job(
        session=db_session,
        message_id=res.message_id,
        conversation_id=res.conversation_id,
        inbound_provider_message_id="wamid.READY",
    )
    db_session.commit()
    client = TestClient(create_app())

    body = client.get("/readyz").json()

    assert body["queued_jobs"] == 1
    assert body["oldest_queued_age_seconds"] >= 0


def test_readyz_fails_when_pipeline_tables_are_missing() -> None:
    def session_outside_app_schema() -> Generator[Session, None, None]:
        session = get_sessionmaker()()
        try:
            session.execute(text("SET LOCAL search_path TO pg_catalog"))
            yield session
        finally:
            session.close()

    app = create_app()
    app.dependency_overrides[get_session] = session_outside_app_schema
    client = TestClient(app)

    res = client.get("/readyz")

    assert res.status_code == 503
    detail = res.json()["detail"]
    assert detail["reason"] == "schema not migrated"
    assert "outbound_jobs" in detail["missing_tables"]
    assert "inbound_message_dedup" in detail["missing_tables"]
    app.dependency_overrides.clear()
