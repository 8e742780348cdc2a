from __future__ import annotations

from collections.abc import Generator

import httpx
import orjson
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY
from sqlalchemy.orm import Session

from inbox.core.config import get_settings
from inbox.core.http import get_http_client
from inbox.main import create_app


def _sample(name: str, **labels: str) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


def _wa_message(message_id: str, timestamp: str) -> bytes:
    return orjson.dumps(
        {
            "object": "whatsapp_business_account",
            "entry": [
                {
                    "id": "waba-1",
                    "changes": [
                        {
                            "field": "messages",
                            "value": {
                                "metadata": {"phone_number_id": "1000"},
                                "messages": [
                                    {
                                        "from": "971501234567",
                                        "id": message_id,
                                        "timestamp": timestamp,
                                        "type": "text",
                                        "text": {"body": "Any 2BR units left?"},
                                    }
                                ],
                            },
                        }
                    ],
                }
            ],
        }
    )


def test_metrics_endpoint_exposes_http_metrics() -> None:
    client = TestClient(create_app())

    assert client.get("/healthz").status_code == 200

    res = client.get("/metrics")
    assert res.status_code == 200
    assert "text/plain" in (res.headers.get("content-type") or "")

    body = res.text
    assert "inbox_http_requests_total" in body
    assert "inbox_http_request_duration_seconds" in body
    assert 'path="/healthz"' in body


def test_pipeline_counters_follow_a_reply_through(
    db_session: Session, monkeypatch, now_epoch: str, runner_headers: dict[str, str]
) -> None:
    monkeypatch.setenv("REPLY_GENERATOR_URL", "http://replies.test/generate")
    monkeypatch.setenv("WHATSAPP_ACCESS_TOKEN", "wa-access-token")
    monkeypatch.setenv("WHATSAPP_PHONE_NUMBER_ID", "1000")
    get_settings.cache_clear()

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "replies.test":
            return httpx.Response(200, json={"reply_text": "Yes, two are still available."})
        return httpx.Response(200, json={"messages": [{"id": "wamid.METRICS_OUT"}]})

    http_client = httpx.Client(transport=httpx.MockTransport(handler), timeout=10.0)

    def override_http_client() -> Generator[httpx.Client, None, None]:
        try:
            yield http_client
        finally:
            pass

    app = create_app()
    app.dependency_overrides[get_http_client] = override_http_client
    client = TestClient(app)

    admitted = _sample("inbox_webhook_events_total", channel="whatsapp", outcome="admitted")
    duplicate = _sample("inbox_webhook_events_total", channel="whatsapp", outcome="duplicate")
    jobs_sent = _sample("inbox_outbound_jobs_total", outcome="sent")
    sends = _sample("inbox_outbound_sends_total", channel="whatsapp", outcome="sent")

    body = _wa_message("wamid.METRICS", now_epoch)
    for _ in range(2):
        assert client.post("/webhooks/whatsapp", content=body).status_code == 200
    assert client.post("/run-outbound", headers=runner_headers).json()["processed"] == 1

    assert _sample("inbox_webhook_events_total", channel="whatsapp", outcome="admitted") == admitted + 1
    assert _sample("inbox_webhook_events_total", channel="whatsapp", outcome="duplicate") == duplicate + 1
    assert _sample("inbox_outbound_jobs_total", outcome="sent") == jobs_sent + 1
    assert _sample("inbox_outbound_sends_total", channel="whatsapp", outcome="sent") == sends + 1

    exposed = client.get("/metrics").text
    assert "inbox_webhook_events_total" in exposed
    assert "inbox_outbound_jobs_total" in exposed
    assert "inbox_outbound_sends_total" in exposed

    app.dependency_overrides.clear()
    http_client.close()


def test_metrics_endpoint_can_be_disabled(monkeypatch) -> None:
    monkeypatch.setenv("ENABLE_PROMETHEUS_METRICS", "false")
    get_settings.cache_clear()
    client = TestClient(create_app())
    assert client.get("/metrics").status_code == 404
