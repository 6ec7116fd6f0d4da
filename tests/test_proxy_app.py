import pytest
from fastapi.testclient import TestClient

from conftest import respond

from rhinospider.backend import ProxyBackendClient
from rhinospider.config import SubmissionConfig
from rhinospider.fetch import FetchResponse
from rhinospider.models import AckOutcome, SubmissionRecord, Topic
from rhinospider import proxy_app
from rhinospider.proxy_app import app, reset_search_limits
from rhinospider.storage import count_scraped_data, upsert_topic
from rhinospider.submission import SubmissionPipeline

SAMPLES = ["https://news.acme.org/a1", "https://news.acme.org/a2"]


@pytest.fixture
def client():
    reset_search_limits()
    return TestClient(app)


def _payload(**overrides):
    payload = {
        "principalId": "principal-1",
        "url": "https://news.acme.org/a1",
        "content": "Acme ships a model.",
        "topicId": "ai",
        "deviceId": "ext_1",
        "scrapedData": {"id": "ai-1", "timestamp": 1700000000, "status": "completed"},
    }
    payload.update(overrides)
    return payload


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_submit_then_duplicate(client, conn):
    first = client.post("/api/consumer-submit", json=_payload())
    assert first.status_code == 200
    body = first.json()["ok"]
    assert body["dataSubmitted"] is True
    assert body["submissionId"] == "ai-1"
    assert body["result"] == {"ok": None}

    second = client.post("/api/submit", json=_payload())
    assert second.json() == {"err": {"AlreadyExists": None}}
    assert count_scraped_data(conn, "principal-1") == 1


def test_submit_aliases_store_distinct_records(client, conn):
    for index, path in enumerate(["/api/submit", "/api/consumer-submit", "/api/submit-scraped-content"]):
        response = client.post(path, json=_payload(scrapedData={"id": f"ai-{index}"}))
        assert "ok" in response.json()
    assert count_scraped_data(conn) == 3

    profile = client.post("/api/profile", json={"principalId": "principal-1"})
    assert profile.json() == {"ok": {"principalId": "principal-1", "submissions": 3}}


def test_submit_without_id_generates_one(client):
    response = client.post("/api/submit", json=_payload(scrapedData=None))
    assert response.json()["ok"]["submissionId"].startswith("ai-")


def test_submit_validates_input(client):
    response = client.post("/api/submit", json=_payload(url=None, content=""))
    assert response.status_code == 400
    assert response.json() == {"err": {"InvalidInput": "missing url, content"}}

    response = client.post("/api/submit", json=_payload(url="http://localhost/admin"))
    assert response.status_code == 400
    assert "InvalidInput" in response.json()["err"]


def test_submit_rejects_malformed_scraped_data(client, conn):
    response = client.post("/api/submit", json=_payload(scrapedData={"id": "ai-1", "timestamp": "yesterday"}))
    assert response.status_code == 422
    response = client.post("/api/submit", json=_payload(scrapedData={"id": "ai-1", "scraping_time": "slow"}))
    assert response.status_code == 422
    assert count_scraped_data(conn) == 0


def test_search_windows_drop_idle_extensions(client, monkeypatch):
    clock = [1000.0]
    monkeypatch.setattr(proxy_app.time, "monotonic", lambda: clock[0])
    assert proxy_app._check_search_rate("ext_1") is None
    assert proxy_app._check_search_rate("ext_2") is None
    assert set(proxy_app._search_windows) == {"ext_1", "ext_2"}

    clock[0] += 61
    assert proxy_app._check_search_rate("ext_3") is None
    assert set(proxy_app._search_windows) == {"ext_3"}


def test_submit_unknown_topic_is_not_found(client, conn):
    upsert_topic(conn, Topic(id="rust", name="Rust"))
    response = client.post("/api/submit", json=_payload())
    assert response.json()["err"] == {"NotFound": None}
    assert count_scraped_data(conn) == 0


def test_topics_list(client, conn):
    assert client.post("/api/topics", json={}).json() == {"ok": []}
    upsert_topic(conn, Topic(id="ai", name="AI", sample_article_urls=list(SAMPLES)))
    [topic] = client.post("/api/topics", json={"principalId": "principal-1"}).json()["ok"]
    assert topic["id"] == "ai"
    assert topic["sampleArticleUrls"] == SAMPLES


def test_profile_requires_principal(client):
    assert client.post("/api/profile", json={}).status_code == 400


def test_password_is_enforced(client, monkeypatch):
    monkeypatch.setenv("RS_PROXY_PASSWORD", "s3cret")
    assert client.post("/api/submit", json=_payload()).status_code == 401
    assert client.post("/api/topics", json={}, headers={"Authorization": "Bearer nope"}).status_code == 401
    response = client.post("/api/submit", json=_payload(), headers={"Authorization": "Bearer s3cret"})
    assert response.status_code == 200
    assert client.get("/api/health").status_code == 200


def _search(client, **overrides):
    payload = {
        "extensionId": "ext_1",
        "topics": [{"id": "ai", "name": "AI", "sampleArticleUrls": SAMPLES}],
        "batchSize": 5,
    }
    payload.update(overrides)
    return client.post("/api/search", json=payload)


def test_search_serves_fresh_urls_per_extension(client, fake_fetch, monkeypatch):
    monkeypatch.setattr(app.state, "fetch", fake_fetch, raising=False)

    first = _search(client)
    assert first.status_code == 200
    served = first.json()["urls"]["ai"]
    assert [item["url"] for item in served] == SAMPLES
    assert {item["source"] for item in served} == {"sample"}

    assert _search(client).json()["urls"]["ai"] == []
    other = _search(client, extensionId="ext_2").json()["urls"]["ai"]
    assert [item["url"] for item in other] == SAMPLES

    again = _search(client, reset=True).json()["urls"]["ai"]
    assert [item["url"] for item in again] == SAMPLES


def test_search_fills_batch_from_feeds(client, fake_fetch, monkeypatch):
    monkeypatch.setattr(app.state, "fetch", fake_fetch, raising=False)
    fake_fetch.add(
        "https://news.acme.org/feed",
        respond(
            200,
            """<?xml version="1.0"?><rss version="2.0"><channel><title>Acme</title>
            <item><title>AI roundup</title><link>https://news.acme.org/ai-roundup</link></item>
            </channel></rss>""",
            {"Content-Type": "application/rss+xml"},
        ),
    )
    served = _search(client).json()["urls"]["ai"]
    assert [item["url"] for item in served] == SAMPLES + ["https://news.acme.org/ai-roundup"]
    assert served[-1] == {
        "url": "https://news.acme.org/ai-roundup",
        "title": "AI roundup",
        "source": "rss",
        "discoveredAt": served[-1]["discoveredAt"],
    }
    assert _search(client).json()["urls"]["ai"] == []


def test_search_validates_and_rate_limits(client, fake_fetch, monkeypatch):
    monkeypatch.setattr(app.state, "fetch", fake_fetch, raising=False)
    assert client.post("/api/search", json={"topics": []}).status_code == 400

    monkeypatch.setenv("RS_SEARCH_RATE_LIMIT", "2")
    assert _search(client, topics=[]).status_code == 200
    assert _search(client, topics=[]).status_code == 200
    limited = _search(client, topics=[])
    assert limited.status_code == 429
    assert int(limited.headers["retry-after"]) >= 1
    assert _search(client, topics=[], extensionId="ext_2").status_code == 200


def test_search_skips_undecodable_topics(client, fake_fetch, monkeypatch):
    monkeypatch.setattr(app.state, "fetch", fake_fetch, raising=False)
    response = _search(client, topics=[{"name": "no id"}])
    assert response.json() == {"urls": {}}


def _client_fetch(client):
    def _fetch(url, *, method="GET", headers=None, data=None, **_):
        response = client.request(method, url.replace("http://testserver", ""), content=data, headers=headers)
        return FetchResponse(
            url=url,
            status=response.status_code,
            body=response.content,
            headers={key.lower(): value for key, value in response.headers.items()},
        )

    return _fetch


def test_submission_pipeline_against_proxy(client, conn):
    backend = ProxyBackendClient(
        "http://testserver",
        password=None,
        principal_id="principal-1",
        device_id="ext_1",
        fetch=_client_fetch(client),
    )
    pipeline = SubmissionPipeline(
        conn,
        backend,
        SubmissionConfig(
            max_attempts=3,
            base_delay_ms=0,
            max_content_chars=10000,
            reconcile_batch_size=20,
            reconcile_base_delay_seconds=60,
            reconcile_max_delay_seconds=86400,
        ),
        primary_endpoint="/api/consumer-submit",
        alternate_endpoints=["/api/submit", "/api/submit-scraped-content"],
        sleep=lambda _: None,
    )
    record = SubmissionRecord(
        id="ai-42",
        url="https://news.acme.org/a42",
        topic_id="ai",
        content="Acme ships a model.",
        status="completed",
        device_id="ext_1",
        timestamp=1700000000,
        scraping_time_ms=250,
        principal_id="principal-1",
    )

    assert pipeline.submit(record).outcome == AckOutcome.SUBMITTED
    assert pipeline.submit(record).outcome == AckOutcome.DUPLICATE
    assert backend.health() is True
    assert backend.get_profile().value == {"principalId": "principal-1", "submissions": 1}
    assert count_scraped_data(conn, "principal-1") == 1
