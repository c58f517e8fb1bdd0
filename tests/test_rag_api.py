"""Tests for the SiteChat HTTP and WebSocket API.

The app is driven with a service container built around the in-memory
SQLite store, fake embedding and completion backends and a mocked job
manager. Startup is not run, so no external service is contacted.
"""

from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from indexer.models import ChunkMetadata, CrawlStatus, PendingChunk, utcnow
from server.composer import FALLBACK_ANSWER
from server.job_handlers import CRAWL_JOB
from server.jobs import JobRecord, JobStatus
from server.rag_api import app
from server.services import create_services

from helpers import FakeFetcher, FakeLLM, KeywordEmbeddingBackend, run

client = TestClient(app)


@pytest.fixture
def jobs():
    jobs = Mock()
    jobs.is_running = True
    jobs.backend = "memory"
    jobs.enqueue_job = AsyncMock(return_value="job-123")
    jobs.get_job_status = AsyncMock(return_value=None)
    jobs.list_jobs = AsyncMock(return_value=[])
    return jobs


@pytest.fixture
def llm():
    return FakeLLM(reply="The starter plan is $10 per month.")


@pytest.fixture
def services(store, settings, jobs, llm):
    services = create_services(
        settings, store,
        embedding_backend=KeywordEmbeddingBackend(),
        llm=llm,
        jobs=jobs,
        fetcher_factory=lambda: FakeFetcher({}),
    )
    app.state.services = services
    yield services
    app.state.services = None


@pytest.fixture
def indexed(store, website):
    run(store.insert_chunks([PendingChunk(
        website_id=website.id,
        content="Starter plan is $10 per month.",
        url="https://example.com/pricing",
        metadata=ChunkMetadata(source_domain=website.domain, chunk_index=0, total_chunks=1),
        embedding=[1.0, 0.0, 0.0],
    )]))
    return website


class TestChatEndpoint:
    """Test suite for POST /api/chat."""

    def test_chat_answers_with_sources(self, services, indexed):
        response = client.post("/api/chat", json={"message": "What is the pricing?", "tenantId": "key-example"})

        assert response.status_code == 200
        data = response.json()
        assert data["type"] == "response"
        assert data["content"] == "The starter plan is $10 per month."
        assert data["metadata"] == {"sources": ["https://example.com/pricing"], "contextSources": 1}
        assert data["sessionId"]

    def test_session_continues_with_returned_id(self, services, indexed, llm):
        first = client.post("/api/chat", json={"message": "What is the pricing?", "tenantId": "key-example"})
        session_id = first.json()["sessionId"]

        second = client.post("/api/chat", json={
            "message": "Any discounts?", "tenantId": "key-example", "sessionId": session_id,
        })

        assert second.json()["sessionId"] == session_id
        assert "User: What is the pricing?" in llm.prompts[-1]

    def test_chat_by_website_id(self, services, indexed):
        response = client.post("/api/chat", json={"message": "pricing", "tenantId": indexed.id})
        assert response.status_code == 200

    @pytest.mark.parametrize("payload,detail", [
        ({"tenantId": "key-example"}, "Message is required"),
        ({"message": "   ", "tenantId": "key-example"}, "Message is required"),
        ({"message": "hello"}, "tenantId is required"),
    ])
    def test_chat_validation(self, services, website, payload, detail):
        response = client.post("/api/chat", json=payload)
        assert response.status_code == 400
        assert response.json()["detail"] == detail

    def test_chat_unknown_website(self, services):
        response = client.post("/api/chat", json={"message": "hello", "tenantId": "nope"})
        assert response.status_code == 404
        assert response.json()["detail"] == "Website not found"

    def test_chat_deactivated_website(self, services, store, website):
        run(store.deactivate_website(website.id))
        response = client.post("/api/chat", json={"message": "hello", "tenantId": "key-example"})
        assert response.status_code == 404

    def test_chat_failure_returns_fallback(self, services, website):
        services.chat.handle_message = AsyncMock(side_effect=RuntimeError("disk full"))

        response = client.post("/api/chat", json={"message": "hello", "tenantId": "key-example"})

        assert response.status_code == 500
        data = response.json()
        assert data["content"] == FALLBACK_ANSWER
        assert data["metadata"] == {"sources": [], "contextSources": 0}
        assert data["sessionId"]

    def test_llm_failure_still_answers(self, services, indexed, llm):
        llm.error = RuntimeError("upstream 503")

        response = client.post("/api/chat", json={"message": "pricing", "tenantId": "key-example"})

        assert response.status_code == 200
        assert response.json()["content"] == FALLBACK_ANSWER
        assert response.json()["metadata"]["sources"] == []


class TestCrawlEndpoints:

    def test_start_crawl(self, services, store, website, jobs):
        response = client.post("/api/crawl", json={"tenantId": "key-example", "options": {"maxPages": 5}})

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Crawl started successfully", "jobId": "job-123"}
        jobs.enqueue_job.assert_awaited_once_with(
            CRAWL_JOB, {"website_id": website.id, "claimed": True, "options": {"max_pages": 5}}
        )
        assert run(store.get_website(website.id)).crawl_status == CrawlStatus.CRAWLING

    def test_start_crawl_without_options(self, services, website, jobs):
        client.post("/api/crawl", json={"tenantId": "key-example"})
        jobs.enqueue_job.assert_awaited_once_with(CRAWL_JOB, {"website_id": website.id, "claimed": True})

    def test_second_request_rejected_while_queued(self, services, website, jobs):
        first = client.post("/api/crawl", json={"tenantId": "key-example"})
        second = client.post("/api/crawl", json={"tenantId": "key-example"})

        assert first.status_code == 200
        assert second.status_code == 409
        assert second.json()["detail"] == "Website is already being crawled"
        jobs.enqueue_job.assert_awaited_once()

    def test_crawl_requires_known_website(self, services):
        assert client.post("/api/crawl", json={}).status_code == 400
        assert client.post("/api/crawl", json={"tenantId": "nope"}).status_code == 404

    def test_crawl_conflict_while_crawling(self, services, store, website, jobs):
        run(store.try_begin_crawl(website.id))

        response = client.post("/api/crawl", json={"tenantId": "key-example"})

        assert response.status_code == 409
        assert response.json()["detail"] == "Website is already being crawled"
        jobs.enqueue_job.assert_not_awaited()

    def test_stale_crawl_can_be_restarted(self, services, store, website):
        run(store.try_begin_crawl(website.id))
        store.conn.execute(
            "UPDATE websites SET crawl_started_at = ? WHERE id = ?",
            ("2000-01-01T00:00:00+00:00", website.id),
        )
        store.conn.commit()

        assert client.post("/api/crawl", json={"tenantId": "key-example"}).status_code == 200

    def test_enqueue_failure_releases_claim(self, services, store, website, jobs):
        jobs.enqueue_job.side_effect = RuntimeError("Job manager not initialized")

        response = client.post("/api/crawl", json={"tenantId": "key-example"})

        assert response.status_code == 500
        assert run(store.get_website(website.id)).crawl_status == CrawlStatus.FAILED

    def test_crawl_status(self, services, indexed):
        response = client.get("/api/crawl/status", params={"tenantId": "key-example"})

        assert response.status_code == 200
        data = response.json()
        assert data["documentCount"] == 1
        assert data["website"]["domain"] == "example.com"
        assert data["website"]["crawl_status"] == "pending"
        assert "api_key" not in data["website"]

    def test_crawl_status_errors(self, services):
        assert client.get("/api/crawl/status").status_code == 400
        assert client.get("/api/crawl/status", params={"tenantId": "nope"}).status_code == 404


class TestJobEndpoints:

    def test_job_status(self, services, jobs):
        jobs.get_job_status.return_value = JobRecord(
            id="job-123", type=CRAWL_JOB, status=JobStatus.DONE, created_at=utcnow(),
            result={"success": True, "pagesProcessed": 4},
        )

        response = client.get("/api/jobs/job-123")

        assert response.status_code == 200
        assert response.json()["status"] == "done"
        assert response.json()["result"]["pagesProcessed"] == 4

    def test_job_not_found(self, services):
        response = client.get("/api/jobs/missing")
        assert response.status_code == 404
        assert response.json()["detail"] == "Job not found"

    def test_list_jobs_invalid_status(self, services):
        assert client.get("/api/jobs", params={"status": "exploded"}).status_code == 400


class TestAdminEndpoints:

    @pytest.fixture(autouse=True)
    def admin_token(self, services):
        services.settings.admin_token = "secret"

    def test_register_website(self, services):
        response = client.post(
            "/api/websites", json={"domain": "acme.test", "name": "Acme"}, headers={"X-Admin-Token": "secret"}
        )

        assert response.status_code == 201
        data = response.json()
        assert data["domain"] == "acme.test"
        assert data["api_key"]
        assert run(services.store.get_website(data["api_key"])).name == "Acme"

    def test_register_requires_token(self, services):
        response = client.post("/api/websites", json={"domain": "acme.test", "name": "Acme"})
        assert response.status_code == 401

        response = client.post(
            "/api/websites", json={"domain": "acme.test", "name": "Acme"}, headers={"X-Admin-Token": "wrong"}
        )
        assert response.status_code == 401

    def test_duplicate_domain(self, services, website):
        response = client.post(
            "/api/websites", json={"domain": "example.com", "name": "Again"}, headers={"X-Admin-Token": "secret"}
        )
        assert response.status_code == 409

    def test_deactivate(self, services, website):
        response = client.post(f"/api/websites/{website.id}/deactivate", headers={"X-Admin-Token": "secret"})

        assert response.status_code == 200
        assert run(services.store.get_website(website.id)) is None
        assert client.post("/api/websites/missing/deactivate",
                           headers={"X-Admin-Token": "secret"}).status_code == 404


class TestChatWebSocket:

    def test_conversation(self, services, indexed):
        with client.websocket_connect("/ws/chat?tenantId=key-example") as ws:
            welcome = ws.receive_json()
            assert welcome["type"] == "system"
            assert "Example Co" in welcome["content"]
            assert len(services.sessions) == 1

            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"

            ws.send_json({"type": "message", "content": "What is the pricing?"})
            assert ws.receive_json()["type"] == "typing"
            reply = ws.receive_json()

        assert reply["type"] == "message"
        assert reply["content"] == "The starter plan is $10 per month."
        assert reply["sessionId"] == welcome["sessionId"]
        assert reply["metadata"] == {"sources": ["https://example.com/pricing"], "contextSources": 1}

    def test_invalid_frames(self, services, website):
        with client.websocket_connect("/ws/chat?tenantId=key-example") as ws:
            ws.receive_json()

            ws.send_text("not json")
            frame = ws.receive_json()
            assert frame["type"] == "error"
            assert frame["content"] == "Invalid message format"

            ws.send_json({"type": "message", "content": ""})
            assert ws.receive_json()["type"] == "error"

    def test_resume_session(self, services, website, store):
        session = run(store.create_session(website.id, "resume-me"))

        with client.websocket_connect("/ws/chat?tenantId=key-example&sessionToken=resume-me") as ws:
            assert ws.receive_json()["sessionId"] == "resume-me"
            assert session.id in services.sessions

    def test_unknown_tenant_rejected(self, services):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws/chat?tenantId=nope") as ws:
                ws.receive_json()
        assert exc_info.value.code == 1008

    def test_missing_tenant_rejected(self, services):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws/chat") as ws:
                ws.receive_json()

    def test_session_setup_failure_sends_error(self, services, website):
        services.chat.resolve_session = AsyncMock(side_effect=ConnectionError("database unavailable"))

        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws/chat?tenantId=key-example") as ws:
                frame = ws.receive_json()
                assert frame == {"type": "error", "content": FALLBACK_ANSWER, "timestamp": frame["timestamp"]}
                ws.receive_json()

        assert exc_info.value.code == 1011
        assert len(services.sessions) == 0


class TestCORS:

    def preflight(self, origin):
        return client.options("/api/chat", headers={
            "Origin": origin,
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "Content-Type",
        })

    def test_any_origin_by_default(self, services):
        response = self.preflight("https://shop.test")

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"

    def test_origins_from_settings(self, services):
        services.settings.cors_origins = ["https://shop.test"]

        allowed = self.preflight("https://shop.test")
        denied = self.preflight("https://evil.test")

        assert allowed.status_code == 200
        assert allowed.headers["access-control-allow-origin"] == "https://shop.test"
        assert denied.status_code == 400
