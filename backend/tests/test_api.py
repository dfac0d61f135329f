"""
Tests for the HTTP surface

Tests cover:
- Upload, status, sections, discard, apply and cancel endpoints
- Error responses (status code and machine-readable code)
- Extraction service callbacks end to end
- Authentication of reviewers and callbacks
"""

import httpx
import pytest
from prometheus_client import REGISTRY

from docimport.auth import COOKIE_NAME, create_session_token, get_current_user
from docimport.config import get_settings
from docimport.database import get_db
from docimport.main import app
from docimport.services import job_store
from docimport.services.apply_engine import ApplyEngine, get_apply_engine
from docimport.services.job_manager import get_job_manager
from docimport.services.progress import ProgressReporter, get_progress_reporter
from docimport.services.reconciler import MappingReconciler, get_reconciler
from docimport.services.target_documents import SqlTargetDocumentWriter


PDF_UPLOAD = {"file": ("self-study.pdf", b"%PDF-1.7 narrative", "application/pdf")}


def section_callback(job_id, index, total, status="matched", category="1", item="a", more_data=True):
    match = {"status": status, "confidence": 88, "rationale": "Direct evidence"}
    if status == "matched":
        match["standard"] = {"code": category, "title": f"Standard {category}"}
        match["subspecification"] = {"code": item, "title": f"Specification {item}"}
    return {
        "type": "section_result",
        "documentId": job_id,
        "jobId": "exec-42",
        "specName": "CSHSE Standards",
        "sectionIndex": index,
        "totalSections": total,
        "moreData": more_data,
        "section": {
            "heading": f"Heading {index}",
            "richTextContent": f"<p>Content {index}</p>",
            "match": match,
        },
    }


@pytest.fixture
def app_overrides(session_factory, locks, settings, manager):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_job_manager] = lambda: manager
    app.dependency_overrides[get_progress_reporter] = lambda: ProgressReporter()
    app.dependency_overrides[get_reconciler] = lambda: MappingReconciler(locks, settings)
    app.dependency_overrides[get_apply_engine] = lambda: ApplyEngine(
        locks, SqlTargetDocumentWriter(session_factory), settings
    )
    yield app.dependency_overrides
    app.dependency_overrides.clear()


@pytest.fixture
async def client(app_overrides):
    app_overrides[get_current_user] = lambda: "reviewer-1"
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as client:
        yield client


@pytest.fixture
async def anonymous_client(app_overrides):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as client:
        yield client


async def upload(client, target="doc-1"):
    response = await client.post("/imports", files=PDF_UPLOAD, data={"target_document_id": target})
    assert response.status_code == 202
    return response.json()["job_id"]


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_metrics_endpoint(self, client):
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "import_jobs_submitted" in response.text

    @pytest.mark.asyncio
    async def test_health_checks_are_not_counted(self, client):
        await client.get("/health")

        sample = REGISTRY.get_sample_value(
            "http_requests_total",
            {"method": "GET", "endpoint": "/health", "status": "200"},
        )
        assert sample is None


class TestSubmitEndpoint:
    """Test POST /imports."""

    @pytest.mark.asyncio
    async def test_upload_returns_accepted(self, client, dispatcher):
        response = await client.post("/imports", files=PDF_UPLOAD, data={"target_document_id": "doc-1"})

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "pending"
        dispatcher.assert_called_once_with(body["job_id"])

    @pytest.mark.asyncio
    async def test_callback_url_is_recorded(self, client, db):
        job_id = await upload(client)

        job = await job_store.get_job(db, job_id)
        assert job.callback_url == "http://testserver/webhooks/extraction/callback"
        assert job.submitted_by == "reviewer-1"

    @pytest.mark.asyncio
    async def test_unsupported_media_type(self, client):
        response = await client.post(
            "/imports",
            files={"file": ("notes.txt", b"plain text", "text/plain")},
            data={"target_document_id": "doc-1"},
        )

        assert response.status_code == 415
        assert response.json()["code"] == "unsupported_media_type"

    @pytest.mark.asyncio
    async def test_too_large(self, client, settings):
        settings.max_upload_bytes = 4

        response = await client.post("/imports", files=PDF_UPLOAD, data={"target_document_id": "doc-1"})

        assert response.status_code == 413

    @pytest.mark.asyncio
    async def test_second_import_conflicts(self, client):
        first = await upload(client)

        response = await client.post("/imports", files=PDF_UPLOAD, data={"target_document_id": "doc-1"})

        assert response.status_code == 409
        assert response.json()["code"] == "import_already_in_progress"
        assert response.json()["job_id"] == first

    @pytest.mark.asyncio
    async def test_requires_authentication(self, anonymous_client):
        response = await anonymous_client.post("/imports", files=PDF_UPLOAD, data={"target_document_id": "doc-1"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_session_cookie_authenticates(self, anonymous_client):
        token = create_session_token("reviewer-7")

        response = await anonymous_client.get("/imports", headers={"Cookie": f"{COOKIE_NAME}={token}"})

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_bearer_token_authenticates(self, anonymous_client):
        response = await anonymous_client.get(
            "/imports",
            headers={"Authorization": f"Bearer {create_session_token('reviewer-7')}"},
        )
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_invalid_token_rejected(self, anonymous_client):
        response = await anonymous_client.get("/imports", headers={"Authorization": "Bearer not-a-token"})
        assert response.status_code == 401


class TestReviewFlow:
    """Test callbacks through review and apply."""

    @pytest.mark.asyncio
    async def test_full_import_lifecycle(self, client):
        job_id = await upload(client)

        status = await client.get(f"/imports/{job_id}")
        assert status.json()["state"] == "pending"

        for payload in (
            section_callback(job_id, 0, 3, category="1"),
            section_callback(job_id, 2, 3, status="unmatched"),
        ):
            ack = await client.post("/webhooks/extraction/callback", json=payload)
            assert ack.status_code == 200
            assert ack.json()["accepted"] is True

        processing = await client.get(f"/imports/{job_id}")
        assert processing.json()["state"] == "processing"
        assert processing.json()["external_job_id"] == "exec-42"
        assert processing.json()["progress"]["sections_processed"] == 2

        not_ready = await client.get(f"/imports/{job_id}/sections")
        assert not_ready.status_code == 409
        assert not_ready.json()["code"] == "sections_not_ready"

        ack = await client.post(
            "/webhooks/extraction/callback",
            json=section_callback(job_id, 1, 3, category="2", more_data=False),
        )
        assert ack.json()["status"] == "partially_completed"
        assert ack.json()["mapped_count"] == 2

        sections = await client.get(f"/imports/{job_id}/sections")
        body = sections.json()
        assert [s["index"] for s in body["sections"]] == [0, 1, 2]
        assert body["sections"][0]["mapping"]["taxonomy_code"] == "1.a"
        assert body["sections"][0]["content"] == "<h2>Heading 0</h2>\n<p>Content 0</p>"
        assert body["sections"][2]["status"] == "unmapped"

        unmapped = await client.get(f"/imports/{job_id}/sections", params={"status": "unmapped"})
        assert [s["index"] for s in unmapped.json()["sections"]] == [2]

        discarded = await client.post(f"/imports/{job_id}/sections/1/discard")
        assert discarded.status_code == 200
        assert discarded.json()["status"] == "discarded"
        assert discarded.json()["reviewed_by"] == "reviewer-1"

        applied = await client.post(f"/imports/{job_id}/apply")
        assert applied.status_code == 200
        assert applied.json()["state"] == "applied"
        assert applied.json()["sections_applied"] == 1

        again = await client.post(f"/imports/{job_id}/apply")
        assert again.status_code == 409
        assert again.json()["code"] == "already_applied"

        late = await client.post("/webhooks/extraction/callback", json=section_callback(job_id, 0, 3))
        assert late.json()["accepted"] is False
        assert late.json()["reason"] == "finalized"

    @pytest.mark.asyncio
    async def test_progress_callback(self, client):
        job_id = await upload(client)

        ack = await client.post(
            "/webhooks/extraction/callback",
            json={
                "type": "progress",
                "documentId": job_id,
                "stage": "extracting",
                "stageDescription": "Extracting text",
                "totalSections": 8,
            },
        )

        assert ack.json()["status"] == "processing"
        status = await client.get(f"/imports/{job_id}")
        assert status.json()["progress"]["stage"] == "extracting"
        assert status.json()["progress"]["sections_total"] == 8

    @pytest.mark.asyncio
    async def test_error_callback_fails_job(self, client):
        job_id = await upload(client)
        await client.post("/webhooks/extraction/callback", json=section_callback(job_id, 0, 4))

        ack = await client.post(
            "/webhooks/extraction/callback",
            json={"type": "error", "documentId": job_id, "error": "Workflow crashed", "moreData": False},
        )

        assert ack.json()["status"] == "failed"
        status = await client.get(f"/imports/{job_id}")
        assert status.json()["error"] == {"code": "extraction_error", "message": "Workflow crashed"}
        assert status.json()["counts"] == {"mapped": 1, "unmapped": 0, "failed": 3}

        apply = await client.post(f"/imports/{job_id}/apply")
        assert apply.status_code == 409
        assert apply.json()["code"] == "invalid_state"

    @pytest.mark.asyncio
    async def test_complete_callback_with_no_sections(self, client):
        job_id = await upload(client)

        ack = await client.post(
            "/webhooks/extraction/callback",
            json={"type": "complete", "documentId": job_id, "totalSections": 0, "moreData": False},
        )

        assert ack.json()["status"] == "completed"

    @pytest.mark.asyncio
    async def test_callback_for_unknown_job(self, client):
        response = await client.post(
            "/webhooks/extraction/callback",
            json=section_callback("no-such-job", 0, 1),
        )
        assert response.status_code == 404
        assert response.json()["code"] == "job_not_found"

    @pytest.mark.asyncio
    async def test_section_result_without_section_is_rejected(self, client):
        job_id = await upload(client)
        response = await client.post(
            "/webhooks/extraction/callback",
            json={"type": "section_result", "documentId": job_id, "sectionIndex": 0},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_callback_token_enforced(self, client, settings):
        settings.callback_token = "s3cret"
        job_id = await upload(client)
        payload = section_callback(job_id, 0, 1)

        rejected = await client.post("/webhooks/extraction/callback", json=payload)
        assert rejected.status_code == 401

        by_header = await client.post(
            "/webhooks/extraction/callback", json=payload, headers={"X-Callback-Token": "s3cret"}
        )
        assert by_header.status_code == 200

        by_query = await client.post("/webhooks/extraction/callback?token=s3cret", json=payload)
        assert by_query.status_code == 200


class TestCancelAndList:
    """Test cancellation and listing endpoints."""

    @pytest.mark.asyncio
    async def test_cancel(self, client, cancel_signaller):
        job_id = await upload(client)

        response = await client.post(f"/imports/{job_id}/cancel")

        assert response.status_code == 200
        assert response.json()["state"] == "cancelled"
        cancel_signaller.assert_called_once_with(job_id, None)

        again = await client.post(f"/imports/{job_id}/cancel")
        assert again.json()["state"] == "cancelled"

    @pytest.mark.asyncio
    async def test_unknown_job_status(self, client):
        response = await client.get("/imports/no-such-job")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_list_filters(self, client):
        first = await upload(client, "doc-1")
        await client.post(f"/imports/{first}/cancel")
        await upload(client, "doc-1")
        await upload(client, "doc-2")

        response = await client.get("/imports", params={"target_document_id": "doc-1", "state": "cancelled"})

        body = response.json()
        assert body["total"] == 1
        assert body["jobs"][0]["job_id"] == first
