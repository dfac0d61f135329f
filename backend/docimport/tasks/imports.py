"""
Background Tasks for Document Imports

Celery tasks for:
- Handing an uploaded document to the extraction service
- Sending a best-effort cancel signal for a cancelled import

The hand-off retries transient service failures. Once retries are exhausted
the job is failed so it never sits in pending forever. The staged upload is
deleted once the hand-off has succeeded or failed for good. Job rows are only
changed through conditional UPDATEs, so a hand-off racing a cancel or an early
callback never overwrites the newer state.
"""

import logging
import time
from pathlib import Path

from prometheus_client import Counter, Histogram

from docimport.celery import celery_app
from docimport.config import get_settings
from docimport.database import get_db_session
from docimport.models import JobState
from docimport.services.errors import ExternalServiceFailure
from docimport.services.extraction_client import build_callback_url, get_extraction_client
from docimport.services.job_manager import remove_upload
from docimport.services.job_store import get_job_sync, mark_dispatch_failed, mark_dispatched

logger = logging.getLogger(__name__)

settings = get_settings()

ERROR_UPLOAD_MISSING = "upload_missing"

# ==================== Prometheus Metrics ====================

TASK_DURATION = Histogram(
    "celery_task_duration_seconds",
    "Time spent executing Celery tasks",
    ["task_name"]
)

TASK_FAILURES = Counter(
    "celery_task_failures_total",
    "Number of Celery task failures",
    ["task_name"]
)

DOCUMENTS_DISPATCHED = Counter(
    "docimport_documents_dispatched_total",
    "Documents accepted by the extraction service"
)


# ==================== Celery Tasks ====================

@celery_app.task(
    bind=True,
    max_retries=settings.extraction_max_retries,
    default_retry_delay=settings.extraction_retry_delay_seconds,
)
def dispatch_extraction(self, job_id: str) -> dict:
    """
    Send a pending import's document to the extraction service.

    Args:
        job_id: Import job UUID

    Returns:
        Dict describing what happened to the job
    """
    start_time = time.time()
    session = get_db_session()

    try:
        job = get_job_sync(session, job_id)
        if job is None:
            logger.error(f"Import not found: {job_id}")
            return {"job_id": job_id, "error": "Import not found"}

        if job.state != JobState.PENDING:
            logger.info(f"Import {job_id} is {job.state}, skipping extraction hand-off")
            remove_upload(job.upload_path)
            return {"job_id": job_id, "skipped": True, "state": job.state}

        upload_path = job.upload_path
        try:
            data = Path(upload_path).read_bytes()
        except (OSError, TypeError) as e:
            logger.error(f"Upload for import {job_id} is unavailable: {e}")
            mark_dispatch_failed(session, job_id, ERROR_UPLOAD_MISSING, "Uploaded document is no longer available")
            remove_upload(upload_path)
            return {"job_id": job_id, "failed": True, "error": ERROR_UPLOAD_MISSING}

        callback_url = job.callback_url or build_callback_url(settings.callback_base_url, settings)
        client = get_extraction_client()
        ack = client.submit_document(
            job_id=job_id,
            filename=job.filename,
            media_type=job.media_type,
            data=data,
            callback_url=callback_url,
            taxonomy_name=job.taxonomy_name,
        )

        moved = mark_dispatched(session, job_id, ack.external_job_id)
        remove_upload(upload_path)
        DOCUMENTS_DISPATCHED.inc()
        logger.info(f"Import {job_id} handed to extraction service (external id: {ack.external_job_id})")
        return {
            "job_id": job_id,
            "external_job_id": ack.external_job_id,
            "state_changed": moved,
        }

    except ExternalServiceFailure as exc:
        TASK_FAILURES.labels(task_name="dispatch_extraction").inc()
        retryable = exc.details.get("retryable", True)
        if retryable and self.request.retries < self.max_retries:
            logger.warning(
                f"Extraction hand-off for import {job_id} failed "
                f"(attempt {self.request.retries + 1}): {exc.message}"
            )
            raise self.retry(exc=exc, countdown=settings.extraction_retry_delay_seconds)

        logger.error(f"Extraction hand-off for import {job_id} failed permanently: {exc.message}")
        mark_dispatch_failed(session, job_id, exc.code, exc.message)
        remove_upload(upload_path)
        return {"job_id": job_id, "failed": True, "error": exc.code}

    finally:
        session.close()
        duration = time.time() - start_time
        TASK_DURATION.labels(task_name="dispatch_extraction").observe(duration)


@celery_app.task(bind=True, max_retries=0)
def send_cancel_signal(self, job_id: str, external_job_id: str = None) -> bool:
    """
    Tell the extraction service to stop working on a cancelled import.

    Best effort: the job is already cancelled locally and any late callbacks
    are ignored, so failures are only logged.
    """
    start_time = time.time()
    try:
        return get_extraction_client().cancel(job_id, external_job_id)
    except Exception as e:
        TASK_FAILURES.labels(task_name="send_cancel_signal").inc()
        logger.warning(f"Cancel signal for import {job_id} failed: {e}")
        return False
    finally:
        duration = time.time() - start_time
        TASK_DURATION.labels(task_name="send_cancel_signal").observe(duration)
