"""
Celery Application Configuration

Configures Celery for the out-of-band extraction hand-off with:
- Redis as message broker and result backend
- Task autodiscovery from docimport.tasks
- Late acknowledgement so a lost worker re-runs the hand-off

Usage:
    # Start worker:
    celery -A docimport.celery worker --loglevel=info

    # Enqueue a task:
    from docimport.tasks.imports import dispatch_extraction
    dispatch_extraction.delay("import-123")
"""

from celery import Celery
from docimport.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    "document_import",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# Configure Celery
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Worker settings
    worker_prefetch_multiplier=1,  # Fair task distribution
    worker_concurrency=4,

    # Result settings
    result_expires=3600,
    task_track_started=True,

    # Retry settings
    task_acks_late=True,  # Acknowledge after completion
    task_reject_on_worker_lost=True,

    task_routes={
        "docimport.tasks.imports.dispatch_extraction": {"queue": "extraction"},
        "docimport.tasks.imports.send_cancel_signal": {"queue": "extraction"},
    },

    # Default queue
    task_default_queue="default",
)

# Autodiscover tasks
celery_app.autodiscover_tasks(["docimport.tasks"])
