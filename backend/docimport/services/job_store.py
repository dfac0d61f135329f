"""
Job Store - persistence helpers for import jobs and their sections

Async helpers serve the API process (AsyncSession). The synchronous helpers
at the bottom serve Celery workers; they only use conditional UPDATEs so a
worker can never revive a job that the API has already finalized.
"""

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import case, select, func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from docimport.models import ImportJob, ImportSection, ImportApplyLedger, JobState, SectionStatus
from docimport.services.errors import JobNotFound


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the database stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ==================== Async (API) ====================

async def get_job(db: AsyncSession, job_id: str) -> ImportJob:
    """Load a job with fresh column values, raising JobNotFound if missing."""
    result = await db.execute(
        select(ImportJob)
        .where(ImportJob.id == job_id)
        .execution_options(populate_existing=True)
    )
    job = result.scalar_one_or_none()
    if job is None:
        raise JobNotFound(job_id=job_id)
    return job


async def get_sections(
    db: AsyncSession,
    job_id: str,
    statuses: Optional[Iterable[str]] = None,
) -> List[ImportSection]:
    """Sections of a job ordered by their position in the source document."""
    query = select(ImportSection).where(ImportSection.job_id == job_id)
    if statuses:
        query = query.where(ImportSection.status.in_(list(statuses)))
    query = query.order_by(ImportSection.section_index).execution_options(populate_existing=True)
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_section(db: AsyncSession, job_id: str, section_index: int) -> Optional[ImportSection]:
    result = await db.execute(
        select(ImportSection)
        .where(ImportSection.job_id == job_id, ImportSection.section_index == section_index)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_active_job(db: AsyncSession, target_document_id: str) -> Optional[ImportJob]:
    result = await db.execute(
        select(ImportJob).where(
            ImportJob.target_document_id == target_document_id,
            ImportJob.state.in_(list(JobState.ACTIVE)),
        )
    )
    return result.scalars().first()


async def list_jobs(
    db: AsyncSession,
    target_document_id: Optional[str] = None,
    state: Optional[str] = None,
    page: int = 1,
    per_page: int = 20,
) -> Tuple[List[ImportJob], int]:
    query = select(ImportJob)
    count_query = select(func.count(ImportJob.id))

    if target_document_id:
        query = query.where(ImportJob.target_document_id == target_document_id)
        count_query = count_query.where(ImportJob.target_document_id == target_document_id)

    if state:
        query = query.where(ImportJob.state == state)
        count_query = count_query.where(ImportJob.state == state)

    total_result = await db.execute(count_query)
    total = total_result.scalar() or 0

    query = query.order_by(ImportJob.created_at.desc(), ImportJob.id)
    query = query.offset((page - 1) * per_page).limit(per_page).execution_options(populate_existing=True)
    result = await db.execute(query)
    return list(result.scalars().all()), total


async def get_ledger(db: AsyncSession, job_id: str) -> Dict[str, ImportApplyLedger]:
    result = await db.execute(
        select(ImportApplyLedger).where(ImportApplyLedger.job_id == job_id)
    )
    return {entry.taxonomy_code: entry for entry in result.scalars().all()}


async def has_ledger_entries(db: AsyncSession, job_id: str) -> bool:
    result = await db.execute(
        select(func.count(ImportApplyLedger.id)).where(ImportApplyLedger.job_id == job_id)
    )
    return (result.scalar() or 0) > 0


async def find_stale_jobs(db: AsyncSession, inactive_since: datetime) -> List[str]:
    """Ids of in-flight jobs with no activity since the given time."""
    result = await db.execute(
        select(ImportJob.id).where(
            ImportJob.state.in_(list(JobState.IN_FLIGHT)),
            func.coalesce(ImportJob.last_message_at, ImportJob.created_at) < inactive_since,
        )
    )
    return [row[0] for row in result.all()]


async def find_overdue_completions(db: AsyncSession, signalled_before: datetime) -> List[str]:
    """Ids of processing jobs still waiting for sections after a completion signal."""
    result = await db.execute(
        select(ImportJob.id).where(
            ImportJob.state == JobState.PROCESSING,
            ImportJob.completion_signalled_at.is_not(None),
            ImportJob.completion_signalled_at < signalled_before,
        )
    )
    return [row[0] for row in result.all()]


async def find_spent_uploads(db: AsyncSession) -> List[Tuple[str, str]]:
    """(job id, upload path) for jobs past the hand-off that still reference a staged upload."""
    result = await db.execute(
        select(ImportJob.id, ImportJob.upload_path).where(
            ImportJob.state != JobState.PENDING,
            ImportJob.upload_path.is_not(None),
        )
    )
    return [(row[0], row[1]) for row in result.all()]


async def forget_upload(db: AsyncSession, job_id: str) -> None:
    await db.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.state != JobState.PENDING)
        .values(upload_path=None)
    )


# ==================== Derived fields ====================

def recount(job: ImportJob, sections: List[ImportSection]) -> None:
    """
    Recompute the denormalized counts from the section list.

    Counts stay zero until total_sections is known. Discarded sections fold
    into unmapped_count. Once a job is no longer in flight, expected sections
    that never arrived (or were never classified) count as failed, so that
    mapped + unmapped + failed == total_sections.
    """
    if job.total_sections is None:
        job.mapped_count = 0
        job.unmapped_count = 0
        job.failed_count = 0
        return

    in_range = [s for s in sections if s.section_index < job.total_sections]
    mapped = sum(1 for s in in_range if s.status == SectionStatus.MAPPED)
    unmapped = sum(1 for s in in_range if s.status in (SectionStatus.UNMAPPED, SectionStatus.DISCARDED))
    failed = sum(1 for s in in_range if s.status == SectionStatus.FAILED)
    classified = mapped + unmapped + failed

    if job.state not in JobState.IN_FLIGHT:
        failed += job.total_sections - classified

    job.mapped_count = mapped
    job.unmapped_count = unmapped
    job.failed_count = failed
    job.sections_processed = min(
        max(job.sections_processed or 0, classified),
        job.total_sections,
    )


def classified_count(job: ImportJob, sections: List[ImportSection]) -> int:
    if job.total_sections is None:
        return 0
    return sum(
        1
        for s in sections
        if s.section_index < job.total_sections and s.status != SectionStatus.PENDING
    )


def record_event(job: ImportJob, event: dict, limit: int) -> None:
    """Append to the job's rolling window of recent mapping events."""
    entry = {"at": utcnow().isoformat(), **event}
    # Reassign so SQLAlchemy sees the JSON change
    job.recent_events = (list(job.recent_events or []) + [entry])[-limit:]


def enter_stage(job: ImportJob, stage: str, description: Optional[str] = None) -> None:
    if job.stage != stage:
        job.stage = stage
        job.stage_entered_at = utcnow()
    if description is not None:
        job.stage_description = description


# ==================== Sync (Celery workers) ====================

def get_job_sync(session: Session, job_id: str) -> Optional[ImportJob]:
    return session.query(ImportJob).filter(ImportJob.id == job_id).first()


def mark_dispatched(session: Session, job_id: str, external_job_id: Optional[str]) -> bool:
    """
    Record that the extraction service accepted the document.

    Moves the job from pending to processing; returns False when the job had
    already left pending (cancelled, or callbacks arrived first).
    """
    now = utcnow()
    if external_job_id:
        session.execute(
            update(ImportJob)
            .where(ImportJob.id == job_id, ImportJob.external_job_id.is_(None))
            .values(external_job_id=external_job_id)
        )
    session.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.state.in_(list(JobState.IN_FLIGHT)))
        .values(dispatched_at=now, last_message_at=now, upload_path=None)
    )
    result = session.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.state == JobState.PENDING)
        .values(
            state=JobState.PROCESSING,
            stage="classifying",
            stage_description="Document accepted by extraction service",
            stage_entered_at=now,
        )
    )
    session.commit()
    return result.rowcount == 1


def mark_dispatch_failed(session: Session, job_id: str, error_code: str, message: str) -> bool:
    """
    Fail an in-flight job whose document could not be handed to the extraction service.

    Sections that never arrived count as failed once total_sections is known.
    """
    now = utcnow()
    missing_as_failed = case(
        (
            ImportJob.total_sections.is_not(None),
            ImportJob.total_sections - ImportJob.mapped_count - ImportJob.unmapped_count,
        ),
        else_=ImportJob.failed_count,
    )
    result = session.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.state.in_(list(JobState.IN_FLIGHT)))
        .values(
            state=JobState.FAILED,
            stage="failed",
            stage_description="Extraction service unavailable",
            stage_entered_at=now,
            error_code=error_code,
            error_message=message,
            completed_at=now,
            failed_count=missing_as_failed,
            upload_path=None,
        )
    )
    session.commit()
    return result.rowcount == 1
