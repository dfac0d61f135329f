"""
Progress Reporter - read-only status and section queries

Nothing here takes a job lock or writes to the database, so clients may
poll at any cadence without side effects.
"""

from typing import Iterable, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from docimport.models import ImportJob, ImportSection, JobState, SectionStatus
from docimport.schemas.imports import (
    JobError,
    JobSnapshot,
    MappingResponse,
    ProgressInfo,
    SectionCounts,
    SectionResponse,
)
from docimport.services import job_store
from docimport.services.errors import SectionsNotReady


def percent_complete(job: ImportJob) -> float:
    if job.state in JobState.REVIEWABLE or job.state == JobState.APPLIED:
        return 100.0
    if not job.total_sections:
        return 0.0
    return round(min(job.sections_processed or 0, job.total_sections) * 100.0 / job.total_sections, 1)


def build_snapshot(job: ImportJob) -> JobSnapshot:
    error = None
    if job.state == JobState.FAILED:
        error = JobError(code=job.error_code, message=job.error_message)

    return JobSnapshot(
        job_id=job.id,
        target_document_id=job.target_document_id,
        filename=job.filename,
        byte_size=job.byte_size or 0,
        media_type=job.media_type,
        state=job.state,
        external_job_id=job.external_job_id,
        progress=ProgressInfo(
            stage=job.stage,
            description=job.stage_description,
            sections_total=job.total_sections,
            sections_processed=job.sections_processed or 0,
            percent_complete=percent_complete(job),
        ),
        counts=SectionCounts(
            mapped=job.mapped_count or 0,
            unmapped=job.unmapped_count or 0,
            failed=job.failed_count or 0,
        ),
        error=error,
        recent_events=list(job.recent_events or []),
        applied_sections=job.applied_sections,
        last_apply_error=job.last_apply_error,
        created_at=job.created_at,
        stage_entered_at=job.stage_entered_at,
        completed_at=job.completed_at,
        applied_at=job.applied_at,
    )


def build_section(section: ImportSection) -> SectionResponse:
    mapping = None
    if section.taxonomy_code is not None and section.status == SectionStatus.MAPPED:
        mapping = MappingResponse(
            taxonomy_code=section.taxonomy_code,
            category_code=section.category_code,
            category_title=section.category_title,
            item_code=section.item_code,
            item_title=section.item_title,
            confidence=section.confidence or 0.0,
            rationale=section.rationale,
            origin=section.mapping_origin or "auto",
        )

    return SectionResponse(
        index=section.section_index,
        page_number=section.page_number,
        section_type=section.section_type,
        heading=section.heading,
        content=section.content,
        status=section.status,
        mapping=mapping,
        unmapped_reason=section.unmapped_reason,
        reviewed_by=section.reviewed_by,
        reviewed_at=section.reviewed_at,
    )


class ProgressReporter:
    """Query surface for polling clients and the review screen."""

    async def get_status(self, db: AsyncSession, job_id: str) -> JobSnapshot:
        job = await job_store.get_job(db, job_id)
        return build_snapshot(job)

    async def get_sections(
        self,
        db: AsyncSession,
        job_id: str,
        statuses: Optional[Iterable[str]] = None,
    ) -> Tuple[ImportJob, List[ImportSection]]:
        """
        Sections ordered by index, once the job has finished processing.

        Raises:
            JobNotFound: Unknown job
            SectionsNotReady: Job still pending or processing, so "no
                sections" is never confused with "not yet available"
        """
        job = await job_store.get_job(db, job_id)
        if job.state in JobState.IN_FLIGHT:
            raise SectionsNotReady(job_id=job_id, state=job.state)
        sections = await job_store.get_sections(db, job_id, statuses)
        return job, sections

    async def list_jobs(
        self,
        db: AsyncSession,
        target_document_id: Optional[str] = None,
        state: Optional[str] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Tuple[List[JobSnapshot], int]:
        jobs, total = await job_store.list_jobs(db, target_document_id, state, page, per_page)
        return [build_snapshot(job) for job in jobs], total


_reporter: Optional[ProgressReporter] = None


def get_progress_reporter() -> ProgressReporter:
    global _reporter
    if _reporter is None:
        _reporter = ProgressReporter()
    return _reporter
