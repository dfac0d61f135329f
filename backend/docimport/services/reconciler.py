"""
Mapping Reconciler - reviewer decisions on suggested mappings

Only discarding is supported: a discarded section keeps its content but
loses its mapping, so apply skips it. Remapping a section to a different
taxonomy code belongs to the target document's editor, not this pipeline.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from docimport.config import Settings, get_settings
from docimport.models import ImportSection, JobState, SectionStatus
from docimport.services import job_store
from docimport.services.errors import InvalidState, SectionNotFound
from docimport.services.job_locks import JobLockRegistry, get_job_locks, job_key

logger = logging.getLogger(__name__)


class MappingReconciler:
    def __init__(self, locks: JobLockRegistry, settings: Optional[Settings] = None):
        self.locks = locks
        self.settings = settings or get_settings()

    async def discard_mapping(
        self,
        db: AsyncSession,
        job_id: str,
        section_index: int,
        reviewer_id: Optional[str] = None,
    ) -> ImportSection:
        """
        Discard the suggested mapping of one section.

        Idempotent: discarding an already discarded section returns it
        unchanged. Never touches the target document.

        Raises:
            JobNotFound: Unknown job
            InvalidState: Job not under review, apply already started, or
                the section has no mapping to discard
            SectionNotFound: No section with that index
        """
        async with self.locks.hold(job_key(job_id)):
            job = await job_store.get_job(db, job_id)
            if job.state not in JobState.REVIEWABLE:
                raise InvalidState(
                    "Mappings can only be discarded while the import is under review",
                    job_id=job_id,
                    state=job.state,
                )

            section = await job_store.get_section(db, job_id, section_index)
            if section is None:
                raise SectionNotFound(job_id=job_id, section_index=section_index)

            if section.status == SectionStatus.DISCARDED:
                return section
            if section.status != SectionStatus.MAPPED:
                raise InvalidState(
                    "Only mapped sections can be discarded",
                    job_id=job_id,
                    section_index=section_index,
                    section_status=section.status,
                )

            # A partially applied job keeps its mapping set so a retry converges
            if await job_store.has_ledger_entries(db, job_id):
                raise InvalidState(
                    "Apply has already started for this import; retry apply instead",
                    job_id=job_id,
                    section_index=section_index,
                )

            previous_code = section.taxonomy_code
            section.status = SectionStatus.DISCARDED
            section.clear_mapping()
            section.reviewed_by = reviewer_id
            section.reviewed_at = job_store.utcnow()

            await db.flush()
            sections = await job_store.get_sections(db, job_id)
            job_store.recount(job, sections)
            job_store.record_event(
                job,
                {
                    "section_index": section_index,
                    "status": SectionStatus.DISCARDED,
                    "taxonomy_code": previous_code,
                    "reviewer": reviewer_id,
                },
                self.settings.recent_events_limit,
            )
            await db.commit()

            logger.info(f"Import {job_id}: section {section_index} mapping {previous_code} discarded")
            return section


_reconciler: Optional[MappingReconciler] = None


def get_reconciler() -> MappingReconciler:
    global _reconciler
    if _reconciler is None:
        _reconciler = MappingReconciler(get_job_locks())
    return _reconciler
