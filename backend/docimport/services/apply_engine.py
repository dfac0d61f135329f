"""
Apply Engine - merge accepted mappings into the target document

Flow:
    1. Check the job is under review (completed / partially_completed)
    2. Collect mapped sections in ascending index order
    3. Group them by taxonomy code; each code's content is its sections
       joined by a blank line
    4. For each code, skip it if the apply ledger already holds the same
       content hash, otherwise write it and commit a ledger entry
    5. Mark the job applied

The target document only offers per-field writes, so a failure part way
through raises PartialApplyFailure and leaves the job under review. The
ledger makes the retry write only the codes that are still missing.

The writer is called once per taxonomy code rather than once per mapped
section. Sections sharing a code are joined with the same blank-line
separator the target uses when appending, so the resulting narrative is the
same as writing them one by one, and the code is the unit of idempotency.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from docimport.config import Settings, get_settings
from docimport.middleware.metrics import record_apply_duration, record_field_write, record_transition
from docimport.models import ImportApplyLedger, ImportJob, ImportSection, JobState, SectionStatus
from docimport.services import job_store
from docimport.services.errors import AlreadyApplied, InvalidState, PartialApplyFailure
from docimport.services.job_locks import JobLockRegistry, get_job_locks, job_key
from docimport.services.target_documents import (
    NARRATIVE_SEPARATOR,
    TargetDocumentWriter,
    content_hash,
    get_target_writer,
)

logger = logging.getLogger(__name__)


@dataclass
class FieldWrite:
    taxonomy_code: str
    section_indexes: List[int] = field(default_factory=list)
    contents: List[str] = field(default_factory=list)

    @property
    def content(self) -> str:
        return NARRATIVE_SEPARATOR.join(self.contents)

    @property
    def content_hash(self) -> str:
        return content_hash(self.content)


@dataclass
class ApplyResult:
    job: ImportJob
    sections_applied: int
    fields_written: int
    fields_skipped: int


def plan_writes(sections: List[ImportSection]) -> List[FieldWrite]:
    """
    One write per taxonomy code, in order of each code's first section.

    Only mapped sections take part; discarded, unmapped and failed sections
    are left for manual attention.
    """
    writes: Dict[str, FieldWrite] = {}
    for section in sorted(sections, key=lambda s: s.section_index):
        if section.status != SectionStatus.MAPPED or section.taxonomy_code is None:
            continue
        write = writes.setdefault(section.taxonomy_code, FieldWrite(section.taxonomy_code))
        write.section_indexes.append(section.section_index)
        write.contents.append(section.content)
    return list(writes.values())


class ApplyEngine:
    def __init__(
        self,
        locks: JobLockRegistry,
        writer: TargetDocumentWriter,
        settings: Optional[Settings] = None,
    ):
        self.locks = locks
        self.writer = writer
        self.settings = settings or get_settings()

    async def apply(self, db: AsyncSession, job_id: str, applied_by: Optional[str] = None) -> ApplyResult:
        """
        Merge every mapped section into the target document.

        Raises:
            JobNotFound: Unknown job
            AlreadyApplied: Job was applied before
            InvalidState: Job is not under review
            PartialApplyFailure: A field write failed; retry converges
        """
        start_time = time.perf_counter()
        try:
            async with self.locks.hold(job_key(job_id)):
                return await self._apply_locked(db, job_id, applied_by)
        finally:
            record_apply_duration(time.perf_counter() - start_time)

    async def _apply_locked(self, db: AsyncSession, job_id: str, applied_by: Optional[str]) -> ApplyResult:
        job = await job_store.get_job(db, job_id)
        if job.state == JobState.APPLIED:
            raise AlreadyApplied(job_id=job_id)
        if job.state not in JobState.REVIEWABLE:
            raise InvalidState(
                "Only completed imports can be applied",
                job_id=job_id,
                state=job.state,
            )

        sections = await job_store.get_sections(db, job_id, [SectionStatus.MAPPED])
        plan = plan_writes(sections)
        ledger = await job_store.get_ledger(db, job_id)
        job.apply_attempts = (job.apply_attempts or 0) + 1

        written = 0
        skipped = 0
        for index, write in enumerate(plan):
            entry = ledger.get(write.taxonomy_code)
            if entry is not None and entry.content_hash == write.content_hash:
                skipped += 1
                record_field_write("skipped")
                continue

            try:
                await self.writer.write_content(job.target_document_id, write.taxonomy_code, write.content)
            except Exception as e:
                record_field_write("failed")
                job.last_apply_error = f"{write.taxonomy_code}: {e}"
                await db.commit()
                logger.error(
                    f"Apply of import {job_id} stopped at {write.taxonomy_code} "
                    f"({written + skipped}/{len(plan)} fields done): {e}"
                )
                raise PartialApplyFailure(
                    job_id=job_id,
                    taxonomy_code=write.taxonomy_code,
                    fields_done=written + skipped,
                    fields_remaining=len(plan) - index,
                ) from e

            if entry is None:
                entry = ImportApplyLedger(job_id=job_id, taxonomy_code=write.taxonomy_code)
                db.add(entry)
                ledger[write.taxonomy_code] = entry
            entry.content_hash = write.content_hash
            entry.section_count = len(write.section_indexes)
            entry.written_at = job_store.utcnow()
            await db.commit()
            written += 1
            record_field_write("written")

        sections_applied = sum(len(write.section_indexes) for write in plan)
        job.state = JobState.APPLIED
        job.applied_sections = sections_applied
        job.applied_by = applied_by
        job.applied_at = job_store.utcnow()
        job.last_apply_error = None
        job_store.enter_stage(job, "applied", f"{sections_applied} section(s) merged into the target document")
        await db.commit()

        record_transition(JobState.APPLIED)
        logger.info(
            f"Import {job_id} applied to {job.target_document_id}: {sections_applied} sections, "
            f"{written} fields written, {skipped} already present"
        )
        return ApplyResult(
            job=job,
            sections_applied=sections_applied,
            fields_written=written,
            fields_skipped=skipped,
        )


_engine: Optional[ApplyEngine] = None


def get_apply_engine() -> ApplyEngine:
    global _engine
    if _engine is None:
        _engine = ApplyEngine(get_job_locks(), get_target_writer())
    return _engine
