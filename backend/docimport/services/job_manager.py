"""
Import Job Manager - upload intake and the job state machine

Accepts uploads, creates jobs, hands documents to the extraction service
out-of-band (Celery), and folds the service's asynchronous messages back into
the job. The service delivers at-least-once and in any order, so every
message handler is idempotent and messages for finalized jobs are absorbed.

State machine:
    pending      --accepted by service / first message-->  processing
    processing   --all sections classified, none unmapped-->  completed
    processing   --all sections classified, some unmapped-->  partially_completed
    pending/processing  --fatal error-->  failed
    any non-terminal    --reviewer cancel-->  cancelled
    completed/partially_completed  --apply (ApplyEngine)-->  applied

All mutations of a job happen while holding its lock from JobLockRegistry.
"""

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from docimport.config import Settings, get_settings
from docimport.middleware.metrics import (
    record_ignored_callback,
    record_section_received,
    record_submission,
    record_transition,
)
from docimport.models import ImportJob, ImportSection, JobState, SectionStatus, MappingOrigin
from docimport.services import job_store
from docimport.services.errors import (
    AlreadyApplied,
    DocumentTooLarge,
    ImportAlreadyInProgress,
    InvalidState,
    UnsupportedMediaType,
)
from docimport.services.job_locks import JobLockRegistry, get_job_locks, job_key, target_key

logger = logging.getLogger(__name__)

# Fallback when the client declares a generic media type
EXTENSION_MEDIA_TYPES = {
    ".pdf": "application/pdf",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
}
GENERIC_MEDIA_TYPES = {"", "application/octet-stream", "binary/octet-stream"}

ERROR_TIMEOUT = "timeout"
ERROR_DISPATCH_FAILED = "dispatch_failed"


@dataclass
class UploadedDocument:
    filename: str
    media_type: str
    data: bytes


@dataclass
class StageUpdate:
    stage: str
    description: Optional[str] = None
    total_sections: Optional[int] = None
    sections_processed: Optional[int] = None
    external_job_id: Optional[str] = None


@dataclass
class SectionResult:
    """One classified section as reported by the extraction service."""

    section_index: int
    outcome: str  # matched, unmatched, error
    content: str = ""
    heading: Optional[str] = None
    page_number: Optional[int] = None
    section_type: Optional[str] = None
    category_code: Optional[str] = None
    category_title: Optional[str] = None
    item_code: Optional[str] = None
    item_title: Optional[str] = None
    confidence: Optional[float] = None
    rationale: Optional[str] = None
    error: Optional[str] = None
    total_sections: Optional[int] = None
    external_job_id: Optional[str] = None


@dataclass
class UpdateOutcome:
    job: ImportJob
    accepted: bool = True
    reason: Optional[str] = None


def dispatch_import(job_id: str) -> None:
    """Queue the extraction hand-off for a job."""
    # Import here to avoid circular import
    from docimport.tasks.imports import dispatch_extraction
    dispatch_extraction.delay(job_id)


def signal_cancel(job_id: str, external_job_id: Optional[str]) -> None:
    from docimport.tasks.imports import send_cancel_signal
    send_cancel_signal.delay(job_id, external_job_id)


def remove_upload(upload_path: Optional[str]) -> None:
    """Delete a staged upload once the extraction service no longer needs it."""
    if not upload_path:
        return
    try:
        Path(upload_path).unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Could not remove staged upload {upload_path}: {e}")


def compose_content(heading: Optional[str], content: str) -> str:
    if heading and content:
        return f"<h2>{heading}</h2>\n{content}"
    return content or ""


class ImportJobManager:
    """
    Owns every lifecycle transition of an import job except "applied".

    Args:
        locks: Per-job lock registry
        settings: Application settings
        dispatcher: Callable queuing the extraction hand-off for a job id
        cancel_signaller: Callable sending a best-effort cancel to the service
    """

    def __init__(
        self,
        locks: JobLockRegistry,
        settings: Optional[Settings] = None,
        dispatcher: Callable[[str], None] = dispatch_import,
        cancel_signaller: Callable[[str, Optional[str]], None] = signal_cancel,
    ):
        self.locks = locks
        self.settings = settings or get_settings()
        self.dispatcher = dispatcher
        self.cancel_signaller = cancel_signaller

    # ==================== Submission ====================

    def resolve_media_type(self, document: UploadedDocument) -> str:
        """Validate the upload and return its accepted media type."""
        if not document.data:
            raise UnsupportedMediaType("Uploaded document is empty")

        media_type = (document.media_type or "").split(";")[0].strip().lower()
        if media_type in GENERIC_MEDIA_TYPES:
            media_type = EXTENSION_MEDIA_TYPES.get(Path(document.filename or "").suffix.lower(), media_type)

        if media_type not in self.settings.accepted_media_types:
            raise UnsupportedMediaType(media_type=media_type or None)

        if len(document.data) > self.settings.max_upload_bytes:
            raise DocumentTooLarge(
                byte_size=len(document.data),
                max_bytes=self.settings.max_upload_bytes,
            )
        return media_type

    def _stage_upload(self, job_id: str, document: UploadedDocument) -> str:
        upload_dir = Path(self.settings.upload_dir)
        upload_dir.mkdir(parents=True, exist_ok=True)
        path = upload_dir / f"{job_id}{Path(document.filename or '').suffix.lower()}"
        path.write_bytes(document.data)
        return str(path)

    async def submit(
        self,
        db: AsyncSession,
        document: UploadedDocument,
        target_document_id: str,
        taxonomy_name: Optional[str] = None,
        callback_url: Optional[str] = None,
        submitted_by: Optional[str] = None,
    ) -> ImportJob:
        """
        Create a pending job and queue the extraction hand-off.

        Returns as soon as the job is stored; the extraction service is
        never awaited here.

        Raises:
            UnsupportedMediaType: Empty document or media type not accepted
            DocumentTooLarge: Document over max_upload_bytes
            ImportAlreadyInProgress: Target already has an active import
        """
        media_type = self.resolve_media_type(document)

        async with self.locks.hold(target_key(target_document_id)):
            active = await job_store.find_active_job(db, target_document_id)
            if active is not None:
                raise ImportAlreadyInProgress(
                    target_document_id=target_document_id,
                    job_id=active.id,
                )

            job_id = str(uuid.uuid4())
            upload_path = self._stage_upload(job_id, document)
            job = ImportJob(
                id=job_id,
                target_document_id=target_document_id,
                filename=document.filename or "upload",
                byte_size=len(document.data),
                media_type=media_type,
                taxonomy_name=taxonomy_name or self.settings.default_taxonomy_name,
                upload_path=upload_path,
                callback_url=callback_url,
                submitted_by=submitted_by,
                state=JobState.PENDING,
                stage="queued",
                stage_description="Waiting for extraction service",
                stage_entered_at=job_store.utcnow(),
                last_message_at=job_store.utcnow(),
                sections_processed=0,
                mapped_count=0,
                unmapped_count=0,
                failed_count=0,
                recent_events=[],
            )
            db.add(job)
            try:
                await db.commit()
            except IntegrityError:
                # Another process created an active job for the same target
                await db.rollback()
                remove_upload(upload_path)
                raise ImportAlreadyInProgress(target_document_id=target_document_id)

        record_submission()
        record_transition(JobState.PENDING)
        logger.info(
            f"Import {job.id} created for target {target_document_id} "
            f"({job.filename}, {job.byte_size} bytes)"
        )

        try:
            self.dispatcher(job.id)
        except Exception as e:
            logger.error(f"Failed to queue extraction for import {job.id}: {e}")
            outcome = await self.on_failure(db, job.id, ERROR_DISPATCH_FAILED, f"Could not queue extraction: {e}")
            return outcome.job

        return job

    # ==================== Extraction service messages ====================

    async def on_progress(self, db: AsyncSession, job_id: str, update: StageUpdate) -> UpdateOutcome:
        """Apply a stage/progress update. Updates for finished jobs are ignored."""
        async with self.locks.hold(job_key(job_id)):
            job = await job_store.get_job(db, job_id)
            if job.state not in JobState.IN_FLIGHT:
                return self._ignore(job, "finalized", f"progress '{update.stage}'")

            job.last_message_at = job_store.utcnow()
            if job.state == JobState.PENDING:
                self._transition(job, JobState.PROCESSING)
            if update.external_job_id and not job.external_job_id:
                job.external_job_id = update.external_job_id
            if update.total_sections is not None and job.total_sections is None:
                job.total_sections = max(update.total_sections, 0)
            if update.sections_processed is not None:
                job.sections_processed = max(job.sections_processed or 0, update.sections_processed)

            job_store.enter_stage(job, update.stage, update.description)

            sections = await job_store.get_sections(db, job_id)
            job_store.recount(job, sections)
            self._maybe_finish(job, sections)
            await db.commit()
            return UpdateOutcome(job)

    async def on_section_result(self, db: AsyncSession, job_id: str, result: SectionResult) -> UpdateOutcome:
        """
        Store or update one section and re-evaluate completion.

        Failed jobs still store late sections for inspection without being
        revived. Cancelled, applied and already reviewable jobs ignore them.
        """
        async with self.locks.hold(job_key(job_id)):
            job = await job_store.get_job(db, job_id)
            if job.state not in JobState.IN_FLIGHT and job.state != JobState.FAILED:
                return self._ignore(job, "finalized", f"section {result.section_index}")

            job.last_message_at = job_store.utcnow()
            if result.external_job_id and not job.external_job_id:
                job.external_job_id = result.external_job_id
            if job.total_sections is None and result.total_sections is not None:
                job.total_sections = max(result.total_sections, 0)

            if result.section_index < 0 or (
                job.total_sections is not None and result.section_index >= job.total_sections
            ):
                await db.commit()
                return self._ignore(
                    job,
                    "out_of_range",
                    f"section {result.section_index} of {job.total_sections}",
                )

            section = await job_store.get_section(db, job_id, result.section_index)
            if section is None:
                section = ImportSection(job_id=job_id, section_index=result.section_index, received_count=1)
                db.add(section)
            else:
                section.received_count = (section.received_count or 0) + 1
                logger.info(
                    f"Import {job_id}: duplicate result for section {result.section_index} "
                    f"(delivery #{section.received_count})"
                )

            self._classify(section, result)
            record_section_received(section.status)

            if job.state == JobState.PENDING:
                self._transition(job, JobState.PROCESSING)
            if job.state == JobState.PROCESSING:
                job_store.enter_stage(job, "classifying", "Classifying sections")

            await db.flush()
            sections = await job_store.get_sections(db, job_id)
            job_store.recount(job, sections)
            job_store.record_event(
                job,
                {
                    "section_index": section.section_index,
                    "status": section.status,
                    "taxonomy_code": section.taxonomy_code,
                    "confidence": section.confidence,
                },
                self.settings.recent_events_limit,
            )
            self._maybe_finish(job, sections)
            await db.commit()
            return UpdateOutcome(job)

    async def on_complete(
        self,
        db: AsyncSession,
        job_id: str,
        total_sections: Optional[int] = None,
        external_job_id: Optional[str] = None,
    ) -> UpdateOutcome:
        """
        The service has finished sending. Finalize if every expected section
        is accounted for, otherwise keep waiting for stragglers (the stale-job
        sweep finalizes after the grace period).
        """
        async with self.locks.hold(job_key(job_id)):
            job = await job_store.get_job(db, job_id)
            if job.state not in JobState.IN_FLIGHT:
                return self._ignore(job, "finalized", "completion signal")

            job.last_message_at = job_store.utcnow()
            if external_job_id and not job.external_job_id:
                job.external_job_id = external_job_id
            if job.state == JobState.PENDING:
                self._transition(job, JobState.PROCESSING)

            sections = await job_store.get_sections(db, job_id)
            if job.total_sections is None:
                if total_sections is not None:
                    job.total_sections = max(total_sections, 0)
                else:
                    job.total_sections = max((s.section_index for s in sections), default=-1) + 1

            if job.completion_signalled_at is None:
                job.completion_signalled_at = job_store.utcnow()

            job_store.recount(job, sections)
            if not self._maybe_finish(job, sections):
                missing = job.total_sections - job_store.classified_count(job, sections)
                logger.info(f"Import {job_id}: completion signalled, waiting for {missing} section(s)")
                job_store.enter_stage(job, "awaiting_sections", f"Waiting for {missing} remaining section(s)")
            await db.commit()
            return UpdateOutcome(job)

    async def on_failure(self, db: AsyncSession, job_id: str, error_code: str, message: str) -> UpdateOutcome:
        """Fail an in-flight job. Only the first fatal error is recorded."""
        async with self.locks.hold(job_key(job_id)):
            job = await job_store.get_job(db, job_id)
            if job.state not in JobState.IN_FLIGHT:
                return self._ignore(job, "finalized", f"failure '{error_code}'")

            self._transition(job, JobState.FAILED)
            job.error_code = error_code
            job.error_message = message
            job.completed_at = job_store.utcnow()
            job_store.enter_stage(job, "failed", message)

            sections = await job_store.get_sections(db, job_id)
            job_store.recount(job, sections)
            await db.commit()
            logger.warning(f"Import {job_id} failed ({error_code}): {message}")
            return UpdateOutcome(job)

    # ==================== Reviewer actions ====================

    async def cancel(self, db: AsyncSession, job_id: str) -> ImportJob:
        """
        Cancel a non-terminal job. The job is finalized immediately; the
        external service only gets a best-effort signal.
        """
        async with self.locks.hold(job_key(job_id)):
            job = await job_store.get_job(db, job_id)
            if job.state == JobState.CANCELLED:
                return job
            if job.state == JobState.APPLIED:
                raise AlreadyApplied(job_id=job_id)
            if job.state == JobState.FAILED:
                raise InvalidState("Failed imports cannot be cancelled", job_id=job_id, state=job.state)
            # A partially applied job must be able to finish its apply
            if job.state in JobState.REVIEWABLE and await job_store.has_ledger_entries(db, job_id):
                raise InvalidState(
                    "Apply has already started for this import; retry apply instead",
                    job_id=job_id,
                    state=job.state,
                )

            was_in_flight = job.state in JobState.IN_FLIGHT
            self._transition(job, JobState.CANCELLED)
            job.completed_at = job.completed_at or job_store.utcnow()
            job_store.enter_stage(job, "cancelled", "Import cancelled")

            sections = await job_store.get_sections(db, job_id)
            job_store.recount(job, sections)
            await db.commit()

        if was_in_flight:
            try:
                self.cancel_signaller(job.id, job.external_job_id)
            except Exception as e:
                logger.warning(f"Could not queue cancel signal for import {job_id}: {e}")
        return job

    # ==================== Housekeeping ====================

    async def finalize_incomplete(self, db: AsyncSession, job_id: str) -> UpdateOutcome:
        """Finalize a processing job whose missing sections never arrived."""
        async with self.locks.hold(job_key(job_id)):
            job = await job_store.get_job(db, job_id)
            if job.state != JobState.PROCESSING:
                return self._ignore(job, "finalized", "grace period expiry")

            sections = await job_store.get_sections(db, job_id)
            if job.total_sections is None:
                job.total_sections = max((s.section_index for s in sections), default=-1) + 1
            job_store.recount(job, sections)
            self._finalize(job, sections)
            await db.commit()
            return UpdateOutcome(job)

    # ==================== Internals ====================

    def _transition(self, job: ImportJob, state: str) -> None:
        previous = job.state
        job.state = state
        record_transition(state)
        logger.info(f"Import {job.id}: {previous} -> {state}")

    def _ignore(self, job: ImportJob, reason: str, what: str) -> UpdateOutcome:
        logger.info(f"Import {job.id} ({job.state}): ignoring {what} [{reason}]")
        record_ignored_callback(reason)
        return UpdateOutcome(job, accepted=False, reason=reason)

    def _classify(self, section: ImportSection, result: SectionResult) -> None:
        section.page_number = result.page_number if result.page_number is not None else result.section_index + 1
        section.section_type = result.section_type or "narrative"
        section.heading = result.heading
        section.content = compose_content(result.heading, result.content)
        section.unmapped_reason = None

        if result.outcome == "matched" and result.category_code and result.item_code:
            confidence = min(max(float(result.confidence or 0.0), 0.0), 100.0)
            if confidence >= self.settings.mapping_confidence_threshold:
                section.status = SectionStatus.MAPPED
                section.category_code = result.category_code
                section.category_title = result.category_title
                section.item_code = result.item_code
                section.item_title = result.item_title
                section.confidence = confidence
                section.rationale = result.rationale
                section.mapping_origin = MappingOrigin.AUTO
                return
            section.status = SectionStatus.UNMAPPED
            section.clear_mapping()
            section.unmapped_reason = result.rationale or f"Low confidence match ({confidence:g}%)"
        elif result.outcome == "error":
            section.status = SectionStatus.FAILED
            section.clear_mapping()
            section.unmapped_reason = result.error or "Error processing section"
        else:
            section.status = SectionStatus.UNMAPPED
            section.clear_mapping()
            section.unmapped_reason = result.rationale or "No matching standard found"

    def _maybe_finish(self, job: ImportJob, sections: List[ImportSection]) -> bool:
        if job.state != JobState.PROCESSING or job.total_sections is None:
            return False
        if job_store.classified_count(job, sections) < job.total_sections:
            return False
        self._finalize(job, sections)
        return True

    def _finalize(self, job: ImportJob, sections: List[ImportSection]) -> None:
        missing = job.total_sections - job_store.classified_count(job, sections)
        if job.unmapped_count == 0 and job.failed_count == 0 and missing == 0:
            self._transition(job, JobState.COMPLETED)
        else:
            self._transition(job, JobState.PARTIALLY_COMPLETED)
        job.completed_at = job_store.utcnow()
        job_store.recount(job, sections)
        job_store.enter_stage(
            job,
            "complete",
            f"{job.mapped_count} mapped, {job.unmapped_count} unmapped, {job.failed_count} failed",
        )


_manager: Optional[ImportJobManager] = None


def get_job_manager() -> ImportJobManager:
    global _manager
    if _manager is None:
        _manager = ImportJobManager(get_job_locks())
    return _manager
