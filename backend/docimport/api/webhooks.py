"""
Extraction service callbacks

The service posts one record per message: progress updates, one record per
classified section, a completion signal, or a fatal error. Delivery is
at-least-once and unordered; the job manager makes every record idempotent.
"""

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from docimport.config import Settings, get_settings
from docimport.database import get_db
from docimport.models import JobState
from docimport.schemas import CallbackAck, ExtractionCallback
from docimport.services.job_manager import (
    ImportJobManager,
    SectionResult,
    StageUpdate,
    UpdateOutcome,
    get_job_manager,
)

logger = logging.getLogger(__name__)

router = APIRouter()

ERROR_EXTRACTION = "extraction_error"


def verify_callback_token(
    token: Optional[str] = Query(None),
    x_callback_token: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.callback_token:
        return
    supplied = x_callback_token or token or ""
    if not secrets.compare_digest(supplied, settings.callback_token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid callback token",
        )


def to_section_result(payload: ExtractionCallback) -> SectionResult:
    section = payload.section
    match = section.match
    result = SectionResult(
        section_index=payload.section_index,
        outcome=match.status if match else "unmatched",
        content=section.rich_text_content,
        heading=section.heading,
        page_number=section.page_number,
        section_type=section.section_type,
        total_sections=payload.total_sections,
        external_job_id=payload.job_id,
    )
    if match:
        result.confidence = match.confidence
        result.rationale = match.rationale
        result.error = match.error
        if match.standard:
            result.category_code = match.standard.code
            result.category_title = match.standard.title
        if match.subspecification:
            result.item_code = match.subspecification.code
            result.item_title = match.subspecification.title
    return result


def build_ack(payload: ExtractionCallback, outcome: UpdateOutcome) -> CallbackAck:
    job = outcome.job
    return CallbackAck(
        document_id=payload.document_id,
        status=job.state,
        accepted=outcome.accepted,
        reason=outcome.reason,
        sections_total=job.total_sections,
        sections_processed=job.sections_processed or 0,
        mapped_count=job.mapped_count or 0,
        unmapped_count=job.unmapped_count or 0,
    )


@router.post("/extraction/callback", response_model=CallbackAck)
async def extraction_callback(
    payload: ExtractionCallback,
    db: AsyncSession = Depends(get_db),
    manager: ImportJobManager = Depends(get_job_manager),
    _: None = Depends(verify_callback_token),
):
    job_id = payload.document_id
    logger.info(
        f"Callback for import {job_id}: type={payload.type}, "
        f"section={payload.section_index}/{payload.total_sections}, moreData={payload.more_data}"
    )

    if payload.type == "error" or (payload.error and payload.section is None):
        outcome = await manager.on_failure(
            db,
            job_id,
            payload.error_code or ERROR_EXTRACTION,
            payload.error or "Extraction service reported an error",
        )
        return build_ack(payload, outcome)

    if payload.type == "progress":
        outcome = await manager.on_progress(
            db,
            job_id,
            StageUpdate(
                stage=payload.stage or "classifying",
                description=payload.stage_description,
                total_sections=payload.total_sections,
                sections_processed=payload.sections_processed,
                external_job_id=payload.job_id,
            ),
        )
        return build_ack(payload, outcome)

    if payload.type == "section_result":
        if payload.section is None or payload.section_index is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="section_result requires section and sectionIndex",
            )
        outcome = await manager.on_section_result(db, job_id, to_section_result(payload))
        if not payload.more_data and outcome.job.state in JobState.IN_FLIGHT:
            outcome = await manager.on_complete(db, job_id, payload.total_sections, payload.job_id)
        return build_ack(payload, outcome)

    outcome = await manager.on_complete(db, job_id, payload.total_sections, payload.job_id)
    return build_ack(payload, outcome)
