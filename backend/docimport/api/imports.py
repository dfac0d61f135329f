from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile, status as http_status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
from docimport.database import get_db
from docimport.schemas import (
    ApplyResponse,
    JobListResponse,
    JobSnapshot,
    SectionListResponse,
    SectionResponse,
    SubmitResponse,
)
from docimport.auth import get_current_user
from docimport.services.apply_engine import ApplyEngine, get_apply_engine
from docimport.services.extraction_client import build_callback_url
from docimport.services.job_manager import ImportJobManager, UploadedDocument, get_job_manager
from docimport.services.progress import ProgressReporter, build_section, build_snapshot, get_progress_reporter
from docimport.services.reconciler import MappingReconciler, get_reconciler

router = APIRouter()


@router.post("", response_model=SubmitResponse, status_code=http_status.HTTP_202_ACCEPTED)
async def submit_import(
    request: Request,
    file: UploadFile = File(...),
    target_document_id: str = Form(...),
    taxonomy_name: Optional[str] = Form(None),
    db: AsyncSession = Depends(get_db),
    manager: ImportJobManager = Depends(get_job_manager),
    reviewer_id: str = Depends(get_current_user),
):
    data = await file.read()
    document = UploadedDocument(
        filename=file.filename or "upload",
        media_type=file.content_type or "",
        data=data,
    )
    job = await manager.submit(
        db,
        document,
        target_document_id=target_document_id,
        taxonomy_name=taxonomy_name,
        callback_url=build_callback_url(str(request.base_url), manager.settings),
        submitted_by=reviewer_id,
    )
    return SubmitResponse(
        job_id=job.id,
        status=job.state,
        message="Document accepted for processing",
    )


@router.get("", response_model=JobListResponse)
async def list_imports(
    target_document_id: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    reporter: ProgressReporter = Depends(get_progress_reporter),
    _: str = Depends(get_current_user),
):
    jobs, total = await reporter.list_jobs(db, target_document_id, state, page, per_page)
    return JobListResponse(jobs=jobs, total=total, page=page, per_page=per_page)


@router.get("/{job_id}", response_model=JobSnapshot)
async def get_import_status(
    job_id: str,
    db: AsyncSession = Depends(get_db),
    reporter: ProgressReporter = Depends(get_progress_reporter),
    _: str = Depends(get_current_user),
):
    return await reporter.get_status(db, job_id)


@router.get("/{job_id}/sections", response_model=SectionListResponse)
async def list_sections(
    job_id: str,
    status: Optional[List[str]] = Query(None),
    db: AsyncSession = Depends(get_db),
    reporter: ProgressReporter = Depends(get_progress_reporter),
    _: str = Depends(get_current_user),
):
    job, sections = await reporter.get_sections(db, job_id, status)
    return SectionListResponse(
        job_id=job.id,
        state=job.state,
        sections=[build_section(section) for section in sections],
    )


@router.post("/{job_id}/sections/{section_index}/discard", response_model=SectionResponse)
async def discard_mapping(
    job_id: str,
    section_index: int,
    db: AsyncSession = Depends(get_db),
    reconciler: MappingReconciler = Depends(get_reconciler),
    reviewer_id: str = Depends(get_current_user),
):
    section = await reconciler.discard_mapping(db, job_id, section_index, reviewer_id)
    return build_section(section)


@router.post("/{job_id}/apply", response_model=ApplyResponse)
async def apply_import(
    job_id: str,
    db: AsyncSession = Depends(get_db),
    engine: ApplyEngine = Depends(get_apply_engine),
    reviewer_id: str = Depends(get_current_user),
):
    result = await engine.apply(db, job_id, applied_by=reviewer_id)
    return ApplyResponse(
        job_id=result.job.id,
        state=result.job.state,
        sections_applied=result.sections_applied,
        fields_written=result.fields_written,
        fields_skipped=result.fields_skipped,
    )


@router.post("/{job_id}/cancel", response_model=JobSnapshot)
async def cancel_import(
    job_id: str,
    db: AsyncSession = Depends(get_db),
    manager: ImportJobManager = Depends(get_job_manager),
    _: str = Depends(get_current_user),
):
    job = await manager.cancel(db, job_id)
    return build_snapshot(job)
