from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional


# ==================== Reviewer surface ====================

class SubmitResponse(BaseModel):
    job_id: str
    status: str
    message: str


class SectionCounts(BaseModel):
    mapped: int = 0
    unmapped: int = 0
    failed: int = 0


class ProgressInfo(BaseModel):
    stage: str
    description: Optional[str] = None
    sections_total: Optional[int] = None
    sections_processed: int = 0
    percent_complete: float = 0.0


class JobError(BaseModel):
    code: Optional[str] = None
    message: Optional[str] = None


class JobSnapshot(BaseModel):
    job_id: str
    target_document_id: str
    filename: str
    byte_size: int
    media_type: str
    state: str
    external_job_id: Optional[str] = None
    progress: ProgressInfo
    counts: SectionCounts
    error: Optional[JobError] = None
    recent_events: List[Dict[str, Any]] = []
    applied_sections: Optional[int] = None
    last_apply_error: Optional[str] = None
    created_at: Optional[datetime] = None
    stage_entered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    applied_at: Optional[datetime] = None


class JobListResponse(BaseModel):
    jobs: List[JobSnapshot]
    total: int
    page: int
    per_page: int


class MappingResponse(BaseModel):
    taxonomy_code: str
    category_code: str
    category_title: Optional[str] = None
    item_code: str
    item_title: Optional[str] = None
    confidence: float
    rationale: Optional[str] = None
    origin: str


class SectionResponse(BaseModel):
    index: int
    page_number: Optional[int] = None
    section_type: str
    heading: Optional[str] = None
    content: str
    status: str
    mapping: Optional[MappingResponse] = None
    unmapped_reason: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None


class SectionListResponse(BaseModel):
    job_id: str
    state: str
    sections: List[SectionResponse]


class ApplyResponse(BaseModel):
    job_id: str
    state: str
    sections_applied: int
    fields_written: int
    fields_skipped: int


# ==================== Extraction service callbacks ====================

class CallbackCode(BaseModel):
    code: str
    title: Optional[str] = None


class CallbackMatch(BaseModel):
    status: Literal["matched", "unmatched", "error"]
    standard: Optional[CallbackCode] = None
    subspecification: Optional[CallbackCode] = None
    confidence: Optional[float] = None
    rationale: Optional[str] = None
    error: Optional[str] = None


class CallbackSection(BaseModel):
    heading: Optional[str] = None
    rich_text_content: str = Field("", alias="richTextContent")
    page_number: Optional[int] = Field(None, alias="pageNumber")
    section_type: Optional[str] = Field(None, alias="sectionType")
    match: Optional[CallbackMatch] = None

    class Config:
        populate_by_name = True


class ExtractionCallback(BaseModel):
    """One record of the extraction service's message stream."""

    type: Literal["progress", "section_result", "complete", "error"] = "section_result"
    document_id: str = Field(..., alias="documentId")
    job_id: Optional[str] = Field(None, alias="jobId")
    spec_name: Optional[str] = Field(None, alias="specName")
    more_data: bool = Field(True, alias="moreData")
    section_index: Optional[int] = Field(None, alias="sectionIndex")
    total_sections: Optional[int] = Field(None, alias="totalSections")
    sections_processed: Optional[int] = Field(None, alias="sectionsProcessed")
    stage: Optional[str] = None
    stage_description: Optional[str] = Field(None, alias="stageDescription")
    section: Optional[CallbackSection] = None
    error: Optional[str] = None
    error_code: Optional[str] = Field(None, alias="errorCode")

    class Config:
        populate_by_name = True


class CallbackAck(BaseModel):
    success: bool = True
    document_id: str
    status: str
    accepted: bool
    reason: Optional[str] = None
    sections_total: Optional[int] = None
    sections_processed: int = 0
    mapped_count: int = 0
    unmapped_count: int = 0
