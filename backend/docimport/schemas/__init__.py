from docimport.schemas.imports import (
    SubmitResponse,
    JobSnapshot,
    JobListResponse,
    SectionResponse,
    SectionListResponse,
    MappingResponse,
    ApplyResponse,
    ExtractionCallback,
    CallbackAck,
)

__all__ = [
    "SubmitResponse",
    "JobSnapshot",
    "JobListResponse",
    "SectionResponse",
    "SectionListResponse",
    "MappingResponse",
    "ApplyResponse",
    "ExtractionCallback",
    "CallbackAck",
]
