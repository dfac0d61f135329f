"""
Import Pipeline Errors

Every error raised synchronously to a caller derives from ImportPipelineError
and carries a stable machine-readable code plus the HTTP status used by the
API exception handler. Errors from the asynchronous extraction call are not
raised to the submitter; they are recorded on the job as a failed state.
"""

from typing import Any, Dict, Optional


class ImportPipelineError(Exception):
    """Base class for import pipeline errors."""

    code: str = "import_error"
    status_code: int = 400
    default_message: str = "Import pipeline error"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code, **self.details}


class UnsupportedMediaType(ImportPipelineError):
    code = "unsupported_media_type"
    status_code = 415
    default_message = "Unsupported file type. Please upload PDF, DOCX, or PPTX."


class DocumentTooLarge(ImportPipelineError):
    code = "document_too_large"
    status_code = 413
    default_message = "Uploaded document exceeds the size limit"


class ImportAlreadyInProgress(ImportPipelineError):
    code = "import_already_in_progress"
    status_code = 409
    default_message = "An import is already in progress for this document"


class JobNotFound(ImportPipelineError):
    code = "job_not_found"
    status_code = 404
    default_message = "Import not found"


class SectionNotFound(ImportPipelineError):
    code = "section_not_found"
    status_code = 404
    default_message = "Section not found"


class SectionsNotReady(ImportPipelineError):
    code = "sections_not_ready"
    status_code = 409
    default_message = "Import processing not complete"


class InvalidState(ImportPipelineError):
    code = "invalid_state"
    status_code = 409
    default_message = "Operation not valid for the current import state"


class AlreadyApplied(ImportPipelineError):
    code = "already_applied"
    status_code = 409
    default_message = "Import has already been applied"


class JobBusy(ImportPipelineError):
    code = "job_busy"
    status_code = 503
    default_message = "Import is being updated, retry shortly"


class ExternalServiceFailure(ImportPipelineError):
    code = "external_service_failure"
    status_code = 502
    default_message = "Extraction service request failed"


class PartialApplyFailure(ImportPipelineError):
    code = "partial_apply_failure"
    status_code = 502
    default_message = "Not all mapped sections could be written; retry apply"
