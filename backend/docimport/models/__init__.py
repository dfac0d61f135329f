from docimport.models.import_job import (
    ImportJob,
    ImportSection,
    ImportApplyLedger,
    JobState,
    SectionStatus,
    MappingOrigin,
)
from docimport.models.document_field import TargetDocumentField

__all__ = [
    "ImportJob",
    "ImportSection",
    "ImportApplyLedger",
    "JobState",
    "SectionStatus",
    "MappingOrigin",
    "TargetDocumentField",
]
