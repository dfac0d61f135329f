"""
Import Job Models - SQLAlchemy ORM models for the document import pipeline

One ImportJob is created per uploaded document. The extraction/classification
service reports sections back asynchronously; each becomes an ImportSection.
Accepted mappings are merged into the target document by the apply engine,
which records every written taxonomy code in the ImportApplyLedger.

Lifecycle:
    pending → processing → completed / partially_completed → applied
                         ↘ failed
    pending / processing / completed / partially_completed → cancelled
"""

from sqlalchemy import (
    Column,
    String,
    Integer,
    Float,
    Text,
    DateTime,
    JSON,
    ForeignKey,
    Index,
    UniqueConstraint,
    text,
)
from sqlalchemy.sql import func
from docimport.database import Base
import uuid


class JobState:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    APPLIED = "applied"

    ALL = (PENDING, PROCESSING, COMPLETED, PARTIALLY_COMPLETED, FAILED, CANCELLED, APPLIED)
    TERMINAL = frozenset({FAILED, CANCELLED, APPLIED})
    ACTIVE = frozenset({PENDING, PROCESSING, COMPLETED, PARTIALLY_COMPLETED})
    IN_FLIGHT = frozenset({PENDING, PROCESSING})
    REVIEWABLE = frozenset({COMPLETED, PARTIALLY_COMPLETED})


class SectionStatus:
    PENDING = "pending"
    MAPPED = "mapped"
    UNMAPPED = "unmapped"
    FAILED = "failed"
    DISCARDED = "discarded"

    ALL = (PENDING, MAPPED, UNMAPPED, FAILED, DISCARDED)


class MappingOrigin:
    AUTO = "auto"
    MANUAL = "manual"


_ACTIVE_STATES_SQL = "state IN ('pending', 'processing', 'completed', 'partially_completed')"


class ImportJob(Base):
    """
    One tracked attempt to import a document into a target document.

    Attributes:
        id: UUID primary key
        target_document_id: Document the import will eventually modify
        filename/byte_size/media_type: Source file metadata
        state: Lifecycle state (see JobState)
        external_job_id: Correlation id returned by the extraction service
        stage/stage_description: Fine-grained progress for polling
        total_sections: Known once the extraction service reports it
        sections_processed: Sections classified so far
        mapped_count/unmapped_count/failed_count: Denormalized section counts
        recent_events: Rolling window of recent mapping events (JSON)
        error_code/error_message: Set only when state is failed
        completion_signalled_at: When the service said it was done sending
        last_message_at: Last time the service (or the hand-off) reported on the job
    """

    __tablename__ = "import_jobs"
    __table_args__ = (
        # At most one active import per target document
        Index(
            "uq_import_jobs_active_target",
            "target_document_id",
            unique=True,
            sqlite_where=text(_ACTIVE_STATES_SQL),
            postgresql_where=text(_ACTIVE_STATES_SQL),
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    target_document_id = Column(String(200), nullable=False, index=True)
    filename = Column(String(500), nullable=False)
    byte_size = Column(Integer, nullable=False, default=0)
    media_type = Column(String(200), nullable=False)
    taxonomy_name = Column(String(200), nullable=True)
    upload_path = Column(String(2000), nullable=True)
    callback_url = Column(String(2000), nullable=True)
    submitted_by = Column(String(200), nullable=True)

    state = Column(String(32), nullable=False, default=JobState.PENDING, index=True)
    external_job_id = Column(String(200), nullable=True)

    stage = Column(String(100), nullable=False, default="queued")
    stage_description = Column(String(500), nullable=True)
    total_sections = Column(Integer, nullable=True)
    sections_processed = Column(Integer, nullable=False, default=0)

    mapped_count = Column(Integer, nullable=False, default=0)
    unmapped_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    recent_events = Column(JSON, nullable=False, default=list)

    error_code = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)

    applied_sections = Column(Integer, nullable=True)
    applied_by = Column(String(200), nullable=True)
    apply_attempts = Column(Integer, nullable=False, default=0)
    last_apply_error = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    stage_entered_at = Column(DateTime, nullable=True)
    dispatched_at = Column(DateTime, nullable=True)
    last_message_at = Column(DateTime, nullable=True)
    completion_signalled_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    applied_at = Column(DateTime, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.state in JobState.TERMINAL


class ImportSection(Base):
    """
    One content unit extracted from the source document.

    The mapping columns (category_code .. mapping_origin) are populated
    if and only if status is "mapped".
    """

    __tablename__ = "import_sections"
    __table_args__ = (
        UniqueConstraint("job_id", "section_index", name="uq_import_sections_job_index"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    section_index = Column(Integer, nullable=False)
    page_number = Column(Integer, nullable=True)
    section_type = Column(String(50), nullable=False, default="narrative")
    heading = Column(String(1000), nullable=True)
    content = Column(Text, nullable=False, default="")

    status = Column(String(20), nullable=False, default=SectionStatus.PENDING, index=True)

    category_code = Column(String(50), nullable=True)
    category_title = Column(String(500), nullable=True)
    item_code = Column(String(50), nullable=True)
    item_title = Column(String(500), nullable=True)
    confidence = Column(Float, nullable=True)
    rationale = Column(Text, nullable=True)
    mapping_origin = Column(String(10), nullable=True)

    unmapped_reason = Column(Text, nullable=True)
    received_count = Column(Integer, nullable=False, default=1)
    reviewed_by = Column(String(200), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    @property
    def taxonomy_code(self):
        if self.category_code is None or self.item_code is None:
            return None
        return f"{self.category_code}.{self.item_code}"

    def clear_mapping(self) -> None:
        self.category_code = None
        self.category_title = None
        self.item_code = None
        self.item_title = None
        self.confidence = None
        self.rationale = None
        self.mapping_origin = None


class ImportApplyLedger(Base):
    """Taxonomy codes already written to the target document by an apply attempt."""

    __tablename__ = "import_apply_ledger"
    __table_args__ = (
        UniqueConstraint("job_id", "taxonomy_code", name="uq_import_apply_ledger_job_code"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    taxonomy_code = Column(String(120), nullable=False)
    content_hash = Column(String(64), nullable=False)
    section_count = Column(Integer, nullable=False, default=0)
    written_at = Column(DateTime, server_default=func.now())
