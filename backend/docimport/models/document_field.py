"""
Target Document Field - local store for target document narratives

Used by SqlTargetDocumentWriter when no external target-document service is
configured. One row per (target document, taxonomy code).
"""

from sqlalchemy import Column, String, Integer, Text, DateTime, JSON, UniqueConstraint
from sqlalchemy.sql import func
from docimport.database import Base


class TargetDocumentField(Base):
    """
    Narrative content of one taxonomy item within a target document.

    Attributes:
        target_document_id: Owning document
        taxonomy_code: "<category>.<item>" code
        content: Narrative text; imported content is appended
        applied_hashes: SHA-256 hashes of every appended block (JSON list)
    """

    __tablename__ = "target_document_fields"
    __table_args__ = (
        UniqueConstraint("target_document_id", "taxonomy_code", name="uq_target_document_fields_code"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    target_document_id = Column(String(200), nullable=False, index=True)
    taxonomy_code = Column(String(120), nullable=False)
    content = Column(Text, nullable=False, default="")
    applied_hashes = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
