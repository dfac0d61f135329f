"""
Target Document Writers - the per-field write contract used by apply

write_content(target_document_id, taxonomy_code, content) must be idempotent
for identical arguments. Two implementations:

    - SqlTargetDocumentWriter: local target_document_fields table. Imported
      content is appended to the field's existing narrative, once per
      distinct content block (tracked by SHA-256).
    - HttpTargetDocumentWriter: PUT to an external document service with an
      Idempotency-Key derived from the arguments.
"""

import hashlib
import logging
from abc import ABC, abstractmethod
from typing import Optional
from urllib.parse import quote

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docimport.config import get_settings
from docimport.models import TargetDocumentField

logger = logging.getLogger(__name__)

NARRATIVE_SEPARATOR = "\n\n"


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class TargetDocumentWriter(ABC):
    """Base class for target document collaborators"""

    @abstractmethod
    async def write_content(self, target_document_id: str, taxonomy_code: str, content: str) -> bool:
        """Write content into one taxonomy field. Returns False if it was already there."""
        pass


class SqlTargetDocumentWriter(TargetDocumentWriter):
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def write_content(self, target_document_id: str, taxonomy_code: str, content: str) -> bool:
        digest = content_hash(content)
        async with self.session_factory() as db:
            field = await self._get_field(db, target_document_id, taxonomy_code)
            if field is None:
                db.add(
                    TargetDocumentField(
                        target_document_id=target_document_id,
                        taxonomy_code=taxonomy_code,
                        content=content,
                        applied_hashes=[digest],
                    )
                )
            elif digest in (field.applied_hashes or []):
                return False
            else:
                field.content = f"{field.content}{NARRATIVE_SEPARATOR}{content}" if field.content else content
                field.applied_hashes = list(field.applied_hashes or []) + [digest]
            await db.commit()
        return True

    async def read_content(self, target_document_id: str, taxonomy_code: str) -> Optional[str]:
        async with self.session_factory() as db:
            field = await self._get_field(db, target_document_id, taxonomy_code)
            return field.content if field else None

    async def _get_field(
        self, db: AsyncSession, target_document_id: str, taxonomy_code: str
    ) -> Optional[TargetDocumentField]:
        result = await db.execute(
            select(TargetDocumentField).where(
                TargetDocumentField.target_document_id == target_document_id,
                TargetDocumentField.taxonomy_code == taxonomy_code,
            )
        )
        return result.scalar_one_or_none()


class HttpTargetDocumentWriter(TargetDocumentWriter):
    def __init__(
        self,
        base_url: str,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def write_content(self, target_document_id: str, taxonomy_code: str, content: str) -> bool:
        url = (
            f"{self.base_url}/documents/{quote(target_document_id, safe='')}"
            f"/fields/{quote(taxonomy_code, safe='')}"
        )
        headers = {
            "Idempotency-Key": content_hash(f"{target_document_id}|{taxonomy_code}|{content}"),
        }
        async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
            response = await client.put(url, json={"content": content}, headers=headers)
            response.raise_for_status()
        logger.debug(f"Wrote {taxonomy_code} to target document {target_document_id}")
        return True


def get_target_writer() -> TargetDocumentWriter:
    """Build the configured target document writer."""
    settings = get_settings()
    if settings.target_document_backend == "http":
        return HttpTargetDocumentWriter(
            settings.target_document_url,
            timeout=settings.target_document_timeout_seconds,
        )
    from docimport.database import async_session
    return SqlTargetDocumentWriter(async_session)
