"""
Shared fixtures: an in-memory database per test, an isolated upload
directory, and a job manager whose Celery hand-off is mocked.
"""

import pytest
from unittest.mock import MagicMock
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import docimport.models  # noqa: F401
from docimport.config import Settings
from docimport.database import Base
from docimport.services.job_locks import JobLockRegistry
from docimport.services.job_manager import ImportJobManager

from factories import make_document, progress


@pytest.fixture
def settings(tmp_path):
    return Settings(
        upload_dir=str(tmp_path / "uploads"),
        callback_base_url="http://testserver",
        callback_token="",
        job_lock_backend="memory",
        job_lock_timeout_seconds=5.0,
        mapping_confidence_threshold=50.0,
        recent_events_limit=5,
    )


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def locks():
    return JobLockRegistry(backend="memory", timeout=5.0)


@pytest.fixture
def dispatcher():
    return MagicMock()


@pytest.fixture
def cancel_signaller():
    return MagicMock()


@pytest.fixture
def manager(locks, settings, dispatcher, cancel_signaller):
    return ImportJobManager(
        locks,
        settings,
        dispatcher=dispatcher,
        cancel_signaller=cancel_signaller,
    )


@pytest.fixture
def submit(db, manager):
    """Submit a document for a target and return the new job."""

    async def _submit(target_document_id="doc-1", total=None, **kwargs):
        job = await manager.submit(db, make_document(**kwargs), target_document_id)
        if total is not None:
            await manager.on_progress(db, job.id, progress(total=total))
        return job

    return _submit


@pytest.fixture
def feed(db, manager):
    """Deliver a list of section results to a job."""

    async def _feed(job_id, results):
        outcome = None
        for result in results:
            outcome = await manager.on_section_result(db, job_id, result)
        return outcome

    return _feed
