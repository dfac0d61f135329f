"""
Tests for the Apply Engine

Tests cover:
- Write planning (grouping by taxonomy code, index order)
- The review-then-apply scenario end to end
- State guards (AlreadyApplied, InvalidState) leave the target untouched
- Partial failure and converging retry
"""

import pytest

from docimport.models import ImportSection, JobState, SectionStatus
from docimport.services import job_store
from docimport.services.apply_engine import ApplyEngine, plan_writes
from docimport.services.errors import AlreadyApplied, InvalidState, PartialApplyFailure
from docimport.services.reconciler import MappingReconciler
from docimport.services.target_documents import SqlTargetDocumentWriter, TargetDocumentWriter

from factories import matched, unmatched


class FlakyWriter(TargetDocumentWriter):
    """Delegates to a real writer but fails the first write of chosen codes."""

    def __init__(self, inner, fail_codes):
        self.inner = inner
        self.fail_codes = set(fail_codes)
        self.calls = []

    async def write_content(self, target_document_id, taxonomy_code, content):
        self.calls.append(taxonomy_code)
        if taxonomy_code in self.fail_codes:
            self.fail_codes.discard(taxonomy_code)
            raise ConnectionError("target document service unavailable")
        return await self.inner.write_content(target_document_id, taxonomy_code, content)


@pytest.fixture
def writer(session_factory):
    return SqlTargetDocumentWriter(session_factory)


@pytest.fixture
def engine_for(locks, settings):
    def _engine(writer):
        return ApplyEngine(locks, writer, settings)

    return _engine


@pytest.fixture
def apply_engine(engine_for, writer):
    return engine_for(writer)


@pytest.fixture
def reconciler(locks, settings):
    return MappingReconciler(locks, settings)


def section(index, status=SectionStatus.MAPPED, category="1", item="a", content=None):
    s = ImportSection(
        job_id="job",
        section_index=index,
        status=status,
        content=content or f"Narrative {index}",
    )
    if status == SectionStatus.MAPPED:
        s.category_code = category
        s.item_code = item
    return s


class TestPlanWrites:
    """Test grouping mapped sections into field writes."""

    def test_groups_by_code_in_index_order(self):
        plan = plan_writes([
            section(3, category="2"),
            section(0),
            section(2),
            section(1, category="2"),
        ])

        assert [w.taxonomy_code for w in plan] == ["1.a", "2.a"]
        assert plan[0].section_indexes == [0, 2]
        assert plan[0].content == "Narrative 0\n\nNarrative 2"
        assert plan[1].section_indexes == [1, 3]

    def test_skips_non_mapped_sections(self):
        plan = plan_writes([
            section(0),
            section(1, status=SectionStatus.UNMAPPED),
            section(2, status=SectionStatus.DISCARDED),
            section(3, status=SectionStatus.FAILED),
        ])

        assert len(plan) == 1
        assert plan[0].section_indexes == [0]

    def test_content_hash_is_stable(self):
        first = plan_writes([section(0), section(1)])[0]
        second = plan_writes([section(1), section(0)])[0]
        assert first.content_hash == second.content_hash


class TestApply:
    """Test merging accepted mappings into the target document."""

    @pytest.mark.asyncio
    async def test_review_then_apply_scenario(self, db, apply_engine, reconciler, writer, submit, feed):
        """10 sections: 8 mapped, 2 unmapped; discard 1; apply merges exactly 7."""
        job = await submit("doc-1", total=10)
        await feed(
            job.id,
            [matched(i, category=str(i + 1)) for i in range(8)] + [unmatched(8), unmatched(9)],
        )
        assert job.state == JobState.PARTIALLY_COMPLETED

        await reconciler.discard_mapping(db, job.id, 3, reviewer_id="reviewer-1")
        assert job.mapped_count == 7
        assert job.unmapped_count == 3

        result = await apply_engine.apply(db, job.id, applied_by="reviewer-1")

        assert result.sections_applied == 7
        assert result.fields_written == 7
        assert result.job.state == JobState.APPLIED
        assert job.applied_by == "reviewer-1"
        assert job.applied_at is not None
        assert await writer.read_content("doc-1", "4.a") is None
        assert await writer.read_content("doc-1", "1.a") == "Narrative for section 0"

        with pytest.raises(AlreadyApplied):
            await apply_engine.apply(db, job.id)

    @pytest.mark.asyncio
    async def test_sections_sharing_a_code_are_joined(self, db, apply_engine, writer, submit, feed):
        job = await submit("doc-1", total=3)
        await feed(job.id, [matched(2, heading="Later"), matched(0, heading="First"), matched(1, category="9")])

        await apply_engine.apply(db, job.id)

        assert await writer.read_content("doc-1", "1.a") == (
            "<h2>First</h2>\nNarrative for section 0\n\n<h2>Later</h2>\nNarrative for section 2"
        )

    @pytest.mark.asyncio
    async def test_apply_appends_to_existing_narrative(self, db, apply_engine, writer, submit, feed):
        await writer.write_content("doc-1", "1.a", "Existing narrative")
        job = await submit("doc-1", total=1)
        await feed(job.id, [matched(0)])

        await apply_engine.apply(db, job.id)

        assert await writer.read_content("doc-1", "1.a") == "Existing narrative\n\nNarrative for section 0"

    @pytest.mark.asyncio
    async def test_apply_with_no_mapped_sections(self, db, apply_engine, submit, feed):
        job = await submit("doc-1", total=1)
        await feed(job.id, [unmatched(0)])

        result = await apply_engine.apply(db, job.id)

        assert result.sections_applied == 0
        assert result.job.state == JobState.APPLIED

    @pytest.mark.asyncio
    async def test_apply_failed_job_raises_without_touching_target(self, db, manager, apply_engine, writer, submit, feed):
        """Fatal error after 4 of 10 sections: apply is rejected."""
        job = await submit("doc-1", total=10)
        await feed(job.id, [matched(i, category=str(i + 1)) for i in range(4)])
        await manager.on_failure(db, job.id, "extraction_error", "Parser crashed")
        await feed(job.id, [matched(4, category="5")])
        assert job.state == JobState.FAILED

        with pytest.raises(InvalidState):
            await apply_engine.apply(db, job.id)

        for code in ("1.a", "2.a", "3.a", "4.a", "5.a"):
            assert await writer.read_content("doc-1", code) is None

    @pytest.mark.asyncio
    async def test_apply_while_processing_raises(self, db, apply_engine, submit, feed):
        job = await submit("doc-1", total=2)
        await feed(job.id, [matched(0)])

        with pytest.raises(InvalidState):
            await apply_engine.apply(db, job.id)

    @pytest.mark.asyncio
    async def test_apply_cancelled_job_raises(self, db, manager, apply_engine, submit, feed):
        job = await submit("doc-1", total=1)
        await feed(job.id, [matched(0)])
        await manager.cancel(db, job.id)

        with pytest.raises(InvalidState):
            await apply_engine.apply(db, job.id)


class TestPartialApply:
    """Test failure part way through an apply."""

    @pytest.mark.asyncio
    async def test_partial_failure_then_retry_converges(self, db, engine_for, writer, submit, feed):
        job = await submit("doc-1", total=3)
        await feed(job.id, [matched(0, category="1"), matched(1, category="2"), matched(2, category="3")])
        flaky = FlakyWriter(writer, fail_codes={"2.a"})
        apply_engine = engine_for(flaky)

        with pytest.raises(PartialApplyFailure) as exc_info:
            await apply_engine.apply(db, job.id)

        assert exc_info.value.details["taxonomy_code"] == "2.a"
        assert exc_info.value.details["fields_done"] == 1
        assert job.state == JobState.COMPLETED
        assert "2.a" in job.last_apply_error
        assert set(await job_store.get_ledger(db, job.id)) == {"1.a"}

        result = await apply_engine.apply(db, job.id)

        assert result.fields_written == 2
        assert result.fields_skipped == 1
        assert flaky.calls == ["1.a", "2.a", "2.a", "3.a"]
        assert job.state == JobState.APPLIED
        assert job.apply_attempts == 2
        assert job.last_apply_error is None
        # Retried content is not duplicated in the target
        assert await writer.read_content("doc-1", "1.a") == "Narrative for section 0"
        assert await writer.read_content("doc-1", "2.a") == "Narrative for section 1"

    @pytest.mark.asyncio
    async def test_cancel_refused_after_partial_failure(self, db, manager, engine_for, writer, submit, feed):
        """A half-written target cannot be abandoned; the retry finishes it."""
        job = await submit("doc-1", total=2)
        await feed(job.id, [matched(0, category="1"), matched(1, category="2")])
        apply_engine = engine_for(FlakyWriter(writer, fail_codes={"2.a"}))

        with pytest.raises(PartialApplyFailure):
            await apply_engine.apply(db, job.id)
        with pytest.raises(InvalidState):
            await manager.cancel(db, job.id)

        assert job.state == JobState.COMPLETED
        result = await apply_engine.apply(db, job.id)
        assert result.job.state == JobState.APPLIED
        assert await writer.read_content("doc-1", "2.a") == "Narrative for section 1"
