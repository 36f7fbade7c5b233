"""Unit tests for the pipeline steps."""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from commission_builder.core.exceptions import IntegrityError
from commission_builder.models.pipeline import StepStatus
from commission_builder.models.structures import Relation
from commission_builder.pipeline.steps import (
    BuildCommissionStructuresStep,
    ClearStagingOutputStep,
    PipelineContext,
    VerifySplitIntegrityStep,
    default_steps,
)
from commission_builder.repositories.entity_writer import InMemoryEntityWriter
from commission_builder.services.assembly.structure_assembler import StructureAssembler


def constant_digest(payload: bytes) -> str:
    return "E" * 64


@pytest.fixture
def rows(row_factory):
    return [
        row_factory(certificate_id="C1", split_broker_id="B1", tier_level=1),
        row_factory(certificate_id="C1", split_broker_id="B2", tier_level=2),
        row_factory(certificate_id="C2", split_broker_id="B1", tier_level=1),
        row_factory(certificate_id="C2", split_broker_id="B2", tier_level=2),
        row_factory(certificate_id="C3", group_id="", split_broker_id="B9", writing_broker_id="B9"),
        row_factory(certificate_id="C4", split_broker_id=None),
    ]


@pytest.fixture
def context(rows):
    return PipelineContext(
        writer=InMemoryEntityWriter(),
        certificate_source=AsyncMock(return_value=rows),
        schedule_source=AsyncMock(return_value={"SCH1": "sched-1"}),
        write_batch_size=2,
    )


class TestBuildCommissionStructuresStep:
    """Tests for the build step."""

    @pytest.mark.asyncio
    async def test_writes_structures_and_summary(self, context):
        result = await BuildCommissionStructuresStep().execute(context)

        assert result.status == StepStatus.COMPLETED
        assert result.records_processed == 3
        summary = context.summary
        assert (summary.resolved, summary.fallback, summary.rejected_rows) == (2, 1, 1)

        proposals = await context.writer.fetch_all(Relation.PROPOSALS)
        assert [p["id"] for p in proposals] == ["PROP-0006-1"]
        tiers = await context.writer.fetch_all(Relation.HIERARCHY_PARTICIPANTS)
        assert {t["schedule_id"] for t in tiers} == {"sched-1"}
        assert len(await context.writer.fetch_all(Relation.POLICY_HIERARCHY_ASSIGNMENTS)) == 1

    @pytest.mark.asyncio
    async def test_scope_is_passed_to_source(self, context):
        context.limit = 10
        context.group_ids = ["0006"]

        await BuildCommissionStructuresStep().execute(context)

        context.certificate_source.assert_awaited_once_with(10, ["0006"])

    @pytest.mark.asyncio
    async def test_collision_writes_nothing(self, row_factory):
        """Test that a forced collision fails the step before the first batch."""
        writer = InMemoryEntityWriter()
        context = PipelineContext(
            writer=writer,
            certificate_source=AsyncMock(
                return_value=[
                    row_factory(certificate_id="C1", split_broker_id="B1"),
                    row_factory(certificate_id="C2", split_broker_id="B2", writing_broker_id="B2"),
                ]
            ),
            assembler=StructureAssembler(digest_fn=constant_digest),
        )

        with pytest.raises(IntegrityError):
            await BuildCommissionStructuresStep().execute(context)

        assert writer.batches_written == 0
        assert context.summary.failed == 2


class TestVerifySplitIntegrityStep:
    """Tests for the verification step."""

    @pytest.mark.asyncio
    async def test_consistent_output_passes(self, context):
        await BuildCommissionStructuresStep().execute(context)

        result = await VerifySplitIntegrityStep().execute(context)

        assert result.status == StepStatus.COMPLETED
        assert result.records_processed > 0

    @pytest.mark.asyncio
    async def test_drifted_split_total_fails(self, context):
        await BuildCommissionStructuresStep().execute(context)
        participant = (await context.writer.fetch_all(Relation.SPLIT_PARTICIPANTS))[0]
        await context.writer.upsert_batch(
            Relation.SPLIT_PARTICIPANTS, [dict(participant, split_percent=Decimal("90"))]
        )

        with pytest.raises(IntegrityError):
            await VerifySplitIntegrityStep().execute(context)

    @pytest.mark.asyncio
    async def test_dangling_hierarchy_reference_fails(self, context):
        await BuildCommissionStructuresStep().execute(context)
        await context.writer.clear([Relation.HIERARCHIES])

        with pytest.raises(IntegrityError):
            await VerifySplitIntegrityStep().execute(context)


class TestClearStagingOutputStep:
    @pytest.mark.asyncio
    async def test_clears_previous_output(self, context):
        await BuildCommissionStructuresStep().execute(context)

        await ClearStagingOutputStep().execute(context)

        for relation in Relation:
            assert await context.writer.fetch_all(relation) == []


def test_default_step_order():
    assert [step.name for step in default_steps()] == [
        "clear_staging_output",
        "build_commission_structures",
        "verify_split_integrity",
    ]
