"""Steps of the commission structure pipeline."""

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from commission_builder.core.base_step import BaseStep
from commission_builder.core.exceptions import IntegrityError
from commission_builder.models.pipeline import StepResult, StepStatus
from commission_builder.models.structures import AssemblySummary, Relation
from commission_builder.repositories.entity_writer import EntityWriter
from commission_builder.services.assembly.hierarchy_assembler import MappingScheduleResolver
from commission_builder.services.assembly.structure_assembler import StructureAssembler
from commission_builder.services.normalization.certificate_normalizer import CertificateNormalizer
from commission_builder.utils.logging import get_logger

LOGGER = get_logger(__name__)

HUNDRED = Decimal("100")

CertificateSource = Callable[[Optional[int], Optional[Sequence[str]]], Awaitable[List[Mapping[str, Any]]]]
ScheduleSource = Callable[[], Awaitable[Dict[str, str]]]


async def _no_schedules() -> Dict[str, str]:
    return {}


@dataclass
class PipelineContext:
    """Collaborators and options shared by the steps of one run."""
    writer: EntityWriter
    certificate_source: CertificateSource
    schedule_source: ScheduleSource = _no_schedules
    normalizer: CertificateNormalizer = field(default_factory=CertificateNormalizer)
    assembler: StructureAssembler = field(default_factory=StructureAssembler)
    limit: Optional[int] = None
    group_ids: Optional[List[str]] = None
    write_batch_size: int = 1000
    percent_epsilon: Decimal = Decimal("0.01")
    summary: Optional[AssemblySummary] = None


class ClearStagingOutputStep(BaseStep):
    """Clears every writer relation so the build starts from nothing."""

    @property
    def name(self) -> str:
        return "clear_staging_output"

    async def execute(self, context: PipelineContext) -> StepResult:
        await context.writer.clear()
        return StepResult(status=StepStatus.COMPLETED)


class BuildCommissionStructuresStep(BaseStep):
    """Reads, normalizes and assembles certificates, then writes the batches.

    Assembly finishes in memory, on a worker thread, before the first batch
    is written.
    """

    @property
    def name(self) -> str:
        return "build_commission_structures"

    async def execute(self, context: PipelineContext) -> StepResult:
        rows = await context.certificate_source(context.limit, context.group_ids)
        normalized = context.normalizer.normalize_all(rows)

        schedules = await context.schedule_source()
        if schedules:
            context.assembler.schedule_resolver = MappingScheduleResolver(schedules)

        try:
            # Off the event loop so activity heartbeats keep flowing
            result = await asyncio.to_thread(context.assembler.assemble, normalized.records)
        except IntegrityError:
            summary = AssemblySummary(rejected_rows=len(normalized.rejected))
            summary.failed = len({record.certificate_id for record in normalized.records})
            context.summary = summary
            raise

        result.summary.rejected_rows = len(normalized.rejected)
        context.summary = result.summary

        written = 0
        for relation, batch in result.to_batches(context.write_batch_size):
            written += await context.writer.upsert_batch(relation, batch)

        LOGGER.info(
            f"Wrote {written} rows for {result.summary.certificates} certificates",
            extra={"summary": result.summary.to_dict(), "rows_written": written},
        )
        return StepResult(
            status=StepStatus.COMPLETED,
            records_processed=result.summary.certificates,
            data={"summary": result.summary.to_dict(), "rows_written": written},
        )

    def restore(self, context: PipelineContext, output: Dict[str, Any]) -> None:
        if output.get("summary") is not None:
            context.summary = AssemblySummary.from_dict(output["summary"])


class VerifySplitIntegrityStep(BaseStep):
    """Re-reads the written output and checks every percentage sum."""

    @property
    def name(self) -> str:
        return "verify_split_integrity"

    async def execute(self, context: PipelineContext) -> StepResult:
        writer = context.writer
        epsilon = context.percent_epsilon

        proposals = await writer.fetch_all(Relation.PROPOSALS)
        participants = await writer.fetch_all(Relation.SPLIT_PARTICIPANTS)
        hierarchies = {row["id"] for row in await writer.fetch_all(Relation.HIERARCHIES)}
        versions = await writer.fetch_all(Relation.HIERARCHY_VERSIONS)
        tiers = await writer.fetch_all(Relation.HIERARCHY_PARTICIPANTS)
        assignments = await writer.fetch_all(Relation.POLICY_HIERARCHY_ASSIGNMENTS)

        split_totals: Dict[str, Decimal] = defaultdict(Decimal)
        for participant in participants:
            if participant["hierarchy_id"] not in hierarchies:
                raise IntegrityError(
                    f"Split participant {participant['id']} references unknown hierarchy "
                    f"{participant['hierarchy_id']}"
                )
            split_totals[participant["proposal_id"]] += Decimal(participant["split_percent"])

        for proposal in proposals:
            total = split_totals.get(proposal["id"], Decimal("0"))
            if abs(total - HUNDRED) > epsilon:
                raise IntegrityError(f"Proposal {proposal['id']} splits total {total}%, expected 100%")

        tier_totals: Dict[str, Decimal] = defaultdict(Decimal)
        for tier in tiers:
            tier_totals[tier["hierarchy_version_id"]] += Decimal(tier["split_percent"])

        for version in versions:
            total = tier_totals.get(version["id"], Decimal("0"))
            if abs(total - HUNDRED) > epsilon:
                raise IntegrityError(f"Hierarchy version {version['id']} tiers total {total}%, expected 100%")

        for assignment in assignments:
            if assignment["hierarchy_id"] not in hierarchies:
                raise IntegrityError(
                    f"Assignment {assignment['id']} references unknown hierarchy {assignment['hierarchy_id']}"
                )

        checked = len(proposals) + len(versions) + len(assignments)
        LOGGER.info(f"Verified {checked} structures", extra={"checked": checked})
        return StepResult(status=StepStatus.COMPLETED, records_processed=checked)


def default_steps() -> List[BaseStep]:
    return [
        ClearStagingOutputStep(),
        BuildCommissionStructuresStep(),
        VerifySplitIntegrityStep(),
    ]
