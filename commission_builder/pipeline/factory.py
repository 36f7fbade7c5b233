"""Wiring of the standard pipeline from settings."""

from typing import Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from commission_builder.core.config import Settings, get_settings
from commission_builder.core.database import get_session_maker
from commission_builder.pipeline.orchestrator import PipelineOrchestrator
from commission_builder.pipeline.steps import CertificateSource, PipelineContext, ScheduleSource
from commission_builder.repositories.certificate_repository import CertificateRepository
from commission_builder.repositories.entity_writer import InMemoryEntityWriter, SqlEntityWriter
from commission_builder.services.assembly.structure_assembler import StructureAssembler
from commission_builder.services.normalization.certificate_normalizer import CertificateNormalizer


def repository_certificate_source(
    session_maker: async_sessionmaker[AsyncSession],
    active_statuses: Sequence[str],
) -> CertificateSource:
    async def load(limit: Optional[int], group_ids: Optional[Sequence[str]]) -> List[Dict]:
        async with session_maker() as session:
            return await CertificateRepository(session).get_active_certificates(
                limit=limit,
                group_ids=group_ids,
                active_statuses=active_statuses,
            )

    return load


def repository_schedule_source(session_maker: async_sessionmaker[AsyncSession]) -> ScheduleSource:
    async def load() -> Dict[str, str]:
        async with session_maker() as session:
            return await CertificateRepository(session).get_schedule_map()

    return load


def config_snapshot(
    settings: Settings,
    limit: Optional[int],
    group_ids: Optional[Sequence[str]],
    dry_run: bool,
    fallback_categories: Sequence[str],
) -> Dict:
    """Options persisted with a run so it can be resumed with the same scope."""
    return {
        "limit": limit,
        "group_ids": list(group_ids or []),
        "dry_run": dry_run,
        "fallback_categories": list(fallback_categories),
        "percent_epsilon": str(settings.assembly.percent_epsilon),
        "min_cluster_size": settings.assembly.min_cluster_size,
        "write_batch_size": settings.pipeline.write_batch_size,
    }


def build_pipeline(
    settings: Optional[Settings] = None,
    session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
    limit: Optional[int] = None,
    group_ids: Optional[Sequence[str]] = None,
    dry_run: bool = False,
    fallback_categories: Optional[Sequence[str]] = None,
) -> PipelineOrchestrator:
    """Build the standard orchestrator.

    Dry runs keep the assembled output in memory; run state is persisted
    either way.
    """
    settings = settings or get_settings()
    session_maker = session_maker or get_session_maker()
    categories = list(fallback_categories if fallback_categories is not None else settings.assembly.fallback_categories)

    writer = InMemoryEntityWriter() if dry_run else SqlEntityWriter(session_maker)
    context = PipelineContext(
        writer=writer,
        certificate_source=repository_certificate_source(session_maker, settings.assembly.active_statuses),
        schedule_source=repository_schedule_source(session_maker),
        normalizer=CertificateNormalizer(open_ended_date=settings.assembly.open_ended_date),
        assembler=StructureAssembler(
            percent_epsilon=settings.assembly.percent_epsilon,
            fallback_categories=categories,
            min_cluster_size=settings.assembly.min_cluster_size,
        ),
        limit=limit,
        group_ids=list(group_ids) if group_ids else None,
        write_batch_size=settings.pipeline.write_batch_size,
        percent_epsilon=settings.assembly.percent_epsilon,
    )
    return PipelineOrchestrator(session_maker, context, settings=settings.pipeline)


def build_pipeline_from_snapshot(
    snapshot: Optional[Dict],
    settings: Optional[Settings] = None,
    session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
) -> PipelineOrchestrator:
    """Rebuild the orchestrator of an existing run from its persisted options."""
    snapshot = snapshot or {}
    return build_pipeline(
        settings=settings,
        session_maker=session_maker,
        limit=snapshot.get("limit"),
        group_ids=snapshot.get("group_ids") or None,
        dry_run=bool(snapshot.get("dry_run", False)),
        fallback_categories=snapshot.get("fallback_categories"),
    )
