"""Entity writer boundary for assembled structures.

The assembly engine only ever emits ``(relation, rows)`` batches; where they
land is decided by the writer implementation.
"""

from typing import Any, Dict, Iterable, List, Optional, Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from commission_builder.database.models import (
    StagedHierarchy,
    StagedHierarchyParticipant,
    StagedHierarchyVersion,
    StagedPolicyHierarchyAssignment,
    StagedProposal,
    StagedSplitParticipant,
    StagedStateRule,
    StagedUnresolvedCertificate,
)
from commission_builder.models.structures import Relation
from commission_builder.utils.logging import get_logger

LOGGER = get_logger(__name__)

Row = Dict[str, Any]

RELATION_MODELS = {
    Relation.PROPOSALS: StagedProposal,
    Relation.SPLIT_PARTICIPANTS: StagedSplitParticipant,
    Relation.HIERARCHIES: StagedHierarchy,
    Relation.HIERARCHY_VERSIONS: StagedHierarchyVersion,
    Relation.HIERARCHY_PARTICIPANTS: StagedHierarchyParticipant,
    Relation.STATE_RULES: StagedStateRule,
    Relation.POLICY_HIERARCHY_ASSIGNMENTS: StagedPolicyHierarchyAssignment,
    Relation.UNRESOLVED_CERTIFICATES: StagedUnresolvedCertificate,
}


class EntityWriter(Protocol):
    """Persistence boundary for assembled entities."""

    # False when the output does not outlive the process
    durable: bool

    async def upsert_batch(self, relation: Relation, rows: List[Row]) -> int:
        ...

    async def clear(self, relations: Optional[Iterable[Relation]] = None) -> None:
        ...

    async def fetch_all(self, relation: Relation) -> List[Row]:
        ...


class SqlEntityWriter:
    """Writes batches to the staging tables, one transaction per batch.

    Rows are merged by primary key, so rewriting the same batch is
    idempotent.
    """

    durable = True

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def upsert_batch(self, relation: Relation, rows: List[Row]) -> int:
        model = RELATION_MODELS[Relation(relation)]
        if not rows:
            return 0
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    for row in rows:
                        await session.merge(model(**row))
            LOGGER.debug(
                f"Upserted {len(rows)} rows into {model.__tablename__}",
                extra={"relation": Relation(relation).value, "rows": len(rows)},
            )
            return len(rows)
        except SQLAlchemyError as e:
            LOGGER.error(
                f"Error upserting into {model.__tablename__}: {str(e)}",
                exc_info=True
            )
            raise

    async def clear(self, relations: Optional[Iterable[Relation]] = None) -> None:
        targets = [Relation(r) for r in relations] if relations is not None else list(Relation)
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    # Children first
                    for relation in reversed(targets):
                        await session.execute(delete(RELATION_MODELS[relation]))
            LOGGER.info(
                "Cleared staging output",
                extra={"relations": [relation.value for relation in targets]},
            )
        except SQLAlchemyError as e:
            LOGGER.error(f"Error clearing staging output: {str(e)}", exc_info=True)
            raise

    async def fetch_all(self, relation: Relation) -> List[Row]:
        model = RELATION_MODELS[Relation(relation)]
        columns = [column.key for column in model.__table__.columns]
        try:
            async with self.session_maker() as session:
                result = await session.execute(select(model).order_by(model.id))
                return [{key: getattr(instance, key) for key in columns} for instance in result.scalars().all()]
        except SQLAlchemyError as e:
            LOGGER.error(f"Error reading {model.__tablename__}: {str(e)}", exc_info=True)
            raise


class InMemoryEntityWriter:
    """Keeps batches in memory. Used for dry runs and tests."""

    durable = False

    def __init__(self):
        self.tables: Dict[Relation, Dict[str, Row]] = {relation: {} for relation in Relation}
        self.batches_written = 0

    async def upsert_batch(self, relation: Relation, rows: List[Row]) -> int:
        table = self.tables[Relation(relation)]
        for row in rows:
            table[row["id"]] = dict(row)
        if rows:
            self.batches_written += 1
        return len(rows)

    async def clear(self, relations: Optional[Iterable[Relation]] = None) -> None:
        targets = [Relation(r) for r in relations] if relations is not None else list(Relation)
        for relation in targets:
            self.tables[relation].clear()

    async def fetch_all(self, relation: Relation) -> List[Row]:
        table = self.tables[Relation(relation)]
        return [dict(table[key]) for key in sorted(table)]
