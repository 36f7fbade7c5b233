"""Repository for the certificate input boundary."""

from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from commission_builder.database.models import CommissionSchedule, InputCertificate
from commission_builder.repositories.base_repository import BaseRepository

CERTIFICATE_COLUMNS = (
    "certificate_id",
    "group_id",
    "product_code",
    "plan_code",
    "split_sequence",
    "split_percent",
    "writing_broker_id",
    "split_broker_id",
    "tier_level",
    "tier_percent",
    "schedule_code",
    "situs_state",
    "effective_from",
    "effective_to",
    "status",
)


def _group_variants(group_ids: Iterable[str]) -> List[str]:
    """Stored group ids may or may not carry the ``G`` prefix."""
    variants = set()
    for group_id in group_ids:
        value = group_id.strip()
        if not value:
            continue
        variants.add(value)
        if value[:1] in ("G", "g") and value[1:].isdigit():
            variants.add(value[1:])
        elif value.isdigit():
            variants.add(f"G{value}")
    return sorted(variants)


class CertificateRepository(BaseRepository[InputCertificate]):
    """Reads active certificate rows for the assembly step."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, InputCertificate)

    async def get_active_certificates(
        self,
        limit: Optional[int] = None,
        group_ids: Optional[Sequence[str]] = None,
        active_statuses: Sequence[str] = ("A", "ACTIVE"),
    ) -> List[Dict[str, Any]]:
        """Get active certificate rows as raw mappings.

        Rows are ordered by group, effective date, certificate, split and
        tier. ``limit`` counts certificates, not rows, so a certificate is
        never truncated.

        Args:
            limit: Maximum number of certificates, None for all
            group_ids: Restrict to these groups (with or without ``G`` prefix)
            active_statuses: Statuses treated as active

        Returns:
            List of snake_case row mappings for the normalizer
        """
        try:
            model = self.model
            conditions = [func.upper(model.status).in_([status.upper() for status in active_statuses])]
            if group_ids:
                conditions.append(model.group_id.in_(_group_variants(group_ids)))

            query = select(model).where(*conditions)

            if limit is not None:
                certificates = (
                    select(model.certificate_id)
                    .where(*conditions)
                    .group_by(model.certificate_id)
                    .order_by(
                        func.min(model.group_id),
                        func.min(model.effective_from),
                        model.certificate_id,
                    )
                    .limit(limit)
                )
                certificate_ids = list((await self.session.execute(certificates)).scalars().all())
                query = query.where(model.certificate_id.in_(certificate_ids))

            query = query.order_by(
                model.group_id,
                model.effective_from,
                model.certificate_id,
                model.split_sequence,
                model.tier_level,
            )
            result = await self.session.execute(query)
            rows = [
                {column: getattr(row, column) for column in CERTIFICATE_COLUMNS}
                for row in result.scalars().all()
            ]
            self.logger.info(
                f"Loaded {len(rows)} active certificate rows",
                extra={"limit": limit, "group_ids": list(group_ids or [])},
            )
            return rows
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error loading active certificates: {str(e)}",
                exc_info=True
            )
            raise

    async def add_certificates(self, rows: Iterable[Dict[str, Any]]) -> int:
        """Insert certificate rows (used by loaders and tests)."""
        try:
            instances = [InputCertificate(**row) for row in rows]
            self.session.add_all(instances)
            await self.session.flush()
            await self.session.commit()
            return len(instances)
        except SQLAlchemyError as e:
            await self.session.rollback()
            self.logger.error(
                f"Error inserting certificates: {str(e)}",
                exc_info=True
            )
            raise

    async def get_schedule_map(self) -> Dict[str, str]:
        """Get the schedule code -> schedule id mapping."""
        try:
            result = await self.session.execute(select(CommissionSchedule.code, CommissionSchedule.id))
            return {code: schedule_id for code, schedule_id in result.all()}
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error loading commission schedules: {str(e)}",
                exc_info=True
            )
            raise
