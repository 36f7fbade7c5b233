"""Fallback assignment builder.

Certificates that cannot be mapped to a canonical proposal are linked
directly to a synthetic single-certificate hierarchy per split. These
hierarchies are never shared between certificates.
"""

from typing import Optional

from commission_builder.models.signature import TierSignature
from commission_builder.models.structures import (
    Hierarchy,
    HierarchyVersion,
    PolicyHierarchyAssignment,
)
from commission_builder.services.assembly.hierarchy_assembler import (
    HierarchyBuild,
    MappingScheduleResolver,
    ScheduleResolver,
    build_tiers,
    version_id,
)
from commission_builder.services.assembly.proposal_assembler import CertificateUnit
from commission_builder.services.signature.dedup_index import ContentHasher
from commission_builder.services.signature.signature_computer import build_tier_signature
from commission_builder.utils.logging import get_logger

LOGGER = get_logger(__name__)


def fallback_hierarchy_id(certificate_id: str, split_sequence: int) -> str:
    return f"H-PHA-{certificate_id}-{split_sequence}"


def assignment_id(certificate_id: str, split_sequence: int) -> str:
    return f"PHA-{certificate_id}-{split_sequence}"


def _equal_share_chain(signature: TierSignature) -> TierSignature:
    return build_tier_signature(
        None,
        [(tier.level, tier.broker_id, None, tier.schedule_code) for tier in signature.tiers],
    )


class FallbackAssignmentBuilder:
    """Builds policy hierarchy assignments for unmappable certificates."""

    def __init__(self, hasher: ContentHasher, resolver: Optional[ScheduleResolver] = None):
        self.hasher = hasher
        self.resolver = resolver or MappingScheduleResolver()

    def build(self, unit: CertificateUnit, reason: str) -> tuple[HierarchyBuild, list[PolicyHierarchyAssignment]]:
        """Build one synthetic hierarchy and one assignment per accepted split.

        Args:
            unit: Validated certificate
            reason: ``invalid_group`` or the gap category that was opted in

        Returns:
            Tuple of (hierarchy build, assignments)
        """
        build = HierarchyBuild()
        assignments = []

        for split in unit.splits:
            hid = fallback_hierarchy_id(unit.certificate_id, split.split_sequence)
            vid = version_id(hid, 1)
            chain = _equal_share_chain(split.signature)

            build.versions.append(
                HierarchyVersion(
                    id=vid,
                    hierarchy_id=hid,
                    version_number=1,
                    effective_from=unit.effective_from,
                    effective_to=unit.effective_to,
                    chain_hash=self.hasher.hash(chain),
                )
            )
            tiers, unresolved = build_tiers(vid, chain, self.resolver)
            build.participants.extend(tiers)
            build.unresolved_schedules += unresolved

            build.hierarchies.append(
                Hierarchy(
                    id=hid,
                    group_id=unit.group_id,
                    writing_broker_id=split.writing_broker_id,
                    split_sequence=split.split_sequence,
                    current_version_id=vid,
                    is_fallback=True,
                    policy_id=unit.certificate_id,
                )
            )
            assignments.append(
                PolicyHierarchyAssignment(
                    id=assignment_id(unit.certificate_id, split.split_sequence),
                    policy_id=unit.certificate_id,
                    group_id=unit.group_id,
                    hierarchy_id=hid,
                    writing_broker_id=split.writing_broker_id,
                    split_sequence=split.split_sequence,
                    split_percent=split.split_percent,
                    effective_from=unit.effective_from,
                    effective_to=unit.effective_to,
                    reason=reason,
                )
            )

        LOGGER.debug(
            f"Fallback for certificate {unit.certificate_id}: {len(assignments)} assignment(s)",
            extra={"certificate_id": unit.certificate_id, "reason": reason},
        )
        return build, assignments
