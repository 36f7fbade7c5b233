"""Per-scope structure assembly service.

Classifies every certificate as resolved, fallback, unresolved or skipped
and collects all structural entities in memory. Nothing is written here, so
an integrity failure anywhere aborts the scope before any write.
"""

from collections import defaultdict
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from commission_builder.core.exceptions import ValidationError
from commission_builder.models.certificate import CertificateRecord
from commission_builder.models.structures import (
    FALLBACK_REASON_INVALID_GROUP,
    AssemblyResult,
    Classification,
    GapCategory,
    ValidationIssue,
)
from commission_builder.services.assembly.fallback_builder import FallbackAssignmentBuilder
from commission_builder.services.assembly.hierarchy_assembler import (
    HierarchyAssembler,
    HierarchyBuild,
    ScheduleResolver,
)
from commission_builder.services.assembly.proposal_assembler import (
    CertificateUnit,
    ProposalAssembler,
)
from commission_builder.services.normalization.certificate_normalizer import is_invalid_group
from commission_builder.services.signature.dedup_index import ContentHasher, DedupIndex
from commission_builder.services.signature.signature_computer import DigestFn, sha256_digest
from commission_builder.utils.logging import get_logger

LOGGER = get_logger(__name__)


def _issue(error: ValidationError) -> ValidationIssue:
    return ValidationIssue(
        message=str(error),
        certificate_id=error.certificate_id,
        group_id=error.group_id,
        split_sequence=error.split_sequence,
    )


class StructureAssembler:
    """Assembles proposals, hierarchies and fallback assignments for a scope.

    A fresh DedupIndex is created per ``assemble`` call unless one is
    injected, so the same input always yields the same output.
    """

    def __init__(
        self,
        percent_epsilon: Decimal = Decimal("0.01"),
        fallback_categories: Sequence[str] = (),
        min_cluster_size: int = 1,
        schedule_resolver: Optional[ScheduleResolver] = None,
        digest_fn: DigestFn = sha256_digest,
    ):
        valid = {category.value for category in GapCategory}
        unknown = set(fallback_categories) - valid
        if unknown:
            raise ValueError(f"Unknown gap categories: {sorted(unknown)}")

        self.percent_epsilon = percent_epsilon
        self.fallback_categories = frozenset(fallback_categories)
        self.min_cluster_size = min_cluster_size
        self.schedule_resolver = schedule_resolver
        self.digest_fn = digest_fn

    def assemble(
        self,
        records: Iterable[CertificateRecord],
        index: Optional[DedupIndex] = None,
    ) -> AssemblyResult:
        """Assemble every group of the scope in sorted group-id order.

        Raises:
            IntegrityError: On a hash collision or an inconsistent timeline.
        """
        hasher = ContentHasher(index if index is not None else DedupIndex(), self.digest_fn)
        proposals = ProposalAssembler(hasher, self.percent_epsilon, self.min_cluster_size)
        hierarchies = HierarchyAssembler(hasher, self.schedule_resolver)
        fallback = FallbackAssignmentBuilder(hasher, self.schedule_resolver)

        groups: Dict[str, Dict[str, List[CertificateRecord]]] = defaultdict(lambda: defaultdict(list))
        for record in records:
            groups[record.group_id or ""][record.certificate_id].append(record)

        result = AssemblyResult()
        for group_key in sorted(groups):
            self._assemble_group(group_key, groups[group_key], proposals, hierarchies, fallback, result)

        LOGGER.info(
            "Assembly completed",
            extra={"summary": result.summary.to_dict(), "proposals": len(result.proposals)},
        )
        return result

    def _assemble_group(
        self,
        group_key: str,
        certificates: Dict[str, List[CertificateRecord]],
        proposals: ProposalAssembler,
        hierarchies: HierarchyAssembler,
        fallback: FallbackAssignmentBuilder,
        result: AssemblyResult,
    ) -> None:
        units: List[CertificateUnit] = []
        for certificate_id in sorted(certificates):
            built = proposals.build_unit(certificate_id, certificates[certificate_id])
            result.validation_issues.extend(_issue(error) for error in built.errors)
            if built.unit is None:
                result.classifications[certificate_id] = Classification.SKIPPED
                result.summary.count(Classification.SKIPPED)
                continue
            units.append(built.unit)

        if is_invalid_group(group_key):
            for unit in units:
                self._fallback(unit, FALLBACK_REASON_INVALID_GROUP, fallback, result)
            return

        group = proposals.assemble(group_key, units)
        built = hierarchies.assemble(group_key, group.drafts)

        result.proposals.extend(group.proposals)
        self._collect(built, result)

        for certificate_id in group.resolved:
            result.classifications[certificate_id] = Classification.RESOLVED
            result.summary.count(Classification.RESOLVED)

        units_by_id = {unit.certificate_id: unit for unit in units}
        for gap in group.unresolved:
            category = gap.category.value
            result.summary.gap_categories[category] = result.summary.gap_categories.get(category, 0) + 1
            if category in self.fallback_categories:
                self._fallback(units_by_id[gap.certificate_id], category, fallback, result)
                continue
            result.unresolved.append(gap)
            result.classifications[gap.certificate_id] = Classification.UNRESOLVED
            result.summary.count(Classification.UNRESOLVED)

    def _fallback(
        self,
        unit: CertificateUnit,
        reason: str,
        fallback: FallbackAssignmentBuilder,
        result: AssemblyResult,
    ) -> None:
        built, assignments = fallback.build(unit, reason)
        self._collect(built, result)
        result.policy_hierarchy_assignments.extend(assignments)
        result.classifications[unit.certificate_id] = Classification.FALLBACK
        result.summary.count(Classification.FALLBACK)

    @staticmethod
    def _collect(built: HierarchyBuild, result: AssemblyResult) -> None:
        result.hierarchies.extend(built.hierarchies)
        result.hierarchy_versions.extend(built.versions)
        result.hierarchy_participants.extend(built.participants)
        result.state_rules.extend(built.state_rules)
        result.summary.unresolved_schedules += built.unresolved_schedules
