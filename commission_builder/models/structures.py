"""Structural entities produced by the assembly engine.

Every entity is immutable and identified by a deterministic formula, so the
same input always yields the same ids.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple


class Classification(str, Enum):
    """Outcome of a single certificate."""

    RESOLVED = "resolved"
    FALLBACK = "fallback"
    UNRESOLVED = "unresolved"
    SKIPPED = "skipped"


class GapCategory(str, Enum):
    """Why a certificate of a valid group has no canonical proposal."""

    CONFLICTING_SIGNATURE = "conflicting_signature"  # window owned by another hash
    OUTLIER_CLUSTER = "outlier_cluster"  # hash seen on too few certificates


class Relation(str, Enum):
    """Named relations accepted by the entity writer."""

    PROPOSALS = "proposals"
    SPLIT_PARTICIPANTS = "split_participants"
    HIERARCHIES = "hierarchies"
    HIERARCHY_VERSIONS = "hierarchy_versions"
    HIERARCHY_PARTICIPANTS = "hierarchy_participants"
    STATE_RULES = "state_rules"
    POLICY_HIERARCHY_ASSIGNMENTS = "policy_hierarchy_assignments"
    UNRESOLVED_CERTIFICATES = "unresolved_certificates"


FALLBACK_REASON_INVALID_GROUP = "invalid_group"


@dataclass(frozen=True)
class SplitParticipant:
    id: str
    proposal_id: str
    split_sequence: int
    broker_id: str
    split_percent: Decimal
    hierarchy_id: str

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "proposal_id": self.proposal_id,
            "split_sequence": self.split_sequence,
            "broker_id": self.broker_id,
            "split_percent": self.split_percent,
            "hierarchy_id": self.hierarchy_id,
        }


@dataclass(frozen=True)
class Proposal:
    id: str
    group_id: str
    ordinal: int
    effective_from: date
    effective_to: date
    config_hash: str
    product_codes: Tuple[str, ...]
    plan_codes: Tuple[str, ...]
    situs_states: Tuple[str, ...]
    certificate_ids: Tuple[str, ...]
    participants: Tuple[SplitParticipant, ...] = ()

    @property
    def total_split_percent(self) -> Decimal:
        return sum((p.split_percent for p in self.participants), Decimal("0"))

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "group_id": self.group_id,
            "ordinal": self.ordinal,
            "effective_from": self.effective_from,
            "effective_to": self.effective_to,
            "config_hash": self.config_hash,
            "product_codes": list(self.product_codes),
            "plan_codes": list(self.plan_codes),
            "situs_states": list(self.situs_states),
            "certificate_count": len(self.certificate_ids),
        }


@dataclass(frozen=True)
class Hierarchy:
    id: str
    group_id: Optional[str]
    writing_broker_id: str
    split_sequence: int
    current_version_id: str
    proposal_id: Optional[str] = None
    is_fallback: bool = False
    policy_id: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "group_id": self.group_id,
            "writing_broker_id": self.writing_broker_id,
            "split_sequence": self.split_sequence,
            "current_version_id": self.current_version_id,
            "proposal_id": self.proposal_id,
            "is_fallback": self.is_fallback,
            "policy_id": self.policy_id,
        }


@dataclass(frozen=True)
class HierarchyVersion:
    id: str
    hierarchy_id: str
    version_number: int
    effective_from: date
    effective_to: date
    chain_hash: str

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "hierarchy_id": self.hierarchy_id,
            "version_number": self.version_number,
            "effective_from": self.effective_from,
            "effective_to": self.effective_to,
            "chain_hash": self.chain_hash,
        }


@dataclass(frozen=True)
class HierarchyParticipant:
    id: str
    hierarchy_version_id: str
    level: int
    broker_id: str
    split_percent: Decimal
    schedule_code: Optional[str] = None
    schedule_id: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "hierarchy_version_id": self.hierarchy_version_id,
            "level": self.level,
            "broker_id": self.broker_id,
            "split_percent": self.split_percent,
            "schedule_code": self.schedule_code,
            "schedule_id": self.schedule_id,
        }


@dataclass(frozen=True)
class StateRule:
    id: str
    hierarchy_version_id: str
    short_name: str
    name: str
    states: Tuple[str, ...]
    product_codes: Tuple[str, ...]
    sort_order: int
    is_default: bool

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "hierarchy_version_id": self.hierarchy_version_id,
            "short_name": self.short_name,
            "name": self.name,
            "states": list(self.states),
            "product_codes": list(self.product_codes),
            "sort_order": self.sort_order,
            "is_default": self.is_default,
        }


@dataclass(frozen=True)
class PolicyHierarchyAssignment:
    id: str
    policy_id: str
    group_id: Optional[str]
    hierarchy_id: str
    writing_broker_id: str
    split_sequence: int
    split_percent: Decimal
    effective_from: date
    effective_to: date
    reason: str

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "policy_id": self.policy_id,
            "group_id": self.group_id,
            "hierarchy_id": self.hierarchy_id,
            "writing_broker_id": self.writing_broker_id,
            "split_sequence": self.split_sequence,
            "split_percent": self.split_percent,
            "effective_from": self.effective_from,
            "effective_to": self.effective_to,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class UnresolvedCertificate:
    """A valid-group certificate with no canonical proposal, kept for operator decision."""
    certificate_id: str
    group_id: str
    effective_from: date
    config_hash: str
    category: GapCategory
    detail: str = ""

    @property
    def id(self) -> str:
        return f"UNRES-{self.certificate_id}"

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "certificate_id": self.certificate_id,
            "group_id": self.group_id,
            "effective_from": self.effective_from,
            "config_hash": self.config_hash,
            "category": self.category.value,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class ValidationIssue:
    """A record-scoped validation failure reported instead of raised."""
    message: str
    certificate_id: Optional[str] = None
    group_id: Optional[str] = None
    split_sequence: Optional[int] = None


@dataclass
class AssemblySummary:
    """Per-classification counts emitted at the end of every run."""

    resolved: int = 0
    fallback: int = 0
    unresolved: int = 0
    skipped: int = 0
    failed: int = 0
    rejected_rows: int = 0
    unresolved_schedules: int = 0
    gap_categories: Dict[str, int] = field(default_factory=dict)

    @property
    def certificates(self) -> int:
        return self.resolved + self.fallback + self.unresolved + self.skipped + self.failed

    def count(self, classification: Classification, amount: int = 1) -> None:
        setattr(self, classification.value, getattr(self, classification.value) + amount)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resolved": self.resolved,
            "fallback": self.fallback,
            "unresolved": self.unresolved,
            "skipped": self.skipped,
            "failed": self.failed,
            "rejected_rows": self.rejected_rows,
            "unresolved_schedules": self.unresolved_schedules,
            "gap_categories": dict(sorted(self.gap_categories.items())),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AssemblySummary":
        """Inverse of ``to_dict``; unknown keys are ignored."""
        counts = {
            key: int(data.get(key, 0))
            for key in ("resolved", "fallback", "unresolved", "skipped", "failed", "rejected_rows", "unresolved_schedules")
        }
        return cls(**counts, gap_categories=dict(data.get("gap_categories") or {}))


@dataclass
class AssemblyResult:
    """Everything one assembly pass produced, in deterministic order."""

    proposals: List[Proposal] = field(default_factory=list)
    hierarchies: List[Hierarchy] = field(default_factory=list)
    hierarchy_versions: List[HierarchyVersion] = field(default_factory=list)
    hierarchy_participants: List[HierarchyParticipant] = field(default_factory=list)
    state_rules: List[StateRule] = field(default_factory=list)
    policy_hierarchy_assignments: List[PolicyHierarchyAssignment] = field(default_factory=list)
    unresolved: List[UnresolvedCertificate] = field(default_factory=list)
    validation_issues: List[ValidationIssue] = field(default_factory=list)
    classifications: Dict[str, Classification] = field(default_factory=dict)
    summary: AssemblySummary = field(default_factory=AssemblySummary)

    @property
    def split_participants(self) -> List[SplitParticipant]:
        return [participant for proposal in self.proposals for participant in proposal.participants]

    def rows_by_relation(self) -> Dict[Relation, List[Dict[str, Any]]]:
        return {
            Relation.PROPOSALS: [p.to_row() for p in self.proposals],
            Relation.HIERARCHIES: [h.to_row() for h in self.hierarchies],
            Relation.HIERARCHY_VERSIONS: [v.to_row() for v in self.hierarchy_versions],
            Relation.HIERARCHY_PARTICIPANTS: [p.to_row() for p in self.hierarchy_participants],
            Relation.STATE_RULES: [r.to_row() for r in self.state_rules],
            Relation.SPLIT_PARTICIPANTS: [p.to_row() for p in self.split_participants],
            Relation.POLICY_HIERARCHY_ASSIGNMENTS: [a.to_row() for a in self.policy_hierarchy_assignments],
            Relation.UNRESOLVED_CERTIFICATES: [u.to_row() for u in self.unresolved],
        }

    def to_batches(self, batch_size: int) -> Iterator[Tuple[Relation, List[Dict[str, Any]]]]:
        """Yield (relation, rows) batches; parents are emitted before children."""
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        for relation, rows in self.rows_by_relation().items():
            for start in range(0, len(rows), batch_size):
                yield relation, rows[start:start + batch_size]
