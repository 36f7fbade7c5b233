"""Proposal assembler.

Builds the canonical proposal timeline of one group. Certificates are first
reduced to validated units (accepted splits plus configuration hash); the
units are then scanned in effective-date order, extending the open proposal
while the canonical hash is unchanged and closing it the day before a new
hash takes over.
"""

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from commission_builder.core.exceptions import IntegrityError, ValidationError
from commission_builder.models.certificate import CertificateRecord
from commission_builder.models.signature import TierSignature
from commission_builder.models.structures import (
    GapCategory,
    Proposal,
    SplitParticipant,
    UnresolvedCertificate,
)
from commission_builder.services.signature.dedup_index import ContentHasher
from commission_builder.services.signature.signature_computer import (
    build_configuration_signature,
    build_tier_signature,
)
from commission_builder.utils.logging import get_logger

LOGGER = get_logger(__name__)

ONE_DAY = timedelta(days=1)
HUNDRED = Decimal("100")


def proposal_id(group_id: str, ordinal: int) -> str:
    return f"PROP-{group_id}-{ordinal}"


def participant_id(proposal: str, split_sequence: int) -> str:
    return f"PSP-{proposal}-{split_sequence}"


def hierarchy_id(group_id: str, broker_id: str, split_sequence: int) -> str:
    return f"H-{group_id}-{broker_id}-{split_sequence}"


@dataclass(frozen=True)
class AcceptedSplit:
    """A split that passed validation, with its tier signature."""
    split_sequence: int
    split_percent: Decimal
    writing_broker_id: str
    signature: TierSignature


@dataclass(frozen=True)
class CertificateUnit:
    """One validated certificate: accepted splits plus their configuration hash."""
    certificate_id: str
    group_id: Optional[str]
    effective_from: date
    effective_to: date
    config_hash: str
    splits: Tuple[AcceptedSplit, ...]
    product_codes: Tuple[str, ...] = ()
    plan_codes: Tuple[str, ...] = ()
    situs_states: Tuple[str, ...] = ()


@dataclass
class UnitBuildResult:
    unit: Optional[CertificateUnit]
    errors: List[ValidationError] = field(default_factory=list)


@dataclass(frozen=True)
class ProposalDraft:
    """A proposal together with what the hierarchy assembler needs from it."""
    proposal: Proposal
    splits: Tuple[AcceptedSplit, ...]
    members: Tuple[CertificateUnit, ...]


@dataclass
class GroupProposals:
    drafts: List[ProposalDraft] = field(default_factory=list)
    resolved: Dict[str, str] = field(default_factory=dict)  # certificate_id -> proposal id
    unresolved: List[UnresolvedCertificate] = field(default_factory=list)

    @property
    def proposals(self) -> List[Proposal]:
        return [draft.proposal for draft in self.drafts]


def _sorted_unique(values: Iterable[Optional[str]]) -> Tuple[str, ...]:
    return tuple(sorted({value for value in values if value}))


class ProposalAssembler:
    """Assembles the proposals of one group."""

    def __init__(
        self,
        hasher: ContentHasher,
        percent_epsilon: Decimal = Decimal("0.01"),
        min_cluster_size: int = 1,
    ):
        self.hasher = hasher
        self.percent_epsilon = percent_epsilon
        self.min_cluster_size = min_cluster_size

    def build_unit(self, certificate_id: str, rows: List[CertificateRecord]) -> UnitBuildResult:
        """Validate one certificate's splits and compute its configuration hash.

        Splits are taken in ascending sequence; a split that would push the
        running total over 100 is dropped with a ValidationError. When the
        accepted total is not 100 the whole certificate is rejected.
        """
        group_id = rows[0].group_id
        errors: List[ValidationError] = []

        by_split: Dict[int, List[CertificateRecord]] = defaultdict(list)
        for row in rows:
            by_split[row.split_sequence].append(row)

        accepted: List[AcceptedSplit] = []
        total = Decimal("0")
        for split_sequence in sorted(by_split):
            split_rows = by_split[split_sequence]
            try:
                split = self._build_split(certificate_id, group_id, split_sequence, split_rows)
            except ValidationError as e:
                errors.append(e)
                continue

            if total + split.split_percent > HUNDRED + self.percent_epsilon:
                errors.append(
                    ValidationError(
                        f"split {split_sequence} ({split.split_percent}%) pushes total over 100% "
                        f"(accepted so far {total}%)",
                        certificate_id=certificate_id,
                        group_id=group_id,
                        split_sequence=split_sequence,
                    )
                )
                continue

            total += split.split_percent
            accepted.append(split)

        if not accepted or abs(total - HUNDRED) > self.percent_epsilon:
            errors.append(
                ValidationError(
                    f"accepted splits total {total}%, expected 100%",
                    certificate_id=certificate_id,
                    group_id=group_id,
                )
            )
            return UnitBuildResult(unit=None, errors=errors)

        configuration = build_configuration_signature(split.signature for split in accepted)
        config_hash = self.hasher.hash(configuration)

        unit = CertificateUnit(
            certificate_id=certificate_id,
            group_id=group_id,
            effective_from=min(row.effective_from for row in rows),
            effective_to=max(row.effective_to for row in rows),
            config_hash=config_hash,
            splits=tuple(accepted),
            product_codes=_sorted_unique(row.product_code for row in rows),
            plan_codes=_sorted_unique(row.plan_code for row in rows),
            situs_states=_sorted_unique(row.situs_state for row in rows),
        )
        return UnitBuildResult(unit=unit, errors=errors)

    def _build_split(
        self,
        certificate_id: str,
        group_id: Optional[str],
        split_sequence: int,
        rows: List[CertificateRecord],
    ) -> AcceptedSplit:
        percents = {row.split_percent for row in rows}
        if len(percents) > 1:
            raise ValidationError(
                f"split {split_sequence} carries conflicting percentages {sorted(percents)}",
                certificate_id=certificate_id,
                group_id=group_id,
                split_sequence=split_sequence,
            )
        split_percent = percents.pop()
        if split_percent <= 0:
            raise ValidationError(
                f"split {split_sequence} has non-positive percentage {split_percent}",
                certificate_id=certificate_id,
                group_id=group_id,
                split_sequence=split_sequence,
            )

        tiers: Dict[int, CertificateRecord] = {}
        for row in rows:
            existing = tiers.get(row.tier_level)
            if existing is not None and existing.split_broker_id != row.split_broker_id:
                raise ValidationError(
                    f"split {split_sequence} has two brokers on tier {row.tier_level}",
                    certificate_id=certificate_id,
                    group_id=group_id,
                    split_sequence=split_sequence,
                )
            tiers.setdefault(row.tier_level, row)

        explicit = [row.tier_percent for row in tiers.values()]
        if all(share is not None for share in explicit):
            tier_total = sum(explicit, Decimal("0"))
            if abs(tier_total - HUNDRED) > self.percent_epsilon:
                raise ValidationError(
                    f"split {split_sequence} tiers total {tier_total}%, expected 100%",
                    certificate_id=certificate_id,
                    group_id=group_id,
                    split_sequence=split_sequence,
                )

        signature = build_tier_signature(
            split_percent,
            [(row.tier_level, row.split_broker_id, row.tier_percent, row.schedule_code) for row in tiers.values()],
        )
        writing_broker = next((row.writing_broker_id for row in rows if row.writing_broker_id), None)
        return AcceptedSplit(
            split_sequence=split_sequence,
            split_percent=signature.split_percent,
            writing_broker_id=writing_broker or signature.writing_broker_id,
            signature=signature,
        )

    def assemble(self, group_id: str, units: List[CertificateUnit]) -> GroupProposals:
        """Build the minimal chronological proposal set of one group."""
        result = GroupProposals()
        ordered = sorted(units, key=lambda unit: (unit.effective_from, unit.certificate_id))

        cluster_sizes = Counter(unit.config_hash for unit in ordered)
        candidates = []
        for unit in ordered:
            if cluster_sizes[unit.config_hash] < self.min_cluster_size:
                result.unresolved.append(
                    UnresolvedCertificate(
                        certificate_id=unit.certificate_id,
                        group_id=group_id,
                        effective_from=unit.effective_from,
                        config_hash=unit.config_hash,
                        category=GapCategory.OUTLIER_CLUSTER,
                        detail=f"hash seen on {cluster_sizes[unit.config_hash]} certificate(s)",
                    )
                )
            else:
                candidates.append(unit)

        by_date: Dict[date, List[CertificateUnit]] = defaultdict(list)
        for unit in candidates:
            by_date[unit.effective_from].append(unit)

        open_draft: Optional[dict] = None
        for effective_date in sorted(by_date):
            day_units = by_date[effective_date]
            counts = Counter(unit.config_hash for unit in day_units)
            canonical_hash = sorted(counts.items(), key=lambda item: (-item[1], item[0]))[0][0]

            members = []
            for unit in day_units:
                if unit.config_hash == canonical_hash:
                    members.append(unit)
                else:
                    result.unresolved.append(
                        UnresolvedCertificate(
                            certificate_id=unit.certificate_id,
                            group_id=group_id,
                            effective_from=unit.effective_from,
                            config_hash=unit.config_hash,
                            category=GapCategory.CONFLICTING_SIGNATURE,
                            detail=f"{effective_date.isoformat()} is owned by {canonical_hash}",
                        )
                    )

            if open_draft is not None and open_draft["config_hash"] == canonical_hash:
                open_draft["members"].extend(members)
                open_draft["effective_to"] = max(
                    open_draft["effective_to"], max(unit.effective_to for unit in members)
                )
                continue

            if open_draft is not None:
                open_draft["effective_to"] = effective_date - ONE_DAY
                result.drafts.append(self._finish(group_id, len(result.drafts) + 1, open_draft))

            open_draft = {
                "config_hash": canonical_hash,
                "effective_from": effective_date,
                "effective_to": max(unit.effective_to for unit in members),
                "members": list(members),
            }

        if open_draft is not None:
            result.drafts.append(self._finish(group_id, len(result.drafts) + 1, open_draft))

        for draft in result.drafts:
            for unit in draft.members:
                result.resolved[unit.certificate_id] = draft.proposal.id

        self.verify(result.proposals)

        LOGGER.debug(
            f"Group {group_id}: {len(result.drafts)} proposal(s), "
            f"{len(result.resolved)} resolved, {len(result.unresolved)} unresolved",
            extra={"group_id": group_id},
        )
        return result

    def _finish(self, group_id: str, ordinal: int, draft: dict) -> ProposalDraft:
        members: List[CertificateUnit] = draft["members"]
        pid = proposal_id(group_id, ordinal)
        splits = members[0].splits
        participants = tuple(
            SplitParticipant(
                id=participant_id(pid, split.split_sequence),
                proposal_id=pid,
                split_sequence=split.split_sequence,
                broker_id=split.writing_broker_id,
                split_percent=split.split_percent,
                hierarchy_id=hierarchy_id(group_id, split.writing_broker_id, split.split_sequence),
            )
            for split in splits
        )
        proposal = Proposal(
            id=pid,
            group_id=group_id,
            ordinal=ordinal,
            effective_from=draft["effective_from"],
            effective_to=draft["effective_to"],
            config_hash=draft["config_hash"],
            product_codes=_sorted_unique(code for unit in members for code in unit.product_codes),
            plan_codes=_sorted_unique(code for unit in members for code in unit.plan_codes),
            situs_states=_sorted_unique(state for unit in members for state in unit.situs_states),
            certificate_ids=tuple(unit.certificate_id for unit in members),
            participants=participants,
        )
        return ProposalDraft(proposal=proposal, splits=splits, members=tuple(members))

    @staticmethod
    def verify(proposals: List[Proposal]) -> None:
        """Check the timeline of one group.

        Raises:
            IntegrityError: On overlapping proposals with different hashes or
                adjacent proposals sharing a hash.
        """
        ordered = sorted(proposals, key=lambda p: (p.effective_from, p.id))
        for previous, current in zip(ordered, ordered[1:]):
            if current.effective_from <= previous.effective_to and current.config_hash != previous.config_hash:
                raise IntegrityError(
                    f"Proposals {previous.id} and {current.id} overlap with different hashes",
                    digest=current.config_hash,
                )
            if current.config_hash == previous.config_hash:
                raise IntegrityError(
                    f"Adjacent proposals {previous.id} and {current.id} share hash {current.config_hash}",
                    digest=current.config_hash,
                )
