"""Hierarchy assembler.

One hierarchy exists per split participant (group, writing broker, split
sequence). Its versions follow the proposals that use it in chronological
order: an unchanged tier chain extends the current version, a changed chain
closes it and opens the next one.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Mapping, Optional, Protocol, Tuple

from commission_builder.models.signature import TierSignature
from commission_builder.models.structures import (
    Hierarchy,
    HierarchyParticipant,
    HierarchyVersion,
    StateRule,
)
from commission_builder.services.assembly.proposal_assembler import (
    CertificateUnit,
    ProposalDraft,
    hierarchy_id,
)
from commission_builder.services.signature.dedup_index import ContentHasher
from commission_builder.utils.logging import get_logger

LOGGER = get_logger(__name__)

ONE_DAY = timedelta(days=1)
DEFAULT_RULE = "DEFAULT"


def version_id(hierarchy: str, version_number: int) -> str:
    return f"HV-{hierarchy}-V{version_number}"


def tier_id(version: str, level: int) -> str:
    return f"HP-{version}-L{level}"


def state_rule_id(version: str, short_name: str) -> str:
    return f"SR-{version}-{short_name}"


class ScheduleResolver(Protocol):
    """Resolves a schedule code to a schedule id."""

    def resolve(self, schedule_code: str) -> Optional[str]:
        ...


class MappingScheduleResolver:
    """Schedule resolver backed by a code -> id mapping."""

    def __init__(self, schedules: Optional[Mapping[str, str]] = None):
        self.schedules = dict(schedules or {})

    def resolve(self, schedule_code: str) -> Optional[str]:
        return self.schedules.get(schedule_code)


@dataclass
class HierarchyBuild:
    hierarchies: List[Hierarchy] = field(default_factory=list)
    versions: List[HierarchyVersion] = field(default_factory=list)
    participants: List[HierarchyParticipant] = field(default_factory=list)
    state_rules: List[StateRule] = field(default_factory=list)
    unresolved_schedules: int = 0


def build_state_rules(version: str, members: List[CertificateUnit]) -> List[StateRule]:
    """Build the state rules of one hierarchy version.

    Several states with differing product scope yield a DEFAULT catch-all
    plus one rule per state; otherwise a single DEFAULT rule. No states, no
    rules.
    """
    products_by_state: Dict[str, set] = defaultdict(set)
    for unit in members:
        for state in unit.situs_states:
            products_by_state[state].update(unit.product_codes)

    if not products_by_state:
        return []

    states = tuple(sorted(products_by_state))
    all_products = tuple(sorted(set().union(*products_by_state.values())))
    rules = [
        StateRule(
            id=state_rule_id(version, DEFAULT_RULE),
            hierarchy_version_id=version,
            short_name=DEFAULT_RULE,
            name="Default",
            states=states,
            product_codes=all_products,
            sort_order=0,
            is_default=True,
        )
    ]

    scopes = {frozenset(products) for products in products_by_state.values()}
    if len(states) > 1 and len(scopes) > 1:
        for sort_order, state in enumerate(states, start=1):
            rules.append(
                StateRule(
                    id=state_rule_id(version, state),
                    hierarchy_version_id=version,
                    short_name=state,
                    name=f"{state} Rule",
                    states=(state,),
                    product_codes=tuple(sorted(products_by_state[state])),
                    sort_order=sort_order,
                    is_default=False,
                )
            )
    return rules


def build_tiers(
    version: str,
    chain: TierSignature,
    resolver: ScheduleResolver,
) -> Tuple[List[HierarchyParticipant], int]:
    """Build the tiers of a version; returns the tiers and the unresolved schedule count."""
    unresolved = 0
    tiers = []
    for entry in chain.tiers:
        schedule_id = None
        if entry.schedule_code:
            schedule_id = resolver.resolve(entry.schedule_code)
            if schedule_id is None:
                unresolved += 1
                LOGGER.warning(
                    f"Unresolved schedule {entry.schedule_code} on {version} level {entry.level}",
                    extra={"schedule_code": entry.schedule_code, "hierarchy_version_id": version},
                )
        tiers.append(
            HierarchyParticipant(
                id=tier_id(version, entry.level),
                hierarchy_version_id=version,
                level=entry.level,
                broker_id=entry.broker_id,
                split_percent=entry.split_percent,
                schedule_code=entry.schedule_code,
                schedule_id=schedule_id,
            )
        )
    return tiers, unresolved


class HierarchyAssembler:
    """Assembles versioned hierarchies from one group's proposals."""

    def __init__(self, hasher: ContentHasher, resolver: Optional[ScheduleResolver] = None):
        self.hasher = hasher
        self.resolver = resolver or MappingScheduleResolver()

    def assemble(self, group_id: str, drafts: List[ProposalDraft]) -> HierarchyBuild:
        uses: Dict[str, list] = defaultdict(list)
        keys: Dict[str, tuple] = {}
        for draft in sorted(drafts, key=lambda d: (d.proposal.effective_from, d.proposal.id)):
            for split in draft.splits:
                hid = hierarchy_id(group_id, split.writing_broker_id, split.split_sequence)
                keys.setdefault(hid, (split.writing_broker_id, split.split_sequence, draft.proposal.id))
                uses[hid].append((draft, split.signature.chain()))

        build = HierarchyBuild()
        for hid in sorted(uses):
            writing_broker_id, split_sequence, first_proposal = keys[hid]
            versions = self._versions(hid, uses[hid])

            for version, chain, members in versions:
                build.versions.append(version)
                tiers, unresolved = build_tiers(version.id, chain, self.resolver)
                build.participants.extend(tiers)
                build.unresolved_schedules += unresolved
                build.state_rules.extend(build_state_rules(version.id, members))

            build.hierarchies.append(
                Hierarchy(
                    id=hid,
                    group_id=group_id,
                    writing_broker_id=writing_broker_id,
                    split_sequence=split_sequence,
                    current_version_id=versions[-1][0].id,
                    proposal_id=first_proposal,
                )
            )
        return build

    def _versions(self, hid: str, uses: list) -> List[Tuple[HierarchyVersion, TierSignature, List[CertificateUnit]]]:
        versions: List[Tuple[HierarchyVersion, TierSignature, List[CertificateUnit]]] = []
        for draft, chain in uses:
            chain_hash = self.hasher.hash(chain)
            proposal = draft.proposal

            if versions and versions[-1][0].chain_hash == chain_hash:
                current, current_chain, members = versions[-1]
                versions[-1] = (
                    HierarchyVersion(
                        id=current.id,
                        hierarchy_id=hid,
                        version_number=current.version_number,
                        effective_from=current.effective_from,
                        effective_to=max(current.effective_to, proposal.effective_to),
                        chain_hash=chain_hash,
                    ),
                    current_chain,
                    members + list(draft.members),
                )
                continue

            if versions:
                current, current_chain, members = versions[-1]
                versions[-1] = (
                    HierarchyVersion(
                        id=current.id,
                        hierarchy_id=hid,
                        version_number=current.version_number,
                        effective_from=current.effective_from,
                        effective_to=proposal.effective_from - ONE_DAY,
                        chain_hash=current.chain_hash,
                    ),
                    current_chain,
                    members,
                )

            number = len(versions) + 1
            versions.append(
                (
                    HierarchyVersion(
                        id=version_id(hid, number),
                        hierarchy_id=hid,
                        version_number=number,
                        effective_from=proposal.effective_from,
                        effective_to=proposal.effective_to,
                        chain_hash=chain_hash,
                    ),
                    chain,
                    list(draft.members),
                )
            )
        return versions
