"""Unit tests for HierarchyAssembler and state rules."""

from datetime import date
from decimal import Decimal

import pytest

from commission_builder.services.assembly.hierarchy_assembler import (
    HierarchyAssembler,
    MappingScheduleResolver,
    build_state_rules,
)
from commission_builder.services.assembly.proposal_assembler import CertificateUnit, ProposalAssembler
from commission_builder.services.signature.dedup_index import ContentHasher


def _unit(certificate_id, states, products):
    return CertificateUnit(
        certificate_id=certificate_id,
        group_id="0006",
        effective_from=date(2020, 1, 1),
        effective_to=date(2020, 12, 31),
        config_hash="H",
        splits=(),
        product_codes=tuple(products),
        situs_states=tuple(states),
    )


class TestHierarchyAssembler:
    """Tests for hierarchy identity and versioning."""

    @pytest.fixture
    def hasher(self):
        return ContentHasher()

    def _drafts(self, hasher, chain_factory, certificates):
        proposals = ProposalAssembler(hasher)
        units = []
        for certificate_id, brokers, start, end, percent in certificates:
            rows = chain_factory(certificate_id, brokers, split_percent="100", effective_from=start, effective_to=end)
            if percent is not None:
                rows = [row.model_copy(update={"tier_percent": Decimal(p)}) for row, p in zip(rows, percent)]
            units.append(proposals.build_unit(certificate_id, rows).unit)
        return proposals.assemble("0006", units).drafts

    def test_one_hierarchy_per_split_participant(self, hasher, chain_factory):
        drafts = self._drafts(hasher, chain_factory, [("C1", ["B1", "B2"], date(2020, 1, 1), date(2099, 1, 1), None)])

        build = HierarchyAssembler(hasher).assemble("0006", drafts)

        assert [h.id for h in build.hierarchies] == ["H-0006-B1-1"]
        assert build.hierarchies[0].current_version_id == "HV-H-0006-B1-1-V1"
        assert [t.id for t in build.participants] == ["HP-HV-H-0006-B1-1-V1-L1", "HP-HV-H-0006-B1-1-V1-L2"]
        assert sum(t.split_percent for t in build.participants) == Decimal("100")

    def test_changed_chain_opens_new_version(self, hasher, chain_factory):
        """Test that an amended tier chain closes V1 and opens V2."""
        drafts = self._drafts(
            hasher,
            chain_factory,
            [
                ("C1", ["B1", "B2"], date(2020, 1, 1), date(2020, 12, 31), None),
                ("C2", ["B1", "B3"], date(2021, 1, 1), date(2099, 1, 1), None),
            ],
        )

        build = HierarchyAssembler(hasher).assemble("0006", drafts)

        assert len(build.hierarchies) == 1
        v1, v2 = build.versions
        assert (v1.version_number, v1.effective_to) == (1, date(2020, 12, 31))
        assert (v2.version_number, v2.effective_from) == (2, date(2021, 1, 1))
        assert build.hierarchies[0].current_version_id == v2.id

    def test_explicit_tier_shares_are_part_of_the_chain(self, hasher, chain_factory):
        drafts = self._drafts(
            hasher,
            chain_factory,
            [
                ("C1", ["B1", "B2"], date(2020, 1, 1), date(2020, 12, 31), ["70", "30"]),
                ("C2", ["B1", "B2"], date(2021, 1, 1), date(2099, 1, 1), ["50", "50"]),
            ],
        )

        build = HierarchyAssembler(hasher).assemble("0006", drafts)

        assert len(build.versions) == 2
        assert [t.split_percent for t in build.participants[:2]] == [Decimal("70"), Decimal("30")]

    def test_split_share_change_extends_version(self, hasher, chain_factory):
        """Test that a new proposal with unchanged chains keeps one version per hierarchy."""
        proposals = ProposalAssembler(hasher)
        units = []
        for certificate_id, shares, start, end in [
            ("C1", ("60", "40"), date(2020, 1, 1), date(2020, 12, 31)),
            ("C2", ("50", "50"), date(2021, 1, 1), date(2099, 1, 1)),
        ]:
            rows = chain_factory(
                certificate_id, ["B1"], split_sequence=1, split_percent=shares[0], effective_from=start, effective_to=end
            ) + chain_factory(
                certificate_id, ["B2"], split_sequence=2, split_percent=shares[1], effective_from=start, effective_to=end
            )
            units.append(proposals.build_unit(certificate_id, rows).unit)
        drafts = proposals.assemble("0006", units).drafts
        assert len(drafts) == 2

        build = HierarchyAssembler(hasher).assemble("0006", drafts)

        assert [h.id for h in build.hierarchies] == ["H-0006-B1-1", "H-0006-B2-2"]
        assert len(build.versions) == 2
        assert all(v.effective_from == date(2020, 1, 1) for v in build.versions)
        assert all(v.effective_to == date(2099, 1, 1) for v in build.versions)
        assert build.hierarchies[0].proposal_id == "PROP-0006-1"

    def test_unresolved_schedules_are_counted_not_fatal(self, hasher, chain_factory):
        drafts = self._drafts(hasher, chain_factory, [("C1", ["B1", "B2"], date(2020, 1, 1), date(2099, 1, 1), None)])
        resolver = MappingScheduleResolver({"OTHER": "sched-1"})

        build = HierarchyAssembler(hasher, resolver).assemble("0006", drafts)

        assert build.unresolved_schedules == 2
        assert all(t.schedule_id is None for t in build.participants)

    def test_resolved_schedules_carry_ids(self, hasher, chain_factory):
        drafts = self._drafts(hasher, chain_factory, [("C1", ["B1"], date(2020, 1, 1), date(2099, 1, 1), None)])

        build = HierarchyAssembler(hasher, MappingScheduleResolver({"SCH1": "sched-1"})).assemble("0006", drafts)

        assert build.participants[0].schedule_id == "sched-1"
        assert build.unresolved_schedules == 0


class TestStateRules:
    """Tests for state rule generation."""

    def test_single_state_yields_default_rule(self):
        rules = build_state_rules("HV-1", [_unit("C1", ["TX"], ["DENT"])])

        assert [r.id for r in rules] == ["SR-HV-1-DEFAULT"]
        assert rules[0].states == ("TX",)
        assert rules[0].is_default is True

    def test_states_with_same_products_share_default(self):
        rules = build_state_rules("HV-1", [_unit("C1", ["TX"], ["DENT"]), _unit("C2", ["CA"], ["DENT"])])

        assert len(rules) == 1
        assert rules[0].states == ("CA", "TX")

    def test_differing_product_scope_adds_state_rules(self):
        rules = build_state_rules(
            "HV-1",
            [_unit("C1", ["TX"], ["DENT"]), _unit("C2", ["CA"], ["DENT", "VIS"])],
        )

        assert [r.short_name for r in rules] == ["DEFAULT", "CA", "TX"]
        assert rules[0].product_codes == ("DENT", "VIS")
        assert rules[1].product_codes == ("DENT", "VIS")
        assert rules[2].product_codes == ("DENT",)
        assert [r.sort_order for r in rules] == [0, 1, 2]

    def test_no_states_no_rules(self):
        assert build_state_rules("HV-1", [_unit("C1", [], ["DENT"])]) == []
