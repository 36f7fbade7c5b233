"""Unit tests for StructureAssembler and the fallback builder."""

from datetime import date
from decimal import Decimal

import pytest

from commission_builder.core.exceptions import IntegrityError
from commission_builder.models.structures import Classification, GapCategory, Relation
from commission_builder.repositories.entity_writer import InMemoryEntityWriter
from commission_builder.services.assembly.structure_assembler import StructureAssembler


def constant_digest(payload: bytes) -> str:
    return "F" * 64


class TestFallbackAssignments:
    """Tests for certificates of structurally invalid groups."""

    def test_blank_group_gets_one_assignment(self, chain_factory):
        """Test that groupId "" yields no proposal and one assignment to a synthetic hierarchy."""
        records = chain_factory("C9", ["B1", "B2"], group_id="")

        result = StructureAssembler().assemble(records)

        assert result.proposals == []
        assert len(result.policy_hierarchy_assignments) == 1
        assignment = result.policy_hierarchy_assignments[0]
        assert assignment.id == "PHA-C9-1"
        assert assignment.hierarchy_id == "H-PHA-C9-1"
        assert assignment.reason == "invalid_group"
        assert result.hierarchies[0].is_fallback is True
        assert result.hierarchies[0].policy_id == "C9"
        assert result.classifications == {"C9": Classification.FALLBACK}

    def test_one_assignment_per_split(self, chain_factory):
        records = chain_factory("C9", ["B1"], split_percent="60", group_id="G0000") + chain_factory(
            "C9", ["B2"], split_sequence=2, split_percent="40", group_id="G0000"
        )

        result = StructureAssembler().assemble(records)

        assert [a.id for a in result.policy_hierarchy_assignments] == ["PHA-C9-1", "PHA-C9-2"]
        assert [a.split_percent for a in result.policy_hierarchy_assignments] == [Decimal("60"), Decimal("40")]

    def test_fallback_hierarchies_are_never_shared(self, chain_factory):
        records = chain_factory("C1", ["B1"], group_id=None) + chain_factory("C2", ["B1"], group_id=None)

        result = StructureAssembler().assemble(records)

        assert {h.id for h in result.hierarchies} == {"H-PHA-C1-1", "H-PHA-C2-1"}

    def test_fallback_tiers_use_equal_shares(self, chain_factory):
        records = chain_factory("C1", ["B1", "B2", "B3", "B4"], group_id="")

        result = StructureAssembler().assemble(records)

        assert [t.split_percent for t in result.hierarchy_participants] == [Decimal("25")] * 4


class TestClassification:
    """Tests for per-certificate classification."""

    def test_every_certificate_has_exactly_one_class(self, chain_factory):
        records = (
            chain_factory("C1", ["B1"])
            + chain_factory("C2", ["B1"])
            + chain_factory("C3", ["B7"])
            + chain_factory("C4", ["B1"], split_percent="80")
            + chain_factory("C5", ["B1"], group_id="")
        )

        result = StructureAssembler().assemble(records)

        assert result.classifications == {
            "C1": Classification.RESOLVED,
            "C2": Classification.RESOLVED,
            "C3": Classification.UNRESOLVED,
            "C4": Classification.SKIPPED,
            "C5": Classification.FALLBACK,
        }
        summary = result.summary
        assert (summary.resolved, summary.unresolved, summary.skipped, summary.fallback) == (2, 1, 1, 1)
        assert summary.certificates == 5
        assert summary.gap_categories == {"conflicting_signature": 1}
        assert result.unresolved[0].certificate_id == "C3"

    def test_unresolved_reach_fallback_only_by_opt_in(self, chain_factory):
        records = chain_factory("C1", ["B1"]) + chain_factory("C2", ["B1"]) + chain_factory("C3", ["B7"])

        result = StructureAssembler(fallback_categories=[GapCategory.CONFLICTING_SIGNATURE.value]).assemble(records)

        assert result.classifications["C3"] == Classification.FALLBACK
        assert result.unresolved == []
        assert result.policy_hierarchy_assignments[0].reason == "conflicting_signature"
        assert result.summary.gap_categories == {"conflicting_signature": 1}

    def test_unknown_fallback_category_is_rejected(self):
        with pytest.raises(ValueError):
            StructureAssembler(fallback_categories=["everything"])

    def test_validation_issues_are_reported(self, chain_factory):
        """Test 60/40 plus an erroneous 50% third split."""
        records = (
            chain_factory("C1", ["B1"], split_sequence=1, split_percent="60")
            + chain_factory("C1", ["B2"], split_sequence=2, split_percent="40")
            + chain_factory("C1", ["B3"], split_sequence=3, split_percent="50")
        )

        result = StructureAssembler().assemble(records)

        assert result.classifications["C1"] == Classification.RESOLVED
        assert [p.split_percent for p in result.split_participants] == [Decimal("60"), Decimal("40")]
        assert [issue.split_sequence for issue in result.validation_issues] == [3]


    def test_broken_tier_chain_is_skipped(self, chain_factory, record_factory):
        records = chain_factory("C0", ["B1"], group_id="0007") + [
            record_factory(certificate_id="C1", group_id="0007", broker_id="B1", tier_level=1, tier_percent="50"),
            record_factory(certificate_id="C1", group_id="0007", broker_id="B2", tier_level=2, tier_percent="40"),
        ]

        result = StructureAssembler().assemble(records)

        assert result.classifications == {"C0": Classification.RESOLVED, "C1": Classification.SKIPPED}
        assert all(t.hierarchy_version_id.startswith("HV-H-0007-B1-1") for t in result.hierarchy_participants)
        assert sum(t.split_percent for t in result.hierarchy_participants) == Decimal("100")
        assert result.validation_issues[0].certificate_id == "C1"


class TestAssemblyProperties:
    """Tests for determinism, idempotency and collision safety."""

    def _records(self, chain_factory):
        return (
            chain_factory("C1", ["B1", "B2"], group_id="0006", effective_from=date(1999, 1, 1),
                          effective_to=date(2001, 6, 30))
            + chain_factory("C2", ["B1", "B2"], group_id="0006", effective_from=date(2001, 7, 1),
                            effective_to=date(2024, 12, 31))
            + chain_factory("C3", ["B5"], group_id="0100", effective_from=date(2010, 1, 1))
            + chain_factory("C4", ["B6"], group_id="")
        )

    def test_same_input_same_output(self, chain_factory):
        records = self._records(chain_factory)

        first = StructureAssembler().assemble(records)
        second = StructureAssembler().assemble(list(reversed(records)))

        assert first.rows_by_relation() == second.rows_by_relation()

    def test_groups_are_processed_in_sorted_order(self, chain_factory):
        result = StructureAssembler().assemble(self._records(chain_factory))

        assert [p.id for p in result.proposals] == ["PROP-0006-1", "PROP-0100-1"]

    def test_batches_emit_parents_first(self, chain_factory):
        result = StructureAssembler().assemble(self._records(chain_factory))

        relations = [relation for relation, _ in result.to_batches(2)]

        assert relations.index(Relation.PROPOSALS) < relations.index(Relation.SPLIT_PARTICIPANTS)
        assert relations.index(Relation.HIERARCHIES) < relations.index(Relation.HIERARCHY_VERSIONS)

    @pytest.mark.asyncio
    async def test_rewriting_is_idempotent(self, chain_factory):
        writer = InMemoryEntityWriter()
        for _ in range(2):
            result = StructureAssembler().assemble(self._records(chain_factory))
            for relation, rows in result.to_batches(3):
                await writer.upsert_batch(relation, rows)

        assert len(await writer.fetch_all(Relation.PROPOSALS)) == 2
        assert len(await writer.fetch_all(Relation.POLICY_HIERARCHY_ASSIGNMENTS)) == 1

    def test_percentages_equal_after_rounding_share_one_hash(self, chain_factory):
        """Test that splits differing beyond 4 decimal places are one configuration."""
        records = (
            chain_factory("C1", ["B1"], split_sequence=1, split_percent="60.00001")
            + chain_factory("C1", ["B2"], split_sequence=2, split_percent="39.99999")
            + chain_factory("C2", ["B1"], split_sequence=1, split_percent="60.00002")
            + chain_factory("C2", ["B2"], split_sequence=2, split_percent="39.99998")
        )

        result = StructureAssembler().assemble(records)

        assert result.classifications == {"C1": Classification.RESOLVED, "C2": Classification.RESOLVED}
        assert [p.id for p in result.proposals] == ["PROP-0006-1"]

    def test_forced_collision_aborts_before_any_output(self, chain_factory):
        """Test that two distinct 3-tier signatures under one digest raise IntegrityError."""
        records = chain_factory("C1", ["B1", "B2", "B3"]) + chain_factory(
            "C2", ["B1", "B2", "B4"], effective_from=date(2021, 1, 1)
        )

        with pytest.raises(IntegrityError):
            StructureAssembler(digest_fn=constant_digest).assemble(records)
