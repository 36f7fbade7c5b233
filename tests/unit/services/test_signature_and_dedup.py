"""Unit tests for signature construction, hashing and the dedup index."""

import threading
from decimal import Decimal

import pytest

from commission_builder.core.exceptions import IntegrityError
from commission_builder.services.signature.dedup_index import ContentHasher, DedupIndex
from commission_builder.services.signature.signature_computer import (
    build_configuration_signature,
    build_tier_signature,
    canonical_bytes,
    compute_hash,
    distribute_tier_shares,
)


def constant_digest(payload: bytes) -> str:
    """Digest that collides for every input."""
    return "0" * 64


class TestSignatures:
    """Tests for signature normalization and hashing."""

    def test_tier_order_does_not_change_signature(self):
        """Test that tiers are sorted by (level, broker_id)."""
        a = build_tier_signature(Decimal("100"), [(1, "B1", None, "S"), (2, "B2", None, "S")])
        b = build_tier_signature(Decimal("100"), [(2, "B2", None, "S"), (1, "B1", None, "S")])

        assert a == b
        assert compute_hash(a) == compute_hash(b)

    def test_split_order_does_not_change_configuration(self):
        """Test that split numbering and order are excluded from the configuration."""
        first = build_tier_signature(Decimal("60"), [(1, "B1", None, None)])
        second = build_tier_signature(Decimal("40"), [(1, "B2", None, None)])

        assert build_configuration_signature([first, second]) == build_configuration_signature([second, first])

    def test_different_shares_hash_differently(self):
        sixty = build_configuration_signature(
            [build_tier_signature(Decimal("60"), [(1, "B1", None, None)]),
             build_tier_signature(Decimal("40"), [(1, "B2", None, None)])]
        )
        fifty = build_configuration_signature(
            [build_tier_signature(Decimal("50"), [(1, "B1", None, None)]),
             build_tier_signature(Decimal("50"), [(1, "B2", None, None)])]
        )

        assert compute_hash(sixty) != compute_hash(fifty)

    def test_hash_is_full_length_upper_case_sha256(self):
        signature = build_tier_signature(Decimal("100"), [(1, "B1", None, None)])

        digest = compute_hash(signature)

        assert len(digest) == 64
        assert digest == digest.upper()

    def test_decimal_formatting_is_normalized(self):
        """Test that 60, 60.0 and 60.0000 serialize identically."""
        a = build_tier_signature(Decimal("60"), [(1, "B1", None, None)])
        b = build_tier_signature(Decimal("60.0000"), [(1, "B1", None, None)])

        assert canonical_bytes(a) == canonical_bytes(b)
        assert b" " not in canonical_bytes(a)

    def test_chain_excludes_split_share(self):
        a = build_tier_signature(Decimal("60"), [(1, "B1", None, None)])
        b = build_tier_signature(Decimal("40"), [(1, "B1", None, None)])

        assert a != b
        assert a.chain() == b.chain()

    def test_equal_shares_absorb_remainder_on_last_tier(self):
        shares = distribute_tier_shares([None, None, None])

        assert shares[:2] == [Decimal("33.3333"), Decimal("33.3333")]
        assert sum(shares) == Decimal("100")

    def test_explicit_shares_are_kept(self):
        assert distribute_tier_shares([Decimal("70"), Decimal("30")]) == [Decimal("70"), Decimal("30")]

    def test_explicit_and_distributed_shares_share_a_scale(self):
        explicit = distribute_tier_shares([Decimal("50"), Decimal("50")])
        distributed = distribute_tier_shares([None, None])

        assert [str(share) for share in explicit] == ["50.0000", "50.0000"]
        assert [str(share) for share in distributed] == ["50.0000", "50.0000"]

    def test_percentages_are_rounded_to_four_places(self):
        """Test that values equal after rounding build equal signatures."""
        a = build_tier_signature(Decimal("60.00001"), [(1, "B1", Decimal("33.33331"), None), (2, "B2", Decimal("66.66669"), None)])
        b = build_tier_signature(Decimal("60.00002"), [(1, "B1", Decimal("33.33332"), None), (2, "B2", Decimal("66.66668"), None)])

        assert a == b
        assert a.split_percent == Decimal("60.0000")
        assert str(a.tiers[0].split_percent) == "33.3333"


class TestDedupIndex:
    """Tests for collision-safe registration."""

    def test_first_sighting_registers(self):
        index = DedupIndex()
        signature = build_tier_signature(Decimal("100"), [(1, "B1", None, None)])

        index.register_or_verify("ABC", signature)

        assert "ABC" in index
        assert index.get("ABC") == signature

    def test_repeat_with_equal_signature_is_noop(self):
        index = DedupIndex()
        signature = build_tier_signature(Decimal("100"), [(1, "B1", None, None)])

        index.register_or_verify("ABC", signature)
        index.register_or_verify("ABC", build_tier_signature(Decimal("100"), [(1, "B1", None, None)]))

        assert len(index) == 1

    def test_signatures_differing_below_four_places_do_not_collide(self):
        hasher = ContentHasher(DedupIndex())
        first = build_tier_signature(Decimal("60.00001"), [(1, "B1", None, None)])
        second = build_tier_signature(Decimal("60.00002"), [(1, "B1", None, None)])

        assert hasher.hash(first) == hasher.hash(second)
        assert len(hasher.index) == 1

    def test_collision_raises_integrity_error(self):
        """Test that two distinct 3-tier signatures under one digest abort."""
        hasher = ContentHasher(DedupIndex(), digest_fn=constant_digest)
        first = build_tier_signature(Decimal("100"), [(1, "B1", None, None), (2, "B2", None, None), (3, "B3", None, None)])
        second = build_tier_signature(Decimal("100"), [(1, "B1", None, None), (2, "B2", None, None), (3, "B4", None, None)])

        hasher.hash(first)
        with pytest.raises(IntegrityError) as exc_info:
            hasher.hash(second)

        assert exc_info.value.digest == "0" * 64

    def test_indexes_are_run_scoped(self):
        """Test that separate indexes never see each other's entries."""
        first = ContentHasher(digest_fn=constant_digest)
        second = ContentHasher(digest_fn=constant_digest)

        first.hash(build_tier_signature(Decimal("100"), [(1, "B1", None, None)]))
        second.hash(build_tier_signature(Decimal("100"), [(1, "B2", None, None)]))

        assert len(first.index) == 1
        assert len(second.index) == 1

    def test_concurrent_registration_detects_collision(self):
        """Test that check-then-insert is atomic under threads."""
        index = DedupIndex()
        signatures = [build_tier_signature(Decimal("100"), [(1, f"B{i}", None, None)]) for i in range(8)]
        errors = []

        def register(signature):
            try:
                index.register_or_verify("SAME", signature)
            except IntegrityError as e:
                errors.append(e)

        threads = [threading.Thread(target=register, args=(s,)) for s in signatures]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(index) == 1
        assert len(errors) == 7
