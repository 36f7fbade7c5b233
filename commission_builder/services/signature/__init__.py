"""Structural signatures, canonical hashing and the run-scoped dedup index."""

from commission_builder.services.signature.dedup_index import ContentHasher, DedupIndex
from commission_builder.services.signature.signature_computer import (
    build_configuration_signature,
    build_tier_signature,
    compute_hash,
)

__all__ = [
    "ContentHasher",
    "DedupIndex",
    "build_configuration_signature",
    "build_tier_signature",
    "compute_hash",
]
