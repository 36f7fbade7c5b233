"""Signature construction and canonical hashing.

A signature captures only the structure of a commission split: brokers,
levels, shares and schedules. Identifiers such as the split sequence are not
part of it, so two certificates with the same structure hash identically no
matter how their rows were numbered or ordered.
"""

import hashlib
import json
from decimal import Decimal
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple, Union

from commission_builder.models.signature import (
    PERCENT_QUANTUM,
    ConfigurationSignature,
    TierEntry,
    TierSignature,
    quantize_percent,
)

DigestFn = Callable[[bytes], str]
Signature = Union[TierSignature, ConfigurationSignature]

# (level, broker_id, tier_percent, schedule_code)
TierInput = Tuple[int, str, Optional[Decimal], Optional[str]]

HUNDRED = Decimal("100")


def sha256_digest(payload: bytes) -> str:
    """Full-length SHA-256 hex digest, upper case (64 characters)."""
    return hashlib.sha256(payload).hexdigest().upper()


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def distribute_tier_shares(explicit: Sequence[Optional[Decimal]]) -> List[Decimal]:
    """Resolve the shares of the tiers of one chain.

    Explicit shares are kept, rounded to 4 places, when every tier carries
    one. Otherwise 100 is distributed equally and the last tier absorbs the
    rounding remainder, so the shares always sum to exactly 100.
    """
    if not explicit:
        return []
    if all(share is not None for share in explicit):
        return [quantize_percent(share) for share in explicit]

    count = len(explicit)
    equal = (HUNDRED / count).quantize(PERCENT_QUANTUM)
    shares = [equal] * count
    shares[-1] = HUNDRED - equal * (count - 1)
    return shares


def build_tier_signature(split_percent: Optional[Decimal], tiers: Iterable[TierInput]) -> TierSignature:
    """Build the signature of one split.

    Args:
        split_percent: The split's share of premium, or None for a bare chain.
        tiers: ``(level, broker_id, tier_percent, schedule_code)`` tuples in
            any order.

    Returns:
        TierSignature with tiers sorted by ``(level, broker_id)`` and every
        percentage rounded to 4 places, so equal signatures always have
        equal canonical bytes.
    """
    ordered = sorted(tiers, key=lambda tier: (tier[0], tier[1]))
    shares = distribute_tier_shares([tier[2] for tier in ordered])
    entries = tuple(
        TierEntry(level=level, broker_id=broker_id, split_percent=share, schedule_code=schedule_code)
        for (level, broker_id, _, schedule_code), share in zip(ordered, shares)
    )
    return TierSignature(
        tiers=entries,
        split_percent=quantize_percent(split_percent) if split_percent is not None else None,
    )


def build_configuration_signature(splits: Iterable[TierSignature]) -> ConfigurationSignature:
    """Combine split signatures into a certificate's configuration signature.

    Splits are sorted by their canonical serialization; the split sequence
    is never part of a signature, so renumbered splits compare equal.
    """
    ordered = sorted(splits, key=lambda signature: canonical_json(signature.to_canonical()))
    return ConfigurationSignature(splits=tuple(ordered))


def canonical_bytes(signature: Signature) -> bytes:
    """Canonical serialization: sorted keys, no whitespace, fixed 4-place decimals."""
    return canonical_json(signature.to_canonical()).encode("utf-8")


def compute_hash(signature: Signature, digest_fn: DigestFn = sha256_digest) -> str:
    """Compute the content hash of a signature. Total and deterministic."""
    return digest_fn(canonical_bytes(signature))
