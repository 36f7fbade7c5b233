"""Structural signature value types.

Signatures carry no identity or lifecycle; two signatures are equal exactly
when their canonical forms are equal.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional, Tuple

PERCENT_QUANTUM = Decimal("0.0001")


def quantize_percent(value: Decimal) -> Decimal:
    return Decimal(value).quantize(PERCENT_QUANTUM)


def canonical_percent(value: Decimal) -> str:
    """Render a percentage as a fixed 4-place string ("60" -> "60.0000")."""
    return format(quantize_percent(value), "f")


@dataclass(frozen=True)
class TierEntry:
    """A single tier of a commission chain."""
    level: int
    broker_id: str
    split_percent: Decimal
    schedule_code: Optional[str] = None

    def to_canonical(self) -> dict[str, Any]:
        return {
            "broker_id": self.broker_id,
            "level": self.level,
            "schedule_code": self.schedule_code,
            "split_percent": canonical_percent(self.split_percent),
        }


@dataclass(frozen=True)
class TierSignature:
    """Order-normalized tier chain of one split.

    Tiers are kept sorted by (level, broker_id). ``split_percent`` is the
    split's share of premium; a bare chain (used for hierarchy versioning)
    leaves it unset.
    """
    tiers: Tuple[TierEntry, ...]
    split_percent: Optional[Decimal] = None

    def to_canonical(self) -> dict[str, Any]:
        return {
            "split_percent": canonical_percent(self.split_percent) if self.split_percent is not None else None,
            "tiers": [tier.to_canonical() for tier in self.tiers],
        }

    def chain(self) -> "TierSignature":
        """The tier chain without the split share."""
        return TierSignature(tiers=self.tiers)

    @property
    def writing_broker_id(self) -> Optional[str]:
        return self.tiers[0].broker_id if self.tiers else None


@dataclass(frozen=True)
class ConfigurationSignature:
    """The split structure of one certificate: one tier signature per split."""
    splits: Tuple[TierSignature, ...]

    def to_canonical(self) -> list[dict[str, Any]]:
        return [split.to_canonical() for split in self.splits]
