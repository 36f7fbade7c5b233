"""Certificate normalizer.

Turns raw certificate rows (snake_case or the source system's PascalCase
columns) into typed, immutable ``CertificateRecord`` values. Normalization is
purely syntactic: structural decisions such as invalid groups are made later
by the assembly engine.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, List, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError

from commission_builder.core.exceptions import ValidationError
from commission_builder.models.certificate import CertificateRecord
from commission_builder.models.structures import ValidationIssue
from commission_builder.utils.logging import get_logger

LOGGER = get_logger(__name__)

DEFAULT_OPEN_ENDED_DATE = date(2099, 1, 1)

# Source column name -> record field
FIELD_ALIASES = {
    "CertificateId": "certificate_id",
    "CertificateNumber": "certificate_id",
    "GroupId": "group_id",
    "ProductCode": "product_code",
    "Product": "product_code",
    "PlanCode": "plan_code",
    "CertSplitSeq": "split_sequence",
    "CertSplitPercent": "split_percent",
    "WritingBrokerId": "writing_broker_id",
    "WritingBrokerID": "writing_broker_id",
    "SplitBrokerSeq": "tier_level",
    "SplitBrokerId": "split_broker_id",
    "SplitBrokerPercent": "tier_percent",
    "CommissionSchedule": "schedule_code",
    "SitusState": "situs_state",
    "CertIssuedState": "situs_state",
    "CertEffectiveDate": "effective_from",
    "CertExpirationDate": "effective_to",
    "CertStatus": "status",
    "RecStatus": "status",
}

REQUIRED_FIELDS = ("certificate_id", "split_broker_id", "effective_from", "split_sequence", "tier_level")

_NUMERIC_GROUP = re.compile(r"^G?(\d+)$", re.IGNORECASE)
_ZERO_GROUP = re.compile(r"^0+$")
_G_ZERO_GROUP = re.compile(r"^G0+$", re.IGNORECASE)


def is_invalid_group(group_id: Optional[str]) -> bool:
    """Return True for groups that cannot anchor a proposal.

    ``None``, empty/blank, all zeros and ``G`` followed by zeros are invalid.
    """
    if group_id is None:
        return True
    value = str(group_id).strip()
    if not value:
        return True
    return bool(_ZERO_GROUP.match(value) or _G_ZERO_GROUP.match(value))


def normalize_group_id(raw: Any) -> Optional[str]:
    """Drop the ``G`` prefix of numeric group ids, keeping leading zeros."""
    value = _clean_str(raw)
    if value is None:
        return None
    match = _NUMERIC_GROUP.match(value)
    if match:
        return match.group(1)
    return value


def _clean_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _upper(value: Any) -> Optional[str]:
    text = _clean_str(value)
    return text.upper() if text else None


def _parse_date(value: Any, field_name: str) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        raise ValueError(f"unparsable {field_name}: {text!r}")


def _parse_decimal(value: Any, field_name: str) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    text = str(value).strip().rstrip("%")
    if not text:
        return None
    try:
        return Decimal(text)
    except InvalidOperation:
        raise ValueError(f"unparsable {field_name}: {value!r}")


def _parse_int(value: Any, field_name: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"unparsable {field_name}: {value!r}")
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        number = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"unparsable {field_name}: {value!r}")
    if not number.is_finite() or number != number.to_integral_value():
        raise ValueError(f"{field_name} must be a whole number: {value!r}")
    return int(number)


@dataclass
class NormalizationResult:
    """Normalized records plus the rows that were rejected."""
    records: List[CertificateRecord] = field(default_factory=list)
    rejected: List[ValidationIssue] = field(default_factory=list)


class CertificateNormalizer:
    """Normalizes raw certificate rows into ``CertificateRecord`` values."""

    def __init__(self, open_ended_date: date = DEFAULT_OPEN_ENDED_DATE):
        self.open_ended_date = open_ended_date

    def _canonical_keys(self, raw_row: Mapping[str, Any]) -> dict:
        row = {}
        for key, value in raw_row.items():
            target = FIELD_ALIASES.get(key, key)
            # First non-blank value wins when several aliases are present
            if row.get(target) is None or _clean_str(row.get(target)) is None:
                row[target] = value
        return row

    def normalize(self, raw_row: Mapping[str, Any]) -> CertificateRecord:
        """Normalize one raw row.

        Raises:
            ValidationError: When an identity field is missing or a value
                cannot be parsed.
        """
        row = self._canonical_keys(raw_row)
        certificate_id = _clean_str(row.get("certificate_id"))
        group_id = normalize_group_id(row.get("group_id"))

        try:
            split_sequence = _parse_int(row.get("split_sequence"), "split_sequence")
            tier_level = _parse_int(row.get("tier_level"), "tier_level")
            effective_from = _parse_date(row.get("effective_from"), "effective_from")
            effective_to = _parse_date(row.get("effective_to"), "effective_to")
            split_percent = _parse_decimal(row.get("split_percent"), "split_percent")
            tier_percent = _parse_decimal(row.get("tier_percent"), "tier_percent")
        except ValueError as e:
            raise ValidationError(str(e), certificate_id=certificate_id, group_id=group_id, original_error=e)

        values = {
            "certificate_id": certificate_id,
            "group_id": group_id,
            "product_code": _upper(row.get("product_code")),
            "plan_code": _upper(row.get("plan_code")),
            "split_sequence": split_sequence,
            "split_percent": split_percent if split_percent is not None else Decimal("100"),
            "writing_broker_id": _upper(row.get("writing_broker_id")),
            "split_broker_id": _upper(row.get("split_broker_id")),
            "tier_level": tier_level,
            "tier_percent": tier_percent,
            "schedule_code": _clean_str(row.get("schedule_code")),
            "situs_state": _upper(row.get("situs_state")),
            "effective_from": effective_from,
            "effective_to": effective_to or self.open_ended_date,
            "status": _upper(row.get("status")) or "A",
        }

        missing = [name for name in REQUIRED_FIELDS if values[name] is None]
        if missing:
            raise ValidationError(
                f"missing required field(s): {', '.join(missing)}",
                certificate_id=certificate_id,
                group_id=group_id,
                split_sequence=split_sequence,
            )

        if effective_to is not None and effective_to < effective_from:
            raise ValidationError(
                f"effective_to {effective_to} precedes effective_from {effective_from}",
                certificate_id=certificate_id,
                group_id=group_id,
                split_sequence=split_sequence,
            )

        try:
            return CertificateRecord(**values)
        except PydanticValidationError as e:
            raise ValidationError(
                f"invalid certificate row: {e.errors()[0]['msg']}",
                certificate_id=certificate_id,
                group_id=group_id,
                split_sequence=split_sequence,
                original_error=e,
            )

    def normalize_all(self, rows: Iterable[Mapping[str, Any]]) -> NormalizationResult:
        """Normalize every row, collecting rejected rows instead of raising."""
        result = NormalizationResult()
        for raw_row in rows:
            try:
                result.records.append(self.normalize(raw_row))
            except ValidationError as e:
                LOGGER.warning(
                    f"Rejected certificate row: {e}",
                    extra={"certificate_id": e.certificate_id, "group_id": e.group_id},
                )
                result.rejected.append(
                    ValidationIssue(
                        message=str(e),
                        certificate_id=e.certificate_id,
                        group_id=e.group_id,
                        split_sequence=e.split_sequence,
                    )
                )

        LOGGER.info(
            f"Normalized {len(result.records)} certificate rows, rejected {len(result.rejected)}",
            extra={"normalized": len(result.records), "rejected": len(result.rejected)},
        )
        return result
