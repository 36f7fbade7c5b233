"""Typed certificate records consumed by the assembly engine."""

from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CertificateRecord(BaseModel):
    """One tier of one premium split of one certificate.

    Rows sharing ``certificate_id`` and ``split_sequence`` form the tier
    chain of that split; ``split_percent`` is the split's share of premium
    and is repeated on every tier row.
    """

    model_config = ConfigDict(frozen=True)

    certificate_id: str = Field(..., description="Policy/certificate identifier")
    group_id: Optional[str] = Field(None, description="Employer group, None when missing")
    product_code: Optional[str] = None
    plan_code: Optional[str] = None
    split_sequence: int = Field(..., ge=0, description="Premium split sequence on the certificate")
    split_percent: Decimal = Field(..., description="Split share of premium, 0-100")
    writing_broker_id: Optional[str] = Field(None, description="Writing agent of the split")
    split_broker_id: str = Field(..., description="Broker holding this tier")
    tier_level: int = Field(..., ge=0, description="Position of the tier in the chain")
    tier_percent: Optional[Decimal] = Field(None, description="Explicit tier share within the chain")
    schedule_code: Optional[str] = None
    situs_state: Optional[str] = None
    effective_from: date
    effective_to: date
    status: str = "A"
