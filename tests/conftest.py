"""Pytest configuration and shared fixtures."""

from datetime import date
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from commission_builder.core.database import Base
from commission_builder.database import models  # noqa: F401
from commission_builder.models.certificate import CertificateRecord


def make_record(
    certificate_id: str = "C1",
    group_id: Optional[str] = "0006",
    split_sequence: int = 1,
    split_percent: str = "100",
    broker_id: str = "B1",
    tier_level: int = 1,
    effective_from: date = date(2020, 1, 1),
    effective_to: date = date(2099, 1, 1),
    writing_broker_id: Optional[str] = None,
    tier_percent: Optional[str] = None,
    schedule_code: Optional[str] = "SCH1",
    situs_state: Optional[str] = "TX",
    product_code: Optional[str] = "DENT",
    plan_code: Optional[str] = "P1",
) -> CertificateRecord:
    """Create one certificate tier row."""
    return CertificateRecord(
        certificate_id=certificate_id,
        group_id=group_id,
        product_code=product_code,
        plan_code=plan_code,
        split_sequence=split_sequence,
        split_percent=Decimal(split_percent),
        writing_broker_id=writing_broker_id or broker_id,
        split_broker_id=broker_id,
        tier_level=tier_level,
        tier_percent=Decimal(tier_percent) if tier_percent is not None else None,
        schedule_code=schedule_code,
        situs_state=situs_state,
        effective_from=effective_from,
        effective_to=effective_to,
    )


def make_chain(
    certificate_id: str,
    brokers: list,
    split_sequence: int = 1,
    split_percent: str = "100",
    **kwargs,
) -> list:
    """Create the tier rows of one split; the first broker is the writing broker."""
    return [
        make_record(
            certificate_id=certificate_id,
            split_sequence=split_sequence,
            split_percent=split_percent,
            broker_id=broker,
            tier_level=level,
            writing_broker_id=brokers[0],
            **kwargs,
        )
        for level, broker in enumerate(brokers, start=1)
    ]


def raw_row(**overrides) -> dict:
    """Create a raw input row as stored in input_certificates."""
    row = {
        "certificate_id": "C1",
        "group_id": "G0006",
        "product_code": "DENT",
        "plan_code": "P1",
        "split_sequence": 1,
        "split_percent": Decimal("100"),
        "writing_broker_id": "B1",
        "split_broker_id": "B1",
        "tier_level": 1,
        "tier_percent": None,
        "schedule_code": "SCH1",
        "situs_state": "TX",
        "effective_from": date(2020, 1, 1),
        "effective_to": None,
        "status": "A",
    }
    row.update(overrides)
    return row


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def chain_factory():
    return make_chain


@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite engine with every table created."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def row_factory():
    return raw_row
