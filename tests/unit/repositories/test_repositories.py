"""Unit tests for the certificate and pipeline state repositories."""

from datetime import date

import pytest

from commission_builder.database.models import CommissionSchedule
from commission_builder.models.pipeline import ErrorClass, RunStatus, StepStatus
from commission_builder.repositories.certificate_repository import CertificateRepository, _group_variants
from commission_builder.repositories.pipeline_state_repository import PipelineStateRepository


class TestCertificateRepository:
    """Tests for reading the certificate input boundary."""

    @pytest.fixture
    def rows(self, row_factory):
        return [
            row_factory(certificate_id="C1", tier_level=1),
            row_factory(certificate_id="C1", tier_level=2, split_broker_id="B2"),
            row_factory(certificate_id="C2", effective_from=date(2021, 1, 1)),
            row_factory(certificate_id="C3", group_id="G0100"),
            row_factory(certificate_id="C4", status="T"),
        ]

    @pytest.mark.asyncio
    async def test_only_active_rows_are_returned(self, session_maker, rows):
        async with session_maker() as session:
            repo = CertificateRepository(session)
            await repo.add_certificates(rows)

            loaded = await repo.get_active_certificates()

        assert {row["certificate_id"] for row in loaded} == {"C1", "C2", "C3"}
        assert "id" not in loaded[0]

    @pytest.mark.asyncio
    async def test_limit_counts_certificates_not_rows(self, session_maker, rows):
        """Test that a limit never truncates a certificate's tiers."""
        async with session_maker() as session:
            repo = CertificateRepository(session)
            await repo.add_certificates(rows)

            loaded = await repo.get_active_certificates(limit=1)

        assert [row["certificate_id"] for row in loaded] == ["C1", "C1"]
        assert [row["tier_level"] for row in loaded] == [1, 2]

    @pytest.mark.asyncio
    async def test_group_filter_matches_prefixed_and_bare_ids(self, session_maker, rows):
        async with session_maker() as session:
            repo = CertificateRepository(session)
            await repo.add_certificates(rows)

            loaded = await repo.get_active_certificates(group_ids=["0006", "0100"])

        assert {row["certificate_id"] for row in loaded} == {"C1", "C2", "C3"}

    @pytest.mark.asyncio
    async def test_schedule_map(self, session_maker):
        async with session_maker() as session:
            session.add(CommissionSchedule(id="sched-1", code="SCH1", name="Standard"))
            await session.commit()

            mapping = await CertificateRepository(session).get_schedule_map()

        assert mapping == {"SCH1": "sched-1"}

    def test_group_variants(self):
        assert _group_variants(["G0006", " 12 ", "", "ACME"]) == ["0006", "12", "ACME", "G0006", "G12"]


class TestPipelineStateRepository:
    """Tests for persisted run and step state."""

    @pytest.mark.asyncio
    async def test_create_and_load_run(self, session_maker):
        async with session_maker() as session:
            repo = PipelineStateRepository(session)
            await repo.create_run("run-1", "nightly", ["a", "b"], {"limit": 5})

        async with session_maker() as session:
            state = await PipelineStateRepository(session).get_run("run-1")

        assert state.status == RunStatus.PENDING
        assert state.total_steps == 2
        assert [(s.step_number, s.name, s.status) for s in state.steps] == [
            (1, "a", StepStatus.PENDING),
            (2, "b", StepStatus.PENDING),
        ]
        assert state.config_snapshot == {"limit": 5}
        assert state.can_resume is True

    @pytest.mark.asyncio
    async def test_missing_run_is_none(self, session_maker):
        async with session_maker() as session:
            assert await PipelineStateRepository(session).get_run("nope") is None

    @pytest.mark.asyncio
    async def test_save_step_and_run(self, session_maker):
        async with session_maker() as session:
            repo = PipelineStateRepository(session)
            state = await repo.create_run("run-1", "nightly", ["a"])

            step = state.steps[0]
            step.status = StepStatus.FAILED
            step.attempts = 3
            step.error_message = "boom"
            step.error_class = ErrorClass.TRANSIENT
            await repo.save_step(step)

            state.status = RunStatus.FAILED
            state.error_class = ErrorClass.TRANSIENT
            await repo.save_run(state)

            loaded = await repo.get_run("run-1")

        assert loaded.status == RunStatus.FAILED
        assert loaded.error_class == ErrorClass.TRANSIENT
        assert loaded.steps[0].attempts == 3
        assert loaded.steps[0].error_message == "boom"

    @pytest.mark.asyncio
    async def test_list_runs(self, session_maker):
        async with session_maker() as session:
            repo = PipelineStateRepository(session)
            await repo.create_run("run-1", "first", ["a"])
            await repo.create_run("run-2", "second", ["a"])

            runs = await repo.list_runs(limit=10)

        assert {run.run_id for run in runs} == {"run-1", "run-2"}
