"""
Tests for Scheduled Reports

Tests cover:
- Schedule upsert with cron validation and next-run computation
- Due schedule selection
- Running a schedule: export, email delivery, schedule advance
- Failure counting and automatic disabling
- The batch job and the schedule API
"""
import asyncio
from datetime import datetime, timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

import app.jobs.report_jobs as report_jobs
from app.core.config import settings
from app.core.exceptions import InvalidCronExpression
from app.core.storage import LocalFileStorage
from app.models.report import Report, ScheduledReport, ExecutionStatus, ExecutionType, ExportFormat
from app.models.user import User
from app.services.report_execution_service import ReportExecutionService
from app.services.scheduled_report_service import ScheduledReportService, scheduled_report_subject
from tests.conftest import FakeMailer, ReportFactory, TicketFactory, actor_headers


NOW = datetime(2026, 1, 15, 9, 30)


def make_service(db: AsyncSession, storage: LocalFileStorage, mailer: FakeMailer) -> ScheduledReportService:
    return ScheduledReportService(db, ReportExecutionService(db, storage), mailer)


class TestScheduleManagement:
    """Tests for creating and selecting schedules."""

    @pytest.mark.asyncio
    async def test_upsert_computes_next_run(
        self, db_session: AsyncSession, storage, mailer, test_report: Report
    ):
        service = make_service(db_session, storage, mailer)

        schedule = await service.upsert_schedule(
            test_report, "0  9 * * *", recipients=["ops@test.com"], now=NOW
        )

        assert schedule.cron_expression == "0 9 * * *"
        assert schedule.next_run_at == datetime(2026, 1, 16, 9, 0)
        assert schedule.recipients == ["ops@test.com"]
        assert schedule.format == ExportFormat.CSV
        assert schedule.is_active is True

    @pytest.mark.asyncio
    async def test_upsert_replaces_existing_schedule(
        self, db_session: AsyncSession, storage, mailer, test_report: Report
    ):
        service = make_service(db_session, storage, mailer)
        first = await service.upsert_schedule(test_report, "0 9 * * *", now=NOW)

        second = await service.upsert_schedule(
            test_report, "0 9 * * 1", timezone="Europe/Berlin", format=ExportFormat.JSON, now=NOW
        )

        assert second.id == first.id
        # Monday 2026-01-19 09:00 Berlin is 08:00 UTC
        assert second.next_run_at == datetime(2026, 1, 19, 8, 0)
        assert second.format == ExportFormat.JSON

    @pytest.mark.asyncio
    async def test_reactivation_resets_failures(
        self, db_session: AsyncSession, storage, mailer, test_report: Report
    ):
        service = make_service(db_session, storage, mailer)
        schedule = await service.upsert_schedule(test_report, "0 9 * * *", now=NOW)
        schedule.failure_count = settings.SCHEDULE_FAILURE_THRESHOLD
        schedule.is_active = False
        await db_session.commit()

        schedule = await service.upsert_schedule(test_report, "0 9 * * *", is_active=True, now=NOW)

        assert schedule.is_active is True
        assert schedule.failure_count == 0

    @pytest.mark.asyncio
    async def test_invalid_cron_is_rejected(
        self, db_session: AsyncSession, storage, mailer, test_report: Report
    ):
        service = make_service(db_session, storage, mailer)

        with pytest.raises(InvalidCronExpression):
            await service.upsert_schedule(test_report, "every day", now=NOW)
        with pytest.raises(InvalidCronExpression):
            await service.upsert_schedule(test_report, "0 9 * * *", timezone="Nowhere/City", now=NOW)

        assert await service.get_schedule(test_report.id) is None

    @pytest.mark.asyncio
    async def test_due_schedules(
        self, db_session: AsyncSession, storage, mailer, agent_user: User
    ):
        service = make_service(db_session, storage, mailer)
        due_report = await ReportFactory.create(db_session, created_by=agent_user.id, name="Due")
        later_report = await ReportFactory.create(db_session, created_by=agent_user.id, name="Later")
        paused_report = await ReportFactory.create(db_session, created_by=agent_user.id, name="Paused")
        retired_report = await ReportFactory.create(
            db_session, created_by=agent_user.id, name="Retired", is_active=False
        )

        await service.upsert_schedule(due_report, "0 9 * * *", now=NOW)
        await service.upsert_schedule(later_report, "0 9 * * 1", now=NOW)
        await service.upsert_schedule(paused_report, "0 9 * * *", is_active=False, now=NOW)
        await service.upsert_schedule(retired_report, "0 9 * * *", now=NOW)

        due = await service.get_due_schedules(datetime(2026, 1, 16, 9, 0))

        assert [s.report_id for s in due] == [due_report.id]
        assert due[0].report.name == "Due"


class TestRunSchedule:
    """Tests for executing a scheduled report."""

    @pytest.mark.asyncio
    async def test_successful_run_emails_and_advances(
        self, db_session: AsyncSession, storage, mailer, test_report: Report
    ):
        await TicketFactory.create(db_session, subject="VPN down")
        service = make_service(db_session, storage, mailer)
        schedule = await service.upsert_schedule(
            test_report, "0 9 * * *", recipients=["ops@test.com", "lead@test.com"], now=NOW
        )
        run_at = datetime(2026, 1, 16, 9, 0)

        result = await service.run_schedule(schedule, run_at)

        assert result.ok
        execution = result.value
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.execution_type == ExecutionType.SCHEDULED
        assert await storage.exists(execution.file_path)

        assert schedule.last_run_at == run_at
        assert schedule.run_count == 1
        assert schedule.failure_count == 0
        assert schedule.next_run_at == datetime(2026, 1, 17, 9, 0)

        assert [mail["to"] for mail in mailer.sent] == ["ops@test.com", "lead@test.com"]
        mail = mailer.sent[0]
        assert mail["subject"] == "Scheduled Report: Open tickets - 2026-01-16 09:00"
        assert mail["subject"] == scheduled_report_subject(test_report.name, run_at)
        assert mail["attachments"] == [execution.file_path]
        assert test_report.name in mail["html_body"]

    @pytest.mark.asyncio
    async def test_report_recipients_are_fallback(
        self, db_session: AsyncSession, storage, mailer, agent_user: User
    ):
        report = await ReportFactory.create(
            db_session, created_by=agent_user.id, recipients=["team@test.com"]
        )
        await TicketFactory.create(db_session)
        service = make_service(db_session, storage, mailer)
        schedule = await service.upsert_schedule(report, "0 9 * * *", now=NOW)

        result = await service.run_schedule(schedule, datetime(2026, 1, 16, 9, 0))

        assert result.ok
        assert [mail["to"] for mail in mailer.sent] == ["team@test.com"]

    @pytest.mark.asyncio
    async def test_mail_failure_does_not_fail_run(
        self, db_session: AsyncSession, storage, test_report: Report
    ):
        await TicketFactory.create(db_session)
        service = make_service(db_session, storage, FakeMailer(fail=True))
        schedule = await service.upsert_schedule(
            test_report, "0 9 * * *", recipients=["ops@test.com"], now=NOW
        )

        result = await service.run_schedule(schedule, datetime(2026, 1, 16, 9, 0))

        assert result.ok
        assert schedule.run_count == 1

    @pytest.mark.asyncio
    async def test_failures_back_off_then_disable(
        self, db_session: AsyncSession, storage, mailer, agent_user: User
    ):
        report = await ReportFactory.create(
            db_session, created_by=agent_user.id, query_sql="SELECT nope FROM nothing"
        )
        service = make_service(db_session, storage, mailer)
        schedule = await service.upsert_schedule(
            report, "0 9 * * *", recipients=["ops@test.com"], now=NOW
        )
        run_at = datetime(2026, 1, 16, 9, 0)

        result = await service.run_schedule(schedule, run_at)

        assert not result.ok
        assert result.reason
        assert schedule.failure_count == 1
        assert schedule.is_active is True
        assert schedule.next_run_at == run_at + timedelta(minutes=settings.SCHEDULE_RETRY_MINUTES)
        assert mailer.sent == []

        for _ in range(settings.SCHEDULE_FAILURE_THRESHOLD - 1):
            await service.run_schedule(schedule, run_at)

        assert schedule.failure_count == settings.SCHEDULE_FAILURE_THRESHOLD
        assert schedule.is_active is False

    @pytest.mark.asyncio
    async def test_empty_report_counts_as_failure(
        self, db_session: AsyncSession, storage, mailer, test_report: Report
    ):
        service = make_service(db_session, storage, mailer)
        schedule = await service.upsert_schedule(
            test_report, "0 9 * * *", recipients=["ops@test.com"], now=NOW
        )

        result = await service.run_schedule(schedule, datetime(2026, 1, 16, 9, 0))

        assert not result.ok
        assert result.reason == "No data to export"
        assert schedule.failure_count == 1

    @pytest.mark.asyncio
    async def test_timed_out_run_counts_as_failure(
        self, db_session: AsyncSession, storage, mailer, test_report: Report, monkeypatch
    ):
        async def slow_query(self, report, parameters):
            await asyncio.sleep(1)
            return [{"ticket_number": "TKT-1"}]

        monkeypatch.setattr(ReportExecutionService, "run_query", slow_query)
        monkeypatch.setattr(settings, "REPORT_JOB_TIMEOUT_SECONDS", 0.05)
        service = make_service(db_session, storage, mailer)
        schedule = await service.upsert_schedule(
            test_report, "0 9 * * *", recipients=["ops@test.com"], now=NOW
        )
        run_at = datetime(2026, 1, 16, 9, 0)

        result = await service.run_schedule(schedule, run_at)

        assert not result.ok
        assert "timed out" in result.reason
        assert schedule.failure_count == 1
        assert schedule.next_run_at == run_at + timedelta(minutes=settings.SCHEDULE_RETRY_MINUTES)
        assert mailer.sent == []

        executions, total = await service.execution_service.list_executions(test_report.id)
        assert total == 1
        assert executions[0].status == ExecutionStatus.FAILED
        assert executions[0].completed_at is not None

    @pytest.mark.asyncio
    async def test_repeated_timeouts_disable_schedule(
        self, db_session: AsyncSession, storage, mailer, test_report: Report, monkeypatch
    ):
        async def slow_query(self, report, parameters):
            await asyncio.sleep(1)
            return []

        monkeypatch.setattr(ReportExecutionService, "run_query", slow_query)
        monkeypatch.setattr(settings, "REPORT_JOB_TIMEOUT_SECONDS", 0.01)
        service = make_service(db_session, storage, mailer)
        schedule = await service.upsert_schedule(test_report, "0 9 * * *", now=NOW)

        for _ in range(settings.SCHEDULE_FAILURE_THRESHOLD):
            await service.run_schedule(schedule, datetime(2026, 1, 16, 9, 0))

        assert schedule.is_active is False
        executions, _ = await service.execution_service.list_executions(test_report.id)
        assert {e.status for e in executions} == {ExecutionStatus.FAILED}

    @pytest.mark.asyncio
    async def test_runs_keep_latest_executions(
        self, db_session: AsyncSession, storage, mailer, test_report: Report
    ):
        await TicketFactory.create(db_session)
        service = make_service(db_session, storage, mailer)
        schedule = await service.upsert_schedule(test_report, "0 9 * * *", now=NOW)
        retention = settings.REPORT_EXECUTION_RETENTION

        first = (await service.run_schedule(schedule, datetime(2026, 1, 16, 9, 0))).value
        first_id, first_file = first.id, first.file_path
        for day in range(retention + 1):
            result = await service.run_schedule(schedule, datetime(2026, 1, 17, 9, 0) + timedelta(days=day))
            assert result.ok

        executions, total = await service.execution_service.list_executions(
            test_report.id, limit=retention + 10
        )
        assert total == retention
        assert first_id not in {e.id for e in executions}
        assert not await storage.exists(first_file)
        for execution in executions:
            assert await storage.exists(execution.file_path)

    def test_invalid_stored_cron_falls_back_to_retry_interval(self):
        schedule = ScheduledReport(cron_expression="bogus", timezone="UTC", run_count=0, failure_count=2)
        service = ScheduledReportService(None, None, None)

        service.mark_as_run(schedule, NOW)

        assert schedule.failure_count == 0
        assert schedule.run_count == 1
        assert schedule.next_run_at == NOW + timedelta(minutes=settings.SCHEDULE_RETRY_MINUTES)


class TestScheduledReportsJob:
    """Tests for the batch job that runs due schedules."""

    @pytest.mark.asyncio
    async def test_job_runs_due_schedules(
        self,
        db_session: AsyncSession,
        session_factory,
        storage,
        mailer,
        test_report: Report,
        agent_user: User,
        monkeypatch
    ):
        monkeypatch.setattr(report_jobs, "AsyncSessionLocal", session_factory)
        broken = await ReportFactory.create(
            db_session, created_by=agent_user.id, query_sql="SELECT nope FROM nothing"
        )
        await TicketFactory.create(db_session)
        service = make_service(db_session, storage, mailer)
        good_schedule = await service.upsert_schedule(
            test_report, "0 9 * * *", recipients=["ops@test.com"], now=NOW
        )
        bad_schedule = await service.upsert_schedule(broken, "0 9 * * *", now=NOW)

        summary = await report_jobs.run_scheduled_reports_job(datetime(2026, 1, 16, 9, 0))

        assert summary["job_type"] == "scheduled_reports"
        assert summary["total_schedules"] == 2
        assert summary["success_count"] == 1
        assert summary["failure_count"] == 1
        assert len(mailer.sent) == 1

        await db_session.refresh(good_schedule)
        await db_session.refresh(bad_schedule)
        assert good_schedule.run_count == 1
        assert good_schedule.next_run_at == datetime(2026, 1, 17, 9, 0)
        assert bad_schedule.failure_count == 1

    @pytest.mark.asyncio
    async def test_job_records_timed_out_schedule(
        self,
        db_session: AsyncSession,
        session_factory,
        storage,
        mailer,
        test_report: Report,
        monkeypatch
    ):
        async def slow_query(self, report, parameters):
            await asyncio.sleep(0.5)
            return []

        monkeypatch.setattr(report_jobs, "AsyncSessionLocal", session_factory)
        monkeypatch.setattr(ReportExecutionService, "run_query", slow_query)
        monkeypatch.setattr(settings, "REPORT_JOB_TIMEOUT_SECONDS", 0.05)
        schedule = await make_service(db_session, storage, mailer).upsert_schedule(
            test_report, "0 9 * * *", now=NOW
        )
        run_at = datetime(2026, 1, 16, 9, 0)

        summary = await report_jobs.run_scheduled_reports_job(run_at)

        assert summary["failure_count"] == 1
        await db_session.refresh(schedule)
        assert schedule.failure_count == 1
        assert schedule.next_run_at == run_at + timedelta(minutes=settings.SCHEDULE_RETRY_MINUTES)
        executions, _ = await ReportExecutionService(db_session, storage).list_executions(test_report.id)
        assert [e.status for e in executions] == [ExecutionStatus.FAILED]

    @pytest.mark.asyncio
    async def test_job_with_nothing_due(self, session_factory, storage, mailer, monkeypatch):
        monkeypatch.setattr(report_jobs, "AsyncSessionLocal", session_factory)

        summary = await report_jobs.run_scheduled_reports_job(NOW)

        assert summary["total_schedules"] == 0
        assert summary["errors"] == []

    @pytest.mark.asyncio
    async def test_cleanup_job(
        self, db_session: AsyncSession, session_factory, storage, test_report: Report, monkeypatch
    ):
        monkeypatch.setattr(report_jobs, "AsyncSessionLocal", session_factory)
        execution = await ReportExecutionService(db_session, storage).execute(test_report)
        execution.created_at = datetime.utcnow() - timedelta(days=settings.EXECUTION_HISTORY_DAYS + 1)
        await db_session.commit()

        summary = await report_jobs.run_execution_cleanup_job()

        assert summary["deleted"] == 1


class TestScheduleApi:
    """Tests for /api/v1/reports/{id}/schedule."""

    @pytest.mark.asyncio
    async def test_schedule_lifecycle(self, client: AsyncClient, test_report: Report, agent_headers: dict):
        url = f"/api/v1/reports/{test_report.id}/schedule"

        response = await client.get(url, headers=agent_headers)
        assert response.status_code == 404

        response = await client.put(
            url,
            json={"cron_expression": "0 9 * * 1-5", "recipients": ["ops@test.com"], "format": "json"},
            headers=agent_headers
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["cron_expression"] == "0 9 * * 1-5"
        assert data["format"] == "json"
        assert data["next_run_at"] is not None

        response = await client.get(f"/api/v1/reports/{test_report.id}", headers=agent_headers)
        assert response.json()["data"]["schedule"]["id"] == data["id"]

        response = await client.delete(url, headers=agent_headers)
        assert response.status_code == 200
        response = await client.get(url, headers=agent_headers)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_invalid_cron_is_422(self, client: AsyncClient, test_report: Report, agent_headers: dict):
        response = await client.put(
            f"/api/v1/reports/{test_report.id}/schedule",
            json={"cron_expression": "0 9 * *"},
            headers=agent_headers
        )

        assert response.status_code == 422
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_non_owner_cannot_schedule_public_report(
        self, client: AsyncClient, db_session: AsyncSession, agent_user: User, other_agent: User
    ):
        report = await ReportFactory.create(db_session, created_by=agent_user.id, is_public=True)

        response = await client.put(
            f"/api/v1/reports/{report.id}/schedule",
            json={"cron_expression": "0 9 * * *"},
            headers=actor_headers(other_agent.id)
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_scheduler_status(self, client: AsyncClient, agent_headers: dict):
        response = await client.get("/api/v1/reports/scheduler/status", headers=agent_headers)

        assert response.status_code == 200
        assert response.json()["data"]["status"] in ("not_initialized", "running", "stopped")
