"""
Tests for Dashboard and Analytics Endpoints

Tests cover:
- Agent work queue ordering and access rules
- Stored agent metrics lookup
- Real-time ticket counters and their caching
- Period stats in business hours
- Metrics store listings and on-demand aggregation
"""
from datetime import date, datetime, timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import InMemoryCache
from app.core.config import settings
from app.models.metrics import AgentMetrics
from app.models.ticket import TicketPriority, TicketStatus
from app.models.user import User, UserRole
from app.services.dashboard_service import DashboardService
from tests.conftest import TicketFactory, UserFactory, actor_headers


class TestAgentQueue:
    """Tests for the agent work queue."""

    @pytest.mark.asyncio
    async def test_queue_orders_by_priority_then_age(
        self, db_session: AsyncSession, fresh_cache: InMemoryCache, agent_user: User
    ):
        now = datetime.utcnow()
        medium = await TicketFactory.create(
            db_session, priority=TicketPriority.MEDIUM, assigned_agent_id=agent_user.id,
            created_at=now - timedelta(days=3)
        )
        urgent = await TicketFactory.create(
            db_session, priority=TicketPriority.URGENT, status=TicketStatus.OPEN,
            assigned_agent_id=agent_user.id, created_at=now
        )
        old_high = await TicketFactory.create(
            db_session, priority=TicketPriority.HIGH, assigned_agent_id=agent_user.id,
            created_at=now - timedelta(days=2)
        )
        new_high = await TicketFactory.create(
            db_session, priority=TicketPriority.HIGH, assigned_agent_id=agent_user.id,
            created_at=now - timedelta(hours=1)
        )
        await TicketFactory.create(db_session, status=TicketStatus.RESOLVED, assigned_agent_id=agent_user.id)
        await TicketFactory.create(db_session, assigned_agent_id=agent_user.id, is_archived=True)
        await TicketFactory.create(db_session)

        queue = await DashboardService(db_session, fresh_cache).agent_queue(agent_user.id)

        assert queue["total"] == 4
        assert [t["id"] for t in queue["tickets"]] == [urgent.id, old_high.id, new_high.id, medium.id]
        assert queue["by_status"] == {"new": 3, "open": 1}

    @pytest.mark.asyncio
    async def test_queue_endpoint_defaults_to_caller(
        self, client: AsyncClient, db_session: AsyncSession, agent_user: User, agent_headers: dict
    ):
        await TicketFactory.create(db_session, assigned_agent_id=agent_user.id)

        response = await client.get("/api/v1/dashboard/agent-queue", headers=agent_headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["agent_id"] == agent_user.id
        assert data["total"] == 1

    @pytest.mark.asyncio
    async def test_agent_cannot_view_other_queue(
        self, client: AsyncClient, other_agent: User, agent_headers: dict
    ):
        response = await client.get(
            "/api/v1/dashboard/agent-queue", params={"agent_id": other_agent.id}, headers=agent_headers
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_admin_can_view_other_queue(
        self, client: AsyncClient, agent_user: User, admin_headers: dict
    ):
        response = await client.get(
            "/api/v1/dashboard/agent-queue", params={"agent_id": agent_user.id}, headers=admin_headers
        )
        assert response.status_code == 200


class TestAgentStats:
    """Tests for stored agent metrics lookup."""

    @pytest.mark.asyncio
    async def test_latest_window_on_or_before_date(
        self, client: AsyncClient, db_session: AsyncSession, agent_user: User, agent_headers: dict
    ):
        response = await client.get(
            "/api/v1/dashboard/agent-stats", params={"date": "2026-01-20"}, headers=agent_headers
        )
        assert response.status_code == 404

        for period_end, resolved in ((date(2026, 1, 10), 4), (date(2026, 1, 15), 7), (date(2026, 1, 25), 9)):
            db_session.add(AgentMetrics(
                agent_id=agent_user.id,
                period_start=period_end - timedelta(days=29),
                period_end=period_end,
                tickets_assigned=10,
                tickets_resolved=resolved,
                performance_data={"resolution_rate": resolved * 10.0},
            ))
        await db_session.commit()

        response = await client.get(
            "/api/v1/dashboard/agent-stats", params={"date": "2026-01-20"}, headers=agent_headers
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["period_end"] == "2026-01-15"
        assert data["tickets_resolved"] == 7
        assert data["performance_data"] == {"resolution_rate": 70.0}


class TestRealtimeCounters:
    """Tests for live counters."""

    @pytest.mark.asyncio
    async def test_counters(self, db_session: AsyncSession, fresh_cache: InMemoryCache, agent_user: User):
        now = datetime.utcnow()
        await TicketFactory.create(
            db_session,
            assigned_agent_id=agent_user.id,
            created_at=now - timedelta(hours=2),
            first_response_at=now - timedelta(minutes=90),
        )
        await TicketFactory.create(
            db_session,
            status=TicketStatus.OPEN,
            created_at=now - timedelta(hours=3),
            sla_deadline=now - timedelta(minutes=10),
        )
        await TicketFactory.create(
            db_session,
            status=TicketStatus.RESOLVED,
            assigned_agent_id=agent_user.id,
            created_at=now - timedelta(hours=5),
            first_response_at=now - timedelta(hours=4),
            resolved_at=now - timedelta(hours=1),
        )

        counters = await DashboardService(db_session, fresh_cache).realtime_counters()

        assert counters == {
            "open_tickets": 2,
            "unassigned_tickets": 1,
            "overdue_tickets": 1,
            "avg_response_time": 45.0,
        }

    @pytest.mark.asyncio
    async def test_counters_are_cached(self, db_session: AsyncSession, fresh_cache: InMemoryCache):
        service = DashboardService(db_session, fresh_cache)
        await TicketFactory.create(db_session)
        first = await service.realtime_counters()

        await TicketFactory.create(db_session)
        cached = await service.realtime_counters()

        assert first["open_tickets"] == cached["open_tickets"] == 1
        assert first["avg_response_time"] is None

        await fresh_cache.forget("realtime:open_tickets")
        assert (await service.realtime_counters())["open_tickets"] == 2

    @pytest.mark.asyncio
    async def test_realtime_endpoint(self, client: AsyncClient, agent_headers: dict):
        response = await client.get("/api/v1/dashboard/realtime", headers=agent_headers)

        assert response.status_code == 200
        assert response.json()["data"]["open_tickets"] == 0


class TestDashboardStats:
    """Tests for the period comparison on business hours."""

    @pytest.mark.asyncio
    async def test_current_period_against_previous(self, db_session: AsyncSession, fresh_cache: InMemoryCache):
        # Thursday noon; the current week starts Thursday 2026-01-08 12:00
        now = datetime(2026, 1, 15, 12, 0)

        await TicketFactory.create(
            db_session, status=TicketStatus.OPEN,
            created_at=datetime(2026, 1, 15, 10), first_response_at=datetime(2026, 1, 15, 11)
        )
        # Friday 17:00, answered Monday 10:00, resolved Monday 12:00
        await TicketFactory.create(
            db_session, status=TicketStatus.RESOLVED,
            created_at=datetime(2026, 1, 9, 17), first_response_at=datetime(2026, 1, 12, 10),
            resolved_at=datetime(2026, 1, 12, 12)
        )

        await TicketFactory.create(
            db_session, created_at=datetime(2026, 1, 5, 9), first_response_at=datetime(2026, 1, 5, 12)
        )
        await TicketFactory.create(db_session, created_at=datetime(2026, 1, 6, 10))
        await TicketFactory.create(db_session, status=TicketStatus.PENDING, created_at=datetime(2026, 1, 7, 10))
        await TicketFactory.create(db_session, created_at=datetime(2026, 1, 7, 11), is_archived=True)

        stats = await DashboardService(db_session, fresh_cache).stats(7, now=now)

        assert stats["totals"] == {
            "total_tickets": 5,
            "open_tickets": 4,
            "pending_tickets": 1,
            "resolved_tickets": 1,
        }
        assert stats["today"] == {"new_tickets": 1, "resolved_tickets": 0}

        current = stats["current"]
        assert current["new_tickets"] == 2
        assert current["open_tickets"] == 1
        assert current["avg_response_hours"] == 33.0
        assert current["avg_response_business_hours"] == 1.5
        assert current["avg_resolution_hours"] == 67.0
        assert current["avg_resolution_business_hours"] == 4.0

        previous = stats["previous"]
        assert previous["new_tickets"] == 3
        assert previous["open_tickets"] == 3
        assert previous["avg_response_business_hours"] == 3.0
        assert previous["avg_resolution_business_hours"] == 0.0

        assert stats["change"] == {
            "new_tickets": -33.3,
            "open_tickets": -66.7,
            "avg_response_business_hours": -50.0,
            "avg_resolution_business_hours": 0.0,
        }
        assert stats["business_hours"] == {
            "days": [1, 2, 3, 4, 5],
            "start": "09:00",
            "end": "18:00",
            "timezone": "UTC",
        }

    @pytest.mark.asyncio
    async def test_empty_store(self, db_session: AsyncSession, fresh_cache: InMemoryCache):
        stats = await DashboardService(db_session, fresh_cache).stats(30)

        assert stats["totals"]["total_tickets"] == 0
        assert stats["current"]["avg_response_business_hours"] == 0.0
        assert set(stats["change"].values()) == {0.0}

    @pytest.mark.asyncio
    async def test_stats_endpoint(self, client: AsyncClient, agent_headers: dict, monkeypatch):
        monkeypatch.setattr(settings, "BUSINESS_TIMEZONE", "Europe/Berlin")

        response = await client.get("/api/v1/dashboard/stats", headers=agent_headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["period_days"] == settings.DASHBOARD_STATS_PERIOD_DAYS
        assert data["business_hours"]["timezone"] == "Europe/Berlin"

        response = await client.get("/api/v1/dashboard/stats?period_days=7", headers=agent_headers)
        assert response.json()["data"]["period_days"] == 7

    @pytest.mark.asyncio
    async def test_stats_endpoint_rejects_empty_period(self, client: AsyncClient, agent_headers: dict):
        response = await client.get("/api/v1/dashboard/stats?period_days=0", headers=agent_headers)

        assert response.status_code == 422


class TestAnalyticsApi:
    """Tests for /api/v1/analytics."""

    @pytest.mark.asyncio
    async def test_aggregate_then_list(
        self, client: AsyncClient, db_session: AsyncSession, admin_headers: dict, agent_headers: dict
    ):
        await TicketFactory.create(db_session, created_at=datetime(2026, 1, 15, 10, 0))

        response = await client.post(
            "/api/v1/analytics/aggregate", json={"date": "2026-01-15", "type": "daily"}, headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"metric_type": "daily", "date": "2026-01-15", "rows_written": 1}

        response = await client.get(
            "/api/v1/analytics/ticket-metrics",
            params={"from_date": "2026-01-01", "to_date": "2026-01-31"},
            headers=agent_headers
        )
        body = response.json()
        assert body["meta"] == {"from_date": "2026-01-01", "to_date": "2026-01-31"}
        assert len(body["data"]) == 1
        assert body["data"][0]["date"] == "2026-01-15"
        assert body["data"][0]["total_tickets"] == 1

    @pytest.mark.asyncio
    async def test_aggregate_requires_privileged_role(self, client: AsyncClient, agent_headers: dict):
        response = await client.post(
            "/api/v1/analytics/aggregate", json={"date": "2026-01-15", "type": "daily"}, headers=agent_headers
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_supervisor_can_aggregate(self, client: AsyncClient, db_session: AsyncSession):
        supervisor = await UserFactory.create(db_session, role=UserRole.SUPERVISOR)

        response = await client.post(
            "/api/v1/analytics/aggregate",
            json={"date": "2026-01-15", "type": "sla"},
            headers=actor_headers(supervisor.id, UserRole.SUPERVISOR)
        )

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_unknown_metric_type_is_rejected(self, client: AsyncClient, admin_headers: dict):
        response = await client.post(
            "/api/v1/analytics/aggregate", json={"type": "weekly"}, headers=admin_headers
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_inverted_range_is_rejected(self, client: AsyncClient, agent_headers: dict):
        response = await client.get(
            "/api/v1/analytics/sla-metrics",
            params={"from_date": "2026-02-01", "to_date": "2026-01-01"},
            headers=agent_headers
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_empty_listings(self, client: AsyncClient, agent_headers: dict):
        for path, params in (
            ("/api/v1/analytics/category-metrics", {"date": "2026-01-15"}),
            ("/api/v1/analytics/client-metrics", {"period_end": "2026-01-15"}),
            ("/api/v1/analytics/sla-metrics", {}),
        ):
            response = await client.get(path, params=params, headers=agent_headers)
            assert response.status_code == 200
            assert response.json()["data"] == []


class TestMonitoring:
    """Tests for health and Prometheus endpoints."""

    @pytest.mark.asyncio
    async def test_root_and_health(self, client: AsyncClient):
        response = await client.get("/")
        assert response.json()["status"] == "running"

        response = await client.get("/health")
        body = response.json()
        assert body["status"] == "healthy"
        assert body["scheduler"]["status"] == "not_initialized"
        assert "total_subscriptions" in body["realtime"]

    @pytest.mark.asyncio
    async def test_prometheus_export(self, client: AsyncClient):
        await client.get("/")

        response = await client.get("/api/v1/metrics")

        assert response.status_code == 200
        assert "aidly_http_requests_total" in response.text

    @pytest.mark.asyncio
    async def test_detailed_health_probes_database(self, client: AsyncClient):
        response = await client.get("/api/v1/metrics/health")

        assert response.json()["database"] == {"healthy": True, "connection": "ok"}

    @pytest.mark.asyncio
    async def test_stats_summary(self, client: AsyncClient):
        response = await client.get("/api/v1/metrics/stats")

        assert response.status_code == 200
        assert "requests" in response.json()
