"""
AidlY Analytics Test Configuration

Provides shared fixtures for async testing with:
- In-memory SQLite database shared by the API, services and jobs
- Test client with async support and gateway identity headers
- Fakes for the mailer, file storage and realtime relay
- Sample data factories for users, clients, tickets, reports, notifications
"""
from datetime import datetime, timedelta
from typing import AsyncGenerator, Dict, Any, List, Optional
import uuid

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

import app.core.cache as cache_module
import app.core.storage as storage_module
import app.services.email_service as email_module
from app.api.deps import get_file_storage, get_mailer, get_session_factory
from app.core.cache import InMemoryCache
from app.core.database import Base, get_db
from app.core.realtime import ChannelRelay, get_relay
from app.core.storage import LocalFileStorage
from app.main import app
from app.models.client import Client
from app.models.notification import (
    Notification,
    NotifiableType,
    NotificationChannel,
    NotificationStatus,
    NotificationPriority,
)
from app.models.report import Report, ReportType
from app.models.ticket import (
    Ticket, TicketStatus, TicketPriority, TicketSource, TicketCategory
)
from app.models.user import User, UserRole, Department


# Test database URL - SQLite in-memory with async support
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def async_engine():
    """Create an async engine for testing with in-memory SQLite."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False}
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    """Session factory bound to the test engine (used where jobs open their own sessions)."""
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# -----------------------------------------------------------------------------
# Fakes
# -----------------------------------------------------------------------------

class FakeMailer:
    """Records outgoing mail instead of talking to SMTP."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Dict[str, Any]] = []

    async def send_email(
        self,
        to,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
        attachments=None,
        priority: Optional[str] = None
    ) -> Dict[str, Any]:
        if self.fail:
            return {"success": False, "message_id": None, "error": "SMTP unavailable"}

        self.sent.append({
            "to": to,
            "subject": subject,
            "html_body": html_body,
            "text_body": text_body,
            "attachments": list(attachments or []),
            "priority": priority,
        })
        return {"success": True, "message_id": f"<{uuid.uuid4().hex}@test>", "error": None}


@pytest.fixture(autouse=True)
def fresh_cache(monkeypatch):
    """Every test gets its own in-process cache."""
    cache = InMemoryCache()
    monkeypatch.setattr(cache_module, "_cache", cache)
    return cache


@pytest.fixture
def storage(tmp_path, monkeypatch) -> LocalFileStorage:
    file_storage = LocalFileStorage(str(tmp_path / "storage"))
    monkeypatch.setattr(storage_module, "_storage", file_storage)
    return file_storage


@pytest.fixture
def mailer(monkeypatch) -> FakeMailer:
    fake = FakeMailer()
    monkeypatch.setattr(email_module, "_email_service", fake)
    return fake


@pytest.fixture
def relay() -> ChannelRelay:
    return ChannelRelay(key="test-key", secret="test-secret")


@pytest_asyncio.fixture(scope="function")
async def client(
    db_session: AsyncSession,
    session_factory,
    storage: LocalFileStorage,
    mailer: FakeMailer,
    relay: ChannelRelay
) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client with database and transport overrides."""

    async def override_get_db():
        yield db_session

    async def override_get_relay():
        return relay

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_file_storage] = lambda: storage
    app.dependency_overrides[get_mailer] = lambda: mailer
    app.dependency_overrides[get_relay] = override_get_relay

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def actor_headers(user_id: str, role: UserRole = UserRole.AGENT, department_id: str = None) -> Dict[str, str]:
    """Identity headers as forwarded by the gateway."""
    headers = {"X-User-Id": user_id, "X-User-Role": UserRole(role).value}
    if department_id:
        headers["X-Department-Id"] = department_id
    return headers


# -----------------------------------------------------------------------------
# Data Factories
# -----------------------------------------------------------------------------

class DepartmentFactory:
    """Factory for creating test departments."""

    @staticmethod
    async def create(db: AsyncSession, name: str = "Support") -> Department:
        department = Department(id=str(uuid.uuid4()), name=name)
        db.add(department)
        await db.commit()
        await db.refresh(department)
        return department


class UserFactory:
    """Factory for creating test users."""

    @staticmethod
    async def create(
        db: AsyncSession,
        role: UserRole = UserRole.AGENT,
        email: str = None,
        name: str = None,
        department_id: str = None,
        is_active: bool = True
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=email or f"user-{uuid.uuid4().hex[:8]}@test.com",
            name=name or f"Test {role.value.title()}",
            role=role,
            department_id=department_id,
            is_active=is_active
        )
        db.add(user)
        await db.commit()
        await db.refresh(user)
        return user


class ClientFactory:
    """Factory for creating test clients."""

    @staticmethod
    async def create(db: AsyncSession, name: str = "Acme Corp", email: str = None) -> Client:
        client = Client(
            id=str(uuid.uuid4()),
            name=name,
            email=email or f"client-{uuid.uuid4().hex[:8]}@test.com",
            company=name,
            is_active=True
        )
        db.add(client)
        await db.commit()
        await db.refresh(client)
        return client


class CategoryFactory:
    """Factory for creating test ticket categories."""

    @staticmethod
    async def create(db: AsyncSession, name: str = "Billing") -> TicketCategory:
        category = TicketCategory(id=str(uuid.uuid4()), name=name)
        db.add(category)
        await db.commit()
        await db.refresh(category)
        return category


class TicketFactory:
    """Factory for creating test tickets."""

    @staticmethod
    async def create(
        db: AsyncSession,
        subject: str = "Test Ticket",
        status: TicketStatus = TicketStatus.NEW,
        priority: TicketPriority = TicketPriority.MEDIUM,
        source: TicketSource = TicketSource.WEB_FORM,
        client_id: str = None,
        assigned_agent_id: str = None,
        category_id: str = None,
        created_at: datetime = None,
        first_response_at: datetime = None,
        resolved_at: datetime = None,
        sla_deadline: datetime = None,
        is_archived: bool = False
    ) -> Ticket:
        ticket = Ticket(
            id=str(uuid.uuid4()),
            ticket_number=f"TKT-{uuid.uuid4().hex[:8].upper()}",
            subject=subject,
            description="Test ticket description",
            status=status,
            priority=priority,
            source=source,
            client_id=client_id,
            assigned_agent_id=assigned_agent_id,
            category_id=category_id,
            created_at=created_at or datetime.utcnow(),
            first_response_at=first_response_at,
            resolved_at=resolved_at,
            sla_deadline=sla_deadline,
            is_archived=is_archived
        )
        db.add(ticket)
        await db.commit()
        await db.refresh(ticket)
        return ticket


class ReportFactory:
    """Factory for creating test report definitions."""

    @staticmethod
    async def create(
        db: AsyncSession,
        created_by: str,
        name: str = "Open tickets",
        query_sql: str = "SELECT ticket_number, subject FROM tickets ORDER BY ticket_number",
        report_type: ReportType = ReportType.CUSTOM,
        filters: Dict[str, Any] = None,
        recipients: List[str] = None,
        is_public: bool = False,
        is_active: bool = True
    ) -> Report:
        report = Report(
            id=str(uuid.uuid4()),
            name=name,
            description=f"{name} report",
            report_type=report_type,
            query_sql=query_sql,
            filters=filters or {},
            columns=[],
            chart_config={},
            recipients=recipients or [],
            is_public=is_public,
            is_active=is_active,
            created_by=created_by
        )
        db.add(report)
        await db.commit()
        await db.refresh(report)
        return report


class NotificationFactory:
    """Factory for creating stored notifications."""

    @staticmethod
    async def create(
        db: AsyncSession,
        notifiable_id: str,
        notifiable_type: NotifiableType = NotifiableType.USER,
        type: str = "ticket_assigned",
        channel: NotificationChannel = NotificationChannel.IN_APP,
        status: NotificationStatus = NotificationStatus.DELIVERED,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        read_at: datetime = None,
        created_at: datetime = None,
        failed_at: datetime = None,
        retry_count: int = 0,
        data: Dict[str, Any] = None
    ) -> Notification:
        notification = Notification(
            id=str(uuid.uuid4()),
            notifiable_id=notifiable_id,
            notifiable_type=notifiable_type,
            type=type,
            channel=channel,
            status=status,
            priority=priority,
            title="Ticket assigned",
            message="Ticket TKT-1 was assigned to you",
            data=data or {},
            read_at=read_at,
            failed_at=failed_at,
            retry_count=retry_count,
            created_at=created_at or datetime.utcnow()
        )
        db.add(notification)
        await db.commit()
        await db.refresh(notification)
        return notification


# -----------------------------------------------------------------------------
# Pre-configured Test Data Fixtures
# -----------------------------------------------------------------------------

@pytest_asyncio.fixture
async def admin_user(db_session: AsyncSession) -> User:
    """Create an admin test user."""
    return await UserFactory.create(db_session, role=UserRole.ADMIN, email="admin@test.com")


@pytest_asyncio.fixture
async def agent_user(db_session: AsyncSession) -> User:
    """Create an agent test user."""
    return await UserFactory.create(db_session, role=UserRole.AGENT, email="agent@test.com")


@pytest_asyncio.fixture
async def other_agent(db_session: AsyncSession) -> User:
    return await UserFactory.create(db_session, role=UserRole.AGENT, email="other@test.com")


@pytest.fixture
def admin_headers(admin_user: User) -> Dict[str, str]:
    return actor_headers(admin_user.id, UserRole.ADMIN)


@pytest.fixture
def agent_headers(agent_user: User) -> Dict[str, str]:
    return actor_headers(agent_user.id, UserRole.AGENT)


@pytest_asyncio.fixture
async def test_report(db_session: AsyncSession, agent_user: User) -> Report:
    return await ReportFactory.create(db_session, created_by=agent_user.id)


# Export factories for use in tests
__all__ = [
    "FakeMailer",
    "actor_headers",
    "DepartmentFactory",
    "UserFactory",
    "ClientFactory",
    "CategoryFactory",
    "TicketFactory",
    "ReportFactory",
    "NotificationFactory",
]
