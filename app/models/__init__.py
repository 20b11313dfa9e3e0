from app.core.database import Base
from app.models.user import User, UserRole, Department
from app.models.client import Client
from app.models.ticket import (
    Ticket,
    TicketCategory,
    TicketComment,
    TicketFeedback,
    TicketHistory,
    TicketStatus,
    TicketPriority,
    TicketSource,
)
from app.models.metrics import (
    TicketMetrics,
    TicketCategoryMetrics,
    AgentMetrics,
    ClientMetrics,
    SlaMetrics,
)
from app.models.report import (
    Report,
    ReportExecution,
    ScheduledReport,
    ReportType,
    ChartType,
    ExecutionType,
    ExecutionStatus,
    ExportFormat,
)
from app.models.notification import (
    Notification,
    NotificationPreference,
    NotifiableType,
    NotificationEventType,
    NotificationChannel,
    NotificationStatus,
    NotificationPriority,
    EmailFrequency,
)

__all__ = [
    "Base",
    "User",
    "UserRole",
    "Department",
    "Client",
    "Ticket",
    "TicketCategory",
    "TicketComment",
    "TicketFeedback",
    "TicketHistory",
    "TicketStatus",
    "TicketPriority",
    "TicketSource",
    "TicketMetrics",
    "TicketCategoryMetrics",
    "AgentMetrics",
    "ClientMetrics",
    "SlaMetrics",
    "Report",
    "ReportExecution",
    "ScheduledReport",
    "ReportType",
    "ChartType",
    "ExecutionType",
    "ExecutionStatus",
    "ExportFormat",
    "Notification",
    "NotificationPreference",
    "NotifiableType",
    "NotificationEventType",
    "NotificationChannel",
    "NotificationStatus",
    "NotificationPriority",
    "EmailFrequency",
]
