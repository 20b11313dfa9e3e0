"""
Metrics Store

Roll-up tables rebuilt by the aggregator. Every row is a full recomputation
from the source tables for its key; re-running an aggregation overwrites it.
Average durations are stored in seconds.
"""

from sqlalchemy import Column, String, Integer, Float, Date, DateTime, JSON, UniqueConstraint
from datetime import datetime
import uuid
from app.core.database import Base


class TicketMetrics(Base):
    """Daily ticket volume for tickets created on `date`."""
    __tablename__ = "ticket_metrics"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    date = Column(Date, nullable=False, unique=True, index=True)

    total_tickets = Column(Integer, default=0, nullable=False)
    new_tickets = Column(Integer, default=0, nullable=False)
    open_tickets = Column(Integer, default=0, nullable=False)
    resolved_tickets = Column(Integer, default=0, nullable=False)
    closed_tickets = Column(Integer, default=0, nullable=False)

    avg_resolution_time = Column(Float)
    avg_first_response_time = Column(Float)

    urgent_tickets = Column(Integer, default=0, nullable=False)
    high_priority_tickets = Column(Integer, default=0, nullable=False)

    # {category_id: count}, {source: count}
    category_breakdown = Column(JSON, nullable=False, default=dict)
    source_breakdown = Column(JSON, nullable=False, default=dict)

    aggregated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class TicketCategoryMetrics(Base):
    __tablename__ = "ticket_category_metrics"
    __table_args__ = (
        UniqueConstraint("date", "category_id", name="uq_category_metrics_date_category"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    date = Column(Date, nullable=False, index=True)
    category_id = Column(String, nullable=False, index=True)

    ticket_count = Column(Integer, default=0, nullable=False)
    avg_resolution_time = Column(Float)
    avg_response_time = Column(Float)

    aggregated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class AgentMetrics(Base):
    """Per-agent performance over a trailing window ending on period_end."""
    __tablename__ = "agent_metrics"
    __table_args__ = (
        UniqueConstraint("agent_id", "period_start", "period_end", name="uq_agent_metrics_period"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    agent_id = Column(String, nullable=False, index=True)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False, index=True)

    tickets_assigned = Column(Integer, default=0, nullable=False)
    tickets_resolved = Column(Integer, default=0, nullable=False)
    tickets_closed = Column(Integer, default=0, nullable=False)

    avg_resolution_time = Column(Float)
    avg_first_response_time = Column(Float)
    fastest_response_time = Column(Float)

    total_responses = Column(Integer, default=0, nullable=False)
    satisfaction_score = Column(Float)
    total_ratings = Column(Integer, default=0, nullable=False)
    active_days = Column(Integer, default=0, nullable=False)

    # {"resolution_rate": 87.5, "by_priority": {"high": 3, ...}}
    performance_data = Column(JSON, nullable=False, default=dict)

    aggregated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ClientMetrics(Base):
    __tablename__ = "client_metrics"
    __table_args__ = (
        UniqueConstraint("client_id", "period_start", "period_end", name="uq_client_metrics_period"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    client_id = Column(String, nullable=False, index=True)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False, index=True)

    total_tickets = Column(Integer, default=0, nullable=False)
    open_tickets = Column(Integer, default=0, nullable=False)
    resolved_tickets = Column(Integer, default=0, nullable=False)
    avg_resolution_time = Column(Float)
    satisfaction_score = Column(Float)
    total_feedback = Column(Integer, default=0, nullable=False)

    # {category_id: count}
    issue_categories = Column(JSON, nullable=False, default=dict)

    aggregated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class SlaMetrics(Base):
    __tablename__ = "sla_metrics"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    date = Column(Date, nullable=False, unique=True, index=True)

    total_tickets_with_sla = Column(Integer, default=0, nullable=False)
    sla_met_count = Column(Integer, default=0, nullable=False)
    sla_breached_count = Column(Integer, default=0, nullable=False)
    compliance_rate = Column(Float, default=100.0, nullable=False)  # percent

    # {priority: {"total": n, "met": n, "compliance": pct}}
    priority_breakdown = Column(JSON, nullable=False, default=dict)
    # {"no_response": n, "late_response": n}
    breach_reasons = Column(JSON, nullable=False, default=dict)

    aggregated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
