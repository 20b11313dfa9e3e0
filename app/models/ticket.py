from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Enum as SQLEnum, Text, Integer
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
import enum
from app.core.database import Base


class TicketSource(str, enum.Enum):
    EMAIL = "email"
    WEB_FORM = "web_form"
    CHAT = "chat"
    PHONE = "phone"
    SOCIAL_MEDIA = "social_media"
    API = "api"


class TicketPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TicketStatus(str, enum.Enum):
    NEW = "new"
    OPEN = "open"
    PENDING = "pending"
    ON_HOLD = "on_hold"
    RESOLVED = "resolved"
    CLOSED = "closed"
    CANCELLED = "cancelled"


# Statuses counted as still needing work
OPEN_STATUSES = (TicketStatus.NEW, TicketStatus.OPEN, TicketStatus.PENDING)
FINISHED_STATUSES = (TicketStatus.RESOLVED, TicketStatus.CLOSED, TicketStatus.CANCELLED)


class TicketCategory(Base):
    __tablename__ = "ticket_categories"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Ticket(Base):
    """Support ticket. Written by the ticket service; read-only here."""
    __tablename__ = "tickets"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    ticket_number = Column(String, unique=True, nullable=False, index=True)
    subject = Column(String, nullable=False)
    description = Column(Text)

    # Classification
    status = Column(SQLEnum(TicketStatus), nullable=False, default=TicketStatus.NEW, index=True)
    priority = Column(SQLEnum(TicketPriority), nullable=False, default=TicketPriority.MEDIUM, index=True)
    source = Column(SQLEnum(TicketSource), nullable=False, default=TicketSource.WEB_FORM)

    # Parties
    client_id = Column(String, ForeignKey("clients.id"), index=True)
    assigned_agent_id = Column(String, ForeignKey("users.id"), index=True)
    category_id = Column(String, ForeignKey("ticket_categories.id"), index=True)

    # Lifecycle timestamps
    first_response_at = Column(DateTime)
    resolved_at = Column(DateTime)
    closed_at = Column(DateTime)
    sla_deadline = Column(DateTime, index=True)

    is_archived = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    client = relationship("Client", back_populates="tickets")
    assigned_agent = relationship("User", back_populates="assigned_tickets", foreign_keys=[assigned_agent_id])
    category = relationship("TicketCategory")
    comments = relationship("TicketComment", back_populates="ticket", cascade="all, delete-orphan", order_by="TicketComment.created_at")
    feedback = relationship("TicketFeedback", back_populates="ticket", cascade="all, delete-orphan")
    history = relationship("TicketHistory", back_populates="ticket", cascade="all, delete-orphan", order_by="TicketHistory.created_at")


class TicketComment(Base):
    __tablename__ = "ticket_comments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    ticket_id = Column(String, ForeignKey("tickets.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), index=True)
    client_id = Column(String, ForeignKey("clients.id"), index=True)

    content = Column(Text, nullable=False)
    is_internal_note = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    ticket = relationship("Ticket", back_populates="comments")


class TicketFeedback(Base):
    __tablename__ = "ticket_feedback"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    ticket_id = Column(String, ForeignKey("tickets.id"), nullable=False, index=True)
    client_id = Column(String, ForeignKey("clients.id"), index=True)

    rating = Column(Integer, nullable=False)  # 1-5
    comment = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    ticket = relationship("Ticket", back_populates="feedback")


class TicketHistory(Base):
    __tablename__ = "ticket_history"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    ticket_id = Column(String, ForeignKey("tickets.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"))

    action = Column(String, nullable=False)  # created, status_changed, assigned, ...
    field_name = Column(String)
    old_value = Column(Text)
    new_value = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    ticket = relationship("Ticket", back_populates="history")
