"""
SQLAlchemy models for conversations and their append-only messages.
"""

from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Text, JSON, ForeignKey,
    UniqueConstraint, Index, text
)

from models.crm import Base


def _utcnow():
    return datetime.now(timezone.utc)


class ConversationStatus(str, PyEnum):
    """Conversation lifecycle; rows are never hard-deleted."""
    OPEN = "open"
    TRANSFERRED = "transferred"
    CLOSED = "closed"


class QualificationStatus(str, PyEnum):
    """Lead qualification progress."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    QUALIFIED = "qualified"
    UNQUALIFIED = "unqualified"


class MessageDirection(str, PyEnum):
    """Direction of a message row."""
    INBOUND = "inbound"
    OUTBOUND = "outbound"
    TOOL = "tool"
    SYSTEM = "system"


class TurnState(str, PyEnum):
    """Processing state of the turn started by an inbound message."""
    RECEIVED = "received"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Conversation(Base):
    """An exchange with one lead on one channel."""

    __tablename__ = "conversations"
    __table_args__ = (
        # At most one non-closed conversation per lead identity.
        Index(
            "uq_conversations_active_identity",
            "organization_id",
            "lead_identity",
            unique=True,
            sqlite_where=text("status != 'closed'"),
            postgresql_where=text("status != 'closed'"),
        ),
    )

    id = Column(String(36), primary_key=True)
    organization_id = Column(String(36), nullable=False, index=True)
    lead_identity = Column(String(64), nullable=False)
    lead_name = Column(String(255))

    status = Column(String(20), default=ConversationStatus.OPEN.value, nullable=False)
    contact_id = Column(String(36))
    deal_id = Column(String(36))

    qualification_data = Column(JSON, default=dict)
    qualification_status = Column(String(20), default=QualificationStatus.PENDING.value)
    qualification_score = Column(Float)
    summary = Column(Text)

    last_activity_at = Column(DateTime(timezone=True), default=_utcnow)
    transferred_at = Column(DateTime(timezone=True))
    closed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def to_dict(self):
        """Convert to dictionary."""
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "lead_identity": self.lead_identity,
            "lead_name": self.lead_name,
            "status": self.status,
            "contact_id": self.contact_id,
            "deal_id": self.deal_id,
            "qualification_data": self.qualification_data or {},
            "qualification_status": self.qualification_status,
            "summary": self.summary,
            "last_activity_at": self.last_activity_at.isoformat() if self.last_activity_at else None,
        }


class Message(Base):
    """Immutable turn entry. Tool rows double as the ToolCall audit record."""

    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "direction", "provider_message_id",
            name="uq_messages_provider_id"
        ),
        Index("ix_messages_conversation_order", "conversation_id", "created_at", "id"),
    )

    # Autoincrement id doubles as the insertion sequence for ordering ties.
    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False)
    organization_id = Column(String(36), nullable=False)

    direction = Column(String(10), nullable=False)
    content = Column(Text, nullable=False, default="")
    content_type = Column(String(20), default="text")
    media_url = Column(Text)
    sender_name = Column(String(255))
    provider_message_id = Column(String(255))
    provider_timestamp = Column(DateTime(timezone=True))

    turn_id = Column(Integer, index=True)
    turn_state = Column(String(20))
    claimed_at = Column(DateTime(timezone=True))

    tool_name = Column(String(50))
    tool_arguments = Column(JSON)
    tool_result = Column(JSON)
    tool_error = Column(Text)
    affected_entity_ids = Column(JSON)

    ai_model = Column(String(100))
    tokens_input = Column(Integer)
    tokens_output = Column(Integer)
    delivery_status = Column(String(20))

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def to_dict(self):
        """Convert to dictionary."""
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "direction": self.direction,
            "content": self.content,
            "content_type": self.content_type,
            "provider_message_id": self.provider_message_id,
            "turn_id": self.turn_id,
            "turn_state": self.turn_state,
            "tool_name": self.tool_name,
            "tool_arguments": self.tool_arguments,
            "tool_result": self.tool_result,
            "tool_error": self.tool_error,
            "affected_entity_ids": self.affected_entity_ids,
            "delivery_status": self.delivery_status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
