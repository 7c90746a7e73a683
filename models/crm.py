"""
SQLAlchemy models for tenant and CRM data.
Organizations, agent configuration, and the CRM records tools write to.
"""

from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Text, JSON, Boolean,
    UniqueConstraint, Index
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow():
    return datetime.now(timezone.utc)


class BusinessType(str, PyEnum):
    """Vertical (industry) of an organization."""
    GENERIC = "generic"
    MEDICAL_CLINIC = "medical_clinic"
    DENTAL_CLINIC = "dental_clinic"
    REAL_ESTATE = "real_estate"


class WhatsAppProvider(str, PyEnum):
    """Messaging provider configured for an organization."""
    CLOUD_API = "whatsapp_cloud_api"
    EVOLUTION_API = "evolution_api"


class Organization(Base):
    """Tenant boundary."""

    __tablename__ = "organizations"

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    business_type = Column(String(50))
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class VerticalConfigRecord(Base):
    """Stored AI context overlay for a vertical."""

    __tablename__ = "vertical_configs"

    business_type = Column(String(50), primary_key=True)
    ai_context = Column(JSON, default=dict)


class AgentConfigRecord(Base):
    """Agent configuration, one per organization (edited by admin settings)."""

    __tablename__ = "agent_configs"

    id = Column(String(36), primary_key=True)
    organization_id = Column(String(36), nullable=False, unique=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False)

    whatsapp_provider = Column(String(50), default=WhatsAppProvider.CLOUD_API.value)
    whatsapp_config = Column(JSON, default=dict)

    agent_name = Column(String(100), default="Assistente")
    welcome_message = Column(Text)
    farewell_message = Column(Text)
    transfer_message = Column(Text)
    outside_hours_message = Column(Text)
    quota_exceeded_message = Column(Text)

    business_hours = Column(JSON, default=dict)
    timezone = Column(String(64), default="America/Sao_Paulo")
    attend_outside_hours = Column(Boolean, default=True)

    ai_provider = Column(String(20))
    ai_model = Column(String(100))
    ai_temperature = Column(Float, default=0.7)
    max_tokens_per_response = Column(Integer, default=500)
    system_prompt_override = Column(Text)

    qualification_fields = Column(JSON, default=list)
    auto_create_contact = Column(Boolean, default=True)
    auto_create_deal = Column(Boolean, default=False)
    default_board_id = Column(String(36))
    default_stage_id = Column(String(36))

    transfer_rules = Column(JSON, default=list)
    max_messages_before_transfer = Column(Integer)

    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class Contact(Base):
    """CRM contact."""

    __tablename__ = "contacts"
    __table_args__ = (
        UniqueConstraint("organization_id", "phone", name="uq_contacts_org_phone"),
    )

    id = Column(String(36), primary_key=True)
    organization_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    phone = Column(String(50))
    email = Column(String(255))
    company_name = Column(String(255))
    source = Column(String(50), default="whatsapp")
    notes = Column(Text)
    custom_fields = Column(JSON, default=dict)
    assigned_to = Column(String(36))
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "company_name": self.company_name,
            "custom_fields": self.custom_fields or {},
        }


class BoardStage(Base):
    """Pipeline stage of a board."""

    __tablename__ = "board_stages"

    id = Column(String(36), primary_key=True)
    organization_id = Column(String(36), nullable=False, index=True)
    board_id = Column(String(36), nullable=False, index=True)
    label = Column(String(100), nullable=False)
    order = Column(Integer, default=0, nullable=False)


class Deal(Base):
    """CRM deal (opportunity) on a board."""

    __tablename__ = "deals"

    id = Column(String(36), primary_key=True)
    organization_id = Column(String(36), nullable=False, index=True)
    board_id = Column(String(36), nullable=False)
    stage_id = Column(String(36))
    contact_id = Column(String(36))
    conversation_id = Column(String(36), index=True)
    title = Column(String(255), nullable=False)
    value = Column(Float)
    status = Column(String(20), default="open")
    assigned_to = Column(String(36))
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    last_stage_change_at = Column(DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        """Convert to dictionary."""
        return {
            "id": self.id,
            "board_id": self.board_id,
            "stage_id": self.stage_id,
            "contact_id": self.contact_id,
            "title": self.title,
            "value": self.value,
            "status": self.status,
        }


class Activity(Base):
    """Activity (call, meeting, task) linked to a deal or contact."""

    __tablename__ = "activities"

    id = Column(String(36), primary_key=True)
    organization_id = Column(String(36), nullable=False, index=True)
    deal_id = Column(String(36))
    contact_id = Column(String(36))
    type = Column(String(20), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    date = Column(DateTime(timezone=True), nullable=False, index=True)
    duration_minutes = Column(Integer, default=30)
    completed = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def to_dict(self):
        """Convert to dictionary."""
        return {
            "id": self.id,
            "deal_id": self.deal_id,
            "contact_id": self.contact_id,
            "type": self.type,
            "title": self.title,
            "date": self.date.isoformat() if self.date else None,
        }


class Property(Base):
    """Real estate listing (vertical-specific)."""

    __tablename__ = "vertical_properties"

    id = Column(String(36), primary_key=True)
    organization_id = Column(String(36), nullable=False, index=True)
    property_type = Column(String(30), nullable=False)
    transaction_type = Column(String(30), nullable=False)
    status = Column(String(20), default="available", nullable=False)
    value = Column(Float)
    area_m2 = Column(Float)
    bedrooms = Column(Integer)
    address_json = Column(JSON, default=dict)
    features_json = Column(JSON, default=list)
    assigned_broker_id = Column(String(36))
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def to_dict(self):
        """Convert to dictionary."""
        return {
            "id": self.id,
            "property_type": self.property_type,
            "transaction_type": self.transaction_type,
            "value": self.value,
            "area_m2": self.area_m2,
            "bedrooms": self.bedrooms,
            "address": self.address_json or {},
            "features": self.features_json or [],
        }


class InboxActionItem(Base):
    """Action item for the human inbox; the agent core only enqueues these."""

    __tablename__ = "inbox_action_items"
    __table_args__ = (
        Index("ix_inbox_items_dedup", "organization_id", "action_type", "status"),
    )

    id = Column(String(36), primary_key=True)
    organization_id = Column(String(36), nullable=False)
    user_id = Column(String(36))
    deal_id = Column(String(36))
    contact_id = Column(String(36))
    conversation_id = Column(String(36))
    action_type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    priority = Column(String(20), default="medium")
    suggested_action = Column(String(20))
    status = Column(String(20), default="pending", nullable=False)
    ai_generated = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
