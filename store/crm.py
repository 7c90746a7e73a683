"""
CRM repository.

Organization-scoped reads and writes used by the orchestrator (agent and
vertical configuration) and by the agent tools (contacts, deals, activities,
properties). Tools run with service-level access, so every query here filters
by organization id explicitly.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func

from models import (
    Activity, AgentConfig, AgentConfigRecord, BoardStage, Contact, Deal,
    Organization, Property, VerticalConfigRecord, VerticalContext
)
from store.database import Database


AGENT_CONFIG_FIELDS = tuple(AgentConfig.model_fields.keys())


class CRMRepository:
    """Data access for tenant configuration and CRM records."""

    def __init__(self, db: Database):
        self.db = db

    def _get_one(self, model, organization_id: str, entity_id: str):
        def operation(session):
            row = session.query(model).filter(
                model.id == entity_id,
                model.organization_id == organization_id
            ).first()
            if row:
                session.expunge(row)
            return row

        return self.db.run(operation)

    # Configuration

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        def operation(session):
            org = session.get(Organization, organization_id)
            if org:
                session.expunge(org)
            return org

        return self.db.run(operation)

    def get_business_type(self, organization_id: str) -> Optional[str]:
        org = self.get_organization(organization_id)
        return org.business_type if org else None

    def get_agent_config(self, organization_id: str) -> Optional[AgentConfig]:
        """Load the organization's agent configuration as a validated view."""
        def operation(session):
            record = session.query(AgentConfigRecord).filter(
                AgentConfigRecord.organization_id == organization_id
            ).first()
            if record is None:
                return None
            data = {
                field: getattr(record, field)
                for field in AGENT_CONFIG_FIELDS
                if getattr(record, field, None) is not None
            }
            return AgentConfig.model_validate(data)

        return self.db.run(operation)

    def get_vertical_context(self, business_type: Optional[str]) -> VerticalContext:
        """Stored overlay text for a vertical, empty when none is stored."""
        if not business_type:
            return VerticalContext()

        def operation(session):
            record = session.get(VerticalConfigRecord, business_type)
            ai_context = (record.ai_context or {}) if record else {}
            return VerticalContext(
                business_type=business_type,
                system_prompt_vertical=ai_context.get("system_prompt_vertical"),
                action_prompts=ai_context.get("action_prompts") or {},
            )

        return self.db.run(operation)

    # Contacts

    def get_contact(self, organization_id: str, contact_id: str) -> Optional[Contact]:
        return self._get_one(Contact, organization_id, contact_id)

    def find_contact_by_phone(self, organization_id: str, phone: str) -> Optional[Contact]:
        def operation(session):
            contact = session.query(Contact).filter(
                Contact.organization_id == organization_id,
                Contact.phone == phone
            ).first()
            if contact:
                session.expunge(contact)
            return contact

        return self.db.run(operation)

    def create_contact(
        self,
        organization_id: str,
        name: str,
        phone: Optional[str] = None,
        email: Optional[str] = None,
        company_name: Optional[str] = None,
        source: str = "whatsapp",
        notes: Optional[str] = None
    ) -> Tuple[Contact, bool]:
        """
        Create a contact, or return the existing one with the same phone.

        Returns (contact, created).
        """
        def operation(session):
            now = datetime.now(timezone.utc)
            values = {
                "id": str(uuid.uuid4()),
                "organization_id": organization_id,
                "name": name,
                "phone": phone,
                "email": email,
                "company_name": company_name,
                "source": source,
                "notes": notes,
                "custom_fields": {},
                "created_at": now,
                "updated_at": now,
            }
            if phone:
                created = self.db.insert_ignore(session, Contact, values)
                contact = session.query(Contact).filter(
                    Contact.organization_id == organization_id,
                    Contact.phone == phone
                ).one()
            else:
                contact = Contact(**values)
                session.add(contact)
                created = True
            session.flush()
            session.expunge(contact)
            return contact, created

        return self.db.run(operation)

    def update_contact(
        self,
        organization_id: str,
        contact_id: str,
        **fields
    ) -> Optional[Contact]:
        """Update contact fields; custom_fields are merged."""
        def operation(session):
            contact = session.query(Contact).filter(
                Contact.id == contact_id,
                Contact.organization_id == organization_id
            ).first()
            if not contact:
                return None
            for key, value in fields.items():
                if value is None or not hasattr(contact, key):
                    continue
                if key == "custom_fields":
                    merged = dict(contact.custom_fields or {})
                    merged.update(value)
                    value = merged
                setattr(contact, key, value)
            session.flush()
            session.expunge(contact)
            return contact

        return self.db.run(operation)

    # Pipeline

    def get_deal(self, organization_id: str, deal_id: str) -> Optional[Deal]:
        return self._get_one(Deal, organization_id, deal_id)

    def find_deal_for_conversation(self, organization_id: str, conversation_id: str) -> Optional[Deal]:
        def operation(session):
            deal = session.query(Deal).filter(
                Deal.organization_id == organization_id,
                Deal.conversation_id == conversation_id
            ).order_by(Deal.created_at).first()
            if deal:
                session.expunge(deal)
            return deal

        return self.db.run(operation)

    def list_stages(self, organization_id: str, board_id: str) -> List[BoardStage]:
        def operation(session):
            stages = session.query(BoardStage).filter(
                BoardStage.organization_id == organization_id,
                BoardStage.board_id == board_id
            ).order_by(BoardStage.order).all()
            for stage in stages:
                session.expunge(stage)
            return stages

        return self.db.run(operation)

    def find_stage(self, organization_id: str, board_id: str, reference: str) -> Optional[BoardStage]:
        """Find a stage of a board by id or by label (case-insensitive)."""
        needle = reference.strip().lower()
        for stage in self.list_stages(organization_id, board_id):
            if stage.id == reference or stage.label.lower() == needle:
                return stage
        return None

    def create_deal(
        self,
        organization_id: str,
        board_id: str,
        stage_id: Optional[str],
        title: str,
        contact_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        value: Optional[float] = None
    ) -> Deal:
        def operation(session):
            now = datetime.now(timezone.utc)
            deal = Deal(
                id=str(uuid.uuid4()),
                organization_id=organization_id,
                board_id=board_id,
                stage_id=stage_id,
                contact_id=contact_id,
                conversation_id=conversation_id,
                title=title,
                value=value or 0,
                status="open",
                created_at=now,
                updated_at=now,
                last_stage_change_at=now,
            )
            session.add(deal)
            session.flush()
            session.expunge(deal)
            return deal

        return self.db.run(operation)

    def move_deal(self, organization_id: str, deal_id: str, stage_id: str) -> Tuple[Optional[Deal], bool]:
        """Move a deal to a stage. Returns (deal, changed); moving to the current stage is a no-op."""
        def operation(session):
            deal = session.query(Deal).filter(
                Deal.id == deal_id,
                Deal.organization_id == organization_id
            ).first()
            if not deal:
                return None, False
            changed = deal.stage_id != stage_id
            if changed:
                deal.stage_id = stage_id
                deal.last_stage_change_at = datetime.now(timezone.utc)
            session.flush()
            session.expunge(deal)
            return deal, changed

        return self.db.run(operation)

    # Activities

    def find_activity(
        self,
        organization_id: str,
        activity_type: str,
        title: str,
        date: Optional[datetime] = None,
        deal_id: Optional[str] = None,
        contact_id: Optional[str] = None
    ) -> Optional[Activity]:
        """Identical activity; without a date, any open one with the same type and title."""
        def operation(session):
            query = session.query(Activity).filter(
                Activity.organization_id == organization_id,
                Activity.type == activity_type,
                Activity.title == title,
                Activity.deal_id == deal_id,
                Activity.contact_id == contact_id
            )
            if date is not None:
                query = query.filter(Activity.date == date)
            else:
                query = query.filter(Activity.completed.is_(False))
            activity = query.first()
            if activity:
                session.expunge(activity)
            return activity

        return self.db.run(operation)

    def create_activity(
        self,
        organization_id: str,
        activity_type: str,
        title: str,
        date: datetime,
        description: Optional[str] = None,
        deal_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        duration_minutes: int = 30
    ) -> Activity:
        def operation(session):
            activity = Activity(
                id=str(uuid.uuid4()),
                organization_id=organization_id,
                type=activity_type,
                title=title,
                description=description,
                date=date,
                deal_id=deal_id,
                contact_id=contact_id,
                duration_minutes=duration_minutes,
                created_at=datetime.now(timezone.utc),
            )
            session.add(activity)
            session.flush()
            session.expunge(activity)
            return activity

        return self.db.run(operation)

    def list_activities_between(
        self,
        organization_id: str,
        start: datetime,
        end: datetime,
        activity_types: Optional[List[str]] = None
    ) -> List[Activity]:
        def operation(session):
            query = session.query(Activity).filter(
                Activity.organization_id == organization_id,
                Activity.date >= start,
                Activity.date < end
            )
            if activity_types:
                query = query.filter(Activity.type.in_(activity_types))
            activities = query.order_by(Activity.date).all()
            for activity in activities:
                session.expunge(activity)
            return activities

        return self.db.run(operation)

    # Properties (real estate vertical)

    def search_properties(
        self,
        organization_id: str,
        filters: Dict[str, Any],
        limit: int = 5
    ) -> List[Property]:
        """Available listings matching the given filters, cheapest first."""
        def operation(session):
            query = session.query(Property).filter(
                Property.organization_id == organization_id,
                Property.status == "available"
            )
            if filters.get("property_type"):
                query = query.filter(func.lower(Property.property_type) == filters["property_type"].lower())
            if filters.get("transaction_type"):
                query = query.filter(Property.transaction_type == filters["transaction_type"])
            if filters.get("min_value") is not None:
                query = query.filter(Property.value >= filters["min_value"])
            if filters.get("max_value") is not None:
                query = query.filter(Property.value <= filters["max_value"])
            if filters.get("bedrooms") is not None:
                query = query.filter(Property.bedrooms >= filters["bedrooms"])
            candidates = query.order_by(Property.value, Property.id).all()
            for row in candidates:
                session.expunge(row)
            return candidates

        candidates = self.db.run(operation)
        region = (filters.get("region") or "").strip().lower()
        if region:
            # Address is a JSON object; match the region against its text values.
            candidates = [
                p for p in candidates
                if any(region in str(v).lower() for v in (p.address_json or {}).values())
            ]
        return candidates[:limit]
