"""
Inbox sink: the only way the agent core produces inbox action items.

The inbox itself (listing, completing, streaks) belongs to another
subsystem; the core enqueues and forgets.
"""

import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from models import InboxActionItem
from observability import trace_logger
from store.database import Database


class InboxSink(ABC):
    """Destination for agent-generated action items."""

    @abstractmethod
    def enqueue(
        self,
        organization_id: str,
        action_type: str,
        title: str,
        description: Optional[str] = None,
        priority: str = "medium",
        contact_id: Optional[str] = None,
        deal_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        suggested_action: Optional[str] = None
    ) -> Optional[str]:
        """Enqueue an action item. Returns its id, or None when deduplicated."""
        pass


class DatabaseInbox(InboxSink):
    """Writes action items into the shared inbox table."""

    def __init__(self, db: Database):
        self.db = db

    def enqueue(
        self,
        organization_id: str,
        action_type: str,
        title: str,
        description: Optional[str] = None,
        priority: str = "medium",
        contact_id: Optional[str] = None,
        deal_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        suggested_action: Optional[str] = None
    ) -> Optional[str]:
        """
        Enqueue unless a pending item of the same type already targets the
        same contact, deal or conversation.
        """
        def operation(session):
            pending = session.query(InboxActionItem.id).filter(
                InboxActionItem.organization_id == organization_id,
                InboxActionItem.action_type == action_type,
                InboxActionItem.status == "pending",
                InboxActionItem.contact_id == contact_id,
                InboxActionItem.deal_id == deal_id,
                InboxActionItem.conversation_id == conversation_id
            ).first()
            if pending:
                return None

            item = InboxActionItem(
                id=str(uuid.uuid4()),
                organization_id=organization_id,
                action_type=action_type,
                title=title[:255],
                description=description,
                priority=priority,
                contact_id=contact_id,
                deal_id=deal_id,
                conversation_id=conversation_id,
                suggested_action=suggested_action,
                status="pending",
                ai_generated=True,
                created_at=datetime.now(timezone.utc),
            )
            session.add(item)
            return item.id

        item_id = self.db.run(operation)
        if item_id is None:
            trace_logger.debug(
                "Inbox item already pending",
                organization_id=organization_id,
                action_type=action_type
            )
        return item_id
