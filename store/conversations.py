"""
Conversation State Store.

Owns conversations and their append-only messages. Every write is keyed so
that a replayed webhook delivery converges on the same rows: conversations are
upserted against the partial unique index on the lead identity, inbound
messages against the provider message id, and turns are claimed with a
conditional update rather than a lock.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import and_, func, or_, update

from models import (
    Conversation, ConversationStatus, Message, MessageDirection,
    NormalizedMessage, TurnState
)
from observability import trace_logger
from store.database import Database, utc


OPERATOR_ACTIONS = ("take_over", "return_to_ai", "close")


class ConversationStore:
    """Conversation and message persistence."""

    def __init__(self, db: Database):
        self.db = db

    # Conversations

    def resolve_or_create_conversation(
        self,
        organization_id: str,
        lead_identity: str,
        lead_name: Optional[str] = None
    ) -> Conversation:
        """
        Return the non-closed conversation for a lead, creating it on first contact.

        Concurrent first contacts race on the insert; the loser's insert is a
        no-op and both read back the same row.
        """
        def operation(session):
            now = datetime.now(timezone.utc)
            created = self.db.insert_ignore(session, Conversation, {
                "id": str(uuid.uuid4()),
                "organization_id": organization_id,
                "lead_identity": lead_identity,
                "lead_name": lead_name,
                "status": ConversationStatus.OPEN.value,
                "qualification_data": {},
                "qualification_status": "pending",
                "last_activity_at": now,
                "created_at": now,
            })
            conversation = session.query(Conversation).filter(
                Conversation.organization_id == organization_id,
                Conversation.lead_identity == lead_identity,
                Conversation.status != ConversationStatus.CLOSED.value
            ).one()
            if lead_name and not conversation.lead_name:
                conversation.lead_name = lead_name
            session.flush()
            session.expunge(conversation)
            return conversation, created

        conversation, created = self.db.run(operation)
        if created:
            trace_logger.info(
                "Conversation created",
                organization_id=organization_id,
                conversation_id=conversation.id
            )
        return conversation

    def get_conversation(self, organization_id: str, conversation_id: str) -> Optional[Conversation]:
        """Get conversation by id within an organization."""
        def operation(session):
            conversation = session.query(Conversation).filter(
                Conversation.id == conversation_id,
                Conversation.organization_id == organization_id
            ).first()
            if conversation:
                session.expunge(conversation)
            return conversation

        return self.db.run(operation)

    def update_conversation(
        self,
        organization_id: str,
        conversation_id: str,
        **fields
    ) -> Optional[Conversation]:
        """Update conversation fields."""
        def operation(session):
            conversation = session.query(Conversation).filter(
                Conversation.id == conversation_id,
                Conversation.organization_id == organization_id
            ).first()
            if not conversation:
                return None
            for key, value in fields.items():
                if hasattr(conversation, key):
                    setattr(conversation, key, value)
            session.flush()
            session.expunge(conversation)
            return conversation

        return self.db.run(operation)

    def mark_transferred(
        self,
        organization_id: str,
        conversation_id: str,
        summary: Optional[str] = None
    ) -> bool:
        """
        Move an open conversation to transferred.

        Returns False when the conversation was already transferred (or
        closed), so a replayed handoff does not repeat its side effects.
        """
        def operation(session):
            now = datetime.now(timezone.utc)
            values = {
                "status": ConversationStatus.TRANSFERRED.value,
                "transferred_at": now,
                "last_activity_at": now,
            }
            if summary:
                values["summary"] = summary
            result = session.execute(
                update(Conversation)
                .where(
                    Conversation.id == conversation_id,
                    Conversation.organization_id == organization_id,
                    Conversation.status == ConversationStatus.OPEN.value
                )
                .values(**values)
            )
            return result.rowcount == 1

        return self.db.run(operation)

    def set_status(
        self,
        organization_id: str,
        conversation_id: str,
        action: str,
        operator_name: Optional[str] = None
    ) -> Optional[Conversation]:
        """
        Apply an operator action and record it as a system message.

        Actions: take_over (human takes the conversation), return_to_ai
        (automation resumes), close. Returns None when the conversation does
        not exist; raises ValueError for an action that cannot apply.
        """
        if action not in OPERATOR_ACTIONS:
            raise ValueError(f"Unknown conversation action: {action}")

        operator = operator_name or "Operador"
        now = datetime.now(timezone.utc)

        def operation(session):
            conversation = session.query(Conversation).filter(
                Conversation.id == conversation_id,
                Conversation.organization_id == organization_id
            ).first()
            if not conversation:
                return None
            if conversation.status == ConversationStatus.CLOSED.value:
                raise ValueError("Conversation is closed")

            if action == "take_over":
                conversation.status = ConversationStatus.TRANSFERRED.value
                conversation.transferred_at = now
                note = f"{operator} assumiu a conversa"
            elif action == "return_to_ai":
                conversation.status = ConversationStatus.OPEN.value
                note = f"{operator} devolveu a conversa para o agente"
            else:
                conversation.status = ConversationStatus.CLOSED.value
                conversation.closed_at = now
                note = f"Conversa encerrada por {operator}"

            conversation.last_activity_at = now
            session.add(Message(
                conversation_id=conversation.id,
                organization_id=organization_id,
                direction=MessageDirection.SYSTEM.value,
                content=note,
                created_at=now
            ))
            session.flush()
            session.expunge(conversation)
            return conversation

        conversation = self.db.run(operation)
        if conversation:
            trace_logger.info(
                "Conversation action applied",
                conversation_id=conversation_id,
                action=action,
                status=conversation.status
            )
        return conversation

    def close_idle(self, older_than: datetime) -> int:
        """Close open conversations with no activity since older_than."""
        def operation(session):
            result = session.execute(
                update(Conversation)
                .where(
                    Conversation.status == ConversationStatus.OPEN.value,
                    Conversation.last_activity_at < older_than
                )
                .values(
                    status=ConversationStatus.CLOSED.value,
                    closed_at=datetime.now(timezone.utc)
                )
            )
            return result.rowcount

        return self.db.run(operation)

    # Messages and turns

    def record_inbound(
        self,
        conversation: Conversation,
        normalized: NormalizedMessage
    ) -> Tuple[Message, bool]:
        """
        Record an inbound message keyed by its provider message id.

        Returns (message, created). A redelivery returns the existing row
        with created=False.
        """
        def operation(session):
            now = datetime.now(timezone.utc)
            created = self.db.insert_ignore(session, Message, {
                "conversation_id": conversation.id,
                "organization_id": conversation.organization_id,
                "direction": MessageDirection.INBOUND.value,
                "content": normalized.message,
                "content_type": normalized.type,
                "media_url": normalized.media_url,
                "sender_name": normalized.push_name,
                "provider_message_id": normalized.message_id,
                "provider_timestamp": normalized.timestamp,
                "turn_state": TurnState.RECEIVED.value,
                "created_at": now,
            })
            message = session.query(Message).filter(
                Message.organization_id == conversation.organization_id,
                Message.direction == MessageDirection.INBOUND.value,
                Message.provider_message_id == normalized.message_id
            ).one()
            if created:
                message.turn_id = message.id
                session.execute(
                    update(Conversation)
                    .where(Conversation.id == conversation.id)
                    .values(last_activity_at=now)
                )
            session.flush()
            session.expunge(message)
            return message, created

        return self.db.run(operation)

    def claim_turn(self, message_id: int, lease_seconds: int) -> bool:
        """
        Claim the turn started by an inbound message.

        Succeeds for a received message, or for one whose processing lease
        expired (the worker that held it is presumed dead).
        """
        def operation(session):
            now = datetime.now(timezone.utc)
            expired = now - timedelta(seconds=lease_seconds)
            result = session.execute(
                update(Message)
                .where(
                    Message.id == message_id,
                    Message.direction == MessageDirection.INBOUND.value,
                    or_(
                        Message.turn_state == TurnState.RECEIVED.value,
                        and_(
                            Message.turn_state == TurnState.PROCESSING.value,
                            Message.claimed_at < expired
                        )
                    )
                )
                .values(turn_state=TurnState.PROCESSING.value, claimed_at=now)
            )
            return result.rowcount == 1

        return self.db.run(operation)

    def release_turn(self, turn_id: int) -> bool:
        """Return an in-flight claim to received so a redelivery reprocesses it."""
        def operation(session):
            result = session.execute(
                update(Message)
                .where(
                    Message.id == turn_id,
                    Message.turn_state == TurnState.PROCESSING.value
                )
                .values(turn_state=TurnState.RECEIVED.value, claimed_at=None)
            )
            return result.rowcount == 1

        return self.db.run(operation)

    def append_message(self, conversation_id: str, message: Dict[str, Any]) -> Message:
        """Append a single message to a conversation."""
        def operation(session):
            conversation = session.get(Conversation, conversation_id)
            if conversation is None:
                raise ValueError(f"Conversation not found: {conversation_id}")
            row = self._build_message(conversation, message, datetime.now(timezone.utc))
            session.add(row)
            session.flush()
            session.expunge(row)
            return row

        return self.db.run(operation)

    def commit_turn(
        self,
        conversation_id: str,
        turn_id: int,
        messages: Sequence[Dict[str, Any]],
        turn_state: TurnState = TurnState.COMPLETED,
        updates: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Persist everything a turn produced as one transaction.

        Appends the turn's tool, outbound and system messages in order,
        finalizes the inbound message's turn state and applies conversation
        updates. Returns False without writing when the turn was already
        finalized by another worker (a replay after lease expiry).
        """
        state = TurnState(turn_state).value

        def operation(session):
            now = datetime.now(timezone.utc)
            result = session.execute(
                update(Message)
                .where(
                    Message.id == turn_id,
                    Message.turn_state == TurnState.PROCESSING.value
                )
                .values(turn_state=state)
            )
            if result.rowcount != 1:
                return False

            conversation = session.get(Conversation, conversation_id)
            for message in messages:
                row = self._build_message(conversation, message, now)
                row.turn_id = turn_id
                session.add(row)

            values = dict(updates or {})
            values["last_activity_at"] = now
            for key, value in values.items():
                if hasattr(conversation, key):
                    setattr(conversation, key, value)
            return True

        committed = self.db.run(operation)
        if not committed:
            trace_logger.warning(
                "Turn already finalized, skipping commit",
                conversation_id=conversation_id,
                turn_id=turn_id
            )
        return committed

    def get_history(
        self,
        conversation_id: str,
        limit: int,
        directions: Optional[Sequence[str]] = None
    ) -> List[Message]:
        """
        Return the newest `limit` messages, oldest first.

        Order is created_at then id, so rows written in one transaction keep
        their insertion sequence.
        """
        def operation(session):
            query = session.query(Message).filter(Message.conversation_id == conversation_id)
            if directions:
                query = query.filter(Message.direction.in_([str(d) for d in directions]))
            rows = (
                query.order_by(Message.created_at.desc(), Message.id.desc())
                .limit(limit)
                .all()
            )
            for row in rows:
                session.expunge(row)
            return list(reversed(rows))

        return self.db.run(operation)

    def find_inbound(self, organization_id: str, provider_message_id: str) -> Optional[Message]:
        """Find a recorded inbound message by provider message id."""
        def operation(session):
            message = session.query(Message).filter(
                Message.organization_id == organization_id,
                Message.direction == MessageDirection.INBOUND.value,
                Message.provider_message_id == provider_message_id
            ).first()
            if message:
                session.expunge(message)
            return message

        return self.db.run(operation)

    def count_inbound(self, conversation_id: str) -> int:
        """Number of inbound messages in a conversation."""
        def operation(session):
            return session.query(func.count(Message.id)).filter(
                Message.conversation_id == conversation_id,
                Message.direction == MessageDirection.INBOUND.value
            ).scalar() or 0

        return self.db.run(operation)

    def is_turn_settled(self, message: Message, lease_seconds: int) -> bool:
        """
        True when a redelivery of this inbound message must not be processed.

        Completed and failed turns are final; a processing turn is owned by
        its worker until the lease expires.
        """
        if message.turn_state in (TurnState.COMPLETED.value, TurnState.FAILED.value):
            return True
        if message.turn_state == TurnState.PROCESSING.value and message.claimed_at:
            expires = utc(message.claimed_at) + timedelta(seconds=lease_seconds)
            return expires > datetime.now(timezone.utc)
        return False

    @staticmethod
    def _build_message(conversation: Conversation, message: Dict[str, Any], now: datetime) -> Message:
        data = dict(message)
        direction = data.pop("direction")
        content = data.pop("content", "") or ""
        reserved = {"id", "conversation_id", "organization_id", "created_at"}
        return Message(
            conversation_id=conversation.id,
            organization_id=conversation.organization_id,
            direction=MessageDirection(direction).value,
            content=content,
            created_at=now,
            **{k: v for k, v in data.items() if k not in reserved and hasattr(Message, k)}
        )
