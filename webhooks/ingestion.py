"""
Webhook ingestion: the single entry point from a provider delivery to an
agent turn.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from agent import AgentOrchestrator, TurnOutcome
from config import Settings, settings as default_settings
from models.errors import DuplicateDelivery, InvalidPayload
from observability import trace_logger
from store import ConversationStore, CRMRepository
from webhooks.normalize import normalize
from webhooks.verify import verify_signature


@dataclass
class IngestionResult:
    """What the webhook endpoint acknowledges to the provider."""
    status: str
    outcome: Optional[str] = None
    reason: Optional[str] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "status": self.status,
            "outcome": self.outcome,
            "reason": self.reason,
            "conversation_id": self.conversation_id,
        }


class WebhookIngestion:
    """Verifies, normalizes and deduplicates deliveries before running a turn."""

    def __init__(
        self,
        crm: CRMRepository,
        store: ConversationStore,
        orchestrator: AgentOrchestrator,
        settings: Settings = None
    ):
        self.crm = crm
        self.store = store
        self.orchestrator = orchestrator
        self.settings = settings or default_settings

    def ingest(
        self,
        organization_id: str,
        provider: str,
        raw_body: bytes,
        headers: Mapping[str, str]
    ) -> IngestionResult:
        """
        Process one webhook delivery.

        Raises:
            InvalidPayload: body is not JSON or lacks required fields
            Unauthorized: signature or API key did not verify
            DuplicateDelivery: the message was already processed
            PersistenceFailure: database write failed; the provider should retry
        """
        agent_config = self.crm.get_agent_config(organization_id)
        if agent_config is None:
            return IngestionResult(status="ignored", reason="agent_not_configured")

        try:
            body = json.loads(raw_body or b"")
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidPayload(f"Body is not valid JSON: {e}")

        verify_signature(provider, raw_body, headers, body, agent_config, self.settings)

        message = normalize(provider, body)
        if message is None:
            return IngestionResult(status="ignored", reason="no_message")

        if not agent_config.is_active:
            return IngestionResult(status="ignored", reason="agent_inactive", message_id=message.message_id)

        existing = self.store.find_inbound(organization_id, message.message_id)
        if existing is not None and self.store.is_turn_settled(
            existing, self.settings.turn_claim_lease_seconds
        ):
            trace_logger.duplicate_delivery(
                organization_id=organization_id,
                message_id=message.message_id,
                turn_state=existing.turn_state
            )
            raise DuplicateDelivery(message.message_id)

        trace_logger.webhook_received(
            organization_id=organization_id,
            provider=provider,
            message_id=message.message_id,
            message_type=message.type
        )

        result = self.orchestrator.run(organization_id, message, agent_config=agent_config)
        if result.outcome == TurnOutcome.DUPLICATE:
            raise DuplicateDelivery(message.message_id)

        return IngestionResult(
            status="processed",
            outcome=result.outcome.value,
            reason=result.reason,
            conversation_id=result.conversation_id,
            message_id=message.message_id
        )
