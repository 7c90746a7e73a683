"""Data models and schemas."""

from models.crm import (
    Base, BusinessType, WhatsAppProvider, Organization, VerticalConfigRecord,
    AgentConfigRecord, Contact, BoardStage, Deal, Activity, Property,
    InboxActionItem
)
from models.conversation import (
    Conversation, Message, ConversationStatus, QualificationStatus,
    MessageDirection, TurnState
)
from models.usage import QuotaPeriod, QuotaPolicy, UsageRecord, AIUsageLog
from models.schemas import (
    NormalizedMessage, AgentConfig, VerticalContext, QualificationField,
    TransferRule, BusinessHoursDay, WebhookResponse, QuotaStatusResponse,
    UsageStatsResponse, ConversationActionRequest, ConversationActionResponse,
    MessageView, HealthResponse
)

__all__ = [
    "Base", "BusinessType", "WhatsAppProvider", "Organization",
    "VerticalConfigRecord", "AgentConfigRecord", "Contact", "BoardStage",
    "Deal", "Activity", "Property", "InboxActionItem",
    "Conversation", "Message", "ConversationStatus", "QualificationStatus",
    "MessageDirection", "TurnState",
    "QuotaPeriod", "QuotaPolicy", "UsageRecord", "AIUsageLog",
    "NormalizedMessage", "AgentConfig", "VerticalContext",
    "QualificationField", "TransferRule", "BusinessHoursDay",
    "WebhookResponse", "QuotaStatusResponse", "UsageStatsResponse",
    "ConversationActionRequest", "ConversationActionResponse",
    "MessageView", "HealthResponse"
]
