"""
Pydantic schemas for the domain contract and API requests/responses.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, Any, Optional, List, Literal
from datetime import datetime, timezone


class NormalizedMessage(BaseModel):
    """Canonical inbound message produced by webhook normalization."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    from_: str = Field(..., alias="from", min_length=1, description="Lead channel identity")
    push_name: Optional[str] = Field(None, alias="pushName")
    message: str = Field(..., description="Text content ('[mídia]' for media without caption)")
    type: str = Field(default="text")
    media_url: Optional[str] = Field(None, alias="mediaUrl")
    message_id: str = Field(..., alias="messageId", min_length=1)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class BusinessHoursDay(BaseModel):
    start: Optional[str] = None
    end: Optional[str] = None
    active: bool = False


class QualificationField(BaseModel):
    key: str
    question: str = ""
    type: Literal["text", "select", "boolean"] = "text"
    required: bool = True
    options: Optional[List[str]] = None


class TransferRule(BaseModel):
    condition: str
    transfer_to: str = "human"
    message: Optional[str] = None


class AgentConfig(BaseModel):
    """Read-only view of an organization's agent configuration."""

    organization_id: str
    is_active: bool = True

    whatsapp_provider: Literal["whatsapp_cloud_api", "evolution_api"] = "whatsapp_cloud_api"
    whatsapp_config: Dict[str, Any] = Field(default_factory=dict)

    agent_name: str = "Assistente"
    welcome_message: Optional[str] = None
    transfer_message: Optional[str] = None
    outside_hours_message: Optional[str] = None
    quota_exceeded_message: Optional[str] = None

    business_hours: Dict[str, BusinessHoursDay] = Field(default_factory=dict)
    timezone: str = "America/Sao_Paulo"
    attend_outside_hours: bool = True

    ai_provider: Optional[Literal["openai", "anthropic", "google"]] = None
    ai_model: Optional[str] = None
    ai_temperature: float = 0.7
    max_tokens_per_response: int = 500
    system_prompt_override: Optional[str] = None

    qualification_fields: List[QualificationField] = Field(default_factory=list)
    auto_create_contact: bool = True
    auto_create_deal: bool = False
    default_board_id: Optional[str] = None
    default_stage_id: Optional[str] = None

    transfer_rules: List[TransferRule] = Field(default_factory=list)
    max_messages_before_transfer: Optional[int] = None


class VerticalContext(BaseModel):
    """Vertical overlay input for the prompt composer."""

    business_type: Optional[str] = None
    system_prompt_vertical: Optional[str] = None
    action_prompts: Dict[str, str] = Field(default_factory=dict)


class WebhookResponse(BaseModel):
    """Acknowledgement returned to the messaging provider."""
    status: str = Field(..., description="processed, duplicate or ignored")
    outcome: Optional[str] = None
    reason: Optional[str] = None
    conversation_id: Optional[str] = None


class QuotaStatusResponse(BaseModel):
    """Current quota window for an organization."""
    organization_id: str
    period: str
    period_start: datetime
    requests_used: int
    tokens_used: int
    request_limit: Optional[int] = None
    token_limit: Optional[int] = None
    alert_threshold_pct: int = 80
    alert: bool = False
    exhausted: bool = False


class UsageStatsResponse(BaseModel):
    """Aggregated usage for the governance dashboard."""
    organization_id: str
    period: str
    period_start: datetime
    total_requests: int
    success_count: int
    tokens_input: int
    tokens_output: int
    by_model: Dict[str, int] = Field(default_factory=dict)


class ConversationActionRequest(BaseModel):
    """Operator action on a conversation."""
    organization_id: str
    action: Literal["take_over", "return_to_ai", "close"]
    operator_name: Optional[str] = None


class ConversationActionResponse(BaseModel):
    success: bool
    action: str
    new_status: str


class MessageView(BaseModel):
    id: int
    direction: str
    content: str
    tool_name: Optional[str] = None
    tool_error: Optional[str] = None
    delivery_status: Optional[str] = None
    created_at: Optional[datetime] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(default="healthy")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str = Field(default="1.0.0")
