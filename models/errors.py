"""
Error taxonomy for the agent core.

Only PersistenceFailure is allowed to reach the HTTP caller as a retryable
error; the rest are handled where they are raised.
"""

from typing import Optional


class AgentCoreError(Exception):
    """Base class for agent core errors."""

    code = "agent_core_error"


class InvalidPayload(AgentCoreError):
    """Webhook body is malformed or lacks required fields."""

    code = "invalid_payload"


class Unauthorized(AgentCoreError):
    """Webhook signature or token did not verify."""

    code = "unauthorized"


class DuplicateDelivery(AgentCoreError):
    """The provider message id was already processed for this organization."""

    code = "duplicate_delivery"

    def __init__(self, message_id: str):
        super().__init__(f"Message already processed: {message_id}")
        self.message_id = message_id


class QuotaExceeded(AgentCoreError):
    """Organization has no AI quota left in the current period."""

    code = "quota_exceeded"


class ToolError(AgentCoreError):
    """A tool failed; reported back to the model, never fatal for the turn."""

    code = "tool_error"

    VALIDATION = "validation"
    DOWNSTREAM = "downstream"
    TIMEOUT = "timeout"
    UNKNOWN_TOOL = "unknown_tool"
    NOT_AVAILABLE = "not_available"

    def __init__(self, message: str, kind: str = DOWNSTREAM):
        super().__init__(message)
        self.kind = kind


class ModelTimeout(AgentCoreError):
    """Model call exceeded the configured timeout."""

    code = "model_timeout"


class ModelFailure(AgentCoreError):
    """Model call failed (provider error, malformed response)."""

    code = "model_failure"


class PersistenceFailure(AgentCoreError):
    """Database write failed; safe for the caller to retry the whole delivery."""

    code = "persistence_failure"

    def __init__(self, message: str, original: Optional[BaseException] = None):
        super().__init__(message)
        self.original = original
