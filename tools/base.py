"""
Base tool abstraction with structured result handling.
All tools validate their arguments with a pydantic model and return
ToolResult; failures are raised as ToolError and turned into results by the
registry, never propagated to the turn.
"""

import contextvars
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel

from models import AgentConfig

T = TypeVar("T")


class ToolName(str, Enum):
    """Closed set of tools the agent can call."""
    CREATE_CONTACT = "create_contact"
    UPDATE_CONTACT = "update_contact"
    CREATE_DEAL = "create_deal"
    MOVE_DEAL = "move_deal"
    QUALIFY_LEAD = "qualify_lead"
    CREATE_ACTIVITY = "create_activity"
    CHECK_AVAILABILITY = "check_availability"
    PROPERTY_MATCH = "property_match"
    TRANSFER_TO_HUMAN = "transfer_to_human"
    SEARCH_KNOWLEDGE = "search_knowledge"


@dataclass
class ToolContext:
    """
    Everything a tool may touch for one turn.

    Tools run with service-level access on behalf of the lead, so the
    organization id here is the only tenant boundary they see.
    """
    organization_id: str
    conversation_id: str
    agent_config: AgentConfig
    crm: Any
    conversations: Any
    inbox: Any
    turn_id: Optional[int] = None
    business_type: Optional[str] = None
    lead_identity: Optional[str] = None
    lead_name: Optional[str] = None
    knowledge: Any = None

    @property
    def tz(self):
        try:
            return ZoneInfo(self.agent_config.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            return timezone.utc

    def local_now(self) -> datetime:
        return datetime.now(self.tz)

    def conversation(self):
        """Current conversation row (re-read, tools may have updated it this turn)."""
        return self.conversations.get_conversation(self.organization_id, self.conversation_id)


@dataclass
class ToolResult:
    """Structured result from tool execution."""
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    affected_entity_ids: List[str] = field(default_factory=list)
    terminal: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "error_kind": self.error_kind,
            "affected_entity_ids": self.affected_entity_ids
        }

    def to_model_payload(self) -> Dict[str, Any]:
        """What the model sees for this call."""
        if self.success:
            return {"success": True, **(self.data or {})}
        return {"success": False, "error": {"kind": self.error_kind, "message": self.error}}


class Tool(ABC):
    """Abstract base class for all tools."""

    name: ToolName
    description: str = ""
    args_model: Type[BaseModel]

    def spec(self) -> Dict[str, Any]:
        """Function schema offered to the model."""
        schema = self.args_model.model_json_schema()
        schema.pop("title", None)
        return {
            "name": self.name.value,
            "description": self.description,
            "parameters": schema
        }

    def is_available(self, agent_config: AgentConfig, business_type: Optional[str], knowledge_enabled: bool) -> bool:
        """Whether this organization is offered the tool."""
        return True

    @abstractmethod
    def execute(self, args: BaseModel, context: ToolContext) -> ToolResult:
        """Execute tool with validated arguments."""
        pass


def call_with_timeout(executor: Executor, timeout: float, fn: Callable[..., T], *args, **kwargs) -> T:
    """
    Run fn on the executor and wait at most `timeout` seconds once it starts.

    Time spent queued behind other calls on a busy executor does not count
    against the timeout. Raises concurrent.futures.TimeoutError when the
    running call overruns. The call keeps the caller's context variables
    (trace id). A timed out call cannot be interrupted; its result is
    discarded.
    """
    ctx = contextvars.copy_context()
    started = threading.Event()

    def run():
        started.set()
        return ctx.run(fn, *args, **kwargs)

    future = executor.submit(run)
    # A cancelled future (executor shut down) never starts.
    while not started.wait(0.05):
        if future.done():
            break
    return future.result(timeout=timeout)
