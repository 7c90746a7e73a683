"""
Agent state definition for LangGraph.
Represents everything flowing through one turn: an inbound lead message
in, at most one committed set of turn messages and one reply out.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import TypedDict, List, Dict, Any, Optional

from models import AgentConfig, NormalizedMessage


class TurnPhase(str, Enum):
    """Where a turn is in the orchestrator state machine."""
    IDLE = "idle"
    RECEIVED = "received"
    QUOTA_CHECKED = "quota_checked"
    COMPOSING = "composing"
    TOOL_LOOP = "tool_loop"
    TRANSFERRED = "transferred"
    REPLYING = "replying"
    PERSISTED = "persisted"
    FAILED = "failed"


class TurnOutcome(str, Enum):
    """How a turn ended, as reported to callers and logs."""
    REPLIED = "replied"
    TRANSFERRED = "transferred"
    FAILED = "failed"
    DUPLICATE = "duplicate"
    HUMAN_HANDLING = "human_handling"
    OUTSIDE_HOURS = "outside_hours"


class AgentState(TypedDict):
    """State object passed through LangGraph nodes."""

    # Input
    organization_id: str
    inbound: NormalizedMessage
    agent_config: AgentConfig
    business_type: Optional[str]
    trace_id: str

    # Conversation
    conversation_id: Optional[str]
    conversation: Dict[str, Any]
    turn_id: Optional[int]
    first_contact: bool

    # Prompt and tool loop
    system_prompt: str
    messages: List[Dict[str, Any]]
    tool_specs: List[Dict[str, Any]]
    rounds: int
    pending_tool_calls: List[Dict[str, Any]]
    tool_calls: List[Dict[str, Any]]
    model_name: Optional[str]
    tokens_input: int
    tokens_output: int

    # Handoff
    transferred: bool
    handoff_reason: Optional[str]
    handoff_summary: Optional[str]

    # Reply and persistence
    reply_text: Optional[str]
    delivered: Optional[bool]
    turn_messages: List[Dict[str, Any]]

    # Outcome
    phase: TurnPhase
    outcome: Optional[TurnOutcome]
    reason: Optional[str]
    next_action: Optional[str]
    errors: List[str]


@dataclass
class TurnResult:
    """Result of one orchestrator run."""
    outcome: TurnOutcome
    phase: TurnPhase
    reason: Optional[str] = None
    conversation_id: Optional[str] = None
    turn_id: Optional[int] = None
    reply_text: Optional[str] = None
    tool_calls: List[str] = field(default_factory=list)
    delivered: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "outcome": self.outcome.value,
            "phase": self.phase.value,
            "reason": self.reason,
            "conversation_id": self.conversation_id,
            "turn_id": self.turn_id,
            "reply_text": self.reply_text,
            "tool_calls": self.tool_calls,
            "delivered": self.delivered
        }
