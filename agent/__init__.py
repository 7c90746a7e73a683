"""Agent orchestration module."""

from agent.orchestrator import AgentOrchestrator, ChatModelCache
from agent.nodes import TurnNodes, within_business_hours
from agent.state import AgentState, TurnOutcome, TurnPhase, TurnResult

__all__ = [
    "AgentOrchestrator", "ChatModelCache",
    "TurnNodes", "within_business_hours",
    "AgentState", "TurnOutcome", "TurnPhase", "TurnResult"
]
