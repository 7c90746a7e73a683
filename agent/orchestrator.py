"""
LangGraph orchestrator - connects the turn nodes into the agent state machine.
"""

import time
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any, Callable, Optional

from langgraph.graph import StateGraph, END

from agent.nodes import TurnNodes
from agent.state import AgentState, TurnOutcome, TurnPhase, TurnResult
from config import Settings, settings as default_settings
from integrations import ChatModel, MessageSender, get_chat_model
from models import AgentConfig, NormalizedMessage, TurnState
from models.errors import PersistenceFailure
from observability import trace_logger
from quota import QuotaLedger
from store import ConversationStore, CRMRepository, InboxSink
from tools import ToolRegistry


def _next(state: AgentState) -> str:
    """Conditional edge: every node names its successor in next_action."""
    return state.get("next_action") or "end"


class ChatModelCache:
    """One chat model client per (provider, model) pair."""

    def __init__(self, factory: Callable[[Optional[str], Optional[str]], ChatModel] = get_chat_model):
        self.factory = factory
        self._models = {}

    def __call__(self, agent_config: AgentConfig) -> ChatModel:
        key = (agent_config.ai_provider, agent_config.ai_model)
        model = self._models.get(key)
        if model is None:
            model = self.factory(agent_config.ai_provider, agent_config.ai_model)
            self._models[key] = model
        return model


class AgentOrchestrator:
    """
    Orchestrates one agent turn per inbound message using LangGraph.

    Graph structure:
    1. receive -> [gate OR END (duplicate)]
    2. gate -> [check_quota OR transfer OR reply OR persist]
    3. check_quota -> [compose OR reply OR persist (quota exceeded)]
    4. compose -> call_model
    5. call_model -> [run_tools OR reply OR persist (silent failure)]
    6. run_tools -> [call_model OR transfer OR fallback]
    7. transfer -> reply
    8. fallback -> reply
    9. reply -> persist
    10. persist -> END
    """

    def __init__(
        self,
        store: ConversationStore,
        crm: CRMRepository,
        ledger: QuotaLedger,
        registry: ToolRegistry,
        inbox: InboxSink,
        sender: MessageSender,
        model_factory: Optional[Callable[[AgentConfig], ChatModel]] = None,
        executor: Optional[Executor] = None,
        settings: Optional[Settings] = None,
        knowledge: Any = None
    ):
        self.settings = settings or default_settings
        self.store = store
        self.crm = crm
        self.executor = executor or ThreadPoolExecutor(
            max_workers=self.settings.worker_threads, thread_name_prefix="model"
        )
        self.nodes = TurnNodes(
            store=store,
            crm=crm,
            ledger=ledger,
            registry=registry,
            inbox=inbox,
            sender=sender,
            model_factory=model_factory or ChatModelCache(),
            executor=self.executor,
            settings=self.settings,
            knowledge=knowledge
        )
        self.graph = self._build_graph()
        self.compiled_graph = self.graph.compile()

    def _build_graph(self) -> StateGraph:
        """Build the LangGraph state machine."""
        workflow = StateGraph(AgentState)

        workflow.add_node("receive", self.nodes.receive)
        workflow.add_node("gate", self.nodes.gate)
        workflow.add_node("check_quota", self.nodes.check_quota)
        workflow.add_node("compose", self.nodes.compose)
        workflow.add_node("call_model", self.nodes.call_model)
        workflow.add_node("run_tools", self.nodes.run_tools)
        workflow.add_node("transfer", self.nodes.transfer)
        workflow.add_node("fallback", self.nodes.fallback)
        workflow.add_node("reply", self.nodes.reply)
        workflow.add_node("persist", self.nodes.persist)

        workflow.set_entry_point("receive")

        workflow.add_conditional_edges("receive", _next, {"gate": "gate", "end": END})
        workflow.add_conditional_edges(
            "gate",
            _next,
            {
                "quota": "check_quota",
                "transfer": "transfer",
                "reply": "reply",
                "persist": "persist"
            }
        )
        workflow.add_conditional_edges(
            "check_quota",
            _next,
            {"compose": "compose", "reply": "reply", "persist": "persist"}
        )
        workflow.add_edge("compose", "call_model")
        workflow.add_conditional_edges(
            "call_model",
            _next,
            {"tools": "run_tools", "reply": "reply", "persist": "persist"}
        )
        workflow.add_conditional_edges(
            "run_tools",
            _next,
            {"model": "call_model", "transfer": "transfer", "fallback": "fallback"}
        )
        workflow.add_edge("transfer", "reply")
        workflow.add_edge("fallback", "reply")
        workflow.add_edge("reply", "persist")
        workflow.add_edge("persist", END)

        return workflow

    def run(
        self,
        organization_id: str,
        message: NormalizedMessage,
        agent_config: Optional[AgentConfig] = None,
        trace_id: str = None
    ) -> TurnResult:
        """
        Run one turn for an inbound message.

        Args:
            organization_id: Tenant the message was delivered to
            message: Normalized inbound message
            agent_config: Organization agent configuration (loaded when omitted)
            trace_id: Optional trace ID for logging

        Returns:
            TurnResult describing how the turn ended

        Raises:
            PersistenceFailure: the database rejected a write; the turn claim
                was released so a redelivery reprocesses the message
        """
        agent_config = agent_config or self.crm.get_agent_config(organization_id)
        if agent_config is None:
            raise ValueError(f"No agent configuration for organization {organization_id}")

        initial_state: AgentState = {
            "organization_id": organization_id,
            "inbound": message,
            "agent_config": agent_config,
            "business_type": self.crm.get_business_type(organization_id),
            "trace_id": trace_id or trace_logger.generate_trace_id(),
            "conversation_id": None,
            "conversation": {},
            "turn_id": None,
            "first_contact": False,
            "system_prompt": "",
            "messages": [],
            "tool_specs": [],
            "rounds": 0,
            "pending_tool_calls": [],
            "tool_calls": [],
            "model_name": None,
            "tokens_input": 0,
            "tokens_output": 0,
            "transferred": False,
            "handoff_reason": None,
            "handoff_summary": None,
            "reply_text": None,
            "delivered": None,
            "turn_messages": [],
            "phase": TurnPhase.IDLE,
            "outcome": None,
            "reason": None,
            "next_action": None,
            "errors": []
        }

        started = time.monotonic()
        with trace_logger.trace(initial_state["trace_id"]):
            trace_logger.agent_run_started(
                organization_id=organization_id,
                lead_identity=message.from_,
                message=message.message
            )
            try:
                final_state = self.compiled_graph.invoke(
                    initial_state,
                    config={"recursion_limit": 10 + 3 * self.settings.agent_max_tool_rounds}
                )
            except PersistenceFailure as e:
                trace_logger.error_occurred(
                    error_type="persistence_failure",
                    error_message=str(e),
                    context={"organization_id": organization_id, "message_id": message.message_id}
                )
                self._release(organization_id, message)
                raise
            except Exception as e:
                trace_logger.error_occurred(
                    error_type="agent_orchestration_error",
                    error_message=str(e),
                    context={"organization_id": organization_id, "message_id": message.message_id}
                )
                result = self._abandon(organization_id, message)
            else:
                result = self._result(final_state)

            trace_logger.agent_run_completed(
                conversation_id=result.conversation_id,
                outcome=result.outcome.value,
                duration_ms=round((time.monotonic() - started) * 1000, 1),
                reason=result.reason,
                phase=result.phase.value
            )
            return result

    @staticmethod
    def _result(state: AgentState) -> TurnResult:
        return TurnResult(
            outcome=state["outcome"] or TurnOutcome.REPLIED,
            phase=state["phase"],
            reason=state["reason"],
            conversation_id=state["conversation_id"],
            turn_id=state["turn_id"],
            reply_text=state["reply_text"],
            tool_calls=[call["name"] for call in state["tool_calls"]],
            delivered=state["delivered"]
        )

    def _release(self, organization_id: str, message: NormalizedMessage) -> None:
        try:
            inbound = self.store.find_inbound(organization_id, message.message_id)
            if inbound is not None:
                self.store.release_turn(inbound.id)
        except PersistenceFailure as e:
            trace_logger.warning(
                "Could not release turn claim; it will be reclaimed after the lease",
                message_id=message.message_id,
                error=str(e)
            )

    def _abandon(self, organization_id: str, message: NormalizedMessage) -> TurnResult:
        """Finalize a turn that crashed so redeliveries do not loop on it."""
        inbound = self.store.find_inbound(organization_id, message.message_id)
        if inbound is None or inbound.turn_state != TurnState.PROCESSING.value:
            return TurnResult(outcome=TurnOutcome.FAILED, phase=TurnPhase.FAILED, reason="internal_error")
        self.store.commit_turn(inbound.conversation_id, inbound.id, [], turn_state=TurnState.FAILED)
        return TurnResult(
            outcome=TurnOutcome.FAILED,
            phase=TurnPhase.FAILED,
            reason="internal_error",
            conversation_id=inbound.conversation_id,
            turn_id=inbound.id
        )

    def shutdown(self) -> None:
        self.executor.shutdown(wait=False)
