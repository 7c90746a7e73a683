"""
LangGraph node implementations.
Each node is a discrete step of one agent turn; nodes are bound methods on
TurnNodes so every collaborator is injected, never a module-level singleton.
"""

import json
from concurrent.futures import Executor, TimeoutError as FutureTimeout
from datetime import datetime, time, timezone
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from agent.state import AgentState, TurnOutcome, TurnPhase
from config import Settings
from integrations import ChatModel, DeliveryResult, MessageSender
from models import AgentConfig, MessageDirection, TurnState
from models.errors import ModelFailure, ModelTimeout
from observability import trace_logger
from prompts import compose
from quota import QuotaLedger
from store import ConversationStore, CRMRepository, InboxSink
from tools import ToolContext, ToolName, ToolRegistry, call_with_timeout


WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

DEFAULT_OUTSIDE_HOURS_MESSAGE = (
    "Olá! Nosso horário de atendimento já encerrou. "
    "Recebemos sua mensagem e retornaremos assim que possível."
)


def _hhmm(value: str) -> time:
    hours, minutes = value.split(":")[:2]
    return time(int(hours), int(minutes))


def _zone(agent_config: AgentConfig):
    try:
        return ZoneInfo(agent_config.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def within_business_hours(agent_config: AgentConfig, now: Optional[datetime] = None) -> bool:
    """
    Whether `now` falls inside the organization's business hours.

    An organization without configured hours is always open.
    """
    if not agent_config.business_hours:
        return True
    local = (now or datetime.now(timezone.utc)).astimezone(_zone(agent_config))
    hours = agent_config.business_hours.get(WEEKDAYS[local.weekday()])
    if not hours or not hours.active or not hours.start or not hours.end:
        return False
    return _hhmm(hours.start) <= local.time() < _hhmm(hours.end)


class TurnNodes:
    """Graph nodes for one organization-agnostic agent turn."""

    def __init__(
        self,
        store: ConversationStore,
        crm: CRMRepository,
        ledger: QuotaLedger,
        registry: ToolRegistry,
        inbox: InboxSink,
        sender: MessageSender,
        model_factory: Callable[[AgentConfig], ChatModel],
        executor: Executor,
        settings: Settings,
        knowledge: Any = None
    ):
        self.store = store
        self.crm = crm
        self.ledger = ledger
        self.registry = registry
        self.inbox = inbox
        self.sender = sender
        self.model_factory = model_factory
        self.executor = executor
        self.settings = settings
        self.knowledge = knowledge

    def _enter(self, state: AgentState, phase: TurnPhase) -> None:
        state["phase"] = phase
        trace_logger.turn_phase(
            conversation_id=state.get("conversation_id"),
            phase=phase.value,
            round_number=state.get("rounds", 0)
        )

    def _fail(self, state: AgentState, reason: str, reply: Optional[str]) -> None:
        state["outcome"] = TurnOutcome.FAILED
        state["reason"] = reason
        state["reply_text"] = reply
        self._enter(state, TurnPhase.FAILED)
        state["next_action"] = "reply" if reply else "persist"

    def receive(self, state: AgentState) -> AgentState:
        """
        Node 1: resolve the conversation, record the inbound message and claim its turn.
        """
        inbound = state["inbound"]
        conversation = self.store.resolve_or_create_conversation(
            state["organization_id"], inbound.from_, inbound.push_name
        )
        message, _ = self.store.record_inbound(conversation, inbound)

        state["conversation_id"] = conversation.id
        state["conversation"] = conversation.to_dict()
        state["turn_id"] = message.id

        if not self.store.claim_turn(message.id, self.settings.turn_claim_lease_seconds):
            trace_logger.duplicate_delivery(
                organization_id=state["organization_id"],
                message_id=inbound.message_id,
                turn_state=message.turn_state
            )
            state["outcome"] = TurnOutcome.DUPLICATE
            state["reason"] = "already_processed"
            state["next_action"] = "end"
            return state

        state["first_contact"] = self.store.count_inbound(conversation.id) == 1
        self._enter(state, TurnPhase.RECEIVED)
        state["next_action"] = "gate"
        return state

    def gate(self, state: AgentState) -> AgentState:
        """
        Node 2: decide whether automation answers this message at all.
        """
        config = state["agent_config"]
        conversation = state["conversation"]

        if conversation.get("status") == "transferred":
            state["outcome"] = TurnOutcome.HUMAN_HANDLING
            state["reason"] = "conversation_transferred"
            state["next_action"] = "persist"
            return state

        if not config.attend_outside_hours and not within_business_hours(config):
            state["outcome"] = TurnOutcome.OUTSIDE_HOURS
            state["reason"] = "outside_business_hours"
            state["reply_text"] = config.outside_hours_message or DEFAULT_OUTSIDE_HOURS_MESSAGE
            state["next_action"] = "reply"
            return state

        limit = config.max_messages_before_transfer
        if limit and self.store.count_inbound(state["conversation_id"]) >= limit:
            summary = f"Transferência automática após {limit} mensagens do lead."
            if self.store.mark_transferred(
                state["organization_id"], state["conversation_id"], summary=summary
            ):
                self.inbox.enqueue(
                    organization_id=state["organization_id"],
                    action_type="handoff",
                    title="Transferência: limite de mensagens atingido",
                    description=summary,
                    priority="medium",
                    contact_id=conversation.get("contact_id"),
                    deal_id=conversation.get("deal_id"),
                    conversation_id=state["conversation_id"],
                    suggested_action="reply"
                )
                trace_logger.escalation_triggered(
                    reason="max_messages",
                    conversation_id=state["conversation_id"],
                    context={"limit": limit}
                )
            state["transferred"] = True
            state["handoff_reason"] = "max_messages"
            state["handoff_summary"] = summary
            state["next_action"] = "transfer"
            return state

        state["next_action"] = "quota"
        return state

    def check_quota(self, state: AgentState) -> AgentState:
        """
        Node 3: reserve one model request against the organization's quota.
        """
        decision = self.ledger.check_and_reserve(state["organization_id"])
        if not decision.allowed:
            reply = None
            if self.settings.quota_exceeded_behavior == "canned":
                reply = (
                    state["agent_config"].quota_exceeded_message
                    or self.settings.quota_exceeded_reply
                )
            self._fail(state, decision.reason, reply)
            return state

        self._enter(state, TurnPhase.QUOTA_CHECKED)
        state["next_action"] = "compose"
        return state

    def compose(self, state: AgentState) -> AgentState:
        """
        Node 4: build the system prompt, chat history and tool catalog.
        """
        self._enter(state, TurnPhase.COMPOSING)
        config = state["agent_config"]
        conversation = state["conversation"]

        history = self.store.get_history(
            state["conversation_id"],
            self.settings.history_limit,
            directions=[MessageDirection.INBOUND.value, MessageDirection.OUTBOUND.value]
        )

        crm_context = {}
        if conversation.get("contact_id"):
            contact = self.crm.get_contact(state["organization_id"], conversation["contact_id"])
            if contact:
                crm_context["contact"] = contact.to_dict()
        if conversation.get("deal_id"):
            deal = self.crm.get_deal(state["organization_id"], conversation["deal_id"])
            if deal:
                crm_context["deal"] = deal.to_dict()

        prompt = compose(
            agent_config=config,
            vertical_context=self.crm.get_vertical_context(state["business_type"]),
            conversation_history=history,
            conversation=conversation,
            crm_context=crm_context,
            history_limit=self.settings.history_limit,
            now=datetime.now(_zone(config))
        )

        state["system_prompt"] = prompt.system
        state["messages"] = prompt.messages
        state["tool_specs"] = self.registry.specs(config, state["business_type"])
        state["next_action"] = "model"
        return state

    def call_model(self, state: AgentState) -> AgentState:
        """
        Node 5: one round against the model, bounded by the model timeout.
        """
        self._enter(state, TurnPhase.TOOL_LOOP)
        config = state["agent_config"]
        state["rounds"] += 1

        model_name = config.ai_model or self.settings.llm_model
        try:
            model = self.model_factory(config)
            model_name = model.model
            response = call_with_timeout(
                self.executor,
                self.settings.model_timeout_seconds,
                model.complete,
                state["system_prompt"],
                state["messages"],
                state["tool_specs"] or None,
                config.ai_temperature,
                config.max_tokens_per_response
            )
        except FutureTimeout:
            error = ModelTimeout(f"Model call exceeded {self.settings.model_timeout_seconds:g}s")
            return self._model_failed(state, model_name, error)
        except ModelFailure as e:
            return self._model_failed(state, model_name, e)
        except Exception as e:
            return self._model_failed(state, model_name, ModelFailure(str(e)))

        state["model_name"] = response.model or model.model
        state["tokens_input"] += response.tokens_input
        state["tokens_output"] += response.tokens_output
        self.ledger.record_usage(
            state["organization_id"],
            state["model_name"],
            tokens_input=response.tokens_input,
            tokens_output=response.tokens_output
        )
        trace_logger.model_round(
            round_number=state["rounds"],
            model=state["model_name"],
            tool_calls=[call.name for call in response.tool_calls],
            tokens_input=response.tokens_input,
            tokens_output=response.tokens_output
        )

        if response.tool_calls:
            state["messages"] = state["messages"] + [response.to_message()]
            state["pending_tool_calls"] = [call.to_dict() for call in response.tool_calls]
            state["next_action"] = "tools"
            return state

        text = (response.text or "").strip()
        if not text:
            trace_logger.warning("Model returned an empty reply", conversation_id=state["conversation_id"])
            text = self.settings.fallback_reply
            state["reason"] = "empty_response"
        state["reply_text"] = text
        state["outcome"] = TurnOutcome.REPLIED
        state["next_action"] = "reply"
        return state

    def _model_failed(self, state: AgentState, model_name: str, error: ModelFailure | ModelTimeout) -> AgentState:
        reason = error.code
        trace_logger.error_occurred(
            error_type=reason,
            error_message=str(error),
            context={"conversation_id": state["conversation_id"], "round": state["rounds"]}
        )
        state["errors"] = state["errors"] + [str(error)]
        self.ledger.record_usage(state["organization_id"], model_name, success=False)

        reply = None
        if self.settings.model_failure_behavior == "fallback":
            reply = self.settings.fallback_reply
        self._fail(state, reason, reply)
        return state

    def run_tools(self, state: AgentState) -> AgentState:
        """
        Node 6: dispatch the model's tool calls in order.

        A successful transfer_to_human ends the loop; later calls of the same
        round are not dispatched.
        """
        conversation = state["conversation"]
        context = ToolContext(
            organization_id=state["organization_id"],
            conversation_id=state["conversation_id"],
            agent_config=state["agent_config"],
            crm=self.crm,
            conversations=self.store,
            inbox=self.inbox,
            turn_id=state["turn_id"],
            business_type=state["business_type"],
            lead_identity=state["inbound"].from_,
            lead_name=conversation.get("lead_name") or state["inbound"].push_name,
            knowledge=self.knowledge
        )

        messages = list(state["messages"])
        turn_messages = list(state["turn_messages"])
        tool_calls = list(state["tool_calls"])

        for call in state["pending_tool_calls"]:
            if state["transferred"]:
                trace_logger.info(
                    "Skipping tool call after transfer",
                    tool_name=call["name"],
                    conversation_id=state["conversation_id"]
                )
                continue

            result = self.registry.dispatch(call["name"], call["arguments"], context)
            payload = result.to_model_payload()
            messages.append({
                "role": "tool",
                "tool_call_id": call["id"],
                "name": call["name"],
                "content": json.dumps(payload, ensure_ascii=False, default=str)
            })
            turn_messages.append({
                "direction": MessageDirection.TOOL.value,
                "content": f"{call['name']}: {'ok' if result.success else result.error_kind}",
                "tool_name": call["name"],
                "tool_arguments": call["arguments"] if isinstance(call["arguments"], dict) else {"raw": call["arguments"]},
                "tool_result": json.loads(json.dumps(result.data, default=str)) if result.data else None,
                "tool_error": result.error,
                "affected_entity_ids": result.affected_entity_ids,
            })
            tool_calls.append({
                "name": call["name"],
                "success": result.success,
                "error_kind": result.error_kind
            })

            if result.success and result.terminal:
                arguments = call["arguments"] if isinstance(call["arguments"], dict) else {}
                state["transferred"] = True
                state["handoff_reason"] = arguments.get("reason") or ToolName.TRANSFER_TO_HUMAN.value
                state["handoff_summary"] = arguments.get("summary")

        state["messages"] = messages
        state["turn_messages"] = turn_messages
        state["tool_calls"] = tool_calls
        state["pending_tool_calls"] = []

        if state["transferred"]:
            state["next_action"] = "transfer"
        elif state["rounds"] >= self.settings.agent_max_tool_rounds:
            state["next_action"] = "fallback"
        else:
            state["next_action"] = "model"
        return state

    def transfer(self, state: AgentState) -> AgentState:
        """
        Node 7: record the handoff and queue the transfer notice for the lead.
        """
        self._enter(state, TurnPhase.TRANSFERRED)
        note = f"Conversa transferida para atendimento humano. Motivo: {state['handoff_reason']}."
        if state["handoff_summary"]:
            note += f" Resumo: {state['handoff_summary']}"
        state["turn_messages"] = state["turn_messages"] + [{
            "direction": MessageDirection.SYSTEM.value,
            "content": note
        }]
        state["outcome"] = TurnOutcome.TRANSFERRED
        state["reason"] = state["handoff_reason"]
        state["reply_text"] = (
            state["agent_config"].transfer_message or self.settings.default_transfer_message
        )
        state["next_action"] = "reply"
        return state

    def fallback(self, state: AgentState) -> AgentState:
        """
        Node 8: the tool loop hit its round bound without a final answer.
        """
        trace_logger.warning(
            "Tool loop exhausted without a reply",
            conversation_id=state["conversation_id"],
            rounds=state["rounds"],
            max_rounds=self.settings.agent_max_tool_rounds
        )
        state["outcome"] = TurnOutcome.REPLIED
        state["reason"] = "max_rounds_exceeded"
        state["reply_text"] = self.settings.fallback_reply
        state["next_action"] = "reply"
        return state

    def reply(self, state: AgentState) -> AgentState:
        """
        Node 9: deliver the welcome message on first contact, then the reply.

        Delivery failures are recorded on the outbound rows; they never fail
        the turn.
        """
        if state["phase"] != TurnPhase.FAILED:
            self._enter(state, TurnPhase.REPLYING)
        config = state["agent_config"]

        texts = []
        if state["first_contact"] and config.welcome_message and state["outcome"] != TurnOutcome.FAILED:
            texts.append((config.welcome_message, False))
        if state["reply_text"]:
            texts.append((state["reply_text"], True))

        turn_messages = list(state["turn_messages"])
        delivered = True
        for text, is_reply in texts:
            result = self._deliver(state, text)
            delivered = delivered and result.success
            row = {
                "direction": MessageDirection.OUTBOUND.value,
                "content": text,
                "provider_message_id": result.message_id,
                "delivery_status": "sent" if result.success else "failed",
            }
            if is_reply and state["model_name"]:
                row.update({
                    "ai_model": state["model_name"],
                    "tokens_input": state["tokens_input"],
                    "tokens_output": state["tokens_output"],
                })
            turn_messages.append(row)

        state["turn_messages"] = turn_messages
        state["delivered"] = delivered if texts else None
        state["next_action"] = "persist"
        return state

    def _deliver(self, state: AgentState, text: str) -> DeliveryResult:
        config = state["agent_config"]
        try:
            return self.sender.send(
                organization_id=state["organization_id"],
                to=state["inbound"].from_,
                text=text,
                provider=config.whatsapp_provider,
                provider_config=config.whatsapp_config
            )
        except Exception as e:
            trace_logger.error_occurred(
                error_type="delivery_exception",
                error_message=str(e),
                context={"conversation_id": state["conversation_id"]}
            )
            return DeliveryResult(success=False, error=str(e))

    def persist(self, state: AgentState) -> AgentState:
        """
        Node 10: commit everything the turn produced in one transaction.
        """
        failed = state["outcome"] == TurnOutcome.FAILED
        committed = self.store.commit_turn(
            state["conversation_id"],
            state["turn_id"],
            state["turn_messages"],
            turn_state=TurnState.FAILED if failed else TurnState.COMPLETED
        )
        if not committed:
            state["errors"] = state["errors"] + ["turn already finalized"]
        if not failed:
            self._enter(state, TurnPhase.PERSISTED)
        state["next_action"] = "end"
        return state
