"""
Human handoff tool. Terminal for the turn: once it succeeds the orchestrator
dispatches no further tool calls and automation stops for the conversation
until an operator returns it to the agent.
"""

from typing import Literal

from pydantic import BaseModel, Field

from observability import trace_logger
from tools.base import Tool, ToolContext, ToolName, ToolResult


class TransferToHumanArgs(BaseModel):
    reason: str = Field(..., min_length=1, description="Motivo da transferência")
    summary: str = Field(..., min_length=1, description="Resumo completo da conversa para o atendente")
    priority: Literal["low", "medium", "high", "critical"] = "medium"


class TransferToHumanTool(Tool):
    name = ToolName.TRANSFER_TO_HUMAN
    description = (
        "Transfere a conversa para um atendente humano. Use quando não conseguir "
        "resolver ou quando o lead pedir."
    )
    args_model = TransferToHumanArgs

    def execute(self, args: TransferToHumanArgs, context: ToolContext) -> ToolResult:
        transferred = context.conversations.mark_transferred(
            context.organization_id, context.conversation_id, summary=args.summary
        )
        if not transferred:
            return ToolResult(
                success=True,
                data={"transferred": True, "already_transferred": True},
                affected_entity_ids=[context.conversation_id],
                terminal=True
            )

        conversation = context.conversation()
        context.inbox.enqueue(
            organization_id=context.organization_id,
            action_type="handoff",
            title=f"Transferência: {args.reason}",
            description=args.summary,
            priority=args.priority,
            contact_id=conversation.contact_id if conversation else None,
            deal_id=conversation.deal_id if conversation else None,
            conversation_id=context.conversation_id,
            suggested_action="reply"
        )
        trace_logger.escalation_triggered(
            reason=args.reason,
            conversation_id=context.conversation_id,
            context={"priority": args.priority}
        )
        return ToolResult(
            success=True,
            data={"transferred": True, "already_transferred": False},
            affected_entity_ids=[context.conversation_id],
            terminal=True
        )
