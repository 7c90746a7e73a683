"""
CRM tools: contacts, deals, qualification and activities.

Each tool is safe to replay within a turn: it looks for the record it would
create (linked to the conversation, same phone, same stage) before writing.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

from models import AgentConfig, QualificationStatus
from models.errors import ToolError
from tools.base import Tool, ToolContext, ToolName, ToolResult


def _linked_contact_id(context: ToolContext, explicit: Optional[str]) -> Optional[str]:
    if explicit:
        return explicit
    conversation = context.conversation()
    return conversation.contact_id if conversation else None


def _owned_contact_id(context: ToolContext, contact_id: Optional[str]) -> Optional[str]:
    """Ids supplied by the model must belong to this organization."""
    if contact_id and context.crm.get_contact(context.organization_id, contact_id) is None:
        raise ToolError(f"Contato não encontrado: {contact_id}", ToolError.VALIDATION)
    return contact_id


def _owned_deal_id(context: ToolContext, deal_id: Optional[str]) -> Optional[str]:
    if deal_id and context.crm.get_deal(context.organization_id, deal_id) is None:
        raise ToolError(f"Negócio não encontrado: {deal_id}", ToolError.VALIDATION)
    return deal_id


def _to_utc(value: datetime, context: ToolContext) -> datetime:
    """Naive datetimes from the model are in the organization's timezone."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=context.tz)
    return value.astimezone(timezone.utc)


class CreateContactArgs(BaseModel):
    name: str = Field(..., min_length=1, description="Nome completo do contato")
    email: Optional[EmailStr] = Field(None, description="Email")
    phone: Optional[str] = Field(None, description="Telefone no formato E.164 (padrão: o WhatsApp do lead)")
    company_name: Optional[str] = Field(None, description="Nome da empresa")
    notes: Optional[str] = Field(None, description="Notas/observações")


class CreateContactTool(Tool):
    name = ToolName.CREATE_CONTACT
    description = "Cria o contato do lead no CRM. Use quando tiver pelo menos o nome."
    args_model = CreateContactArgs

    def is_available(self, agent_config: AgentConfig, business_type, knowledge_enabled) -> bool:
        return agent_config.auto_create_contact

    def execute(self, args: CreateContactArgs, context: ToolContext) -> ToolResult:
        conversation = context.conversation()
        if conversation and conversation.contact_id:
            existing = context.crm.get_contact(context.organization_id, conversation.contact_id)
            if existing:
                return ToolResult(
                    success=True,
                    data={"contact_id": existing.id, "name": existing.name, "created": False},
                    affected_entity_ids=[existing.id]
                )

        contact, created = context.crm.create_contact(
            organization_id=context.organization_id,
            name=args.name,
            phone=args.phone or context.lead_identity,
            email=args.email,
            company_name=args.company_name,
            notes=args.notes
        )
        context.conversations.update_conversation(
            context.organization_id, context.conversation_id, contact_id=contact.id
        )
        return ToolResult(
            success=True,
            data={"contact_id": contact.id, "name": contact.name, "created": created},
            affected_entity_ids=[contact.id]
        )


class UpdateContactArgs(BaseModel):
    contact_id: Optional[str] = Field(None, description="ID do contato (padrão: contato desta conversa)")
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    company_name: Optional[str] = None
    notes: Optional[str] = None
    custom_fields: Optional[Dict[str, Any]] = Field(None, description="Campos específicos da vertical")


class UpdateContactTool(Tool):
    name = ToolName.UPDATE_CONTACT
    description = "Atualiza dados de um contato existente."
    args_model = UpdateContactArgs

    def execute(self, args: UpdateContactArgs, context: ToolContext) -> ToolResult:
        contact_id = _linked_contact_id(context, args.contact_id)
        if not contact_id:
            raise ToolError("Nenhum contato vinculado a esta conversa", ToolError.VALIDATION)

        updates = args.model_dump(exclude={"contact_id"}, exclude_none=True)
        if not updates:
            raise ToolError("Nenhum campo para atualizar", ToolError.VALIDATION)

        contact = context.crm.update_contact(context.organization_id, contact_id, **updates)
        if not contact:
            raise ToolError(f"Contato não encontrado: {contact_id}", ToolError.VALIDATION)

        return ToolResult(
            success=True,
            data={"contact": contact.to_dict(), "updated_fields": sorted(updates)},
            affected_entity_ids=[contact.id]
        )


class CreateDealArgs(BaseModel):
    title: str = Field(..., min_length=1, description='Título do negócio (ex: "Consulta - João Silva")')
    value: Optional[float] = Field(None, ge=0, description="Valor estimado em R$")
    contact_id: Optional[str] = Field(None, description="ID do contato (padrão: contato desta conversa)")
    board_id: Optional[str] = Field(None, description="Pipeline (usa o padrão se omitido)")
    stage_id: Optional[str] = Field(None, description="Etapa inicial (usa o padrão se omitido)")


class CreateDealTool(Tool):
    name = ToolName.CREATE_DEAL
    description = "Cria um negócio no pipeline. Use quando o lead demonstrar interesse claro."
    args_model = CreateDealArgs

    def is_available(self, agent_config: AgentConfig, business_type, knowledge_enabled) -> bool:
        return agent_config.auto_create_deal

    def execute(self, args: CreateDealArgs, context: ToolContext) -> ToolResult:
        org_id = context.organization_id
        conversation = context.conversation()

        existing = None
        if conversation and conversation.deal_id:
            existing = context.crm.get_deal(org_id, conversation.deal_id)
        if existing is None:
            existing = context.crm.find_deal_for_conversation(org_id, context.conversation_id)
        if existing:
            return ToolResult(
                success=True,
                data={"deal_id": existing.id, "title": existing.title, "created": False},
                affected_entity_ids=[existing.id]
            )

        board_id = args.board_id or context.agent_config.default_board_id
        if not board_id:
            raise ToolError("Nenhum pipeline configurado", ToolError.VALIDATION)

        stages = context.crm.list_stages(org_id, board_id)
        if not stages:
            raise ToolError(f"Pipeline não encontrado: {board_id}", ToolError.VALIDATION)

        stage = stages[0]
        reference = args.stage_id or context.agent_config.default_stage_id
        if reference:
            stage = context.crm.find_stage(org_id, board_id, reference)
            if stage is None:
                raise ToolError(
                    f"Etapa não encontrada: {reference}. "
                    f"Etapas disponíveis: {', '.join(s.label for s in stages)}",
                    ToolError.VALIDATION
                )
        contact_id = _owned_contact_id(context, args.contact_id) or (conversation.contact_id if conversation else None)

        deal = context.crm.create_deal(
            organization_id=org_id,
            board_id=board_id,
            stage_id=stage.id,
            title=args.title,
            contact_id=contact_id,
            conversation_id=context.conversation_id,
            value=args.value
        )
        context.conversations.update_conversation(org_id, context.conversation_id, deal_id=deal.id)
        return ToolResult(
            success=True,
            data={"deal_id": deal.id, "title": deal.title, "stage_id": deal.stage_id, "created": True},
            affected_entity_ids=[deal.id]
        )


class MoveDealArgs(BaseModel):
    stage: str = Field(..., min_length=1, description="ID ou nome da nova etapa")
    deal_id: Optional[str] = Field(None, description="ID do negócio (padrão: negócio desta conversa)")
    reason: Optional[str] = Field(None, description="Motivo da movimentação")


class MoveDealTool(Tool):
    name = ToolName.MOVE_DEAL
    description = "Move o negócio para outra etapa do pipeline conforme a conversa evolui."
    args_model = MoveDealArgs

    def execute(self, args: MoveDealArgs, context: ToolContext) -> ToolResult:
        org_id = context.organization_id
        deal_id = args.deal_id
        if not deal_id:
            conversation = context.conversation()
            deal_id = conversation.deal_id if conversation else None
        if not deal_id:
            raise ToolError("Nenhum negócio vinculado a esta conversa", ToolError.VALIDATION)

        deal = context.crm.get_deal(org_id, deal_id)
        if not deal:
            raise ToolError(f"Negócio não encontrado: {deal_id}", ToolError.VALIDATION)

        stage = context.crm.find_stage(org_id, deal.board_id, args.stage)
        if not stage:
            labels = [s.label for s in context.crm.list_stages(org_id, deal.board_id)]
            raise ToolError(
                f"Etapa não encontrada: {args.stage}. Etapas disponíveis: {', '.join(labels) or 'nenhuma'}",
                ToolError.VALIDATION
            )

        deal, changed = context.crm.move_deal(org_id, deal.id, stage.id)
        affected = [deal.id]
        if changed:
            activity = context.crm.create_activity(
                organization_id=org_id,
                activity_type="note",
                title=f"Negócio movido: {args.reason or 'via agente'}",
                description=f"Movido para a etapa {stage.label}",
                date=datetime.now(timezone.utc),
                deal_id=deal.id
            )
            affected.append(activity.id)

        return ToolResult(
            success=True,
            data={"deal_id": deal.id, "stage_id": stage.id, "stage": stage.label, "changed": changed},
            affected_entity_ids=affected
        )


class QualifyLeadArgs(BaseModel):
    collected_data: Dict[str, Any] = Field(
        default_factory=dict,
        description="Respostas de qualificação coletadas, por chave do campo"
    )
    qualified: Optional[bool] = Field(None, description="true = qualificado, false = não qualificado; omita se ainda em andamento")
    score: Optional[float] = Field(None, ge=0, le=100, description="Score 0-100")
    reason: Optional[str] = Field(None, description="Justificativa")


class QualifyLeadTool(Tool):
    name = ToolName.QUALIFY_LEAD
    description = (
        "Registra respostas de qualificação do lead e, quando concluído, "
        "marca o lead como qualificado ou não qualificado."
    )
    args_model = QualifyLeadArgs

    def execute(self, args: QualifyLeadArgs, context: ToolContext) -> ToolResult:
        org_id = context.organization_id
        conversation = context.conversation()
        if not conversation:
            raise ToolError("Conversa não encontrada", ToolError.DOWNSTREAM)

        merged = dict(conversation.qualification_data or {})
        merged.update({k: v for k, v in args.collected_data.items() if v not in (None, "")})

        if args.qualified is True:
            status = QualificationStatus.QUALIFIED.value
        elif args.qualified is False:
            status = QualificationStatus.UNQUALIFIED.value
        else:
            status = QualificationStatus.IN_PROGRESS.value

        updates = {"qualification_data": merged, "qualification_status": status}
        if args.score is not None:
            updates["qualification_score"] = args.score
        context.conversations.update_conversation(org_id, context.conversation_id, **updates)

        pending = [
            f.key for f in context.agent_config.qualification_fields
            if f.required and f.key not in merged
        ]

        if args.qualified is not None:
            verdict = "qualificado" if args.qualified else "desqualificado"
            context.inbox.enqueue(
                organization_id=org_id,
                action_type="follow_up" if args.qualified else "review",
                title=f"Lead {verdict}: {args.reason or conversation.lead_name or conversation.lead_identity}",
                description=", ".join(f"{k}: {v}" for k, v in sorted(merged.items())),
                priority="high" if args.qualified else "medium",
                contact_id=conversation.contact_id,
                deal_id=conversation.deal_id,
                conversation_id=context.conversation_id
            )

        return ToolResult(
            success=True,
            data={
                "qualification_status": status,
                "collected": merged,
                "pending_fields": pending
            },
            affected_entity_ids=[context.conversation_id]
        )


class CreateActivityArgs(BaseModel):
    title: str = Field(..., min_length=1, description="Título da atividade")
    type: Literal["call", "meeting", "task", "note", "whatsapp"] = Field(..., description="Tipo da atividade")
    description: Optional[str] = None
    date: Optional[datetime] = Field(None, description="Data/hora ISO 8601 no fuso da empresa. Se omitido, usa agora.")
    duration_minutes: int = Field(30, ge=5, le=480)
    contact_id: Optional[str] = None
    deal_id: Optional[str] = None


class CreateActivityTool(Tool):
    name = ToolName.CREATE_ACTIVITY
    description = "Registra uma atividade no CRM: agendamento, follow-up, nota, ligação."
    args_model = CreateActivityArgs

    def execute(self, args: CreateActivityArgs, context: ToolContext) -> ToolResult:
        org_id = context.organization_id
        conversation = context.conversation()
        contact_id = _owned_contact_id(context, args.contact_id) or (conversation.contact_id if conversation else None)
        deal_id = _owned_deal_id(context, args.deal_id) or (conversation.deal_id if conversation else None)
        date = _to_utc(args.date, context) if args.date else None

        existing = context.crm.find_activity(
            org_id, args.type, args.title, date=date, deal_id=deal_id, contact_id=contact_id
        )
        if existing:
            return ToolResult(
                success=True,
                data={"activity_id": existing.id, "created": False},
                affected_entity_ids=[existing.id]
            )

        activity = context.crm.create_activity(
            organization_id=org_id,
            activity_type=args.type,
            title=args.title,
            date=date or datetime.now(timezone.utc),
            description=args.description,
            deal_id=deal_id,
            contact_id=contact_id,
            duration_minutes=args.duration_minutes
        )
        return ToolResult(
            success=True,
            data={"activity_id": activity.id, "created": True},
            affected_entity_ids=[activity.id]
        )
