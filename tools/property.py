"""
Real estate tool: match listings to a client's preferences.
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field

from models import AgentConfig, BusinessType
from tools.base import Tool, ToolContext, ToolName, ToolResult


class PropertyMatchArgs(BaseModel):
    property_type: Optional[str] = Field(None, description="Tipo: casa, apartamento, terreno")
    transaction_type: Optional[Literal["venda", "locacao"]] = Field(None, description="Venda ou locação")
    min_value: Optional[float] = Field(None, ge=0)
    max_value: Optional[float] = Field(None, ge=0)
    bedrooms: Optional[int] = Field(None, ge=0, description="Quartos (mínimo)")
    region: Optional[str] = Field(None, description="Bairro ou região")


class PropertyMatchTool(Tool):
    name = ToolName.PROPERTY_MATCH
    description = "[IMOBILIÁRIA] Busca imóveis disponíveis compatíveis com as preferências do cliente."
    args_model = PropertyMatchArgs

    max_results = 5

    def is_available(self, agent_config: AgentConfig, business_type, knowledge_enabled) -> bool:
        return business_type == BusinessType.REAL_ESTATE.value

    def execute(self, args: PropertyMatchArgs, context: ToolContext) -> ToolResult:
        filters = args.model_dump(exclude_none=True)
        properties = context.crm.search_properties(
            context.organization_id, filters, limit=self.max_results
        )

        conversation = context.conversation()
        if properties and conversation and conversation.contact_id:
            # At most one pending match review per contact.
            context.inbox.enqueue(
                organization_id=context.organization_id,
                action_type="property_match",
                title=f"{len(properties)} imóveis compatíveis para {conversation.lead_name or conversation.lead_identity}",
                description=", ".join(p.id for p in properties),
                priority="medium",
                contact_id=conversation.contact_id,
                suggested_action="schedule_visit"
            )

        return ToolResult(
            success=True,
            data={
                "properties": [p.to_dict() for p in properties],
                "count": len(properties),
                "message": (
                    f"Encontrei {len(properties)} imóveis compatíveis."
                    if properties else "Nenhum imóvel encontrado com esses critérios."
                )
            },
            affected_entity_ids=[p.id for p in properties]
        )
