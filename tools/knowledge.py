"""
Knowledge base lookup: FAQs, services, prices and policies the organization
ingested.
"""

from typing import Optional

from pydantic import BaseModel, Field

from models import AgentConfig
from models.errors import ToolError
from tools.base import Tool, ToolContext, ToolName, ToolResult


class SearchKnowledgeArgs(BaseModel):
    query: str = Field(..., min_length=2, description="Pergunta ou termos de busca")
    top_k: Optional[int] = Field(None, ge=1, le=10)


class SearchKnowledgeTool(Tool):
    name = ToolName.SEARCH_KNOWLEDGE
    description = "Consulta a base de conhecimento da empresa (serviços, preços, políticas, FAQ)."
    args_model = SearchKnowledgeArgs

    def is_available(self, agent_config: AgentConfig, business_type, knowledge_enabled) -> bool:
        return knowledge_enabled

    def execute(self, args: SearchKnowledgeArgs, context: ToolContext) -> ToolResult:
        if context.knowledge is None:
            raise ToolError("Base de conhecimento não configurada", ToolError.NOT_AVAILABLE)

        hits = context.knowledge.search(context.organization_id, args.query, args.top_k)
        return ToolResult(
            success=True,
            data={
                "results": [
                    {"title": hit["title"], "type": hit["doc_type"], "text": hit["text"]}
                    for hit in hits
                ],
                "count": len(hits)
            }
        )
