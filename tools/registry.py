"""
Tool registry: the fixed catalog offered to the model and the single
dispatch point for its tool calls.

Every failure mode of a call (unknown tool, bad arguments, downstream error,
timeout) comes back as a ToolResult carrying a ToolError kind; dispatch never
raises and never retries.
"""

import json
from concurrent.futures import Executor, ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from config import Settings, settings as default_settings
from models import AgentConfig
from models.errors import AgentCoreError, ToolError
from observability import trace_logger
from tools.base import Tool, ToolContext, ToolName, ToolResult, call_with_timeout
from tools.calendar import CheckAvailabilityTool
from tools.crm import (
    CreateActivityTool, CreateContactTool, CreateDealTool, MoveDealTool,
    QualifyLeadTool, UpdateContactTool
)
from tools.handoff import TransferToHumanTool
from tools.knowledge import SearchKnowledgeTool
from tools.property import PropertyMatchTool


TOOL_CLASSES = {
    ToolName.CREATE_CONTACT: CreateContactTool,
    ToolName.UPDATE_CONTACT: UpdateContactTool,
    ToolName.CREATE_DEAL: CreateDealTool,
    ToolName.MOVE_DEAL: MoveDealTool,
    ToolName.QUALIFY_LEAD: QualifyLeadTool,
    ToolName.CREATE_ACTIVITY: CreateActivityTool,
    ToolName.CHECK_AVAILABILITY: CheckAvailabilityTool,
    ToolName.PROPERTY_MATCH: PropertyMatchTool,
    ToolName.TRANSFER_TO_HUMAN: TransferToHumanTool,
    ToolName.SEARCH_KNOWLEDGE: SearchKnowledgeTool,
}


def _check_exhaustive(table: Dict[ToolName, type]) -> None:
    missing = set(ToolName) - set(table)
    if missing:
        raise RuntimeError(f"Tools without implementation: {sorted(m.value for m in missing)}")
    for name, cls in table.items():
        if cls.name != name:
            raise RuntimeError(f"Tool {cls.__name__} registered as {name.value} but named {cls.name.value}")


_check_exhaustive(TOOL_CLASSES)


def _validation_message(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "arguments"
        problems.append(f"{location}: {item.get('msg')}")
    return "Argumentos inválidos: " + "; ".join(problems)


class ToolRegistry:
    """Catalog and dispatcher for agent tools."""

    def __init__(
        self,
        executor: Optional[Executor] = None,
        timeout: float = None,
        knowledge_enabled: bool = None,
        settings: Settings = None
    ):
        self.settings = settings or default_settings
        self.tools: Dict[ToolName, Tool] = {name: cls() for name, cls in TOOL_CLASSES.items()}
        self.executor = executor or ThreadPoolExecutor(
            max_workers=self.settings.worker_threads, thread_name_prefix="tool"
        )
        self.timeout = timeout or self.settings.tool_timeout_seconds
        self.knowledge_enabled = (
            self.settings.enable_knowledge_base if knowledge_enabled is None else knowledge_enabled
        )

    def available(self, agent_config: AgentConfig, business_type: Optional[str]) -> List[ToolName]:
        """Tools offered to this organization, in catalog order."""
        return [
            name for name, tool in self.tools.items()
            if tool.is_available(agent_config, business_type, self.knowledge_enabled)
        ]

    def specs(self, agent_config: AgentConfig, business_type: Optional[str]) -> List[Dict[str, Any]]:
        """JSON function schemas offered to the model."""
        return [self.tools[name].spec() for name in self.available(agent_config, business_type)]

    def dispatch(self, name: str, raw_arguments: Any, context: ToolContext) -> ToolResult:
        """Validate and execute one tool call under the tool timeout."""
        trace_logger.tool_called(tool_name=name, parameters=raw_arguments)
        result = self._dispatch(name, raw_arguments, context)
        trace_logger.tool_result(
            tool_name=name,
            success=result.success,
            data=result.data,
            error=result.error,
            error_kind=result.error_kind
        )
        return result

    def _dispatch(self, name: str, raw_arguments: Any, context: ToolContext) -> ToolResult:
        try:
            tool_name = ToolName(name)
        except ValueError:
            return self._error(ToolError(f"Ferramenta desconhecida: {name}", ToolError.UNKNOWN_TOOL))

        if tool_name not in self.available(context.agent_config, context.business_type):
            return self._error(ToolError(
                f"Ferramenta não disponível para esta empresa: {name}", ToolError.NOT_AVAILABLE
            ))

        tool = self.tools[tool_name]
        if isinstance(raw_arguments, str):
            try:
                raw_arguments = json.loads(raw_arguments) if raw_arguments.strip() else {}
            except json.JSONDecodeError:
                return self._error(ToolError("Argumentos não são JSON válido", ToolError.VALIDATION))

        try:
            args = tool.args_model.model_validate(raw_arguments if raw_arguments is not None else {})
        except ValidationError as e:
            return self._error(ToolError(_validation_message(e), ToolError.VALIDATION))

        try:
            return call_with_timeout(self.executor, self.timeout, tool.execute, args, context)
        except FutureTimeout:
            return self._error(ToolError(
                f"Tempo limite de {self.timeout:g}s excedido", ToolError.TIMEOUT
            ))
        except ToolError as e:
            return self._error(e)
        except AgentCoreError as e:
            return self._error(ToolError(str(e), ToolError.DOWNSTREAM))
        except Exception as e:
            trace_logger.error_occurred(
                error_type="tool_execution_exception",
                error_message=str(e),
                context={"tool": name}
            )
            return self._error(ToolError(f"Falha ao executar {name}: {e}", ToolError.DOWNSTREAM))

    @staticmethod
    def _error(error: ToolError) -> ToolResult:
        return ToolResult(success=False, error=str(error), error_kind=error.kind)

    def shutdown(self) -> None:
        self.executor.shutdown(wait=False)
