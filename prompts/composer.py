"""
Prompt composer for the WhatsApp agent.

Pure function of its inputs: the same configuration, vertical context and
history always produce the same prompt. No I/O, no clock reads.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from models import AgentConfig, MessageDirection, VerticalContext
from prompts.verticals import builtin_overlay


BASE_POLICY = """## IDENTIDADE
- Você é {agent_name}, atendente da empresa e representa o negócio do cliente.
- Nunca revele que é uma IA, a menos que perguntado diretamente (nesse caso, seja honesto).

## REGRAS DE OURO
1. NUNCA invente informações. Se não sabe, diga que vai verificar ou transfira para um humano.
2. NUNCA prometa preços, prazos ou condições sem dados concretos do CRM.
3. SEMPRE respeite o tom da vertical (saúde = empático, imobiliária = consultivo).
4. SEMPRE colete as informações de qualificação antes de avançar no pipeline.
5. Use as ferramentas proativamente: crie contatos, mova negócios, registre atividades.
6. Se o lead pedir algo que você não pode resolver, transfira para um humano com contexto completo.
7. LGPD: nunca compartilhe dados de outros clientes ou informações sensíveis."""

HANDOFF_POLICY = """## TRANSFERÊNCIA PARA HUMANO
Transfira quando:
- O lead pedir explicitamente para falar com uma pessoa
- Você não conseguir resolver a demanda após 3 tentativas
- Detectar reclamação séria ou situação delicada
- Alguma regra de transferência configurada for ativada
Ao transferir: use transfer_to_human com um resumo completo da conversa. Depois da transferência não use mais ferramentas."""

FORMAT_POLICY = """## FORMATO
- Responda em português brasileiro
- Mensagens curtas e diretas (estilo WhatsApp), no máximo 3 parágrafos curtos
- Evite listas longas e markdown pesado
- Use emojis com moderação, no máximo 1 ou 2 por mensagem"""


@dataclass
class ComposedPrompt:
    """System prompt plus the chat-formatted history."""
    system: str
    messages: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {"system": self.system, "messages": list(self.messages)}


def _field(entry: Any, name: str) -> Any:
    if isinstance(entry, dict):
        return entry.get(name)
    return getattr(entry, name, None)


def _qualification_section(agent_config: AgentConfig, collected: Dict[str, Any]) -> str:
    lines = ["## QUALIFICAÇÃO",
             "Seu objetivo com um novo lead é:",
             "1. Cumprimentar de forma acolhedora",
             "2. Coletar os campos de qualificação abaixo, um de cada vez",
             "3. Registrar as respostas com qualify_lead"]
    if agent_config.auto_create_contact:
        lines.append("4. Criar o contato no CRM quando tiver o nome (create_contact)")
    if agent_config.auto_create_deal:
        lines.append("5. Criar o negócio no pipeline quando entender o interesse (create_deal) e movê-lo conforme a conversa evolui (move_deal)")

    if not agent_config.qualification_fields:
        return "\n".join(lines)

    pending = []
    done = []
    for qfield in agent_config.qualification_fields:
        if qfield.key in collected and collected[qfield.key] not in (None, ""):
            done.append(f"- {qfield.key}: {collected[qfield.key]}")
            continue
        question = f' (pergunta sugerida: "{qfield.question}")' if qfield.question else ""
        options = f" [opções: {', '.join(qfield.options)}]" if qfield.options else ""
        required = "obrigatório" if qfield.required else "opcional"
        pending.append(f"- {qfield.key} ({required}){question}{options}")

    if done:
        lines.append("\nJá coletado:")
        lines.extend(done)
    if pending:
        lines.append("\nAinda falta coletar:")
        lines.extend(pending)
    else:
        lines.append("\nTodos os campos de qualificação foram coletados.")
    return "\n".join(lines)


def _transfer_rules_section(agent_config: AgentConfig) -> Optional[str]:
    if not agent_config.transfer_rules:
        return None
    lines = ["## REGRAS DE TRANSFERÊNCIA CONFIGURADAS"]
    for rule in agent_config.transfer_rules:
        line = f"- Se {rule.condition}: transfira para {rule.transfer_to}"
        if rule.message:
            line += f' e diga "{rule.message}"'
        lines.append(line)
    return "\n".join(lines)


def _lead_section(conversation: Optional[Dict[str, Any]], crm_context: Optional[Dict[str, Any]]) -> Optional[str]:
    lines = []
    if conversation:
        if conversation.get("lead_name"):
            lines.append(f"Nome no WhatsApp: {conversation['lead_name']}")
        if conversation.get("summary"):
            lines.append(f"Resumo anterior: {conversation['summary']}")
    contact = (crm_context or {}).get("contact")
    deal = (crm_context or {}).get("deal")
    if contact:
        lines.append(f"Contato no CRM: {contact.get('name')} (id {contact.get('id')})")
    elif conversation and conversation.get("contact_id"):
        lines.append(f"Contato no CRM: id {conversation['contact_id']}")
    if deal:
        lines.append(f"Negócio no CRM: {deal.get('title')} (id {deal.get('id')}, etapa {deal.get('stage_id')})")
    elif conversation and conversation.get("deal_id"):
        lines.append(f"Negócio no CRM: id {conversation['deal_id']}")
    if not lines:
        return None
    return "## CONTEXTO DO LEAD\n" + "\n".join(lines)


def render_history(history: Sequence[Any], limit: int) -> List[Dict[str, str]]:
    """
    Render stored messages as alternating chat turns.

    Only inbound and outbound rows are kept, bounded to the newest `limit`.
    Consecutive rows from the same side are merged and the sequence always
    starts with a user turn.
    """
    roles = {
        MessageDirection.INBOUND.value: "user",
        MessageDirection.OUTBOUND.value: "assistant",
    }
    turns = [entry for entry in history if _field(entry, "direction") in roles]
    turns = turns[-limit:] if limit else []

    messages: List[Dict[str, str]] = []
    for entry in turns:
        role = roles[_field(entry, "direction")]
        content = (_field(entry, "content") or "").strip()
        if not content:
            continue
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += "\n" + content
        else:
            messages.append({"role": role, "content": content})

    while messages and messages[0]["role"] != "user":
        messages.pop(0)
    return messages


def compose(
    agent_config: AgentConfig,
    vertical_context: Optional[VerticalContext],
    conversation_history: Sequence[Any],
    conversation: Optional[Dict[str, Any]] = None,
    crm_context: Optional[Dict[str, Any]] = None,
    history_limit: int = 20,
    now: Optional[datetime] = None
) -> ComposedPrompt:
    """
    Build the system prompt and chat messages for one turn.

    Args:
        agent_config: Organization agent configuration
        vertical_context: Business type and optional stored overlay text
        conversation_history: Stored messages, oldest first
        conversation: Conversation fields (lead name, summary, qualification data)
        crm_context: Linked contact/deal dictionaries, when known
        history_limit: Maximum number of chat turns rendered
        now: Local date/time shown to the model (for scheduling)

    Returns:
        ComposedPrompt with system text and chat messages
    """
    vertical_context = vertical_context or VerticalContext()
    collected = (conversation or {}).get("qualification_data") or {}

    sections = [BASE_POLICY.format(agent_name=agent_config.agent_name)]
    sections.append(_qualification_section(agent_config, collected))
    sections.append(HANDOFF_POLICY)
    rules = _transfer_rules_section(agent_config)
    if rules:
        sections.append(rules)
    sections.append(FORMAT_POLICY)

    overlay = vertical_context.system_prompt_vertical or builtin_overlay(vertical_context.business_type)
    sections.append(overlay.strip())

    if agent_config.system_prompt_override:
        sections.append("## INSTRUÇÕES DA EMPRESA\n" + agent_config.system_prompt_override.strip())

    lead = _lead_section(conversation, crm_context)
    if lead:
        sections.append(lead)

    if now is not None:
        sections.append(f"Data e hora atuais: {now.strftime('%Y-%m-%d %H:%M')} ({agent_config.timezone})")

    return ComposedPrompt(
        system="\n\n".join(sections),
        messages=render_history(conversation_history, history_limit),
    )
