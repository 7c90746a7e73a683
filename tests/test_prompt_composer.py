"""Tests for system prompt composition."""

from datetime import datetime

from models import AgentConfig, VerticalContext
from prompts import VERTICAL_OVERLAYS, compose, render_history

from conftest import MEDICAL_FIELDS


def make_config(**overrides) -> AgentConfig:
    values = {
        "organization_id": "org-1",
        "agent_name": "Ana",
        "qualification_fields": MEDICAL_FIELDS,
        "auto_create_deal": True,
    }
    values.update(overrides)
    return AgentConfig(**values)


def row(direction: str, content: str) -> dict:
    return {"direction": direction, "content": content}


class TestSystemPrompt:

    def test_agent_name_and_policies(self):
        prompt = compose(make_config(), VerticalContext(business_type="medical_clinic"), [])

        assert "Você é Ana" in prompt.system
        assert "## REGRAS DE OURO" in prompt.system
        assert "## TRANSFERÊNCIA PARA HUMANO" in prompt.system
        assert "## FORMATO" in prompt.system

    def test_pending_and_collected_fields(self):
        conversation = {"qualification_data": {"name": "Maria", "convenio": ""}}

        prompt = compose(make_config(), VerticalContext(business_type="medical_clinic"), [],
                         conversation=conversation)

        assert "Já coletado:\n- name: Maria" in prompt.system
        assert "- convenio (obrigatório)" in prompt.system
        assert "- especialidade (obrigatório)" in prompt.system
        assert "- name (obrigatório)" not in prompt.system

    def test_all_fields_collected(self):
        conversation = {"qualification_data": {"name": "Maria", "convenio": "Unimed", "especialidade": "cardiologia"}}

        prompt = compose(make_config(), VerticalContext(), [], conversation=conversation)

        assert "Todos os campos de qualificação foram coletados." in prompt.system
        assert "Ainda falta coletar" not in prompt.system

    def test_deal_instructions_follow_flag(self):
        with_deal = compose(make_config(auto_create_deal=True), VerticalContext(), [])
        without_deal = compose(make_config(auto_create_deal=False), VerticalContext(), [])

        assert "create_deal" in with_deal.system.split("## TRANSFERÊNCIA")[0]
        assert "(create_deal)" not in without_deal.system

    def test_builtin_overlay_for_business_type(self):
        prompt = compose(make_config(), VerticalContext(business_type="real_estate"), [])
        assert VERTICAL_OVERLAYS["real_estate"] in prompt.system

    def test_unknown_business_type_uses_generic(self):
        prompt = compose(make_config(), VerticalContext(business_type="bakery"), [])
        assert VERTICAL_OVERLAYS["generic"] in prompt.system

    def test_stored_overlay_replaces_builtin(self):
        vertical = VerticalContext(business_type="medical_clinic",
                                   system_prompt_vertical="## CLÍNICA DA CIDADE\n- Atendemos só particular")

        prompt = compose(make_config(), vertical, [])

        assert "## CLÍNICA DA CIDADE" in prompt.system
        assert VERTICAL_OVERLAYS["medical_clinic"] not in prompt.system

    def test_override_is_appended(self):
        prompt = compose(make_config(system_prompt_override="Nunca fale de preços."), VerticalContext(), [])

        assert prompt.system.endswith("## INSTRUÇÕES DA EMPRESA\nNunca fale de preços.")

    def test_transfer_rules(self):
        config = make_config(transfer_rules=[{"condition": "o lead pedir desconto", "transfer_to": "financeiro",
                                              "message": "Vou chamar o financeiro"}])

        prompt = compose(config, VerticalContext(), [])

        assert '- Se o lead pedir desconto: transfira para financeiro e diga "Vou chamar o financeiro"' in prompt.system

    def test_lead_context(self):
        conversation = {"lead_name": "Maria", "summary": "quer consulta com cardiologista"}
        crm_context = {"contact": {"id": "c-1", "name": "Maria Souza"},
                       "deal": {"id": "d-1", "title": "Consulta", "stage_id": "s-1"}}

        prompt = compose(make_config(), VerticalContext(), [], conversation=conversation, crm_context=crm_context)

        assert "Nome no WhatsApp: Maria" in prompt.system
        assert "Resumo anterior: quer consulta com cardiologista" in prompt.system
        assert "Contato no CRM: Maria Souza (id c-1)" in prompt.system
        assert "Negócio no CRM: Consulta (id d-1, etapa s-1)" in prompt.system

    def test_current_time_only_when_given(self):
        without = compose(make_config(), VerticalContext(), [])
        with_time = compose(make_config(), VerticalContext(), [], now=datetime(2026, 10, 15, 9, 30))

        assert "Data e hora atuais" not in without.system
        assert "Data e hora atuais: 2026-10-15 09:30 (America/Sao_Paulo)" in with_time.system

    def test_deterministic(self):
        history = [row("inbound", "oi"), row("outbound", "Olá!")]
        args = (make_config(), VerticalContext(business_type="dental_clinic"), history)

        assert compose(*args).to_dict() == compose(*args).to_dict()


class TestHistoryRendering:

    def test_roles_and_order(self):
        history = [row("inbound", "oi"), row("outbound", "Olá! Como posso ajudar?"), row("inbound", "quero agendar")]

        assert render_history(history, 20) == [
            {"role": "user", "content": "oi"},
            {"role": "assistant", "content": "Olá! Como posso ajudar?"},
            {"role": "user", "content": "quero agendar"},
        ]

    def test_tool_and_system_rows_are_excluded(self):
        history = [
            row("inbound", "oi"),
            row("tool", "create_contact: ok"),
            row("system", "Operador assumiu a conversa"),
            row("outbound", "Olá!"),
        ]

        assert [m["content"] for m in render_history(history, 20)] == ["oi", "Olá!"]

    def test_limit_keeps_newest(self):
        history = [row("inbound" if i % 2 == 0 else "outbound", f"m{i}") for i in range(10)]

        rendered = render_history(history, 4)

        assert [m["content"] for m in rendered] == ["m6", "m7", "m8", "m9"]

    def test_consecutive_same_side_rows_are_merged(self):
        history = [row("inbound", "oi"), row("inbound", "tudo bem?"), row("outbound", "Olá!")]

        rendered = render_history(history, 20)

        assert rendered[0] == {"role": "user", "content": "oi\ntudo bem?"}
        assert len(rendered) == 2

    def test_leading_assistant_turns_are_dropped(self):
        history = [row("outbound", "Bem-vindo!"), row("inbound", "oi")]
        assert render_history(history, 20) == [{"role": "user", "content": "oi"}]

    def test_works_with_message_rows(self, store):
        conversation = store.resolve_or_create_conversation("org-1", "+5511999999999")
        store.append_message(conversation.id, {"direction": "inbound", "content": "oi"})
        store.append_message(conversation.id, {"direction": "outbound", "content": "Olá!"})

        rendered = render_history(store.get_history(conversation.id, 10), 10)

        assert rendered == [{"role": "user", "content": "oi"}, {"role": "assistant", "content": "Olá!"}]
