"""Tests for outbound delivery and provider message conversion."""

import json

import httpx
import pytest

from agent import ChatModelCache
from integrations import WhatsAppSender
from integrations.llm_provider import (
    AnthropicChatModel, GoogleChatModel, OpenAIChatModel, _gemini_schema
)
from models import AgentConfig
from tools.crm import CreateDealArgs

from conftest import FakeChatModel, WHATSAPP_CONFIG


TOOL_ROUND = [
    {"role": "user", "content": "quero agendar"},
    {"role": "assistant", "content": None, "tool_calls": [
        {"id": "call_1", "name": "qualify_lead", "arguments": {"collected_data": {"name": "Maria"}}},
        {"id": "call_2", "name": "create_contact", "arguments": {"name": "Maria"}},
    ]},
    {"role": "tool", "tool_call_id": "call_1", "name": "qualify_lead", "content": "{\"success\": true}"},
    {"role": "tool", "tool_call_id": "call_2", "name": "create_contact", "content": "{\"success\": true}"},
]


def sender_with(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return WhatsAppSender(timeout=5.0, base_url="https://graph.example.com/v21.0/", client=client)


class TestWhatsAppSender:

    def test_cloud_api_send(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"messages": [{"id": "wamid.SENT"}]})

        result = sender_with(handler).send("org-1", "+55 11 99999-9999", "Olá!", "whatsapp_cloud_api", WHATSAPP_CONFIG)

        assert result.success is True
        assert result.message_id == "wamid.SENT"
        assert seen["url"] == "https://graph.example.com/v21.0/1234567890/messages"
        assert seen["auth"] == "Bearer cloud-token"
        assert seen["body"]["to"] == "5511999999999"
        assert seen["body"]["text"] == {"body": "Olá!"}

    def test_evolution_send(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["apikey"] = request.headers["apikey"]
            return httpx.Response(201, json={"key": {"id": "EVO-OUT-1"}})

        result = sender_with(handler).send("org-1", "5511999999999", "Olá!", "evolution_api", WHATSAPP_CONFIG)

        assert result.success is True
        assert result.message_id == "EVO-OUT-1"
        assert seen["url"] == "https://evolution.example.com/message/sendText/clinica"
        assert seen["apikey"] == "evo-key"

    def test_http_error_is_a_failed_result(self):
        result = sender_with(lambda request: httpx.Response(500, text="upstream down")).send(
            "org-1", "5511999999999", "Olá!", "whatsapp_cloud_api", WHATSAPP_CONFIG
        )

        assert result.success is False
        assert result.error.startswith("HTTP 500")

    def test_network_error_is_a_failed_result(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        result = sender_with(handler).send("org-1", "5511999999999", "Olá!", "evolution_api", WHATSAPP_CONFIG)

        assert result.success is False
        assert "connection refused" in result.error

    def test_missing_credentials(self):
        result = sender_with(lambda request: httpx.Response(200)).send(
            "org-1", "5511999999999", "Olá!", "whatsapp_cloud_api", {}
        )
        assert result.success is False
        assert "not configured" in result.error

    def test_unknown_provider(self):
        result = sender_with(lambda request: httpx.Response(200)).send("org-1", "1", "Olá!", "telegram", {})
        assert result.success is False


class TestMessageConversion:

    def test_openai_tool_round(self):
        converted = OpenAIChatModel._convert("sistema", TOOL_ROUND)

        assert converted[0] == {"role": "system", "content": "sistema"}
        call = converted[2]["tool_calls"][0]
        assert call["type"] == "function"
        assert json.loads(call["function"]["arguments"]) == {"collected_data": {"name": "Maria"}}
        assert converted[3] == {"role": "tool", "tool_call_id": "call_1", "content": "{\"success\": true}"}

    def test_anthropic_groups_tool_results(self):
        converted = AnthropicChatModel._convert(TOOL_ROUND)

        assert [m["role"] for m in converted] == ["user", "assistant", "user"]
        assert [b["type"] for b in converted[1]["content"]] == ["tool_use", "tool_use"]
        assert [b["tool_use_id"] for b in converted[2]["content"]] == ["call_1", "call_2"]

    def test_gemini_function_parts(self):
        converted = GoogleChatModel._convert(TOOL_ROUND)

        assert [m["role"] for m in converted] == ["user", "model", "function"]
        assert converted[1]["parts"][0]["function_call"]["name"] == "qualify_lead"
        assert len(converted[2]["parts"]) == 2

    def test_gemini_schema_drops_unsupported_keys(self):
        schema = _gemini_schema(CreateDealArgs.model_json_schema())

        assert "title" not in schema
        assert "title" in schema["properties"]
        value = schema["properties"]["value"]
        assert "anyOf" not in value
        assert value["type"] == "number"
        assert "default" not in value


class TestChatModelCache:

    def test_one_client_per_provider_and_model(self):
        created = []

        def factory(provider, model):
            created.append((provider, model))
            return FakeChatModel()

        cache = ChatModelCache(factory)
        openai_config = AgentConfig(organization_id="a", ai_provider="openai", ai_model="gpt-4o-mini")

        first = cache(openai_config)
        second = cache(openai_config.model_copy(update={"organization_id": "b"}))
        cache(AgentConfig(organization_id="c", ai_provider="anthropic"))

        assert first is second
        assert created == [("openai", "gpt-4o-mini"), ("anthropic", None)]

    def test_unconfigured_provider_raises(self):
        def factory(provider, model):
            raise ValueError("OPENAI_API_KEY not configured")

        cache = ChatModelCache(factory)
        with pytest.raises(ValueError):
            cache(AgentConfig(organization_id="a"))
