"""
LLM provider abstraction supporting OpenAI, Anthropic, and Google.
Provides a unified tool-calling chat interface and embeddings.

Conversation messages passed to `complete` use one provider-neutral shape:
    {"role": "user", "content": str}
    {"role": "assistant", "content": str | None, "tool_calls": [{"id", "name", "arguments"}]}
    {"role": "tool", "tool_call_id": str, "name": str, "content": str}
Each provider converts them to its own wire format.
"""

import json
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional

from openai import OpenAI
from anthropic import Anthropic
import google.generativeai as genai

from config import settings
from models.errors import ModelFailure
from observability import trace_logger


DEFAULT_MODELS = {
    "openai": "gpt-4o-mini",
    "anthropic": "claude-3-5-sonnet-latest",
    "google": "gemini-1.5-flash",
}


@dataclass
class ToolInvocation:
    """A tool call requested by the model."""
    id: str
    name: str
    arguments: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass
class ModelResponse:
    """One model round: final text or tool calls (or both)."""
    text: Optional[str] = None
    tool_calls: List[ToolInvocation] = field(default_factory=list)
    model: Optional[str] = None
    tokens_input: int = 0
    tokens_output: int = 0

    def to_message(self) -> Dict[str, Any]:
        """Assistant message to append to the conversation for the next round."""
        return {
            "role": "assistant",
            "content": self.text,
            "tool_calls": [call.to_dict() for call in self.tool_calls],
        }


class ChatModel(ABC):
    """Abstract base class for tool-calling chat models."""

    provider: str = ""

    def __init__(self, model: str):
        self.model = model

    @abstractmethod
    def complete(
        self,
        system: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: float = 0.7,
        max_tokens: int = 500
    ) -> ModelResponse:
        """Run one round against the model."""
        pass

    def _failure(self, error: Exception) -> ModelFailure:
        trace_logger.error_occurred(
            error_type="llm_generation_error",
            error_message=str(error),
            context={"provider": self.provider, "model": self.model}
        )
        return ModelFailure(f"{self.provider} call failed: {error}")


def _parse_arguments(raw: Any) -> Any:
    """Decode JSON tool arguments; undecodable input is passed through for validation to reject."""
    if isinstance(raw, str):
        try:
            return json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError:
            return raw
    return raw


class OpenAIChatModel(ChatModel):
    """OpenAI chat completions with function calling."""

    provider = "openai"

    def __init__(self, model: Optional[str] = None):
        if not settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY not configured")
        super().__init__(model or DEFAULT_MODELS["openai"])
        self.client = OpenAI(
            api_key=settings.openai_api_key,
            timeout=settings.model_timeout_seconds
        )

    @staticmethod
    def _convert(system: str, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        converted = [{"role": "system", "content": system}]
        for msg in messages:
            if msg["role"] == "assistant" and msg.get("tool_calls"):
                converted.append({
                    "role": "assistant",
                    "content": msg.get("content"),
                    "tool_calls": [
                        {
                            "id": call["id"],
                            "type": "function",
                            "function": {
                                "name": call["name"],
                                "arguments": json.dumps(call["arguments"], ensure_ascii=False)
                                if not isinstance(call["arguments"], str) else call["arguments"],
                            },
                        }
                        for call in msg["tool_calls"]
                    ],
                })
            elif msg["role"] == "tool":
                converted.append({
                    "role": "tool",
                    "tool_call_id": msg["tool_call_id"],
                    "content": msg["content"],
                })
            else:
                converted.append({"role": msg["role"], "content": msg.get("content") or ""})
        return converted

    def complete(
        self,
        system: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: float = 0.7,
        max_tokens: int = 500
    ) -> ModelResponse:
        kwargs = {
            "model": self.model,
            "messages": self._convert(system, messages),
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if tools:
            kwargs["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": spec["name"],
                        "description": spec["description"],
                        "parameters": spec["parameters"],
                    },
                }
                for spec in tools
            ]
        try:
            response = self.client.chat.completions.create(**kwargs)
        except Exception as e:
            raise self._failure(e) from e

        message = response.choices[0].message
        calls = [
            ToolInvocation(
                id=call.id,
                name=call.function.name,
                arguments=_parse_arguments(call.function.arguments),
            )
            for call in (message.tool_calls or [])
        ]
        usage = response.usage
        return ModelResponse(
            text=message.content,
            tool_calls=calls,
            model=self.model,
            tokens_input=usage.prompt_tokens if usage else 0,
            tokens_output=usage.completion_tokens if usage else 0,
        )


class AnthropicChatModel(ChatModel):
    """Anthropic Claude messages API with tool use."""

    provider = "anthropic"

    def __init__(self, model: Optional[str] = None):
        if not settings.anthropic_api_key:
            raise ValueError("ANTHROPIC_API_KEY not configured")
        super().__init__(model or DEFAULT_MODELS["anthropic"])
        self.client = Anthropic(
            api_key=settings.anthropic_api_key,
            timeout=settings.model_timeout_seconds
        )

    @staticmethod
    def _convert(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        converted: List[Dict[str, Any]] = []
        for msg in messages:
            if msg["role"] == "assistant":
                blocks = []
                if msg.get("content"):
                    blocks.append({"type": "text", "text": msg["content"]})
                for call in msg.get("tool_calls") or []:
                    arguments = call["arguments"]
                    blocks.append({
                        "type": "tool_use",
                        "id": call["id"],
                        "name": call["name"],
                        "input": arguments if isinstance(arguments, dict) else {"raw": arguments},
                    })
                converted.append({"role": "assistant", "content": blocks})
            elif msg["role"] == "tool":
                block = {
                    "type": "tool_result",
                    "tool_use_id": msg["tool_call_id"],
                    "content": msg["content"],
                }
                # Results of one round go back in a single user message.
                last = converted[-1] if converted else None
                if last and last["role"] == "user" and isinstance(last["content"], list):
                    last["content"].append(block)
                else:
                    converted.append({"role": "user", "content": [block]})
            else:
                converted.append({"role": "user", "content": msg.get("content") or ""})
        return converted

    def complete(
        self,
        system: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: float = 0.7,
        max_tokens: int = 500
    ) -> ModelResponse:
        kwargs = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "system": system,
            "messages": self._convert(messages),
        }
        if tools:
            kwargs["tools"] = [
                {
                    "name": spec["name"],
                    "description": spec["description"],
                    "input_schema": spec["parameters"],
                }
                for spec in tools
            ]
        try:
            response = self.client.messages.create(**kwargs)
        except Exception as e:
            raise self._failure(e) from e

        texts = []
        calls = []
        for block in response.content:
            if block.type == "text":
                texts.append(block.text)
            elif block.type == "tool_use":
                calls.append(ToolInvocation(id=block.id, name=block.name, arguments=block.input))
        return ModelResponse(
            text="\n".join(texts) if texts else None,
            tool_calls=calls,
            model=self.model,
            tokens_input=response.usage.input_tokens,
            tokens_output=response.usage.output_tokens,
        )


_GEMINI_DROPPED_KEYS = {"title", "default", "additionalProperties", "examples"}


def _gemini_schema(schema: Any) -> Any:
    """Reduce a JSON schema to the subset Gemini function declarations accept."""
    if isinstance(schema, dict):
        if "anyOf" in schema:
            options = [s for s in schema["anyOf"] if s.get("type") != "null"]
            merged = dict(options[0]) if options else {"type": "string"}
            if "description" in schema:
                merged["description"] = schema["description"]
            return _gemini_schema(merged)
        reduced = {}
        for key, value in schema.items():
            if key == "properties" and isinstance(value, dict):
                # Keys here are argument names, not schema keywords.
                reduced[key] = {name: _gemini_schema(prop) for name, prop in value.items()}
            elif key not in _GEMINI_DROPPED_KEYS:
                reduced[key] = _gemini_schema(value)
        return reduced
    if isinstance(schema, list):
        return [_gemini_schema(item) for item in schema]
    return schema


def _to_plain(value: Any) -> Any:
    """Convert proto map/repeated composites into plain dicts and lists."""
    if isinstance(value, Mapping):
        return {key: _to_plain(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        return [_to_plain(item) for item in value]
    return value


class GoogleChatModel(ChatModel):
    """Google Gemini with function declarations."""

    provider = "google"

    def __init__(self, model: Optional[str] = None):
        if not settings.google_api_key:
            raise ValueError("GOOGLE_API_KEY not configured")
        super().__init__(model or DEFAULT_MODELS["google"])
        genai.configure(api_key=settings.google_api_key)

    @staticmethod
    def _convert(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        contents: List[Dict[str, Any]] = []
        for msg in messages:
            if msg["role"] == "assistant":
                parts: List[Any] = []
                if msg.get("content"):
                    parts.append({"text": msg["content"]})
                for call in msg.get("tool_calls") or []:
                    arguments = call["arguments"]
                    parts.append({"function_call": {
                        "name": call["name"],
                        "args": arguments if isinstance(arguments, dict) else {"raw": arguments},
                    }})
                contents.append({"role": "model", "parts": parts})
            elif msg["role"] == "tool":
                part = {"function_response": {
                    "name": msg["name"],
                    "response": {"result": msg["content"]},
                }}
                last = contents[-1] if contents else None
                if last and last["role"] == "function":
                    last["parts"].append(part)
                else:
                    contents.append({"role": "function", "parts": [part]})
            else:
                contents.append({"role": "user", "parts": [{"text": msg.get("content") or ""}]})
        return contents

    def complete(
        self,
        system: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: float = 0.7,
        max_tokens: int = 500
    ) -> ModelResponse:
        declarations = [
            {
                "name": spec["name"],
                "description": spec["description"],
                "parameters": _gemini_schema(spec["parameters"]),
            }
            for spec in tools or []
        ]
        try:
            model = genai.GenerativeModel(
                self.model,
                system_instruction=system,
                tools=[{"function_declarations": declarations}] if declarations else None
            )
            response = model.generate_content(
                self._convert(messages),
                generation_config=genai.types.GenerationConfig(
                    temperature=temperature,
                    max_output_tokens=max_tokens
                ),
                request_options={"timeout": settings.model_timeout_seconds}
            )
            parts = response.candidates[0].content.parts if response.candidates else []
        except Exception as e:
            raise self._failure(e) from e

        texts = []
        calls = []
        for index, part in enumerate(parts):
            function_call = getattr(part, "function_call", None)
            if function_call and function_call.name:
                calls.append(ToolInvocation(
                    id=f"call_{index}",
                    name=function_call.name,
                    arguments=_to_plain(function_call.args),
                ))
            elif getattr(part, "text", None):
                texts.append(part.text)

        usage = getattr(response, "usage_metadata", None)
        return ModelResponse(
            text="\n".join(texts) if texts else None,
            tool_calls=calls,
            model=self.model,
            tokens_input=getattr(usage, "prompt_token_count", 0) or 0,
            tokens_output=getattr(usage, "candidates_token_count", 0) or 0,
        )


class EmbeddingProvider(ABC):
    """Abstract base class for embedding providers."""

    @abstractmethod
    def embed(self, texts: List[str]) -> List[List[float]]:
        """Generate embeddings for texts."""
        pass


class OpenAIEmbedding(EmbeddingProvider):
    """OpenAI embeddings provider."""

    def __init__(self):
        if not settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY not configured")
        self.client = OpenAI(api_key=settings.openai_api_key)
        self.model = settings.embedding_model

    def embed(self, texts: List[str]) -> List[List[float]]:
        """Generate embeddings for texts."""
        try:
            response = self.client.embeddings.create(
                model=self.model,
                input=texts
            )
            return [item.embedding for item in response.data]
        except Exception as e:
            trace_logger.error_occurred(
                error_type="embedding_error",
                error_message=str(e),
                context={"provider": "openai", "model": self.model}
            )
            raise


def get_chat_model(provider: Optional[str] = None, model: Optional[str] = None) -> ChatModel:
    """
    Factory function to get a chat model.

    Organization configuration may pick its own provider and model; the
    service defaults apply otherwise.
    """
    provider_map = {
        "openai": OpenAIChatModel,
        "anthropic": AnthropicChatModel,
        "google": GoogleChatModel
    }

    provider = provider or settings.llm_provider
    provider_class = provider_map.get(provider)
    if not provider_class:
        raise ValueError(f"Unknown LLM provider: {provider}")

    if not model and provider == settings.llm_provider:
        model = settings.llm_model
    return provider_class(model)


def get_embedding_provider() -> EmbeddingProvider:
    """Factory function to get configured embedding provider."""
    if settings.embedding_provider == "openai":
        return OpenAIEmbedding()
    else:
        raise ValueError(f"Unknown embedding provider: {settings.embedding_provider}")
