"""LLM, embedding and messaging provider integrations."""

from integrations.llm_provider import (
    ChatModel, ModelResponse, ToolInvocation, EmbeddingProvider,
    get_chat_model, get_embedding_provider
)
from integrations.messaging import MessageSender, WhatsAppSender, DeliveryResult

__all__ = [
    "ChatModel", "ModelResponse", "ToolInvocation", "EmbeddingProvider",
    "get_chat_model", "get_embedding_provider",
    "MessageSender", "WhatsAppSender", "DeliveryResult"
]
