"""LLM client component with provider factory and gateway."""

from src.components.llm_client.client import LLMClient, create_chat_model
from src.components.llm_client.embedding_client import EmbeddingClient, create_embedding_client
from src.components.llm_client.gateway import (
    ChatGateway,
    ChatMessage,
    ChatOptions,
    EmbeddingGateway,
    ModelGateway,
    resolve_embedder,
)

__all__ = [
    "ChatGateway",
    "ChatMessage",
    "ChatOptions",
    "EmbeddingClient",
    "EmbeddingGateway",
    "LLMClient",
    "ModelGateway",
    "create_chat_model",
    "create_embedding_client",
    "resolve_embedder",
]
