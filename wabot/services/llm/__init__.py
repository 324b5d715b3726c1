from wabot.services.llm.base import EmbeddingProvider, LLMProvider, LLMResponse, chunked
from wabot.services.llm.openai_provider import OpenAIEmbeddingProvider, OpenAIProvider

__all__ = [
    "EmbeddingProvider",
    "LLMProvider",
    "LLMResponse",
    "OpenAIEmbeddingProvider",
    "OpenAIProvider",
    "chunked",
]
