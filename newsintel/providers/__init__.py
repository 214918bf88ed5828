"""Language-model and embedding providers."""

from .embeddings import (
    EmbeddingProvider,
    EmbeddingProviderFactory,
    HashingEmbeddingProvider,
    HuggingFaceEmbeddingProvider,
    OpenAIEmbeddingProvider,
)
from .llm import DummyLLMProvider, LLMProvider, LLMProviderFactory, NoLLMProvider, OpenAIChatProvider
