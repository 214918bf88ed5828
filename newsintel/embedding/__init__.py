"""Embedding service: cached provider chain, batching and similarity lookups."""

from .service import BatchEmbeddingResult, EmbeddingResult, EmbeddingService, clean_text, fit_dimensions
