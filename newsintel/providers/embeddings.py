"""
Embedding providers.

``OpenAIEmbeddingProvider`` and ``HuggingFaceEmbeddingProvider`` call remote
APIs over httpx; ``HashingEmbeddingProvider`` ("local") is a deterministic
feature-hashing model built on scikit-learn that needs no network access.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from aiolimiter import AsyncLimiter
import httpx
import numpy as np
from sklearn.feature_extraction.text import HashingVectorizer

from newsintel.core.errors import ProviderTimeout, ProviderUnavailable
from newsintel.core.logging import get_logger

logger = get_logger(__name__)


class EmbeddingProvider(ABC):
    """Turns text into a vector."""

    name: str = "base"
    model: str = ""
    max_input_chars: int = 512

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        pass

    async def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        return [await self.embed(text) for text in texts]

    async def close(self) -> None:
        pass


class _HTTPEmbeddingProvider(EmbeddingProvider):
    def __init__(self, timeout_seconds: float, requests_per_minute: int, client: Optional[httpx.AsyncClient]):
        self.timeout_seconds = timeout_seconds
        self.rate_limiter = AsyncLimiter(max(1, requests_per_minute), 60)
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds, connect=10.0))

    async def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> Any:
        try:
            async with self.rate_limiter:
                response = await self.client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"{self.name} embedding timed out after {self.timeout_seconds}s") from e
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderUnavailable(f"{self.name} embedding request failed", {"error": str(e)}) from e

    async def close(self) -> None:
        await self.client.aclose()


class OpenAIEmbeddingProvider(_HTTPEmbeddingProvider):
    name = "openai"
    max_input_chars = 8191

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 30.0,
        requests_per_minute: int = 3000,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise ProviderUnavailable("OpenAI API key is not configured")
        super().__init__(timeout_seconds, requests_per_minute, client)
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")

    async def embed(self, text: str) -> List[float]:
        return (await self.embed_many([text]))[0]

    async def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        data = await self._post(
            f"{self.base_url}/embeddings",
            {"model": self.model, "input": list(texts)},
            {"Authorization": f"Bearer {self.api_key}"},
        )
        try:
            rows = sorted(data["data"], key=lambda r: r["index"])
            return [list(map(float, row["embedding"])) for row in rows]
        except (KeyError, TypeError) as e:
            raise ProviderUnavailable("Malformed OpenAI embedding response", {"error": str(e)}) from e


class HuggingFaceEmbeddingProvider(_HTTPEmbeddingProvider):
    """Inference API feature extraction; token vectors are mean-pooled."""

    name = "huggingface"
    max_input_chars = 512

    def __init__(
        self,
        api_key: str,
        model: str = "sentence-transformers/all-MiniLM-L6-v2",
        base_url: str = "https://api-inference.huggingface.co/pipeline/feature-extraction",
        timeout_seconds: float = 30.0,
        requests_per_minute: int = 3000,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise ProviderUnavailable("HuggingFace API key is not configured")
        super().__init__(timeout_seconds, requests_per_minute, client)
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")

    async def embed(self, text: str) -> List[float]:
        data = await self._post(
            f"{self.base_url}/{self.model}",
            {"inputs": text, "options": {"wait_for_model": True}},
            {"Authorization": f"Bearer {self.api_key}"},
        )
        try:
            array = np.asarray(data, dtype=float)
        except (TypeError, ValueError) as e:
            raise ProviderUnavailable("Malformed HuggingFace embedding response", {"error": str(e)}) from e
        # Sentence models return one vector, token models a (tokens, dim) matrix.
        while array.ndim > 1:
            array = array.mean(axis=0)
        if array.size == 0:
            raise ProviderUnavailable("Empty HuggingFace embedding")
        return array.tolist()


class HashingEmbeddingProvider(EmbeddingProvider):
    """
    Local, deterministic embedding via signed feature hashing.

    Word unigrams and bigrams are hashed into ``dimensions`` buckets and the
    result is L2-normalised, so texts sharing vocabulary get high cosine
    similarity. Suitable for development, tests and as a last-resort fallback.
    """

    name = "local"
    model = "hashing-ngram-v1"
    max_input_chars = 512

    def __init__(self, dimensions: int = 384):
        self.dimensions = dimensions
        self.vectorizer = HashingVectorizer(
            n_features=dimensions,
            ngram_range=(1, 2),
            alternate_sign=True,
            norm="l2",
            stop_words="english",
            lowercase=True,
        )

    async def embed(self, text: str) -> List[float]:
        return (await self.embed_many([text]))[0]

    async def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        matrix = self.vectorizer.transform(list(texts))
        return [row.toarray().ravel().astype(float).tolist() for row in matrix]


class EmbeddingProviderFactory:
    """Builds the configured provider chain by name."""

    _providers = {
        "openai": OpenAIEmbeddingProvider,
        "huggingface": HuggingFaceEmbeddingProvider,
        "local": HashingEmbeddingProvider,
    }

    @classmethod
    def create_provider(cls, name: str, **config) -> Optional[EmbeddingProvider]:
        if name not in cls._providers:
            logger.warning(f"Unknown embedding provider: {name}")
            return None
        try:
            return cls._providers[name](**config)
        except ProviderUnavailable as e:
            logger.warning(f"Embedding provider {name} skipped: {e}")
            return None

    @classmethod
    def create_chain(cls, order: Sequence[str], configs: Dict[str, Dict[str, Any]]) -> List[EmbeddingProvider]:
        chain = []
        for name in order:
            provider = cls.create_provider(name, **configs.get(name, {}))
            if provider is not None:
                chain.append(provider)
        logger.info(f"Embedding provider chain: {[p.name for p in chain]}")
        return chain

    @classmethod
    def register_provider(cls, name: str, provider_class):
        cls._providers[name] = provider_class

    @classmethod
    def list_providers(cls) -> List[str]:
        return list(cls._providers.keys())
