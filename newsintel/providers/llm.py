"""
Language-model provider interface and implementations.

Engines only need ``complete(prompt) -> text``. The OpenAI-compatible provider
talks HTTP; the dummy provider answers deterministically so categorization
and summarization can be exercised without network access.
"""

import json
import re
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from aiolimiter import AsyncLimiter
import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from newsintel.core.errors import ProviderTimeout, ProviderUnavailable
from newsintel.core.logging import get_logger

logger = get_logger(__name__)

TASK_RE = re.compile(r"^TASK:\s*(\w+)", re.MULTILINE)
CATEGORIES_RE = re.compile(r"^CATEGORIES:\s*(.+)$", re.MULTILINE)
TEXT_RE = re.compile(r"^TEXT:\s*(.*)\Z", re.MULTILINE | re.DOTALL)


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        model: Optional[str] = None,
        max_tokens: int = 500,
        temperature: float = 0.3,
    ) -> str:
        """
        Return the model's completion for ``prompt``.

        Raises:
            ProviderUnavailable: the provider cannot answer
            ProviderTimeout: the call exceeded its bounded wait
        """

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Check provider health and availability."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider identification name."""

    async def close(self) -> None:
        pass


class OpenAIChatProvider(LLMProvider):
    """OpenAI-compatible chat completions over httpx."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        timeout_seconds: float = 30.0,
        requests_per_minute: int = 3000,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise ProviderUnavailable("OpenAI API key is not configured")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.rate_limiter = AsyncLimiter(max(1, requests_per_minute), 60)
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"Authorization": f"Bearer {api_key}"},
        )
        self.call_count = 0
        self.total_processing_time = 0.0

    @property
    def provider_name(self) -> str:
        return "openai"

    async def health_check(self) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "provider": self.provider_name,
            "model": self.model,
            "calls_made": self.call_count,
            "avg_response_time": self.total_processing_time / max(self.call_count, 1),
            "rate_limit": {"limit": self.rate_limiter.max_rate, "period_seconds": self.rate_limiter.time_period},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4.0),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        response = await self.client.post(f"{self.base_url}/chat/completions", json=payload)
        response.raise_for_status()
        return response

    async def complete(self, prompt, model=None, max_tokens=500, temperature=0.3) -> str:
        start_time = time.time()
        payload = {
            "model": model or self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        try:
            async with self.rate_limiter:
                response = await self._post(payload)
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"OpenAI completion timed out after {self.timeout_seconds}s") from e
        except httpx.HTTPError as e:
            logger.error(f"OpenAI completion failed: {e}")
            raise ProviderUnavailable("OpenAI completion failed", {"error": str(e)}) from e
        finally:
            self.call_count += 1
            self.total_processing_time += time.time() - start_time

        try:
            return response.json()["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, ValueError) as e:
            raise ProviderUnavailable("Malformed completion response", {"error": str(e)}) from e

    async def close(self) -> None:
        await self.client.aclose()


class DummyLLMProvider(LLMProvider):
    """
    Deterministic provider for tests and local runs.

    Understands the ``TASK:`` header written by the engines' prompt builders:
    ``categorize`` answers with the listed category whose name words occur
    most often in the text, ``summarize`` answers with leading sentences.
    Anything else is echoed back as a short completion.
    """

    def __init__(self, responses: Optional[Dict[str, str]] = None):
        self.responses = responses or {}
        self.call_count = 0
        self.prompts: List[str] = []

    @property
    def provider_name(self) -> str:
        return "dummy"

    async def health_check(self) -> Dict[str, Any]:
        """Always healthy for dummy provider."""
        return {
            "status": "healthy",
            "provider": self.provider_name,
            "calls_made": self.call_count,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def complete(self, prompt, model=None, max_tokens=500, temperature=0.3) -> str:
        self.call_count += 1
        self.prompts.append(prompt)
        task_match = TASK_RE.search(prompt)
        task = task_match.group(1).lower() if task_match else "complete"
        if task in self.responses:
            return self.responses[task]

        text_match = TEXT_RE.search(prompt)
        text = text_match.group(1).strip() if text_match else prompt
        if task == "categorize":
            return json.dumps(self._categorize(prompt, text))
        if task == "summarize":
            return json.dumps(self._summarize(text))
        return text[:max_tokens]

    def _categorize(self, prompt: str, text: str) -> Dict[str, Any]:
        categories_match = CATEGORIES_RE.search(prompt)
        categories = [c.strip() for c in categories_match.group(1).split(",")] if categories_match else []
        lowered = text.lower()
        scores = {}
        for category in categories:
            words = [w for w in category.split("-") if len(w) > 2]
            scores[category] = sum(lowered.count(w) for w in words)
        ranked = sorted(scores, key=lambda c: (-scores[c], categories.index(c)))
        if not ranked or scores[ranked[0]] == 0:
            return {"primaryCategory": "general", "additionalCategories": [], "confidence": 0.4,
                    "reasoning": "no category terms found"}
        additional = [
            {"category": c, "confidence": round(min(0.9, 0.5 + 0.05 * scores[c]), 2), "reasoning": "secondary mentions"}
            for c in ranked[1:3] if scores[c] > 0
        ]
        return {
            "primaryCategory": ranked[0],
            "additionalCategories": additional,
            "confidence": min(0.95, 0.6 + 0.05 * scores[ranked[0]]),
            "reasoning": f"{scores[ranked[0]]} mentions of {ranked[0]}",
        }

    def _summarize(self, text: str) -> Dict[str, Any]:
        sentences = [s.strip() for s in re.split(r"(?<=[.!?])\s+", text) if s.strip()]
        return {
            "short": " ".join(sentences[:1]),
            "medium": " ".join(sentences[:3]),
            "long": " ".join(sentences[:5]),
            "keyPoints": sentences[:3],
        }


class NoLLMProvider(LLMProvider):
    """
    Provider used when no LLM service is configured.

    Every completion raises ``ProviderUnavailable`` so engines fall back to
    their non-model paths.
    """

    @property
    def provider_name(self) -> str:
        return "none"

    async def health_check(self) -> Dict[str, Any]:
        """Always returns unavailable status."""
        return {
            "status": "unavailable",
            "provider": self.provider_name,
            "message": "No LLM provider configured",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def complete(self, prompt, model=None, max_tokens=500, temperature=0.3) -> str:
        raise ProviderUnavailable("No LLM provider available")


class LLMProviderFactory:
    """Factory for creating LLM provider instances."""

    _providers = {
        "openai": OpenAIChatProvider,
        "dummy": DummyLLMProvider,
        "none": NoLLMProvider,
    }

    @classmethod
    def create_provider(cls, provider_type: str = "dummy", **config) -> LLMProvider:
        """
        Create LLM provider instance.

        Args:
            provider_type: Type of provider ("openai", "dummy", "none")
            **config: Provider-specific configuration

        Returns:
            LLMProvider instance; ``NoLLMProvider`` when the requested one
            cannot be built (for example a missing API key)
        """
        if provider_type not in cls._providers:
            logger.warning(f"Unknown provider type: {provider_type}, falling back to none")
            provider_type = "none"

        provider_class = cls._providers[provider_type]
        try:
            return provider_class(**config)
        except ProviderUnavailable as e:
            logger.warning(f"LLM provider {provider_type} unavailable ({e}), using none")
            return NoLLMProvider()

    @classmethod
    def register_provider(cls, name: str, provider_class):
        """Register a new provider type."""
        cls._providers[name] = provider_class

    @classmethod
    def list_providers(cls) -> List[str]:
        """List available provider types."""
        return list(cls._providers.keys())


def parse_json_response(text: str) -> Dict[str, Any]:
    """Extract the first JSON object from a model response."""
    match = re.search(r"\{.*\}", text or "", re.DOTALL)
    if not match:
        raise ValueError("No JSON object in model response")
    return json.loads(match.group(0))
