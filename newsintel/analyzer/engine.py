"""
Content analysis engine.

Produces a summary, sentiment, a quality report and descriptive metadata for
one piece of content. The four parts run concurrently and in isolation: a
failing part is replaced by its documented default and named in
``AnalysisResult.degraded`` instead of failing the whole analysis.
"""

import re
import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from langdetect import DetectorFactory, detect
from langdetect.lang_detect_exception import LangDetectException

from newsintel.core.cache import Cache
from newsintel.core.concurrency import bounded_map, gather_settled
from newsintel.core.config import AnalysisConfig
from newsintel.core.errors import ProviderTimeout, ProviderUnavailable, ValidationError
from newsintel.core.logging import get_logger
from newsintel.core.store import ContentStore
from newsintel.core.telemetry import Telemetry
from newsintel.core.text import content_hash, count_syllables, split_paragraphs, split_sentences
from newsintel.core.time import Clock
from newsintel.providers.llm import LLMProvider, parse_json_response

from .lexicons import ORGANIZATION_SUFFIXES, TOPIC_KEYWORDS
from .quality import (
    Bias,
    Claim,
    Coherence,
    Factuality,
    Grammar,
    GrammarIssue,
    QualityReport,
    Readability,
    analyze_bias,
    analyze_coherence,
    analyze_factuality,
    analyze_grammar,
    analyze_readability,
    overall_quality,
)
from .sentiment import SentimentAnalyzer, SentimentResult
from .summary import Summary, extractive_summary, significant_words

logger = get_logger(__name__)

# langdetect is probabilistic unless seeded
DetectorFactory.seed = 0

T = TypeVar("T")

ENTITY_RE = re.compile(r"\b(?:[A-Z][a-zA-Z]+|[A-Z]{2,})(?:\s+(?:[A-Z][a-zA-Z]+|[A-Z]{2,}))*")
MIN_LANGUAGE_WORDS = 3
MAX_ENTITIES = 10
MAX_TOPICS = 5
MAX_KEYWORDS = 20


class AnalysisDepth(str, Enum):
    BASIC = "basic"
    STANDARD = "standard"
    COMPREHENSIVE = "comprehensive"


@dataclass
class ContentMetadata:
    word_count: int = 0
    sentence_count: int = 0
    paragraph_count: int = 0
    avg_words_per_sentence: float = 0.0
    avg_syllables_per_word: float = 0.0
    complex_word_count: int = 0
    reading_time: int = 1
    language: str = "en"
    topics: List[Dict[str, Any]] = field(default_factory=list)
    entities: List[Dict[str, Any]] = field(default_factory=list)
    keywords: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class AnalysisResult:
    content_id: str
    content_type: str
    sentiment: SentimentResult
    quality: QualityReport
    metadata: ContentMetadata
    summary: Optional[Summary] = None
    processing_time: float = 0.0
    timestamp: str = ""
    degraded: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisResult":
        quality = data["quality"]
        grammar = dict(quality["grammar"])
        factuality = dict(quality["factuality"])
        grammar["errors"] = [GrammarIssue(**e) for e in grammar.get("errors", [])]
        factuality["claims"] = [Claim(**c) for c in factuality.get("claims", [])]
        return cls(
            content_id=data["content_id"],
            content_type=data["content_type"],
            sentiment=SentimentResult(**data["sentiment"]),
            quality=QualityReport(
                overall=quality["overall"],
                readability=Readability(**quality["readability"]),
                grammar=Grammar(**grammar),
                factuality=Factuality(**factuality),
                bias=Bias(**quality["bias"]),
                coherence=Coherence(**quality["coherence"]),
            ),
            metadata=ContentMetadata(**data["metadata"]),
            summary=Summary(**data["summary"]) if data.get("summary") else None,
            processing_time=data.get("processing_time", 0.0),
            timestamp=data.get("timestamp", ""),
            degraded=list(data.get("degraded", [])),
        )


@dataclass
class BatchAnalysisResult:
    results: List[AnalysisResult]
    success_count: int
    failure_count: int
    processing_time: float
    avg_processing_time: float = 0.0
    avg_quality: float = 0.0
    avg_sentiment: float = 0.0

    @property
    def total_items(self) -> int:
        return self.success_count + self.failure_count


def default_metadata(text: str) -> ContentMetadata:
    """Rough estimate used when metadata extraction fails."""
    words = len(text.split())
    return ContentMetadata(
        word_count=words,
        sentence_count=max(1, -(-words // 15)),
        paragraph_count=max(1, -(-words // 100)),
        avg_words_per_sentence=15.0,
        avg_syllables_per_word=1.5,
        complex_word_count=-(-words // 10),
        reading_time=max(1, -(-words // 200)),
    )


def detect_language(text: str) -> str:
    if len(text.split()) < MIN_LANGUAGE_WORDS:
        return "en"
    try:
        return detect(text)
    except LangDetectException:
        return "unknown"


def extract_entities(text: str) -> List[Dict[str, Any]]:
    """Capitalised word runs; the first word of a sentence only counts as part of a longer run."""
    found: Counter = Counter()
    for sentence in split_sentences(text):
        for match in ENTITY_RE.finditer(sentence):
            candidate = match.group(0)
            if match.start() == 0 and " " not in candidate and not candidate.isupper():
                continue
            found[candidate] += 1

    entities = []
    for candidate, _ in found.most_common(MAX_ENTITIES):
        last = candidate.split()[-1]
        if last in ORGANIZATION_SUFFIXES or candidate.isupper():
            entities.append({"text": candidate, "type": "ORGANIZATION", "confidence": 0.8})
        else:
            entities.append({"text": candidate, "type": "MISC", "confidence": 0.6})
    return entities


class ContentAnalysisEngine:
    """Summary, sentiment, quality and metadata for articles and papers."""

    def __init__(
        self,
        store: ContentStore,
        cache: Cache,
        llm: Optional[LLMProvider] = None,
        config: Optional[AnalysisConfig] = None,
        telemetry: Optional[Telemetry] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.cache = cache
        self.llm = llm
        self.config = config or AnalysisConfig()
        self.telemetry = telemetry or Telemetry()
        self.clock = clock or Clock()
        self.sentiment_analyzer = SentimentAnalyzer()

    @property
    def llm_available(self) -> bool:
        return self.llm is not None and self.llm.provider_name != "none"

    async def analyze(
        self,
        content_id: str,
        content_type: str,
        title: str,
        body: str,
        include_summary: bool = True,
        include_sentiment: bool = True,
        include_quality: bool = True,
        depth: str = AnalysisDepth.STANDARD.value,
        use_cache: bool = True,
    ) -> AnalysisResult:
        """
        Analyze one piece of content.

        Raises:
            ValidationError: empty content or unknown depth
        """
        start_time = time.time()
        full_text = f"{title}\n\n{body}" if title else (body or "")
        if not full_text.strip():
            raise ValidationError(f"Cannot analyze empty content {content_id}")
        try:
            depth = AnalysisDepth(depth).value
        except ValueError as e:
            raise ValidationError(f"Unknown analysis depth: {depth}") from e

        cache_key = f"analysis:{content_id}:{depth}:{content_hash(full_text)}"
        if use_cache:
            cached = await self.cache.get(cache_key)
            if cached:
                logger.debug(f"Returning cached analysis for {content_id}")
                self.telemetry.increment("analysis.cache_hits")
                return AnalysisResult.from_dict(cached)

        logger.info(f"Starting content analysis for {content_type} {content_id} ({len(full_text)} chars, {depth})")

        async def summary_part() -> Optional[Summary]:
            return await self.generate_summary(full_text, depth) if include_summary else None

        async def sentiment_part() -> SentimentResult:
            return self.sentiment_analyzer.analyze(full_text, depth) if include_sentiment else SentimentResult()

        async def quality_part() -> QualityReport:
            return self.analyze_quality(full_text, depth) if include_quality else QualityReport()

        async def metadata_part() -> ContentMetadata:
            return self.extract_metadata(full_text)

        summary, sentiment, quality, metadata = await gather_settled(
            [summary_part(), sentiment_part(), quality_part(), metadata_part()]
        )
        degraded = []
        for name, outcome in (("summary", summary), ("sentiment", sentiment),
                              ("quality", quality), ("metadata", metadata)):
            if not outcome.ok:
                degraded.append(name)
                logger.error(f"{name.capitalize()} analysis failed for {content_id}: {outcome.error}")

        result = AnalysisResult(
            content_id=content_id,
            content_type=content_type,
            summary=summary.value if summary.ok else None,
            sentiment=sentiment.value if sentiment.ok else SentimentResult(),
            quality=quality.value if quality.ok else QualityReport(),
            metadata=metadata.value if metadata.ok else default_metadata(full_text),
            processing_time=time.time() - start_time,
            timestamp=self.clock.now().isoformat(),
            degraded=degraded,
        )

        if use_cache:
            await self.cache.set(cache_key, result.to_dict(), ttl=self.config.cache_ttl_seconds)
        self._track(result)
        logger.info(
            f"Content analysis completed for {content_id}: quality={result.quality.overall}, "
            f"sentiment={result.sentiment.polarity:.2f}, {result.processing_time:.3f}s"
        )
        return result

    # --- summary -------------------------------------------------------------

    async def generate_summary(self, text: str, depth: str) -> Summary:
        """Abstractive summary from the LLM when allowed, extractive otherwise."""
        if self.llm_available and depth != AnalysisDepth.BASIC.value:
            try:
                return await self._generate_ai_summary(text)
            except (ProviderUnavailable, ProviderTimeout, ValueError, KeyError) as e:
                logger.warning(f"AI summary failed, using extractive summary: {e}")
        return extractive_summary(
            text,
            max_sentences=self.config.summary_sentences,
            ratio=self.config.summary_ratio,
            key_points=self.config.key_points,
        )

    def _build_summary_prompt(self, text: str) -> str:
        excerpt = text[: self.config.llm_summary_chars]
        if len(text) > self.config.llm_summary_chars:
            excerpt += "..."
        return (
            "TASK: summarize\n"
            "Summarize the content in three lengths and extract key points. Respond in JSON:\n"
            '{"short": "1-2 sentence summary", "medium": "3-4 sentence summary", '
            '"long": "Full paragraph summary", "keyPoints": ["key point 1", "key point 2"]}\n'
            "Keep 3-5 key points and preserve the original meaning.\n"
            f"TEXT: {excerpt}"
        )

    async def _generate_ai_summary(self, text: str) -> Summary:
        response = await self.llm.complete(self._build_summary_prompt(text), max_tokens=800, temperature=0.3)
        parsed = parse_json_response(response)
        return Summary(
            short=parsed.get("short") or "",
            medium=parsed.get("medium") or "",
            long=parsed.get("long") or "",
            key_points=list(parsed.get("keyPoints") or [])[: self.config.key_points],
            method="abstractive",
        )

    # --- quality ---------------------------------------------------------------

    def _isolated(self, name: str, func: Callable[[], T], default: T) -> T:
        try:
            return func()
        except Exception as e:
            logger.error(f"{name} analysis failed, using default: {e}")
            self.telemetry.increment("analysis.component_failures", tags={"component": name})
            return default

    def analyze_quality(self, text: str, depth: str = AnalysisDepth.STANDARD.value) -> QualityReport:
        """
        Quality sub-analyses blended with the configured weights.

        Grammar and bias run from ``standard`` depth, factuality only at
        ``comprehensive``; skipped parts keep their default values.
        """
        basic = depth == AnalysisDepth.BASIC.value
        report = QualityReport(
            readability=self._isolated("readability", lambda: analyze_readability(text), Readability()),
            grammar=Grammar() if basic else self._isolated(
                "grammar",
                lambda: analyze_grammar(text, self.config.long_sentence_words, self.config.max_grammar_errors),
                Grammar(),
            ),
            factuality=self._isolated(
                "factuality", lambda: analyze_factuality(text, self.config.max_claims), Factuality()
            ) if depth == AnalysisDepth.COMPREHENSIVE.value else Factuality(),
            bias=Bias() if basic else self._isolated("bias", lambda: analyze_bias(text), Bias()),
            coherence=self._isolated("coherence", lambda: analyze_coherence(text), Coherence()),
        )
        report.overall = overall_quality(report, self.config.quality_weights)
        return report

    # --- metadata --------------------------------------------------------------

    def extract_metadata(self, text: str) -> ContentMetadata:
        words = text.split()
        if not words:
            return default_metadata(text)
        sentences = split_sentences(text)
        syllables = [count_syllables(re.sub(r"[^A-Za-z']", "", w)) for w in words]
        scored = significant_words(text)
        keywords = [
            {"word": w, "score": round(s, 3), "frequency": round(s * 100)}
            for w, s in sorted(scored.items(), key=lambda kv: (-kv[1], kv[0]))[:MAX_KEYWORDS]
        ]
        return ContentMetadata(
            word_count=len(words),
            sentence_count=len(sentences),
            paragraph_count=len(split_paragraphs(text)),
            avg_words_per_sentence=round(len(words) / max(len(sentences), 1), 2),
            avg_syllables_per_word=round(sum(syllables) / len(words), 2),
            complex_word_count=sum(1 for s in syllables if s >= 3),
            reading_time=max(1, -(-len(words) // self.config.words_per_minute)),
            language=detect_language(text),
            topics=self._extract_topics(keywords),
            entities=extract_entities(text),
            keywords=keywords,
        )

    @staticmethod
    def _extract_topics(keywords: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        topics = []
        for topic, vocabulary in TOPIC_KEYWORDS.items():
            hits = [k for k in keywords if k["word"] in vocabulary]
            if hits:
                topics.append({
                    "topic": topic,
                    "confidence": min(1.0, sum(k["score"] for k in hits)),
                    "keywords": [k["word"] for k in hits],
                })
        topics.sort(key=lambda t: -t["confidence"])
        return topics[:MAX_TOPICS]

    # --- persistence, batch, metrics ---------------------------------------------

    async def save_analysis(self, result: AnalysisResult) -> None:
        await self.store.save_analysis(
            result.content_id, result.quality.overall, result.sentiment.polarity, result.to_dict()
        )
        logger.debug(f"Saved analysis for {result.content_type} {result.content_id}")

    async def analyze_item(self, item_id: str, depth: str = AnalysisDepth.STANDARD.value) -> AnalysisResult:
        """Analyze a stored item and persist quality and sentiment."""
        item = await self.store.get_item(item_id)
        if item is None:
            raise ValidationError(f"Unknown content item: {item_id}")
        result = await self.analyze(item.id, item.content_type, item.title, item.body, depth=depth)
        await self.save_analysis(result)
        return result

    async def batch_analyze(
        self,
        items: Sequence[Dict[str, Any]],
        depth: str = AnalysisDepth.STANDARD.value,
        max_concurrency: Optional[int] = None,
        use_cache: bool = True,
    ) -> BatchAnalysisResult:
        """
        Analyze many items with bounded concurrency.

        Each item is a dict with ``id``, ``content`` and optional ``title`` and
        ``content_type``. Failed items are counted, not raised.
        """
        start_time = time.time()
        limit = max_concurrency or self.config.batch_concurrency
        logger.info(f"Starting batch content analysis of {len(items)} items (depth={depth}, concurrency={limit})")

        async def run(item: Dict[str, Any]) -> AnalysisResult:
            return await self.analyze(
                item["id"],
                item.get("content_type", "article"),
                item.get("title", ""),
                item.get("content", ""),
                depth=depth,
                use_cache=use_cache,
            )

        settled = await bounded_map(run, items, limit)
        results = [s.value for s in settled if s.ok]
        count = len(results)
        batch = BatchAnalysisResult(
            results=results,
            success_count=count,
            failure_count=len(settled) - count,
            processing_time=time.time() - start_time,
            avg_processing_time=sum(r.processing_time for r in results) / count if count else 0.0,
            avg_quality=sum(r.quality.overall for r in results) / count if count else 0.0,
            avg_sentiment=sum(r.sentiment.polarity for r in results) / count if count else 0.0,
        )
        logger.info(
            f"Batch content analysis completed: {batch.success_count} ok, {batch.failure_count} failed, "
            f"avg quality {batch.avg_quality:.1f}"
        )
        return batch

    def _track(self, result: AnalysisResult) -> None:
        self.telemetry.increment("analysis.total")
        self.telemetry.increment("analysis.content_type", tags={"type": result.content_type})
        self.telemetry.increment("analysis.quality_sum", result.quality.overall)
        self.telemetry.increment("analysis.sentiment_sum", abs(result.sentiment.polarity))
        self.telemetry.timing("analysis.latency", result.processing_time)
        for name in result.degraded:
            self.telemetry.increment("analysis.degraded", tags={"component": name})

    def get_metrics(self) -> Dict[str, Any]:
        total = self.telemetry.counter("analysis.total")
        return {
            "total": total,
            "cache_hits": self.telemetry.counter("analysis.cache_hits"),
            "avg_quality": self.telemetry.counter("analysis.quality_sum") / total if total else 0.0,
            "avg_sentiment": self.telemetry.counter("analysis.sentiment_sum") / total if total else 0.0,
            "by_content_type": self.telemetry.counters_with_prefix("analysis.content_type"),
            "degraded": self.telemetry.counters_with_prefix("analysis.degraded"),
            "latency": self.telemetry.timing_stats("analysis.latency"),
        }
