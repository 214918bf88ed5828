"""
Query analysis for search: type selection, phrase parsing and expansion.

Search-type selection is a pure function of ``QueryFeatures`` so it can be
tested without any engine.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from newsintel.core.text import STOP_WORDS, contains_term, tokenize

QUOTED_RE = re.compile(r'"([^"]+)"')

CONCEPTUAL_INDICATORS = (
    "similar to", "like", "about", "related to", "concerning",
    "regarding", "topics", "concepts", "ideas", "theory", "approach",
)

SYNONYMS = {
    "artificial intelligence": ("ai", "machine intelligence", "artificial neural networks"),
    "ai": ("machine intelligence", "artificial neural networks"),
    "machine learning": ("ml", "statistical learning", "automated learning"),
    "ml": ("statistical learning", "automated learning"),
    "deep learning": ("neural networks", "deep neural networks", "deep nets"),
    "natural language processing": ("nlp", "text processing", "language understanding"),
    "nlp": ("text processing", "language understanding"),
    "computer vision": ("image recognition", "visual recognition", "image processing"),
    "robotics": ("automation", "autonomous systems", "robotic systems"),
    "algorithm": ("method", "procedure", "technique", "approach"),
    "model": ("system", "framework", "architecture", "network"),
    "training": ("learning", "optimization", "fitting"),
    "prediction": ("inference", "forecasting", "estimation"),
}

RELATED_TERMS = {
    "ai": ("automation", "intelligence", "cognitive"),
    "machine learning": ("supervised learning", "unsupervised learning", "reinforcement learning"),
    "neural": ("network", "neuron", "activation", "backpropagation"),
    "data": ("dataset", "information", "analytics", "statistics"),
    "algorithm": ("optimization", "computation", "processing"),
}
MAX_RELATED_TERMS = 5
MAX_QUERY_KEYWORDS = 10

POPULAR_QUERIES = (
    "artificial intelligence trends",
    "machine learning algorithms",
    "deep learning applications",
    "neural network architectures",
    "natural language processing",
    "computer vision research",
    "robotics automation",
    "AI startups",
    "machine learning papers",
    "AI industry news",
)


class SearchType(str, Enum):
    SEMANTIC = "semantic"
    FULLTEXT = "fulltext"
    HYBRID = "hybrid"


@dataclass(frozen=True)
class QueryFeatures:
    word_count: int
    has_quotes: bool
    has_conceptual_terms: bool

    @classmethod
    def from_query(cls, query: str) -> "QueryFeatures":
        lowered = (query or "").lower()
        return cls(
            word_count=len(lowered.split()),
            has_quotes='"' in lowered,
            has_conceptual_terms=any(contains_term(lowered, term) for term in CONCEPTUAL_INDICATORS),
        )


def select_search_type(features: QueryFeatures) -> SearchType:
    """
    Pick a search type from query features.

    >>> select_search_type(QueryFeatures(word_count=4, has_quotes=True, has_conceptual_terms=False))
    <SearchType.FULLTEXT: 'fulltext'>
    >>> select_search_type(QueryFeatures(word_count=7, has_quotes=False, has_conceptual_terms=False))
    <SearchType.SEMANTIC: 'semantic'>
    >>> select_search_type(QueryFeatures(word_count=3, has_quotes=False, has_conceptual_terms=False))
    <SearchType.HYBRID: 'hybrid'>
    """
    if features.has_quotes or features.word_count <= 2:
        return SearchType.FULLTEXT
    if features.word_count > 5 or features.has_conceptual_terms:
        return SearchType.SEMANTIC
    return SearchType.HYBRID


def quoted_phrase(query: str) -> Optional[str]:
    """The first quoted phrase in the query, if any."""
    match = QUOTED_RE.search(query or "")
    return match.group(1).strip() if match else None


def query_keywords(query: str) -> List[str]:
    """Distinct lowercased non-stop-words longer than two characters."""
    seen = []
    for token in tokenize(query.replace('"', " ")):
        if len(token) > 2 and token not in STOP_WORDS and token not in seen:
            seen.append(token)
    return seen[:MAX_QUERY_KEYWORDS]


@dataclass
class QueryExpansion:
    synonyms: List[str] = field(default_factory=list)
    related_terms: List[str] = field(default_factory=list)

    @property
    def terms(self) -> List[str]:
        return list(dict.fromkeys(self.synonyms + self.related_terms))


def expand_query(query: str) -> QueryExpansion:
    """Synonyms and related terms for known words and phrases in the query."""
    lowered = (query or "").lower().replace('"', " ")
    keys = [k for k in SYNONYMS if contains_term(lowered, k)]
    synonyms = [s for k in keys for s in SYNONYMS[k] if not contains_term(lowered, s)]
    related = [
        r for k in RELATED_TERMS if contains_term(lowered, k)
        for r in RELATED_TERMS[k] if not contains_term(lowered, r)
    ]
    return QueryExpansion(
        synonyms=list(dict.fromkeys(synonyms)),
        related_terms=list(dict.fromkeys(related))[:MAX_RELATED_TERMS],
    )
