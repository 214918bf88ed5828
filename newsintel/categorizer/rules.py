"""Category vocabulary, keyword/pattern rules and method selection.

Rules can be replaced from a YAML file of the form::

    robotics:
      keywords: [robotics, robot]
      patterns: ['robot(ic|s)?']
      weight: 1.0
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Pattern, Union

import yaml

from newsintel.core.errors import ConfigurationError
from newsintel.core.text import contains_term

CATEGORY_VOCABULARY = (
    "artificial-intelligence",
    "machine-learning",
    "deep-learning",
    "nlp",
    "computer-vision",
    "robotics",
    "research",
    "industry",
    "startups",
    "tech-news",
    "data-science",
    "cloud-computing",
    "cybersecurity",
    "blockchain",
    "quantum-computing",
    "biotech",
    "fintech",
    "general",
)
DEFAULT_CATEGORY = "general"

STRONG_KEYWORDS = (
    "artificial intelligence",
    "machine learning",
    "deep learning",
    "neural network",
    "nlp",
    "computer vision",
    "robotics",
    "blockchain",
    "cryptocurrency",
    "quantum computing",
)

# Pattern matches count more than plain keywords.
PATTERN_BOOST = 1.2

DOMAIN_TAG_PATTERNS: Dict[str, Pattern[str]] = {
    "tensorflow": re.compile(r"tensorflow|tf\.keras", re.IGNORECASE),
    "pytorch": re.compile(r"pytorch|\btorch\b", re.IGNORECASE),
    "openai": re.compile(r"openai|\bgpt|chatgpt", re.IGNORECASE),
    "google": re.compile(r"google|\bbert\b|lamda", re.IGNORECASE),
    "microsoft": re.compile(r"microsoft|azure|copilot", re.IGNORECASE),
    "meta": re.compile(r"\bmeta\b|facebook|llama", re.IGNORECASE),
    "research": re.compile(r"research|\bpaper\b|\bstudy\b|arxiv", re.IGNORECASE),
    "startup": re.compile(r"startup|funding|investment|\bvc\b", re.IGNORECASE),
    "enterprise": re.compile(r"enterprise|business|corporate", re.IGNORECASE),
    "open-source": re.compile(r"open.source|github|\boss\b", re.IGNORECASE),
}


@dataclass
class CategoryRule:
    """Keyword and regex evidence for one category."""
    category: str
    keywords: List[str] = field(default_factory=list)
    patterns: List[str] = field(default_factory=list)
    weight: float = 1.0
    enabled: bool = True

    def __post_init__(self):
        if self.category not in CATEGORY_VOCABULARY:
            raise ConfigurationError(f"Unknown category in rule: {self.category}")
        self.keywords = [k.lower() for k in self.keywords]
        self._keyword_res = [
            re.compile(r"\b" + r"\s+".join(re.escape(w) for w in k.split()) + r"\b") for k in self.keywords
        ]
        self._compiled = [re.compile(p, re.IGNORECASE) for p in self.patterns]

    def score(self, text: str, text_lower: str) -> float:
        """Weighted keyword plus pattern matches in ``text``."""
        keyword_hits = sum(len(r.findall(text_lower)) for r in self._keyword_res)
        pattern_hits = sum(len(p.findall(text)) for p in self._compiled)
        return keyword_hits * self.weight + pattern_hits * self.weight * PATTERN_BOOST

    def matched_terms(self, text: str, text_lower: str) -> List[str]:
        terms = [k for k in self.keywords if contains_term(text_lower, k)]
        terms += [f"pattern:{p.pattern}" for p in self._compiled if p.search(text)]
        return terms

    @classmethod
    def from_dict(cls, category: str, data: Dict[str, Any]) -> "CategoryRule":
        return cls(
            category=category,
            keywords=list(data.get("keywords", [])),
            patterns=list(data.get("patterns", [])),
            weight=float(data.get("weight", 1.0)),
            enabled=bool(data.get("enabled", True)),
        )


def _rule(category: str, keywords: List[str], patterns: List[str], weight: float = 1.0) -> CategoryRule:
    return CategoryRule(category=category, keywords=keywords, patterns=patterns, weight=weight)


DEFAULT_RULES: List[CategoryRule] = [
    _rule("artificial-intelligence",
          ["artificial intelligence", "ai", "machine intelligence", "cognitive computing", "intelligent systems"],
          [r"\bAI\b", r"artificial.{1,10}intelligence", r"machine.{1,10}intelligence"]),
    _rule("machine-learning",
          ["machine learning", "ml", "supervised learning", "unsupervised learning",
           "reinforcement learning", "statistical learning"],
          [r"\bML\b", r"machine.{1,10}learning", r"statistical.{1,10}learning"]),
    _rule("deep-learning",
          ["deep learning", "neural networks", "deep neural networks", "cnn", "rnn", "lstm", "transformer"],
          [r"deep.{1,10}learning", r"neural.{1,10}network", r"convolutional", r"recurrent"]),
    _rule("nlp",
          ["natural language processing", "nlp", "text mining", "language model", "text analysis",
           "sentiment analysis"],
          [r"\bNLP\b", r"natural.{1,10}language", r"text.{1,10}processing", r"language.{1,10}model"]),
    _rule("computer-vision",
          ["computer vision", "image recognition", "object detection", "image processing", "visual recognition"],
          [r"computer.{1,10}vision", r"image.{1,10}recognition", r"object.{1,10}detection"]),
    _rule("robotics",
          ["robotics", "robot", "automation", "autonomous systems", "robotic systems"],
          [r"\brobot(ic|s)?\b", r"\bautomat(ion|ed)\b", r"autonomous.{1,10}system"]),
    _rule("startups",
          ["startup", "startups", "funding", "venture capital", "investment", "seed round", "series a"],
          [r"rais(ed|es|ing) \$?\d+", r"series [a-d]\b"], weight=0.8),
    _rule("research",
          ["research", "paper", "academic", "study", "scientific", "findings", "arxiv"],
          [r"peer.{1,5}review", r"preprint"], weight=0.8),
    _rule("industry",
          ["industry", "business", "market", "enterprise", "market trends", "revenue"],
          [r"market.{1,10}share", r"quarterly.{1,10}(results|earnings)"], weight=0.7),
    _rule("cybersecurity",
          ["cybersecurity", "security threats", "data protection", "privacy", "malware", "ransomware",
           "vulnerability"],
          [r"cyber.?attack", r"data.{1,10}breach"], weight=0.9),
    _rule("blockchain",
          ["blockchain", "cryptocurrency", "bitcoin", "ethereum", "decentralized", "web3"],
          [r"\bcrypto\b", r"smart.{1,5}contract"], weight=0.9),
    _rule("quantum-computing",
          ["quantum computing", "quantum algorithms", "quantum supremacy", "qubit", "qubits"],
          [r"quantum.{1,10}(computer|processor|advantage)"], weight=1.0),
    _rule("cloud-computing",
          ["cloud computing", "aws", "azure", "google cloud", "serverless", "kubernetes"],
          [r"cloud.{1,10}(platform|provider|native)"], weight=0.8),
    _rule("data-science",
          ["data science", "analytics", "big data", "visualization", "statistics", "data scientist"],
          [r"data.{1,10}(pipeline|analysis)"], weight=0.8),
    _rule("biotech",
          ["biotechnology", "genomics", "biotech", "medical ai", "healthcare", "drug discovery"],
          [r"protein.{1,10}(folding|structure)", r"clinical.{1,10}trial"], weight=0.9),
    _rule("fintech",
          ["fintech", "financial technology", "banking", "payments", "digital finance"],
          [r"(fraud|credit).{1,10}(detection|scoring)"], weight=0.9),
]


def load_rules(path: Optional[Union[str, Path]] = None) -> List[CategoryRule]:
    """Rules from YAML, or the defaults when no path is given."""
    if not path:
        return list(DEFAULT_RULES)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read category rules {path}: {e}") from e
    return [CategoryRule.from_dict(category, values or {}) for category, values in data.items()]


class CategorizationMethod(str, Enum):
    AI = "ai"
    KEYWORD = "keyword"
    EMBEDDING = "embedding"
    HYBRID = "hybrid"
    AUTO = "auto"


@dataclass(frozen=True)
class TextFeatures:
    """Inputs to automatic method selection."""
    length: int
    strong_signal_count: int
    llm_available: bool = False

    @classmethod
    def from_text(cls, text: str, llm_available: bool = False) -> "TextFeatures":
        lowered = (text or "").lower()
        strong = sum(1 for keyword in STRONG_KEYWORDS if keyword in lowered)
        return cls(length=len(text or ""), strong_signal_count=strong, llm_available=llm_available)


def select_method(features: TextFeatures, long_text_chars: int = 500) -> CategorizationMethod:
    """
    Pick a categorization method from text features.

    >>> select_method(TextFeatures(length=900, strong_signal_count=0, llm_available=True))
    <CategorizationMethod.AI: 'ai'>
    >>> select_method(TextFeatures(length=120, strong_signal_count=2))
    <CategorizationMethod.KEYWORD: 'keyword'>
    >>> select_method(TextFeatures(length=120, strong_signal_count=0))
    <CategorizationMethod.HYBRID: 'hybrid'>
    """
    if features.llm_available and features.length > long_text_chars and features.strong_signal_count == 0:
        return CategorizationMethod.AI
    if features.strong_signal_count > 0:
        return CategorizationMethod.KEYWORD
    return CategorizationMethod.HYBRID


def extract_domain_tags(text: str) -> List[str]:
    return [tag for tag, pattern in DOMAIN_TAG_PATTERNS.items() if pattern.search(text or "")]
