"""
Heuristic quality sub-analyses.

Every function is pure and returns a small dataclass. ``default_*`` helpers
give the documented fallback value used when a sub-analysis fails.
"""

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from newsintel.core.text import count_syllables, count_term_occurrences, split_paragraphs, split_sentences

from .lexicons import BIAS_GROUPS, FACTUAL_INDICATORS, REFERENCE_TERMS, TRANSITION_WORDS, VERIFIABLE_INDICATORS

LONG_WORD_RE = re.compile(r"\b[a-z]{4,}\b")
ALPHA_WORD_RE = re.compile(r"\b[a-z']+\b")

# Upper grade bound for each reading level, checked in order.
READING_LEVELS = (
    (6.0, "elementary"),
    (9.0, "middle-school"),
    (13.0, "high-school"),
    (16.0, "college"),
)


@dataclass
class Readability:
    score: float = 50.0
    level: str = "college"
    flesch_kincaid: float = 12.0
    automated: float = 12.0


@dataclass
class GrammarIssue:
    type: str
    message: str
    start: int
    end: int
    suggestion: Optional[str] = None


@dataclass
class Grammar:
    score: float = 70.0
    errors: List[GrammarIssue] = field(default_factory=list)


@dataclass
class Claim:
    claim: str
    confidence: float = 0.7


@dataclass
class Factuality:
    score: float = 60.0
    claims: List[Claim] = field(default_factory=list)
    verifiability: float = 0.5


@dataclass
class Bias:
    score: float = 20.0
    type: str = "neutral"
    indicators: List[str] = field(default_factory=list)


@dataclass
class Coherence:
    score: float = 50.0
    structure: float = 50.0
    flow: float = 50.0
    consistency: float = 50.0


@dataclass
class QualityReport:
    overall: float = 50.0
    readability: Readability = field(default_factory=Readability)
    grammar: Grammar = field(default_factory=Grammar)
    factuality: Factuality = field(default_factory=Factuality)
    bias: Bias = field(default_factory=Bias)
    coherence: Coherence = field(default_factory=Coherence)


def reading_level(grade: float) -> str:
    """
    Map a Flesch-Kincaid grade to a reading level.

    >>> reading_level(5.2)
    'elementary'
    >>> reading_level(14.0)
    'college'
    >>> reading_level(18.5)
    'graduate'
    """
    for upper, level in READING_LEVELS:
        if grade <= upper:
            return level
    return "graduate"


def analyze_readability(text: str) -> Readability:
    sentences = split_sentences(text)
    words = text.split()
    if not sentences or not words:
        return Readability()
    syllables = sum(count_syllables(w) for w in ALPHA_WORD_RE.findall(text.lower()))
    words_per_sentence = len(words) / len(sentences)
    syllables_per_word = syllables / len(words)
    chars_per_word = len(re.sub(r"\s", "", text)) / len(words)

    flesch_kincaid = 0.39 * words_per_sentence + 11.8 * syllables_per_word - 15.59
    automated = 4.71 * chars_per_word + 0.5 * words_per_sentence - 21.43
    # Lower grade reads easier, so the score runs the other way.
    score = max(0.0, min(100.0, 100.0 - flesch_kincaid * 5))
    return Readability(
        score=score,
        level=reading_level(flesch_kincaid),
        flesch_kincaid=round(flesch_kincaid, 2),
        automated=round(automated, 2),
    )


def analyze_grammar(text: str, long_sentence_words: int = 40, max_errors: int = 10) -> Grammar:
    """Capitalisation, terminal punctuation and overlong sentence checks."""
    sentences = split_sentences(text)
    if not sentences:
        return Grammar()
    errors: List[GrammarIssue] = []
    for sentence in sentences:
        if not sentence[0].isupper() and not sentence[0].isdigit():
            errors.append(GrammarIssue("capitalization", "Sentence should start with a capital letter", 0, 1))
        if sentence[-1] not in ".!?":
            errors.append(GrammarIssue(
                "punctuation", "Sentence should end with proper punctuation", len(sentence) - 1, len(sentence)
            ))
        if len(sentence.split()) > long_sentence_words:
            errors.append(GrammarIssue(
                "sentence_length",
                "Sentence is very long and may be hard to read",
                0,
                len(sentence),
                suggestion="Consider breaking into shorter sentences",
            ))
    score = max(0.0, 100.0 - (len(errors) / len(sentences)) * 20)
    return Grammar(score=score, errors=errors[:max_errors])


def extract_claims(text: str, max_claims: int = 5) -> List[Claim]:
    claims = []
    for sentence in split_sentences(text):
        if len(sentence) > 20 and count_term_occurrences(sentence.lower(), FACTUAL_INDICATORS) > 0:
            claims.append(Claim(claim=sentence))
        if len(claims) >= max_claims:
            break
    return claims


def verifiability(text: str) -> float:
    """Density of source and evidence terms, 1.0 at one hit per hundred words."""
    words = len(text.split())
    if not words:
        return 0.0
    hits = count_term_occurrences(text.lower(), VERIFIABLE_INDICATORS)
    return min(1.0, hits / (words * 0.01))


def analyze_factuality(text: str, max_claims: int = 5) -> Factuality:
    ratio = verifiability(text)
    score = 70.0
    if ratio < 0.3:
        score -= 20
    if ratio < 0.1:
        score -= 30
    if count_term_occurrences(text.lower(), REFERENCE_TERMS) > 0:
        score += 15
    return Factuality(
        score=max(0.0, min(100.0, score)),
        claims=extract_claims(text, max_claims),
        verifiability=round(ratio, 3),
    )


def analyze_bias(text: str) -> Bias:
    """
    Keyword-density bias estimate; 0 is neutral, 100 strongly slanted.

    The reported type is the indicator group contributing the most points.
    """
    lowered = text.lower()
    contributions: Dict[str, float] = {}
    indicators: List[str] = []
    for label, bias_type, words, floor, points in BIAS_GROUPS:
        count = count_term_occurrences(lowered, words)
        if count > floor:
            contributions[bias_type] = contributions.get(bias_type, 0.0) + count * points
            indicators.append(label)
    if not contributions:
        return Bias(score=0.0, type="neutral", indicators=[])
    dominant = max(contributions.items(), key=lambda kv: kv[1])[0]
    return Bias(score=min(100.0, sum(contributions.values())), type=dominant, indicators=indicators)


def terminology_consistency(text: str) -> float:
    words = LONG_WORD_RE.findall(text.lower())
    if not words:
        return 0.0
    counts = Counter(words)
    repeated = sum(1 for c in counts.values() if c > 1)
    return min(100.0, repeated / len(counts) * 200)


def analyze_coherence(text: str) -> Coherence:
    sentences = split_sentences(text)
    if not sentences:
        return Coherence()
    paragraphs = split_paragraphs(text)
    structure = min(100.0, len(sentences) / max(len(paragraphs), 1) * 20)
    transitions = count_term_occurrences(text.lower(), TRANSITION_WORDS)
    flow = min(100.0, transitions / len(sentences) * 1000)
    consistency = terminology_consistency(text)
    return Coherence(
        score=round((structure + flow + consistency) / 3),
        structure=structure,
        flow=flow,
        consistency=consistency,
    )


def overall_quality(report: QualityReport, weights: Dict[str, float]) -> float:
    """Weighted sum of the sub-scores; bias counts inversely."""
    overall = (
        report.readability.score * weights["readability"]
        + report.grammar.score * weights["grammar"]
        + report.factuality.score * weights["factuality"]
        + (100.0 - report.bias.score) * weights["bias"]
        + report.coherence.score * weights["coherence"]
    )
    return float(max(0.0, min(100.0, round(overall))))
