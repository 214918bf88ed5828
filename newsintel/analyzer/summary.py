"""Extractive summarization and key-point selection."""

import math
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from newsintel.core.text import STOP_WORDS, count_term_occurrences, split_sentences

from .lexicons import KEY_POINT_INDICATORS

NON_WORD_RE = re.compile(r"[^\w\s]")
PROPER_NOUN_RE = re.compile(r"\s[A-Z][a-z]+")
IDEAL_SENTENCE_WORDS = 20


@dataclass
class Summary:
    short: str = ""
    medium: str = ""
    long: str = ""
    key_points: List[str] = field(default_factory=list)
    method: str = "extractive"


def word_frequencies(text: str) -> Dict[str, float]:
    """Frequencies of words longer than three characters, scaled so the top word is 1.0."""
    words = [w for w in NON_WORD_RE.sub(" ", text.lower()).split() if len(w) > 3]
    if not words:
        return {}
    counts = Counter(words)
    top = max(counts.values())
    return {w: c / top for w, c in counts.items()}


def score_sentences(sentences: List[str], text: str) -> List[Tuple[int, float]]:
    """(index, score) pairs: frequency mass, boosted early, penalised away from 20 words."""
    frequencies = word_frequencies(text)
    total = len(sentences)
    scored = []
    for index, sentence in enumerate(sentences):
        words = sentence.lower().split()
        score = sum(frequencies.get(NON_WORD_RE.sub("", w), 0.0) for w in words)
        score *= 1 + (1 - index / total) * 0.3
        length_penalty = abs(len(words) - IDEAL_SENTENCE_WORDS) / IDEAL_SENTENCE_WORDS
        score *= max(0.0, 1 - length_penalty * 0.2)
        scored.append((index, score))
    return scored


def extract_key_points(text: str, count: int = 5) -> List[str]:
    """Sentences with importance markers first, then ones carrying numbers or names."""
    sentences = split_sentences(text)
    points = [s for s in sentences if count_term_occurrences(s.lower(), KEY_POINT_INDICATORS) > 0]
    if len(points) < count:
        for sentence in sentences:
            if sentence in points:
                continue
            if re.search(r"\d", sentence) or PROPER_NOUN_RE.search(sentence):
                points.append(sentence)
            if len(points) >= count:
                break
    return points[:count]


def extractive_summary(text: str, max_sentences: int = 5, ratio: float = 0.3, key_points: int = 5) -> Summary:
    """
    Pick the top-scoring sentences and emit three summary lengths.

    The short summary takes the best two sentences, medium the best four,
    long every selected sentence.
    """
    sentences = split_sentences(text)
    if not sentences:
        return Summary()
    keep = max(1, min(max_sentences, math.ceil(len(sentences) * ratio)))
    ranked = sorted(score_sentences(sentences, text), key=lambda pair: (-pair[1], pair[0]))[:keep]
    top = [sentences[i] for i, _ in ranked]
    return Summary(
        short=" ".join(top[:2]),
        medium=" ".join(top[:4]),
        long=" ".join(top),
        key_points=extract_key_points(text, key_points),
    )


def significant_words(text: str) -> Dict[str, float]:
    """Scored keyword candidates excluding stop words."""
    return {w: s for w, s in word_frequencies(text).items() if w not in STOP_WORDS}
