"""
Text utilities shared by the engines.

Tokenisation, sentence splitting, keyword extraction, syllable counting and
vector similarity helpers. Kept dependency-light: scikit-learn only supplies
the English stop-word list, numpy the vector math.
"""

import hashlib
import re
from collections import Counter
from functools import lru_cache
from typing import Iterable, List, Optional, Sequence, Set

import numpy as np
from sklearn.feature_extraction.text import ENGLISH_STOP_WORDS

STOP_WORDS = frozenset(ENGLISH_STOP_WORDS)

WORD_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9'\-]*")
SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+|\n+")
PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")
WHITESPACE_RE = re.compile(r"\s+")
VOWEL_GROUP_RE = re.compile(r"[aeiouy]+")


def normalize_whitespace(text: str) -> str:
    return WHITESPACE_RE.sub(" ", text or "").strip()


def tokenize(text: str) -> List[str]:
    """Lowercased word tokens."""
    return [m.group(0).lower().strip("'-") for m in WORD_RE.finditer(text or "")]


def split_sentences(text: str) -> List[str]:
    """Split on terminal punctuation and line breaks."""
    parts = SENTENCE_SPLIT_RE.split(text or "")
    return [p.strip() for p in parts if p and p.strip()]


def split_paragraphs(text: str) -> List[str]:
    return [p.strip() for p in PARAGRAPH_SPLIT_RE.split(text or "") if p.strip()]


def extract_keywords(text: str, limit: int = 10, min_length: int = 3) -> List[str]:
    """Most frequent non-stop-words, ties broken by first appearance."""
    tokens = [t for t in tokenize(text) if len(t) >= min_length and t not in STOP_WORDS and not t.isdigit()]
    if not tokens:
        return []
    counts = Counter(tokens)
    first_seen = {}
    for i, t in enumerate(tokens):
        first_seen.setdefault(t, i)
    ranked = sorted(counts, key=lambda t: (-counts[t], first_seen[t]))
    return ranked[:limit]


@lru_cache(maxsize=4096)
def count_syllables(word: str) -> int:
    """Vowel-group syllable estimate; a trailing silent 'e' is dropped."""
    word = word.lower().strip()
    if not word:
        return 0
    if len(word) <= 3:
        return 1
    if word.endswith("e") and not word.endswith("le"):
        word = word[:-1]
    return max(1, len(VOWEL_GROUP_RE.findall(word)))


@lru_cache(maxsize=1024)
def _term_pattern(term: str) -> "re.Pattern[str]":
    return re.compile(r"\b" + re.escape(term) + r"\b")


def count_term_occurrences(text_lower: str, terms: Iterable[str]) -> int:
    """Whole-word occurrences of every term in already-lowercased text."""
    return sum(len(_term_pattern(term).findall(text_lower)) for term in terms)


def contains_term(text_lower: str, term: str) -> bool:
    return _term_pattern(term).search(text_lower) is not None


def capitalize_words(text: str) -> str:
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), text)


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    set_a: Set[str] = set(a)
    set_b: Set[str] = set(b)
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def cosine_similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    """Cosine similarity; 0.0 for missing, zero or mismatched vectors."""
    if a is None or b is None:
        return 0.0
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape or va.size == 0:
        return 0.0
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def normalize_vector(vector: Sequence[float]) -> List[float]:
    v = np.asarray(vector, dtype=float)
    norm = float(np.linalg.norm(v))
    if norm == 0.0:
        return v.tolist()
    return (v / norm).tolist()


def content_hash(text: str) -> str:
    """sha256 over whitespace-normalised, lowercased text."""
    return hashlib.sha256(normalize_whitespace(text).lower().encode("utf-8")).hexdigest()
