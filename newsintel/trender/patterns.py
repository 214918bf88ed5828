"""Topic pattern table, keyword filters and the keyword sentiment used per topic."""

import re
from typing import Dict, List, Sequence, Tuple

from newsintel.core.text import STOP_WORDS, capitalize_words, contains_term, extract_keywords

TOPIC_PATTERNS: Dict[str, Tuple[str, ...]] = {
    "Artificial Intelligence": ("artificial intelligence", "ai development", "ai research", "ai breakthrough"),
    "Machine Learning": ("machine learning", "ml model", "supervised learning", "unsupervised learning"),
    "Deep Learning": ("deep learning", "neural network", "deep neural", "convolutional", "transformer"),
    "Large Language Models": ("large language model", "llm", "gpt", "chatbot", "foundation model"),
    "Natural Language Processing": ("nlp", "natural language", "text processing", "language model"),
    "Computer Vision": ("computer vision", "image recognition", "object detection", "visual ai"),
    "Robotics": ("robotics", "robot", "automation", "autonomous system"),
    "AI Ethics": ("ai ethics", "ai bias", "ai fairness", "responsible ai", "ai governance"),
    "AI Startups": ("ai startup", "ai company", "funding", "investment", "venture capital"),
    "AI Research": ("research", "study", "paper", "findings", "discovery", "breakthrough"),
    "AI Industry": ("industry", "business", "enterprise", "commercial", "market"),
    "Cybersecurity AI": ("cybersecurity", "security ai", "threat detection", "fraud detection"),
    "Healthcare AI": ("healthcare ai", "medical ai", "diagnostic ai", "drug discovery"),
    "Autonomous Vehicles": ("autonomous vehicle", "self-driving", "auto pilot", "vehicle ai"),
    "AI Regulation": ("ai regulation", "ai policy", "ai law", "ai compliance", "ai governance"),
    "Quantum Computing": ("quantum computing", "quantum ai", "quantum algorithm", "quantum machine"),
}

AI_RELEVANT_TERMS = (
    "ai", "artificial", "intelligence", "machine", "learning", "deep", "neural",
    "network", "algorithm", "data", "model", "training", "technology", "tech",
    "software", "hardware", "computing", "computer", "digital", "innovation",
    "research", "development", "breakthrough", "discovery", "science", "startup",
    "company", "platform", "system", "analysis", "automation", "robotics",
    "nlp", "vision", "processing", "cloud", "quantum", "blockchain", "cyber",
    "security", "privacy", "ethics", "governance", "regulation", "policy",
)

COMMON_WORDS = frozenset({
    "said", "use", "each", "time", "work", "new", "way", "may", "say", "come",
    "only", "think", "know", "take", "year", "good", "see", "look", "back",
    "first", "well", "even", "want", "give", "day", "most",
})

POSITIVE_WORDS = (
    "breakthrough", "success", "achievement", "innovation", "improve",
    "advance", "better", "effective", "powerful",
)
NEGATIVE_WORDS = (
    "concern", "risk", "problem", "issue", "fail", "threat",
    "danger", "criticism", "controversy",
)
EMOTIONAL_WORDS = POSITIVE_WORDS + NEGATIVE_WORDS + ("amazing", "terrible", "incredible", "awful")

MAX_KEYWORDS = 15
FALLBACK_TOPICS = 3
FALLBACK_KEYWORD_LENGTH = 6
TECHNICAL_TERM_LENGTH = 8

_NON_WORD_RE = re.compile(r"[^\w\s]")
_SPACES_RE = re.compile(r"\s+")


def normalize_topic_name(topic: str) -> str:
    """
    Merge key for topics: lowercase, punctuation stripped, spaces collapsed.

    >>> normalize_topic_name("  AI Ethics! ")
    'ai ethics'
    >>> normalize_topic_name("Self-Driving   Cars")
    'selfdriving cars'
    """
    return _SPACES_RE.sub(" ", _NON_WORD_RE.sub("", topic.lower())).strip()


def is_relevant_to_ai(word: str) -> bool:
    lowered = word.lower()
    if len(lowered) >= TECHNICAL_TERM_LENGTH:
        return True
    return any(term in lowered or lowered in term for term in AI_RELEVANT_TERMS)


def extract_relevant_keywords(text: str) -> List[str]:
    """Frequent content words that look technical."""
    return [
        k for k in extract_keywords(text, limit=MAX_KEYWORDS * 2, min_length=3)
        if k not in COMMON_WORDS and k not in STOP_WORDS and is_relevant_to_ai(k)
    ][:MAX_KEYWORDS]


def identify_topics(keywords: Sequence[str], text: str) -> List[str]:
    """Pattern-table topics found in the text, else up to three capitalised long keywords."""
    lowered = text.lower()
    topics = [
        topic for topic, patterns in TOPIC_PATTERNS.items()
        if any(contains_term(lowered, pattern) for pattern in patterns)
    ]
    if topics:
        return topics
    significant = [k for k in keywords if len(k) >= FALLBACK_KEYWORD_LENGTH]
    return [capitalize_words(k) for k in significant[:FALLBACK_TOPICS]]


def keyword_sentiment(text: str) -> Tuple[float, float]:
    """(polarity, subjectivity) from fixed positive, negative and emotional word lists."""
    lowered = text.lower()
    polarity = 0.1 * sum(1 for w in POSITIVE_WORDS if w in lowered)
    polarity -= 0.1 * sum(1 for w in NEGATIVE_WORDS if w in lowered)
    emotional = sum(1 for w in EMOTIONAL_WORDS if w in lowered)
    return polarity, min(1.0, 0.3 + emotional * 0.1)


def topic_sentiment(texts: Sequence[str]) -> Dict[str, float]:
    if not texts:
        return {"polarity": 0.0, "subjectivity": 0.5}
    scored = [keyword_sentiment(t) for t in texts]
    return {
        "polarity": round(sum(p for p, _ in scored) / len(scored), 4),
        "subjectivity": round(sum(s for _, s in scored) / len(scored), 4),
    }
