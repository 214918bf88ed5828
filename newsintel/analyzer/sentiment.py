"""Lexical sentiment built on VADER plus keyword emotion counts."""

from dataclasses import dataclass
from typing import Dict, Optional

from vaderSentiment.vaderSentiment import SentimentIntensityAnalyzer

from newsintel.core.text import count_term_occurrences, split_sentences

from .lexicons import EMOTION_KEYWORDS

# Keyword hits at which an emotion saturates to 1.0.
EMOTION_SATURATION = 10


@dataclass
class SentimentResult:
    polarity: float = 0.0
    subjectivity: float = 0.5
    confidence: float = 0.3
    emotion: Optional[Dict[str, float]] = None


def detect_emotions(text: str) -> Dict[str, float]:
    """Eight emotion scores in [0, 1] from whole-word keyword counts."""
    lowered = text.lower()
    return {
        emotion: min(1.0, count_term_occurrences(lowered, words) / EMOTION_SATURATION)
        for emotion, words in EMOTION_KEYWORDS.items()
    }


class SentimentAnalyzer:
    """
    Document polarity in [-1, 1] with a subjectivity estimate.

    ``basic`` depth uses VADER's compound score for the whole text. Deeper
    analysis averages sentence compounds weighted by their strength and
    estimates subjectivity from the share of sentiment-bearing words.
    """

    def __init__(self):
        self._vader = SentimentIntensityAnalyzer()

    def analyze(self, text: str, depth: str = "standard") -> SentimentResult:
        scores = self._vader.polarity_scores(text)
        polarity = max(-1.0, min(1.0, scores["compound"]))
        if depth == "basic":
            return SentimentResult(polarity=polarity, subjectivity=0.5, confidence=abs(polarity))

        sentences = split_sentences(text) or [text]
        total_score = 0.0
        total_weight = 0.0
        subjectivity_sum = 0.0
        for sentence in sentences:
            sentence_scores = self._vader.polarity_scores(sentence)
            compound = sentence_scores["compound"]
            weight = abs(compound) + 1
            total_score += compound * weight
            total_weight += weight
            subjectivity_sum += sentence_scores["pos"] + sentence_scores["neg"]

        polarity = max(-1.0, min(1.0, total_score / total_weight))
        subjectivity = min(1.0, subjectivity_sum / len(sentences))
        confidence = abs(polarity) * (1 - abs(0.5 - subjectivity))
        return SentimentResult(
            polarity=round(polarity, 4),
            subjectivity=round(subjectivity, 4),
            confidence=round(confidence, 4),
            emotion=detect_emotions(text) if depth == "comprehensive" else None,
        )
