"""
Rating-driven sentiment classification

4-5 stars is positive and 1-3 stars is negative. Keywords in the review text
only move the score within that side and are recorded as signals for audit.
"""
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


@dataclass
class SentimentResult:
    sentiment: Sentiment
    score: float
    signals: List[str] = field(default_factory=list)


POSITIVE_THRESHOLD = 4

BASE_SCORES = {1: -0.9, 2: -0.6, 3: -0.3, 4: 0.5, 5: 0.8}

KEYWORD_WEIGHT = 0.1
MIN_MAGNITUDE = 0.05

POSITIVE_KEYWORDS = [
    "amazing", "delicious", "excellent", "friendly", "fantastic", "great",
    "love", "loved", "perfect", "recommend", "best", "fresh", "wonderful",
]

NEGATIVE_KEYWORDS = [
    "cold", "rude", "slow", "dirty", "bland", "overpriced", "terrible",
    "awful", "wait", "waited", "stale", "disappointed", "disappointing", "burnt",
]

# Topics an owner will want to apologise for regardless of star rating
APOLOGY_WORTHY_KEYWORDS = [
    "food poisoning", "sick", "hair in", "bug", "cockroach", "raw",
    "allergic", "undercooked", "never again", "worst",
]


def _contains(text: str, keyword: str) -> bool:
    return re.search(r"\b" + re.escape(keyword) + r"\b", text) is not None


def classify_sentiment(rating: int, text: str = "") -> SentimentResult:
    """
    Classify a review.

    Args:
        rating: Star rating, integer 1-5
        text: Review body, may be empty

    Returns:
        SentimentResult with a score in [-1.0, 1.0]

    Raises:
        ValueError: If the rating is outside 1-5
    """
    if rating not in BASE_SCORES:
        raise ValueError(f"Rating must be an integer from 1 to 5, got {rating!r}")

    sentiment = Sentiment.POSITIVE if rating >= POSITIVE_THRESHOLD else Sentiment.NEGATIVE
    score = BASE_SCORES[rating]
    signals: List[str] = [f"rating:{rating}"]

    normalized = (text or "").strip().lower()
    if not normalized:
        signals.append("empty_text")
        return SentimentResult(sentiment=sentiment, score=score, signals=signals)

    for keyword in POSITIVE_KEYWORDS:
        if _contains(normalized, keyword):
            score += KEYWORD_WEIGHT
            signals.append(f"positive_keyword:{keyword}")

    for keyword in NEGATIVE_KEYWORDS:
        if _contains(normalized, keyword):
            score -= KEYWORD_WEIGHT
            signals.append(f"negative_keyword:{keyword}")

    for keyword in APOLOGY_WORTHY_KEYWORDS:
        if _contains(normalized, keyword):
            score -= 2 * KEYWORD_WEIGHT
            signals.append(f"apology_worthy:{keyword}")

    if "!" in normalized:
        signals.append("exclamation")

    # Text never crosses the rating boundary
    if sentiment == Sentiment.POSITIVE:
        score = min(1.0, max(MIN_MAGNITUDE, score))
    else:
        score = max(-1.0, min(-MIN_MAGNITUDE, score))

    return SentimentResult(sentiment=sentiment, score=round(score, 3), signals=signals)
