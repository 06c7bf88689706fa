"""Sentiment verdict parsing, scoring and the rule-based fallback.

The sentiment provider is asked for a JSON object.  ``parse_sentiment_response``
accepts exactly that (optionally wrapped in a markdown code fence or
surrounded by prose) and raises ``SentimentParseError`` for anything else;
there is no keyword guessing.  Callers that cannot get a parsed verdict use
``fallback_sentiment``, which is deterministic.
"""

from __future__ import annotations

import json
import math
import re
from typing import Any, List

from stockpilot.errors import SentimentParseError
from stockpilot.models import Sentiment, SentimentResult
from stockpilot.utils.logger import setup_logger

logger = setup_logger("sentiment")

# Fixed mapping from verdict to the sentiment component score.  The
# provider's own confidence is deliberately not blended in.
SENTIMENT_SCORES = {
    Sentiment.BULLISH: 0.8,
    Sentiment.BEARISH: 0.2,
    Sentiment.NEUTRAL: 0.5,
}

_FALLBACK_BULLISH_AT = 0.6
_FALLBACK_BEARISH_AT = 0.4

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*\n?|\n?```\s*$")


def sentiment_score(sentiment: Sentiment) -> float:
    return SENTIMENT_SCORES[Sentiment(sentiment)]


def _string_list(value: Any, key: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise SentimentParseError(f"'{key}' must be a list of strings")
    return value


def parse_sentiment_response(text: str) -> SentimentResult:
    """Parse a provider reply into a ``SentimentResult``.

    Expected shape::

        {"sentiment": "bullish|bearish|neutral", "confidence": 0.0-1.0,
         "reasoning": "...", "key_factors": [...], "risk_factors": [...]}
    """
    if not isinstance(text, str) or not text.strip():
        raise SentimentParseError("empty response")

    raw = _FENCE_RE.sub("", text.strip()).strip()
    start, end = raw.find("{"), raw.rfind("}")
    if start == -1 or end <= start:
        raise SentimentParseError("no JSON object in response")
    try:
        data = json.loads(raw[start:end + 1])
    except json.JSONDecodeError as e:
        raise SentimentParseError(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise SentimentParseError("response JSON is not an object")

    label = data.get("sentiment")
    if not isinstance(label, str):
        raise SentimentParseError("missing 'sentiment'")
    try:
        sentiment = Sentiment(label.strip().lower())
    except ValueError:
        raise SentimentParseError(f"unknown sentiment {label!r}") from None

    confidence = data.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise SentimentParseError("'confidence' must be a number")
    if not math.isfinite(confidence) or not 0.0 <= confidence <= 1.0:
        raise SentimentParseError(f"'confidence' must be within [0, 1], got {confidence}")

    reasoning = data.get("reasoning") or ""
    if not isinstance(reasoning, str):
        raise SentimentParseError("'reasoning' must be a string")

    return SentimentResult(
        sentiment=sentiment,
        confidence=float(confidence),
        reasoning=reasoning,
        key_factors=_string_list(data.get("key_factors"), "key_factors"),
        risk_factors=_string_list(data.get("risk_factors"), "risk_factors"),
        source="llm",
    )


def fallback_sentiment(technical_score: float, fundamental_score: float) -> SentimentResult:
    """Deterministic sentiment from the technical and fundamental scores."""
    average = (technical_score + fundamental_score) / 2
    if average >= _FALLBACK_BULLISH_AT:
        sentiment = Sentiment.BULLISH
    elif average <= _FALLBACK_BEARISH_AT:
        sentiment = Sentiment.BEARISH
    else:
        sentiment = Sentiment.NEUTRAL

    logger.info("Using rule-based sentiment: %s (avg score %.2f)", sentiment.value, average)
    return SentimentResult(
        sentiment=sentiment,
        confidence=0.5,
        reasoning=(
            f"Rule-based estimate from technical ({technical_score:.2f}) and "
            f"fundamental ({fundamental_score:.2f}) scores; sentiment service unavailable."
        ),
        key_factors=["Derived from technical and fundamental scores"],
        risk_factors=["No external sentiment data"],
        source="fallback",
    )
