"""LLM-based sentiment analysis using Claude.

Sends the latest technical and fundamental picture to the model and asks
for a strict JSON verdict.  Any failure (missing key, API error, timeout,
unparseable reply) surfaces as ``ExternalServiceError`` so the pipeline
can switch to the rule-based fallback.
"""

from __future__ import annotations

import json
from typing import Optional

from stockpilot.analysis.sentiment import parse_sentiment_response
from stockpilot.config import SETTINGS, Keys
from stockpilot.errors import ExternalServiceError, SentimentParseError
from stockpilot.models import FinancialRatios, SentimentResult, TechnicalSnapshot
from stockpilot.utils.logger import setup_logger

logger = setup_logger("llm_sentiment")

SENTIMENT_SYSTEM_PROMPT = """\
You are a senior equity research analyst performing sentiment analysis.
You will receive the latest technical indicators and financial ratios
for a stock.

Return a JSON object with EXACTLY this structure (no markdown, no
commentary, just valid JSON):

{
  "sentiment": "<bullish|bearish|neutral>",
  "confidence": <float from 0.0 to 1.0>,
  "reasoning": "<2-4 sentences citing specific data points>",
  "key_factors": ["<factor 1>", "<factor 2>"],
  "risk_factors": ["<risk 1>", "<risk 2>"]
}

Be objective and evidence-based. Do not invent data points. Indicators
or ratios given as null are unavailable.\
"""


class LLMSentimentClient:
    """Analyze sentiment using Claude as the reasoning engine."""

    def __init__(
        self,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ):
        cfg = SETTINGS["llm"]
        self.model = model or cfg["model"]
        self.timeout = float(timeout if timeout is not None else cfg["timeout_seconds"])
        self.max_tokens = int(max_tokens or cfg["max_tokens"])
        self._client = None

    @property
    def client(self):
        if self._client is None:
            if not Keys.ANTHROPIC:
                raise ExternalServiceError(
                    "anthropic", "ANTHROPIC_API_KEY not set. Add it to your .env file."
                )
            import anthropic
            self._client = anthropic.Anthropic(
                api_key=Keys.ANTHROPIC, timeout=self.timeout, max_retries=0,
            )
        return self._client

    @staticmethod
    def build_prompt(
        symbol: str,
        snapshot: TechnicalSnapshot,
        ratios: FinancialRatios,
        current_price: Optional[float] = None,
    ) -> str:
        """Assemble the user prompt."""
        sections = [f"# Data for {symbol}"]
        if current_price is not None:
            sections.append(f"Current price: {current_price:.2f}")
        sections.append("## Technical indicators\n" + json.dumps(snapshot.to_dict(), indent=2))
        sections.append("## Financial ratios\n" + json.dumps(ratios.to_dict(), indent=2))
        return "\n\n".join(sections)

    def analyze(
        self,
        symbol: str,
        snapshot: TechnicalSnapshot,
        ratios: FinancialRatios,
        current_price: Optional[float] = None,
    ) -> SentimentResult:
        logger.info("Running LLM sentiment analysis for %s", symbol)
        prompt = self.build_prompt(symbol, snapshot, ratios, current_price)
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=SENTIMENT_SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt}],
            )
            raw_text = response.content[0].text
        except ExternalServiceError:
            raise
        except Exception as e:
            logger.error("LLM sentiment failed for %s: %s", symbol, e)
            raise ExternalServiceError("anthropic", str(e)) from e

        try:
            return parse_sentiment_response(raw_text)
        except SentimentParseError as e:
            logger.error("Failed to parse LLM response for %s: %s", symbol, e)
            logger.debug("Raw response: %s", raw_text)
            raise ExternalServiceError("anthropic", f"unparseable reply: {e}") from e
