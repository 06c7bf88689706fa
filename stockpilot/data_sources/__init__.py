"""Data source adapters for prices, fundamentals, sentiment and storage."""

from .market_data import MarketDataClient
from .fundamentals import FundamentalsClient
from .llm_sentiment import LLMSentimentClient
from .sink import JsonlAnalysisSink, MemorySink
