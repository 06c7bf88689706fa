"""Exception taxonomy shared by the analysis engines and adapters.

Insufficient history is not an error anywhere in stockpilot: indicators
come back empty and ratios come back as ``None``.  Only malformed caller
input and failing external services raise.
"""


class StockPilotError(Exception):
    """Base class for all stockpilot errors."""


class InvalidInputError(StockPilotError, ValueError):
    """A caller supplied an out-of-range or malformed value.

    ``field`` names the offending input so callers can report it.
    """

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class ExternalServiceError(StockPilotError):
    """A data provider or the sentiment service failed or timed out."""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"{service}: {message}")


class SentimentParseError(StockPilotError, ValueError):
    """The sentiment service answered with something that is not a verdict."""
