"""
Error taxonomy for the analytics engine and its collaborators
"""


class PortfolioAnalyticsError(Exception):
    """Base class for all dashboard errors"""


class DataUnavailable(PortfolioAnalyticsError):
    """A single ticker or window has no resolvable price data"""

    def __init__(self, ticker: str, reason: str = "no data"):
        self.ticker = ticker
        self.reason = reason
        super().__init__(f"{ticker}: {reason}")


class UpstreamFailure(PortfolioAnalyticsError):
    """The price provider or record store is unusable for this computation"""


class ConfigurationError(PortfolioAnalyticsError):
    """Required configuration is missing or invalid"""
