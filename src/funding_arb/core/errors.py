class FundingArbError(Exception):
    """Base class for errors raised by the arbitrage engine."""


class ConfigurationError(FundingArbError):
    """Invalid or incomplete configuration. Raised before the engine starts."""


class AggregationError(FundingArbError):
    """A market-data refresh could not be run at all."""


class ExecutionError(FundingArbError):
    """A connector failed to place or close an order."""
