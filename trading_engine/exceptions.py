"""
Error taxonomy for the trading engine.
"""


class TradingEngineError(Exception):
    """Base class for trading engine errors."""


class DataUnavailable(TradingEngineError):
    """No historical or live candles for the requested window or pair."""

    def __init__(self, pair: str, message: str = "No market data available"):
        self.pair = pair
        super().__init__(f"{message} for {pair}")


class GatewayError(TradingEngineError):
    """Network, timeout or HTTP failure reported by the exchange gateway."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"{operation} failed: {message}")


class RiskBreach(TradingEngineError):
    """A drawdown or daily-loss circuit breaker tripped."""

    def __init__(self, limit: str, value: float, threshold: float):
        self.limit = limit
        self.value = value
        self.threshold = threshold
        super().__init__(f"{limit} {value:.2f}% exceeded limit of {threshold:.2f}%")


class ConfigurationError(TradingEngineError):
    """A strategy definition cannot be evaluated."""
