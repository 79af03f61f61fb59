"""
Position sizing and portfolio risk arithmetic.
"""
from typing import Callable, Iterable, List, Optional, Sequence

from trading_engine.models import Position, Strategy, StrategyType

CorrelationPolicy = Callable[[str, str], bool]

RSI_STOP_WIDENING = 1.25
BREAKOUT_STOP_WIDENING = 1.5


def base_asset(pair: str) -> str:
    """'BTC-USDT', 'BTC/USDT' and 'BTC_USDT' all give 'BTC'."""
    for separator in ('-', '/', '_'):
        if separator in pair:
            return pair.split(separator)[0].upper()
    return pair.upper()


class GroupCorrelationPolicy:
    """Two pairs are correlated when they share a base asset or a correlated group."""

    def __init__(self, groups: Sequence[Sequence[str]]):
        self.groups = [set(asset.upper() for asset in group) for group in groups]

    def __call__(self, pair_a: str, pair_b: str) -> bool:
        asset_a = base_asset(pair_a)
        asset_b = base_asset(pair_b)
        if asset_a == asset_b:
            return True
        return any(asset_a in group and asset_b in group for group in self.groups)


def correlation_ratio(pair: str, positions: Iterable[Position], policy: CorrelationPolicy) -> float:
    """Share of open positions correlated with `pair`, 0 when there are none."""
    open_positions = [p for p in positions if p.is_open]
    if not open_positions:
        return 0.0
    correlated = [p for p in open_positions if policy(pair, p.symbol)]
    return len(correlated) / len(open_positions)


def stop_distance(strategy: Strategy, price: float, stop_loss_percent: float) -> float:
    """
    Price distance to the stop loss.

    RSI strategies with a low oversold level and breakout strategies with a
    large threshold get a wider stop.
    """
    distance = price * stop_loss_percent / 100

    if strategy.type == StrategyType.RSI and float(strategy.param('oversold', 30)) < 30:
        distance *= RSI_STOP_WIDENING
    elif strategy.type == StrategyType.BREAKOUT and float(strategy.param('breakoutThreshold', 2)) > 2:
        distance *= BREAKOUT_STOP_WIDENING

    return distance


def optimal_position_size(strategy: Strategy, price: Optional[float], balance: float,
                          risk_percent: float, stop_loss_percent: float,
                          max_leverage: float) -> float:
    """
    Fixed-fractional position size.

    Returns 0 when no price is known. The notional value is capped at
    balance * max_leverage.
    """
    if not price or price <= 0 or balance <= 0 or risk_percent <= 0:
        return 0.0

    distance = stop_distance(strategy, price, stop_loss_percent)
    if distance <= 0:
        return 0.0

    size = balance * risk_percent / 100 / distance
    max_size = balance * max_leverage / price
    return min(size, max_size)


def position_risk(position: Position, stop_loss_percent: float) -> float:
    """Amount lost if the position's stop is hit."""
    if position.stop_loss is not None:
        return position.size * abs(position.entry_price - position.stop_loss)
    return position.size * position.entry_price * stop_loss_percent / 100


def portfolio_risk(positions: Iterable[Position], balance: float, stop_loss_percent: float) -> float:
    """Sum of per-position risk as a percent of balance."""
    if balance <= 0:
        return 0.0
    total = sum(position_risk(p, stop_loss_percent) for p in positions if p.is_open)
    return total / balance * 100


def adjust_risk_percent(risk_percent: float, total_risk: float, corr_ratio: float,
                        correlation_threshold: float) -> float:
    """Shrink the requested risk for a loaded or correlated portfolio."""
    adjusted = risk_percent
    if total_risk > 50:
        adjusted *= 0.5
    elif total_risk > 25:
        adjusted *= 0.75

    if corr_ratio > correlation_threshold:
        adjusted *= (1 - corr_ratio)

    return adjusted


def correlated_symbols(pair: str, positions: Iterable[Position], policy: CorrelationPolicy) -> List[str]:
    return [p.symbol for p in positions if p.is_open and policy(pair, p.symbol)]
