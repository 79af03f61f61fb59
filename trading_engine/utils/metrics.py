"""
Performance metrics computed from completed trades.
"""
import numpy as np
from typing import Sequence

from trading_engine.models import BacktestMetrics, BacktestTrade

# Profit factor reported when there are profits but no losses
PROFIT_FACTOR_CAP = float(2 ** 53 - 1)


def calculate_max_drawdown(pnls: Sequence[float]) -> float:
    """
    Largest peak-to-trough decline of cumulative P&L.

    The peak starts at 0, so a losing first trade already counts as drawdown.
    [+100, +50, -200, +30] -> 200.
    """
    if len(pnls) == 0:
        return 0.0
    cumulative = np.cumsum(np.asarray(pnls, dtype=float))
    peaks = np.maximum.accumulate(np.maximum(cumulative, 0.0))
    return float(np.max(peaks - cumulative))


def calculate_sharpe_ratio(pnls: Sequence[float]) -> float:
    """Mean over sample standard deviation of per-trade P&L, risk-free rate 0."""
    if len(pnls) < 2:
        return 0.0
    returns = np.asarray(pnls, dtype=float)
    std = returns.std(ddof=1)
    if std == 0:
        return 0.0
    return float(returns.mean() / std)


def calculate_volatility(pnl_percents: Sequence[float]) -> float:
    """Population standard deviation of per-trade P&L percent."""
    if len(pnl_percents) < 2:
        return 0.0
    return float(np.asarray(pnl_percents, dtype=float).std(ddof=0))


def calculate_profit_factor(total_profit: float, total_loss: float) -> float:
    """|profit / loss|, capped when there is profit but no loss."""
    if abs(total_loss) > 0:
        return abs(total_profit / total_loss)
    if total_profit > 0:
        return PROFIT_FACTOR_CAP
    return 0.0


def calculate_metrics(trades: Sequence[BacktestTrade]) -> BacktestMetrics:
    """
    Build the metrics bundle for a list of completed trades.

    Args:
        trades: Completed (CLOSE) trades, in execution order

    Returns:
        BacktestMetrics
    """
    pnls = [t.pnl for t in trades]
    wins = [p for p in pnls if p > 0]
    losses = [p for p in pnls if p < 0]

    total_profit = sum(wins)
    total_loss = sum(losses)
    max_drawdown = calculate_max_drawdown(pnls)

    return BacktestMetrics(
        profit_factor=calculate_profit_factor(total_profit, total_loss),
        recovery_factor=abs(total_profit + total_loss) / max_drawdown if max_drawdown > 0 else 0.0,
        volatility=calculate_volatility([t.pnl_percent for t in trades]),
        average_win=total_profit / len(wins) if wins else 0.0,
        average_loss=total_loss / len(losses) if losses else 0.0,
        largest_win=max(wins) if wins else 0.0,
        largest_loss=min(losses) if losses else 0.0,
        max_drawdown=max_drawdown,
        sharpe_ratio=calculate_sharpe_ratio(pnls),
        win_rate=len(wins) / len(trades) if trades else 0.0
    )
