"""
Signal generation entry point.

Maps strategy types to their rule classes, filters the candle history to the
strategy's pair and turns rule failures into "no signal" results, so callers
never have to handle exceptions from a strategy evaluation.
"""
from typing import Dict, Optional, Sequence

from trading_engine.config import logger
from trading_engine.exceptions import ConfigurationError
from trading_engine.models import Candle, Signal, Strategy, StrategyType
from trading_engine.strategies.base_strategy import BaseStrategy
from trading_engine.strategies.bollinger_strategy import BollingerStrategy
from trading_engine.strategies.breakout_strategy import BreakoutStrategy
from trading_engine.strategies.ichimoku_strategy import IchimokuStrategy
from trading_engine.strategies.ma_crossover_strategy import MaCrossoverStrategy
from trading_engine.strategies.macd_strategy import MacdStrategy
from trading_engine.strategies.multi_factor_strategy import MultiFactorStrategy
from trading_engine.strategies.pattern_strategy import PatternStrategy
from trading_engine.strategies.rsi_strategy import RsiStrategy

DEFAULT_LOOKBACK = 50


def get_rule(strategy_type) -> Optional[BaseStrategy]:
    """Return the rule implementing a strategy type, or None if unknown."""
    try:
        return _RULES.get(StrategyType(strategy_type))
    except ValueError:
        return None


def get_strategy_lookback(strategy: Strategy) -> int:
    """
    Minimum number of candles a strategy needs before it can produce a signal.

    Unknown types and malformed parameters fall back to DEFAULT_LOOKBACK.
    """
    rule = get_rule(strategy.type)
    if rule is None:
        return DEFAULT_LOOKBACK
    try:
        return rule.required_lookback(strategy)
    except ConfigurationError as e:
        logger.warning(f"Invalid parameters for strategy {strategy.id}: {e}")
        return DEFAULT_LOOKBACK
    except RecursionError:
        logger.warning(f"Strategy {strategy.id} references itself through its sub-strategies")
        return DEFAULT_LOOKBACK


def generate_signal(strategy: Strategy, candles: Sequence[Candle]) -> Signal:
    """
    Evaluate a strategy on the latest candle of its pair.

    Args:
        strategy: Strategy definition
        candles: Candle history in chronological order, any pairs

    Returns:
        Signal: BUY, SELL or no signal with the reason
    """
    pair_data = [c for c in candles if c.pair == strategy.pair]
    if not pair_data:
        return Signal.none(f"No data available for {strategy.pair}")

    rule = get_rule(strategy.type)
    if rule is None:
        return Signal.none(f"Unknown strategy type: {strategy.type}")

    prices = [c.close for c in pair_data]

    try:
        required = rule.required_lookback(strategy)
        if len(pair_data) < required:
            return rule.not_enough_data(required)
        return rule.check_signal(strategy, prices, pair_data)
    except ConfigurationError as e:
        logger.warning(f"Invalid parameters for strategy {strategy.id}: {e}")
        return Signal.none(f"Invalid strategy parameters: {e}")
    except RecursionError:
        logger.warning(f"Strategy {strategy.id} references itself through its sub-strategies")
        return Signal.none("Invalid strategy parameters: circular sub-strategy reference")
    except (TypeError, ValueError, KeyError) as e:
        logger.error(f"Error evaluating strategy {strategy.id}: {e}", exc_info=True)
        return Signal.none(f"Invalid strategy parameters: {e}")


_RULES: Dict[StrategyType, BaseStrategy] = {
    StrategyType.MA_CROSSOVER: MaCrossoverStrategy(),
    StrategyType.RSI: RsiStrategy(),
    StrategyType.BREAKOUT: BreakoutStrategy(),
    StrategyType.MACD: MacdStrategy(),
    StrategyType.BOLLINGER_BANDS: BollingerStrategy(),
    StrategyType.ICHIMOKU: IchimokuStrategy(),
    StrategyType.PATTERN_RECOGNITION: PatternStrategy(),
    StrategyType.MULTI_FACTOR: MultiFactorStrategy(generate_signal, get_strategy_lookback),
}
