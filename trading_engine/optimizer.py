"""
Strategy tuning: grid-search optimisation over backtests, rule-based
parameter improvement and strategy combination.
"""
from dataclasses import dataclass, field
from itertools import product
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from trading_engine.config import logger
from trading_engine.backtester import BacktestOptions, simulate_backtest
from trading_engine.exceptions import DataUnavailable, TradingEngineError
from trading_engine.models import BacktestResult, Candle, Strategy, StrategyType, utc_now
from trading_engine.strategies.signal_generator import get_rule
from trading_engine.utils.indicators import calculate_volatility

ParameterRange = Tuple[float, float, float]

MARKET_MOVE_PERCENT = 5.0
HIGH_VOLATILITY = 0.02
LOW_VOLATILITY = 0.005
MIN_CONFIDENCE = 0.5
COMBINE_OPERATORS = ('AND', 'OR', 'WEIGHTED')

# Target names accepted besides BacktestResult / BacktestMetrics attributes
TARGET_ALIASES = {
    'netProfit': 'total_pnl',
    'net_profit': 'total_pnl',
    'winRate': 'win_rate',
    'sharpeRatio': 'sharpe_ratio',
    'profitFactor': 'profit_factor',
}


def _range_values(start: float, end: float, step: float) -> List[float]:
    """Values from start to end inclusive."""
    if step <= 0:
        raise ValueError(f"Step must be positive, got {step}")
    values = np.arange(start, end + step / 2, step)
    values = values[values <= end + 1e-9]
    if all(float(v).is_integer() for v in (start, end, step)):
        return [int(round(v)) for v in values]
    return [round(float(v), 10) for v in values]


def generate_parameter_combinations(ranges: Dict[str, ParameterRange]) -> List[Dict[str, float]]:
    """
    Every combination of the given parameter ranges.

    Each range is (start, end, step) with end inclusive. No ranges give a
    single empty combination.
    """
    if not ranges:
        return [{}]
    names = list(ranges.keys())
    values = [_range_values(*ranges[name]) for name in names]
    return [dict(zip(names, combo)) for combo in product(*values)]


def _target_value(result: BacktestResult, target: str) -> float:
    attribute = TARGET_ALIASES.get(target, target)
    for source in (result, result.metrics):
        value = getattr(source, attribute, None)
        if isinstance(value, (int, float)) and not np.isnan(value):
            return float(value)
    return 0.0


@dataclass
class OptimizationResult:
    strategy_id: str
    target: str
    results: List[Dict[str, Any]]
    best_parameters: Dict[str, Any]
    best_result: Optional[BacktestResult]
    best_strategy: Optional[Strategy] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'strategy_id': self.strategy_id,
            'target': self.target,
            'results': [{'parameters': r['parameters'], self.target: r['score']} for r in self.results],
            'best_parameters': dict(self.best_parameters),
            'best_result': self.best_result.to_dict() if self.best_result else None,
            'best_strategy': self.best_strategy.to_dict() if self.best_strategy else None
        }


def run_backtest_optimization(strategy: Strategy, candles: Sequence[Candle],
                              ranges: Dict[str, ParameterRange], options: BacktestOptions,
                              target: str = 'net_profit') -> OptimizationResult:
    """
    Backtest every parameter combination and rank them by the target metric.

    Args:
        strategy: Base strategy; each combination is merged over its parameters
        candles: Historical candles shared by every run
        ranges: Parameter name -> (start, end, step)
        options: Backtest settings
        target: Result or metric attribute to maximise

    Returns:
        OptimizationResult with runs sorted best first
    """
    if not candles:
        raise DataUnavailable(strategy.pair, "No historical data available for optimization")

    combinations = generate_parameter_combinations(ranges)
    logger.info(f"Optimizing {strategy.name}: {len(combinations)} parameter combinations, target {target}")

    results = []
    for parameters in combinations:
        candidate = strategy.improved(parameters, name_suffix="")
        try:
            backtest = simulate_backtest(candidate, candles, options)
        except TradingEngineError as e:
            logger.warning(f"Error in parameter combination {parameters}: {e}")
            continue
        candidate.performance = backtest.to_performance()
        results.append({
            'parameters': parameters,
            'score': _target_value(backtest, target),
            'result': backtest,
            'strategy': candidate
        })

    results.sort(key=lambda r: r['score'], reverse=True)
    best = results[0] if results else None
    if best:
        logger.info(f"Best parameters for {strategy.name}: {best['parameters']} ({target}: {best['score']:.4f})")
    else:
        logger.warning(f"No valid parameter combination found for {strategy.name}")

    return OptimizationResult(
        strategy_id=strategy.id,
        target=target,
        results=results,
        best_parameters=best['parameters'] if best else {},
        best_result=best['result'] if best else None,
        best_strategy=best['strategy'] if best else None
    )


@dataclass
class MarketAnalysis:
    condition: str  # 'bull', 'bear' or 'sideways'
    change_percent: float
    volatility: float
    average_volume: float


@dataclass
class StrategyPrediction:
    profitability: float
    confidence: float
    recommended_parameters: Dict[str, Any] = field(default_factory=dict)


def analyze_market(candles: Sequence[Candle]) -> MarketAnalysis:
    """Classify the window by its overall move and measure return volatility."""
    if not candles:
        raise DataUnavailable('', "No market data provided for analysis")

    closes = np.array([c.close for c in candles], dtype=float)
    change = (closes[-1] - closes[0]) / closes[0] * 100 if closes[0] else 0.0

    if change > MARKET_MOVE_PERCENT:
        condition = 'bull'
    elif change < -MARKET_MOVE_PERCENT:
        condition = 'bear'
    else:
        condition = 'sideways'

    volatility = calculate_volatility(closes)

    return MarketAnalysis(
        condition=condition,
        change_percent=float(change),
        volatility=volatility,
        average_volume=float(np.mean([c.volume for c in candles]))
    )


def _numeric_param(strategy: Strategy, key: str) -> float:
    rule = get_rule(strategy.type)
    default = rule.default_parameters.get(key) if rule else None
    return float(strategy.param(key, default))


def predict_strategy_performance(strategy: Strategy, market: MarketAnalysis) -> StrategyPrediction:
    """Rule-based estimate of how the strategy suits the market, with tuning hints."""
    strategy_type = strategy.type
    profitability = 0.5
    confidence = 0.6

    if market.condition == 'bull':
        if strategy_type in (StrategyType.BREAKOUT, StrategyType.MA_CROSSOVER):
            profitability += 0.2
            confidence += 0.1
    elif market.condition == 'bear':
        if strategy_type == StrategyType.RSI:
            profitability += 0.15
            confidence += 0.05
        else:
            profitability -= 0.1

    if market.volatility > HIGH_VOLATILITY:
        if strategy_type == StrategyType.BOLLINGER_BANDS:
            profitability += 0.15
            confidence += 0.1
        elif strategy_type == StrategyType.BREAKOUT:
            profitability += 0.1
    elif market.volatility < LOW_VOLATILITY:
        if strategy_type == StrategyType.MA_CROSSOVER:
            profitability += 0.1
            confidence += 0.05
        elif strategy_type == StrategyType.PATTERN_RECOGNITION:
            profitability -= 0.1

    recommended: Dict[str, Any] = {}
    if strategy_type == StrategyType.RSI:
        oversold = _numeric_param(strategy, 'oversold')
        overbought = _numeric_param(strategy, 'overbought')
        if market.condition == 'bull':
            recommended = {'oversold': oversold - 5, 'overbought': overbought + 5}
        elif market.condition == 'bear':
            recommended = {'oversold': oversold + 5, 'overbought': overbought - 5}

    elif strategy_type == StrategyType.MA_CROSSOVER:
        short_period = int(_numeric_param(strategy, 'shortPeriod'))
        long_period = int(_numeric_param(strategy, 'longPeriod'))
        if market.volatility > HIGH_VOLATILITY:
            recommended = {'shortPeriod': max(5, short_period - 2), 'longPeriod': max(15, long_period - 5)}
        else:
            recommended = {'shortPeriod': min(20, short_period + 2), 'longPeriod': min(100, long_period + 5)}

    elif strategy_type == StrategyType.BOLLINGER_BANDS:
        deviations = _numeric_param(strategy, 'standardDeviations')
        if market.volatility > HIGH_VOLATILITY:
            recommended = {'standardDeviations': min(3.0, deviations + 0.5)}
        else:
            recommended = {'standardDeviations': max(1.5, deviations - 0.5)}

    return StrategyPrediction(
        profitability=float(np.clip(profitability, 0, 1)),
        confidence=float(np.clip(confidence, 0, 1)),
        recommended_parameters=recommended
    )


def improve_strategy(strategy: Strategy, candles: Sequence[Candle]) -> Strategy:
    """
    Tuned copy of the strategy for the market in `candles`.

    The original is returned unchanged when the prediction is not confident
    enough or there is nothing to recommend.
    """
    market = analyze_market(candles)
    prediction = predict_strategy_performance(strategy, market)
    logger.info(f"Market for {strategy.pair}: {market.condition} ({market.change_percent:.2f}%), "
                f"volatility {market.volatility:.4f}; confidence {prediction.confidence:.2f}")

    if prediction.confidence < MIN_CONFIDENCE or not prediction.recommended_parameters:
        return strategy

    improved = strategy.improved(prediction.recommended_parameters)
    logger.info(f"Improved {strategy.name}: {prediction.recommended_parameters}")
    return improved


def combine_strategies(strategies: Sequence[Strategy], rule: str = 'AND',
                       weights: Optional[Sequence[float]] = None) -> Strategy:
    """Multi-factor strategy over the given strategies, on the first one's pair."""
    if not strategies:
        raise ValueError("No strategies provided to combine")
    operator = rule.upper()
    if operator not in COMBINE_OPERATORS:
        raise ValueError(f"Combination rule must be one of {COMBINE_OPERATORS}, got {rule!r}")
    if weights is not None and len(weights) != len(strategies):
        raise ValueError("Weights must match the number of strategies")

    created = utc_now()
    return Strategy(
        id=f"combined_{int(created.timestamp() * 1000)}",
        name=f"Combined Strategy ({operator})",
        type=StrategyType.MULTI_FACTOR,
        parameters={
            'strategies': list(strategies),
            'weights': list(weights) if weights is not None else [1.0] * len(strategies),
            'operator': operator
        },
        pair=strategies[0].pair,
        created=created
    )
