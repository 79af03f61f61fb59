"""
Data models for strategies, candles, positions and trade results.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Dict, List, Optional, Any, Mapping


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class StrategyType(str, Enum):
    """Supported strategy families."""
    MA_CROSSOVER = 'MA_CROSSOVER'
    RSI = 'RSI'
    BREAKOUT = 'BREAKOUT'
    MACD = 'MACD'
    BOLLINGER_BANDS = 'BOLLINGER_BANDS'
    ICHIMOKU = 'ICHIMOKU'
    PATTERN_RECOGNITION = 'PATTERN_RECOGNITION'
    MULTI_FACTOR = 'MULTI_FACTOR'


class SignalType(str, Enum):
    BUY = 'BUY'
    SELL = 'SELL'


class PositionSide(str, Enum):
    LONG = 'long'
    SHORT = 'short'


class PositionStatus(str, Enum):
    OPEN = 'open'
    CLOSED = 'closed'


@dataclass
class StrategyPerformance:
    """Performance summary attached to a strategy."""
    total_pnl: float = 0.0
    win_rate: float = 0.0
    trades_count: int = 0
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0
    profit_factor: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_pnl': self.total_pnl,
            'win_rate': self.win_rate,
            'trades_count': self.trades_count,
            'sharpe_ratio': self.sharpe_ratio,
            'max_drawdown': self.max_drawdown,
            'profit_factor': self.profit_factor
        }


@dataclass
class Strategy:
    """
    Declarative strategy definition.

    Parameters are stored as a read-only mapping. Tuning produces a new
    Strategy through ``improved`` instead of editing the original.
    """
    id: str
    name: str
    type: str
    parameters: Mapping[str, Any]
    pair: str
    created: datetime = field(default_factory=utc_now)
    performance: Optional[StrategyPerformance] = None

    def __post_init__(self):
        if isinstance(self.type, str) and self.type in StrategyType.__members__:
            self.type = StrategyType(self.type)
        self.parameters = MappingProxyType(dict(self.parameters))

    def param(self, key: str, default: Any = None) -> Any:
        """Get a parameter value with a default."""
        value = self.parameters.get(key, default)
        return default if value is None else value

    def improved(self, parameters: Dict[str, Any], name_suffix: str = " (Improved)") -> 'Strategy':
        """Return a tuned copy of this strategy with a derived id."""
        merged = dict(self.parameters)
        merged.update(parameters)
        return replace(
            self,
            id=f"{self.id}_improved",
            name=f"{self.name}{name_suffix}",
            parameters=merged,
            performance=None
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert strategy to dictionary."""
        params = {}
        for key, value in self.parameters.items():
            if key == 'strategies':
                value = [s.to_dict() if isinstance(s, Strategy) else s for s in value]
            params[key] = value
        return {
            'id': self.id,
            'name': self.name,
            'type': self.type.value if isinstance(self.type, StrategyType) else self.type,
            'parameters': params,
            'pair': self.pair,
            'created': self.created.isoformat(),
            'performance': self.performance.to_dict() if self.performance else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Strategy':
        """Create strategy from dictionary."""
        created = data.get('created')
        if isinstance(created, str):
            created = datetime.fromisoformat(created)
        parameters = dict(data.get('parameters', {}))
        pair = data.get('pair') or parameters.get('pair', '')
        performance = data.get('performance')
        return cls(
            id=data['id'],
            name=data.get('name', data['id']),
            type=data['type'],
            parameters=parameters,
            pair=pair,
            created=created or utc_now(),
            performance=StrategyPerformance(**performance) if performance else None
        )


@dataclass
class Candle:
    """OHLCV candle for a trading pair."""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    pair: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'volume': self.volume,
            'pair': self.pair
        }


@dataclass
class Signal:
    """Trade decision for one evaluation step."""
    signal: Optional[SignalType]
    reason: str

    @property
    def is_buy(self) -> bool:
        return self.signal == SignalType.BUY

    @property
    def is_sell(self) -> bool:
        return self.signal == SignalType.SELL

    @classmethod
    def none(cls, reason: str) -> 'Signal':
        return cls(signal=None, reason=reason)


@dataclass
class Position:
    """Live trading position owned by the trading manager while open."""
    symbol: str
    strategy_id: str
    side: PositionSide
    size: float
    entry_price: float
    open_time: datetime
    mark_price: float = 0.0
    unrealized_pnl: float = 0.0
    leverage: float = 1.0
    liquidation_price: Optional[float] = None
    status: PositionStatus = PositionStatus.OPEN
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    trailing_stop: Optional[float] = None
    close_time: Optional[datetime] = None
    exit_price: Optional[float] = None
    realized_pnl: Optional[float] = None

    def __post_init__(self):
        if not self.mark_price:
            self.mark_price = self.entry_price

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    def pnl_at(self, price: float) -> float:
        """Profit or loss of the position at the given price."""
        if self.side == PositionSide.LONG:
            return (price - self.entry_price) * self.size
        return (self.entry_price - price) * self.size

    def update_mark(self, price: float):
        """Refresh mark price and unrealized P&L."""
        self.mark_price = price
        self.unrealized_pnl = self.pnl_at(price)

    def close(self, exit_price: float, close_time: datetime) -> float:
        """Close the position. A position can only be closed once."""
        if not self.is_open:
            raise ValueError(f"Position {self.symbol} for {self.strategy_id} is already closed")
        self.status = PositionStatus.CLOSED
        self.exit_price = exit_price
        self.close_time = close_time
        self.mark_price = exit_price
        self.realized_pnl = self.pnl_at(exit_price)
        self.unrealized_pnl = 0.0
        return self.realized_pnl

    def to_dict(self) -> Dict[str, Any]:
        """Convert position to dictionary."""
        return {
            'symbol': self.symbol,
            'strategy_id': self.strategy_id,
            'side': self.side.value,
            'size': self.size,
            'entry_price': self.entry_price,
            'mark_price': self.mark_price,
            'unrealized_pnl': self.unrealized_pnl,
            'leverage': self.leverage,
            'liquidation_price': self.liquidation_price,
            'status': self.status.value,
            'stop_loss': self.stop_loss,
            'take_profit': self.take_profit,
            'trailing_stop': self.trailing_stop,
            'open_time': self.open_time,
            'close_time': self.close_time,
            'exit_price': self.exit_price,
            'realized_pnl': self.realized_pnl
        }


@dataclass(frozen=True)
class TradeJournalEntry:
    """Immutable record of a single fill."""
    trade_id: int
    timestamp: datetime
    action: str  # 'OPEN' or 'CLOSE'
    strategy_id: str
    pair: str
    side: str
    price: float
    size: float
    pnl: float = 0.0
    pnl_percent: float = 0.0
    balance: Optional[float] = None
    reason: str = ""
    entry_price: Optional[float] = None

    @classmethod
    def from_position(cls, trade_id: int, position: Position, action: str,
                      reason: str = "", balance: Optional[float] = None) -> 'TradeJournalEntry':
        """Derive a journal entry from a position transition."""
        if action == 'OPEN':
            return cls(
                trade_id=trade_id,
                timestamp=position.open_time,
                action=action,
                strategy_id=position.strategy_id,
                pair=position.symbol,
                side=position.side.value,
                price=position.entry_price,
                size=position.size,
                balance=balance,
                reason=reason,
                entry_price=position.entry_price
            )
        pnl = position.realized_pnl or 0.0
        notional = position.entry_price * position.size
        return cls(
            trade_id=trade_id,
            timestamp=position.close_time,
            action=action,
            strategy_id=position.strategy_id,
            pair=position.symbol,
            side=position.side.value,
            price=position.exit_price,
            size=position.size,
            pnl=pnl,
            pnl_percent=pnl / notional * 100 if notional else 0.0,
            balance=balance,
            reason=reason,
            entry_price=position.entry_price
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'trade_id': self.trade_id,
            'timestamp': self.timestamp,
            'action': self.action,
            'strategy_id': self.strategy_id,
            'pair': self.pair,
            'side': self.side,
            'price': self.price,
            'size': self.size,
            'pnl': self.pnl,
            'pnl_percent': self.pnl_percent,
            'balance': self.balance,
            'reason': self.reason,
            'entry_price': self.entry_price
        }


@dataclass
class DailyStats:
    """Per-day trade accumulator."""
    date: str
    start_balance: float
    end_balance: float
    trades: int = 0
    wins: int = 0
    losses: int = 0
    pnl: float = 0.0

    def record_trade(self, pnl: float, balance: Optional[float] = None):
        self.trades += 1
        if pnl > 0:
            self.wins += 1
        elif pnl < 0:
            self.losses += 1
        self.pnl += pnl
        self.end_balance = balance if balance is not None else self.end_balance + pnl

    @property
    def loss_percent(self) -> float:
        """Realised loss for the day as a percentage of the starting balance."""
        if self.pnl >= 0 or self.start_balance <= 0:
            return 0.0
        return -self.pnl / self.start_balance * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            'date': self.date,
            'trades': self.trades,
            'wins': self.wins,
            'losses': self.losses,
            'pnl': self.pnl,
            'start_balance': self.start_balance,
            'end_balance': self.end_balance
        }


@dataclass
class BacktestTrade:
    """Ledger entry produced by the backtest simulator."""
    timestamp: datetime
    action: str  # 'OPEN' or 'CLOSE'
    type: SignalType
    price: float
    amount: float
    total: float
    pnl: float
    pnl_percent: float
    balance: float
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'action': self.action,
            'type': self.type.value,
            'price': self.price,
            'amount': self.amount,
            'total': self.total,
            'pnl': self.pnl,
            'pnl_percent': self.pnl_percent,
            'balance': self.balance,
            'reason': self.reason
        }


@dataclass
class BacktestMetrics:
    profit_factor: float = 0.0
    recovery_factor: float = 0.0
    volatility: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    max_drawdown: float = 0.0
    sharpe_ratio: float = 0.0
    win_rate: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class BacktestResult:
    """Outcome of a backtest run."""
    strategy_id: str
    start_date: datetime
    end_date: datetime
    initial_balance: float
    final_balance: float
    trades: List[BacktestTrade]
    balance_history: List[Dict[str, Any]]
    metrics: BacktestMetrics

    @property
    def completed_trades(self) -> List[BacktestTrade]:
        return [t for t in self.trades if t.action == 'CLOSE']

    @property
    def total_pnl(self) -> float:
        return self.final_balance - self.initial_balance

    @property
    def total_trades(self) -> int:
        return len(self.completed_trades)

    @property
    def winning_trades(self) -> int:
        return len([t for t in self.completed_trades if t.pnl > 0])

    @property
    def losing_trades(self) -> int:
        return len([t for t in self.completed_trades if t.pnl < 0])

    @property
    def win_rate(self) -> float:
        return self.metrics.win_rate

    @property
    def max_drawdown(self) -> float:
        return self.metrics.max_drawdown

    @property
    def sharpe_ratio(self) -> float:
        return self.metrics.sharpe_ratio

    def to_performance(self) -> StrategyPerformance:
        """Summarise the result as a strategy performance record."""
        return StrategyPerformance(
            total_pnl=self.total_pnl,
            win_rate=self.win_rate,
            trades_count=self.total_trades,
            sharpe_ratio=self.sharpe_ratio,
            max_drawdown=self.max_drawdown,
            profit_factor=self.metrics.profit_factor
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert backtest result to dictionary."""
        return {
            'strategy_id': self.strategy_id,
            'start_date': self.start_date,
            'end_date': self.end_date,
            'initial_balance': self.initial_balance,
            'final_balance': self.final_balance,
            'total_pnl': self.total_pnl,
            'total_trades': self.total_trades,
            'winning_trades': self.winning_trades,
            'losing_trades': self.losing_trades,
            'win_rate': self.win_rate,
            'max_drawdown': self.max_drawdown,
            'sharpe_ratio': self.sharpe_ratio,
            'trades': [t.to_dict() for t in self.trades],
            'balance_history': list(self.balance_history),
            'metrics': self.metrics.to_dict()
        }


@dataclass
class PriceUpdate:
    pair: str
    price: float
    timestamp: datetime
    volume: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    open: Optional[float] = None


@dataclass
class PriceAlert:
    """One-shot price threshold alert."""
    id: str
    pair: str
    condition: str  # 'above' or 'below'
    price: float
    triggered: bool = False
    created_at: datetime = field(default_factory=utc_now)

    def is_hit(self, price: float) -> bool:
        if self.condition == 'above':
            return price >= self.price
        return price <= self.price


@dataclass
class AccountBalance:
    total: float
    available: float
    equity: float
    unrealized_pnl: float = 0.0
    today_pnl: float = 0.0
    stale: bool = False


@dataclass
class Order:
    id: str
    pair: str
    side: str
    type: str
    size: float
    price: float = 0.0
    status: str = 'open'
    trigger_price: Optional[float] = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class LiquidationWarning:
    symbol: str
    mark_price: float
    liquidation_price: float
    margin_ratio: float = 0.0

    @property
    def distance_percent(self) -> float:
        """Distance between mark and liquidation price in percent of mark."""
        if not self.mark_price:
            return 0.0
        return abs(self.mark_price - self.liquidation_price) / self.mark_price * 100


@dataclass
class DemoPerformance:
    """Snapshot of a demo trading session."""
    start_time: Optional[datetime]
    end_time: datetime
    duration_seconds: float
    initial_balance: float
    current_balance: float
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float
    profit_loss: float
    profit_loss_percent: float
    annualized_return: float
    trades: List[TradeJournalEntry]
    is_live_ready: bool

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.__dict__)
        data['trades'] = [t.to_dict() for t in self.trades]
        return data
