"""
Exchange gateways: a ccxt-backed live client and an in-process paper client.

Read operations never raise. They fall back to the last cached value, or to
an empty list / stale default balance. Write operations raise GatewayError.
"""
import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import ccxt.async_support as ccxt_async
import numpy as np
import pandas as pd

from trading_engine.config import (
    logger, EXCHANGE_ID, EXCHANGE_API_KEY, EXCHANGE_API_SECRET, EXCHANGE_PASSWORD,
    MAX_RETRIES, DEFAULT_TIMEFRAME, DEFAULT_LIMIT, HISTORICAL_TIMEFRAME, INITIAL_BALANCE
)
from trading_engine.exceptions import ConfigurationError, GatewayError
from trading_engine.models import AccountBalance, Candle, LiquidationWarning, Order, utc_now
from trading_engine.utils.event_bus import EventBus, Subscription, Topic

# Positions closer than this to liquidation are reported as warnings
LIQUIDATION_WARNING_PERCENT = 10.0

CONDITIONAL_ORDER_PARAMS = {
    'stop': 'stopLossPrice',
    'takeProfit': 'takeProfitPrice',
}


def to_exchange_symbol(pair: str) -> str:
    """'BTC-USDT' -> 'BTC/USDT'"""
    return pair.replace('-', '/').replace('_', '/').upper()


def from_exchange_symbol(symbol: str) -> str:
    """'BTC/USDT:USDT' -> 'BTC-USDT'"""
    return symbol.split(':')[0].replace('/', '-')


def ohlcv_to_candles(ohlcv: List[List[float]], pair: str) -> List[Candle]:
    """Convert ccxt OHLCV rows into candles."""
    df = pd.DataFrame(ohlcv, columns=['timestamp', 'open', 'high', 'low', 'close', 'volume'])
    df['timestamp'] = pd.to_datetime(df['timestamp'], unit='ms', utc=True)
    return [
        Candle(
            timestamp=row.timestamp.to_pydatetime(),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
            pair=pair
        )
        for row in df.itertuples(index=False)
    ]


def timeframe_seconds(timeframe: str) -> int:
    """Length of a candle timeframe such as '5m', '1h' or '1d' in seconds."""
    units = {'m': 60, 'h': 60 * 60, 'd': 60 * 60 * 24}
    unit = timeframe[-1]
    if unit not in units:
        logger.warning(f"Unrecognized timeframe format: {timeframe}, defaulting to 5 minutes")
        return 300
    return int(timeframe[:-1]) * units[unit]


class BaseGateway:
    """Event subscriptions shared by both gateways."""

    def __init__(self, event_bus: Optional[EventBus] = None):
        self.event_bus = event_bus or EventBus()

    def on_position_update(self, handler: Callable) -> Subscription:
        return self.event_bus.subscribe(Topic.POSITION_UPDATE, handler)

    def on_liquidation_warning(self, handler: Callable) -> Subscription:
        return self.event_bus.subscribe(Topic.LIQUIDATION_WARNING, handler)

    def on_margin_update(self, handler: Callable) -> Subscription:
        return self.event_bus.subscribe(Topic.MARGIN_UPDATE, handler)

    async def initialize(self):
        return self

    async def close(self):
        pass


class ExchangeClient(BaseGateway):
    """Client for a ccxt-supported exchange."""

    def __init__(self, exchange_id: str = EXCHANGE_ID, event_bus: Optional[EventBus] = None,
                 timeframe: str = DEFAULT_TIMEFRAME, historical_timeframe: str = HISTORICAL_TIMEFRAME):
        """Initialize the exchange client."""
        super().__init__(event_bus)
        self.exchange_id = exchange_id
        self.timeframe = timeframe
        self.historical_timeframe = historical_timeframe
        self.exchange = None
        self._balance_cache: Optional[AccountBalance] = None
        self._candle_cache: Dict[str, List[Candle]] = {}
        self._history_cache: Dict[str, List[Candle]] = {}

    async def initialize(self):
        """Initialize the exchange connection."""
        exchange_class = getattr(ccxt_async, self.exchange_id, None)
        if exchange_class is None:
            raise ConfigurationError(f"Unsupported exchange: {self.exchange_id}")

        self.exchange = exchange_class({
            'apiKey': EXCHANGE_API_KEY,
            'secret': EXCHANGE_API_SECRET,
            'password': EXCHANGE_PASSWORD,
            'enableRateLimit': True,
            'adjustForTimeDifference': True,
        })
        logger.info(f"Initialized {self.exchange_id} exchange connection")
        return self

    async def close(self):
        """Close the exchange connection."""
        if self.exchange:
            await self.exchange.close()
            logger.info(f"Closed {self.exchange_id} exchange connection")

    async def _fetch_ohlcv(self, symbol: str, timeframe: str, since: Optional[int] = None,
                           limit: int = DEFAULT_LIMIT, retries: int = 0) -> List[List[float]]:
        """Fetch raw OHLCV rows, retrying with exponential backoff."""
        try:
            ohlcv = await self.exchange.fetch_ohlcv(symbol, timeframe, since=since, limit=limit)
            if ohlcv:
                return ohlcv
            logger.warning(f"Empty OHLCV data received for {symbol} on {timeframe}")
        except Exception as e:
            if retries >= MAX_RETRIES:
                logger.error(f"Failed to fetch OHLCV after {MAX_RETRIES} attempts: {e}")
                raise GatewayError('fetch_ohlcv', str(e))
            logger.warning(f"Error fetching OHLCV, retrying ({retries + 1}/{MAX_RETRIES}): {e}")

        if retries >= MAX_RETRIES:
            return []
        await asyncio.sleep(2 ** retries)
        return await self._fetch_ohlcv(symbol, timeframe, since, limit, retries + 1)

    async def get_account_balance(self) -> AccountBalance:
        """Account balance in the quote currency, falling back to the cached value."""
        try:
            balance = await self.exchange.fetch_balance()
            usdt = balance.get('USDT') or {}
            info = balance.get('info') or {}
            total = float(usdt.get('total') or 0.0)
            available = float(usdt.get('free') or 0.0)
            unrealized = float(info.get('upl') or info.get('unrealizedPnl') or 0.0) if isinstance(info, dict) else 0.0
            self._balance_cache = AccountBalance(
                total=total,
                available=available,
                equity=total + unrealized,
                unrealized_pnl=unrealized
            )
            return self._balance_cache
        except Exception as e:
            logger.warning(f"Falling back to cached account balance: {e}")
            if self._balance_cache is not None:
                cached = self._balance_cache
                return AccountBalance(
                    total=cached.total,
                    available=cached.available,
                    equity=cached.equity,
                    unrealized_pnl=cached.unrealized_pnl,
                    today_pnl=cached.today_pnl,
                    stale=True
                )
            return AccountBalance(
                total=INITIAL_BALANCE,
                available=INITIAL_BALANCE,
                equity=INITIAL_BALANCE,
                stale=True
            )

    async def get_market_data(self, pair: str, timeframe: Optional[str] = None,
                              limit: int = DEFAULT_LIMIT) -> List[Candle]:
        """Latest candles for a pair, or the last good fetch when the exchange fails."""
        try:
            ohlcv = await self._fetch_ohlcv(to_exchange_symbol(pair), timeframe or self.timeframe, limit=limit)
        except GatewayError as e:
            logger.warning(f"Falling back to cached market data for {pair}: {e}")
            return list(self._candle_cache.get(pair, []))

        if not ohlcv:
            return list(self._candle_cache.get(pair, []))

        candles = ohlcv_to_candles(ohlcv, pair)
        self._candle_cache[pair] = candles
        logger.debug(f"Fetched {len(candles)} candles for {pair}")
        return candles

    async def get_historical_data(self, pair: str, start: datetime, end: datetime) -> List[Candle]:
        """Candles between start and end, paging through the exchange history."""
        cache_key = f"{pair}:{start.isoformat()}:{end.isoformat()}"
        if cache_key in self._history_cache:
            return list(self._history_cache[cache_key])

        symbol = to_exchange_symbol(pair)
        since = int(start.timestamp() * 1000)
        end_ms = int(end.timestamp() * 1000)
        step_ms = timeframe_seconds(self.historical_timeframe) * 1000
        rows: List[List[float]] = []

        try:
            while since <= end_ms:
                batch = await self._fetch_ohlcv(symbol, self.historical_timeframe, since=since, limit=1000)
                batch = [row for row in batch if row[0] <= end_ms]
                if not batch:
                    break
                rows.extend(batch)
                since = int(batch[-1][0]) + step_ms
        except GatewayError as e:
            logger.error(f"Error fetching historical data for {pair}: {e}")
            return []

        candles = ohlcv_to_candles(rows, pair)
        self._history_cache[cache_key] = candles
        logger.info(f"Fetched {len(candles)} historical candles for {pair}")
        return candles

    def _to_order(self, response: Dict[str, Any], pair: str, side: str, order_type: str,
                  size: float, price: Optional[float], trigger_price: Optional[float] = None) -> Order:
        return Order(
            id=str(response.get('id')),
            pair=pair,
            side=side,
            type=order_type,
            size=float(response.get('amount') or size),
            price=float(response.get('average') or response.get('price') or price or 0.0),
            status=response.get('status') or 'open',
            trigger_price=trigger_price
        )

    async def place_order(self, pair: str, side: str, order_type: str, size: float,
                          price: Optional[float] = None) -> Order:
        """Place an order. Raises GatewayError if the exchange rejects it."""
        try:
            response = await self.exchange.create_order(
                to_exchange_symbol(pair), order_type, side, size, price
            )
        except Exception as e:
            logger.error(f"Failed to place {side} {order_type} order for {pair}: {e}")
            raise GatewayError('place_order', str(e))

        order = self._to_order(response, pair, side, order_type, size, price)
        logger.info(f"Placed {side} {order_type} order {order.id} for {size:.6f} {pair}")
        return order

    async def place_conditional_order(self, pair: str, side: str, kind: str, size: float,
                                      trigger_price: float) -> Order:
        """Place a stop or take-profit order triggered at `trigger_price`."""
        if kind not in CONDITIONAL_ORDER_PARAMS:
            raise GatewayError('place_conditional_order', f"Unknown conditional order kind '{kind}'")

        params = {CONDITIONAL_ORDER_PARAMS[kind]: trigger_price, 'reduceOnly': True}
        try:
            response = await self.exchange.create_order(
                to_exchange_symbol(pair), 'market', side, size, None, params
            )
        except Exception as e:
            logger.error(f"Failed to place {kind} order for {pair}: {e}")
            raise GatewayError('place_conditional_order', str(e))

        order = self._to_order(response, pair, side, kind, size, None, trigger_price)
        logger.info(f"Placed {kind} order {order.id} for {pair} at {trigger_price:.2f}")
        return order

    async def poll_positions(self):
        """Fetch exchange positions and publish updates, margin and liquidation warnings."""
        try:
            positions = await self.exchange.fetch_positions()
        except Exception as e:
            logger.warning(f"Could not fetch positions: {e}")
            return

        for raw in positions:
            symbol = from_exchange_symbol(raw.get('symbol', ''))
            mark_price = float(raw.get('markPrice') or 0.0)
            update = {
                'symbol': symbol,
                'side': raw.get('side'),
                'size': float(raw.get('contracts') or 0.0),
                'mark_price': mark_price,
                'unrealized_pnl': float(raw.get('unrealizedPnl') or 0.0),
                'leverage': float(raw.get('leverage') or 1.0),
                'liquidation_price': raw.get('liquidationPrice'),
            }
            await self.event_bus.publish(Topic.POSITION_UPDATE, update)

            if raw.get('marginRatio') is not None:
                await self.event_bus.publish(Topic.MARGIN_UPDATE, {
                    'symbol': symbol,
                    'margin_ratio': float(raw['marginRatio']),
                    'initial_margin': raw.get('initialMargin'),
                    'maintenance_margin': raw.get('maintenanceMargin'),
                })

            liquidation_price = raw.get('liquidationPrice')
            if liquidation_price and mark_price:
                warning = LiquidationWarning(
                    symbol=symbol,
                    mark_price=mark_price,
                    liquidation_price=float(liquidation_price),
                    margin_ratio=float(raw.get('marginRatio') or 0.0)
                )
                if warning.distance_percent < LIQUIDATION_WARNING_PERCENT:
                    await self.event_bus.publish(Topic.LIQUIDATION_WARNING, warning)


class PaperExchangeClient(BaseGateway):
    """
    Simulated exchange for demo runs and tests.

    Prices follow a seeded random walk, orders fill immediately at the last
    price and the balance never changes.
    """

    BASE_PRICES = {'BTC': 50000.0, 'ETH': 3000.0, 'SOL': 100.0}

    def __init__(self, event_bus: Optional[EventBus] = None, seed: Optional[int] = None,
                 balance: float = INITIAL_BALANCE, volatility: float = 0.005,
                 timeframe: str = DEFAULT_TIMEFRAME):
        super().__init__(event_bus)
        self.rng = np.random.default_rng(seed)
        self.balance = balance
        self.volatility = volatility
        self.timeframe = timeframe
        self.orders: List[Order] = []
        self._candles: Dict[str, List[Candle]] = {}
        self._order_ids = itertools.count(1)

    def base_price(self, pair: str) -> float:
        return self.BASE_PRICES.get(pair.split('-')[0].upper(), 50000.0)

    def _walk(self, pair: str, start_price: float, timestamps: List[datetime]) -> List[Candle]:
        """Random-walk candles starting from `start_price`."""
        count = len(timestamps)
        moves = self.rng.uniform(-1.0, 1.0, count) * self.volatility
        wicks = self.rng.uniform(0.0, 0.5, (count, 2)) * self.volatility
        volumes = self.rng.uniform(100, 1000, count)

        candles = []
        price = start_price
        for i, timestamp in enumerate(timestamps):
            open_price = price
            close = open_price * (1 + moves[i])
            candles.append(Candle(
                timestamp=timestamp,
                open=open_price,
                high=max(open_price, close) * (1 + wicks[i][0]),
                low=min(open_price, close) * (1 - wicks[i][1]),
                close=close,
                volume=float(volumes[i]),
                pair=pair
            ))
            price = close
        return candles

    def last_price(self, pair: str) -> float:
        series = self._candles.get(pair)
        return series[-1].close if series else self.base_price(pair)

    async def get_account_balance(self) -> AccountBalance:
        return AccountBalance(total=self.balance, available=self.balance, equity=self.balance)

    async def get_market_data(self, pair: str, timeframe: Optional[str] = None,
                              limit: int = DEFAULT_LIMIT) -> List[Candle]:
        """Advance the pair's series by one candle and return the latest `limit`."""
        series = self._candles.setdefault(pair, [])
        step = timedelta(seconds=timeframe_seconds(timeframe or self.timeframe))
        now = utc_now()

        if not series:
            timestamps = [now - step * (limit - 1 - i) for i in range(limit)]
            series.extend(self._walk(pair, self.base_price(pair), timestamps))
        else:
            series.extend(self._walk(pair, series[-1].close, [series[-1].timestamp + step]))

        return list(series[-limit:])

    async def get_historical_data(self, pair: str, start: datetime, end: datetime) -> List[Candle]:
        """Hourly random-walk candles between start and end."""
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        if end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)
        timestamps = list(pd.date_range(start, end, freq='h').to_pydatetime())
        return self._walk(pair, self.base_price(pair), timestamps)

    async def place_order(self, pair: str, side: str, order_type: str, size: float,
                          price: Optional[float] = None) -> Order:
        if size <= 0:
            raise GatewayError('place_order', f"Invalid order size {size}")
        order = Order(
            id=f"paper-{next(self._order_ids)}",
            pair=pair,
            side=side,
            type=order_type,
            size=size,
            price=price if price is not None else self.last_price(pair),
            status='closed'
        )
        self.orders.append(order)
        logger.info(f"Paper {side} {order_type} order filled: {size:.6f} {pair} at {order.price:.2f}")
        return order

    async def place_conditional_order(self, pair: str, side: str, kind: str, size: float,
                                      trigger_price: float) -> Order:
        if kind not in CONDITIONAL_ORDER_PARAMS:
            raise GatewayError('place_conditional_order', f"Unknown conditional order kind '{kind}'")
        order = Order(
            id=f"paper-{next(self._order_ids)}",
            pair=pair,
            side=side,
            type=kind,
            size=size,
            price=0.0,
            status='open',
            trigger_price=trigger_price
        )
        self.orders.append(order)
        return order
