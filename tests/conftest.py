"""
Shared fixtures: candle factories, strategies and an in-memory gateway.
"""
import itertools
from datetime import datetime, timedelta, timezone

import pytest

from trading_engine.exceptions import GatewayError
from trading_engine.exchange_client import BaseGateway
from trading_engine.models import AccountBalance, Candle, Order, Strategy

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_candles(prices, pair="BTC-USDT", start=START, step=timedelta(hours=1), spread=0.0):
    """One candle per close price, opened at the previous close."""
    candles = []
    previous = prices[0] if prices else 0.0
    for i, price in enumerate(prices):
        candles.append(Candle(
            timestamp=start + step * i,
            open=previous,
            high=max(previous, price) + spread,
            low=min(previous, price) - spread,
            close=float(price),
            volume=100.0,
            pair=pair
        ))
        previous = price
    return candles


def make_strategy(strategy_type="MA_CROSSOVER", parameters=None, pair="BTC-USDT", strategy_id=None):
    return Strategy(
        id=strategy_id or f"{strategy_type.lower()}_1",
        name=f"{strategy_type} test",
        type=strategy_type,
        parameters=parameters or {},
        pair=pair
    )


class FakeGateway(BaseGateway):
    """Gateway serving fixed candles and filling orders at the last close."""

    def __init__(self, candles=None, balance=10000.0, event_bus=None):
        super().__init__(event_bus)
        self.candles = {}
        for candle in candles or []:
            self.candles.setdefault(candle.pair, []).append(candle)
        self.balance = AccountBalance(total=balance, available=balance, equity=balance)
        self.orders = []
        self.conditional_orders = []
        self.fail_balance = False
        self._ids = itertools.count(1)

    def set_prices(self, pair, prices):
        self.candles[pair] = make_candles(prices, pair=pair)

    def last_price(self, pair):
        series = self.candles.get(pair)
        return series[-1].close if series else 0.0

    async def get_account_balance(self):
        if self.fail_balance:
            raise GatewayError('get_account_balance', 'timeout')
        return self.balance

    async def get_market_data(self, pair, timeframe=None, limit=100):
        return list(self.candles.get(pair, []))[-limit:]

    async def get_historical_data(self, pair, start, end):
        return [c for c in self.candles.get(pair, []) if start <= c.timestamp <= end]

    async def place_order(self, pair, side, order_type, size, price=None):
        order = Order(
            id=f"fake-{next(self._ids)}",
            pair=pair,
            side=side,
            type=order_type,
            size=size,
            price=price if price is not None else self.last_price(pair),
            status='closed'
        )
        self.orders.append(order)
        return order

    async def place_conditional_order(self, pair, side, kind, size, trigger_price):
        order = Order(
            id=f"fake-{next(self._ids)}",
            pair=pair,
            side=side,
            type=kind,
            size=size,
            trigger_price=trigger_price
        )
        self.conditional_orders.append(order)
        return order


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def ma_strategy():
    return make_strategy("MA_CROSSOVER", {'shortPeriod': 2, 'longPeriod': 4})
