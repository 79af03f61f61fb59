"""
Position bookkeeping and exit rules for live trading.
"""
from typing import Dict, List, Optional, Set, Tuple

from trading_engine.models import Position, PositionSide
from trading_engine.config import logger

PositionKey = Tuple[str, str]


class PositionBook:
    """
    Open positions keyed by (strategy_id, pair).

    A slot must be reserved before the position is opened. Reservation is a
    single check-then-set, so two overlapping ticks can never both open a
    position for the same key.
    """

    def __init__(self):
        self._positions: Dict[PositionKey, Position] = {}
        self._reserved: Set[PositionKey] = set()
        self._closed: List[Position] = []

    def reserve(self, strategy_id: str, pair: str, limit: Optional[int] = None) -> bool:
        """
        Claim the slot for a new position. False if it is taken.

        With a `limit`, open positions and pending reservations together may
        not exceed it.
        """
        key = (strategy_id, pair)
        if key in self._positions or key in self._reserved:
            return False
        if limit is not None and self.slots_in_use >= limit:
            return False
        self._reserved.add(key)
        return True

    @property
    def slots_in_use(self) -> int:
        """Open positions plus reservations still waiting to be filled."""
        return len(self._positions) + len(self._reserved)

    def release(self, strategy_id: str, pair: str):
        """Give back a reservation that did not become a position."""
        self._reserved.discard((strategy_id, pair))

    def is_reserved(self, strategy_id: str, pair: str) -> bool:
        return (strategy_id, pair) in self._reserved

    def add(self, position: Position):
        """Store an opened position, consuming its reservation."""
        key = (position.strategy_id, position.symbol)
        if key in self._positions:
            raise ValueError(f"Position already open for {position.strategy_id} on {position.symbol}")
        self._reserved.discard(key)
        self._positions[key] = position

    def get(self, strategy_id: str, pair: str) -> Optional[Position]:
        return self._positions.get((strategy_id, pair))

    def has_position(self, strategy_id: str, pair: str) -> bool:
        return (strategy_id, pair) in self._positions

    def remove(self, position: Position) -> Optional[Position]:
        """Move a closed position out of the open book."""
        removed = self._positions.pop((position.strategy_id, position.symbol), None)
        if removed is not None:
            self._closed.append(removed)
        return removed

    def open_positions(self) -> List[Position]:
        return list(self._positions.values())

    def positions_for_symbol(self, symbol: str) -> List[Position]:
        return [p for p in self._positions.values() if p.symbol == symbol]

    @property
    def closed_positions(self) -> List[Position]:
        return list(self._closed)

    def __len__(self) -> int:
        return len(self._positions)


class TrailingStopManager:
    """
    Stop-loss, take-profit and trailing-stop rules for open positions.

    The trailing stop is set only once the position is in profit and then
    only moves in the position's favour.
    """

    def __init__(self, trailing_stop_percent: float):
        self.trailing_stop_percent = trailing_stop_percent

    def update_trailing_stop(self, position: Position, current_price: float) -> bool:
        """Advance the trailing stop. Returns True if it moved."""
        if not self.trailing_stop_percent or position.pnl_at(current_price) <= 0:
            return False

        distance = self.trailing_stop_percent / 100
        if position.side == PositionSide.LONG:
            candidate = current_price * (1 - distance)
            if position.trailing_stop is None or candidate > position.trailing_stop:
                position.trailing_stop = candidate
                logger.debug(f"Raised trailing stop for {position.symbol} to {candidate:.2f}")
                return True
        else:
            candidate = current_price * (1 + distance)
            if position.trailing_stop is None or candidate < position.trailing_stop:
                position.trailing_stop = candidate
                logger.debug(f"Lowered trailing stop for {position.symbol} to {candidate:.2f}")
                return True
        return False

    def check_exit(self, position: Position, current_price: float) -> Optional[str]:
        """Reason to close the position at this price, or None."""
        long_side = position.side == PositionSide.LONG

        if position.stop_loss is not None:
            if (long_side and current_price <= position.stop_loss) or \
               (not long_side and current_price >= position.stop_loss):
                return f"Stop loss hit at {position.stop_loss:.2f}"

        if position.take_profit is not None:
            if (long_side and current_price >= position.take_profit) or \
               (not long_side and current_price <= position.take_profit):
                return f"Take profit hit at {position.take_profit:.2f}"

        if position.trailing_stop is not None:
            if (long_side and current_price <= position.trailing_stop) or \
               (not long_side and current_price >= position.trailing_stop):
                return f"Trailing stop hit at {position.trailing_stop:.2f}"

        return None

    def manage(self, position: Position, current_price: float) -> Optional[str]:
        """Mark the position to market, check exits, then trail the stop."""
        position.update_mark(current_price)
        reason = self.check_exit(position, current_price)
        if reason is None:
            self.update_trailing_stop(position, current_price)
        return reason
