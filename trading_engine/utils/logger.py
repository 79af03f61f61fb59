"""
Trade journal, CSV trade summaries and Telegram notifications.
"""
import csv
import os
import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Dict, Any, List, Optional

from telegram import Bot
from trading_engine.config import (
    logger, MAX_RETRIES, TELEGRAM_BOT_TOKEN, TELEGRAM_CHAT_ID, SUMMARY_HEADERS
)
from trading_engine.models import TradeJournalEntry, utc_now
from trading_engine.utils.event_bus import Topic

_telegram_bot: Optional[Bot] = None


def _empty_metrics() -> Dict[str, Any]:
    return {
        'trades': 0,
        'wins': 0,
        'losses': 0,
        'total_profit': 0.0,
        'total_loss': 0.0,
        'profit_factor': 0.0,
        'win_rate': 0.0,
        'avg_profit': 0.0,
        'max_win': 0.0,
        'max_loss': 0.0,
        'long_trades': 0,
        'short_trades': 0,
        'last_updated': None
    }


class TradeJournal:
    """
    Append-only record of fills.

    Every entry is kept in memory. When `summary_file` is set each entry is
    also appended to that CSV file. CLOSE entries update the per-strategy
    performance summary.
    """

    def __init__(self, summary_file: Optional[str] = None, event_bus=None):
        self.summary_file = summary_file
        self.event_bus = event_bus
        self._entries: List[TradeJournalEntry] = []
        self._next_id = 1
        self.strategy_metrics: Dict[str, Dict[str, Any]] = defaultdict(_empty_metrics)
        if summary_file:
            self._setup_summary_file()

    def _setup_summary_file(self):
        """Initialize the CSV summary file with headers"""
        file_exists = os.path.isfile(self.summary_file)
        with open(self.summary_file, mode='a', newline='') as f:
            writer = csv.writer(f)
            if not file_exists:
                writer.writerow(SUMMARY_HEADERS)
                logger.info(f"Created trade summary log file: {self.summary_file}")

    @property
    def entries(self) -> List[TradeJournalEntry]:
        return list(self._entries)

    def next_trade_id(self) -> int:
        trade_id = self._next_id
        self._next_id += 1
        return trade_id

    def entries_for(self, strategy_id: str) -> List[TradeJournalEntry]:
        return [e for e in self._entries if e.strategy_id == strategy_id]

    def append(self, entry: TradeJournalEntry):
        """Record an entry without publishing it."""
        self._entries.append(entry)
        self._next_id = max(self._next_id, entry.trade_id + 1)
        if self.summary_file:
            self._write_row(entry)
        if entry.action == 'CLOSE':
            self._update_metrics(entry)

    async def record(self, entry: TradeJournalEntry):
        """Record an entry and publish it on the event bus."""
        self.append(entry)
        if self.event_bus is not None:
            await self.event_bus.publish(Topic.TRADE_JOURNAL, entry)

    def _write_row(self, entry: TradeJournalEntry):
        row = {
            'timestamp': entry.timestamp.isoformat() if entry.timestamp else "",
            'trade_id': entry.trade_id,
            'action': entry.action,
            'strategy': entry.strategy_id,
            'pair': entry.pair,
            'side': entry.side,
            'price': entry.price,
            'size': entry.size,
            'entry_price': entry.entry_price if entry.entry_price is not None else "",
            'exit_price': entry.price if entry.action == 'CLOSE' else "",
            'profit_amount': entry.pnl if entry.action == 'CLOSE' else "",
            'profit_percent': entry.pnl_percent if entry.action == 'CLOSE' else "",
            'balance': entry.balance if entry.balance is not None else "",
            'reason': entry.reason
        }
        try:
            with open(self.summary_file, mode='a', newline='') as f:
                writer = csv.writer(f)
                writer.writerow([row[header] for header in SUMMARY_HEADERS])
            logger.debug(f"Logged trade summary: {entry.action} {entry.side}")
        except OSError as e:
            logger.error(f"Error writing trade summary to {self.summary_file}: {e}")

    def _update_metrics(self, entry: TradeJournalEntry):
        metrics = self.strategy_metrics[entry.strategy_id]
        profit_pct = entry.pnl_percent

        metrics['trades'] += 1
        if entry.pnl > 0:
            metrics['wins'] += 1
            metrics['total_profit'] += profit_pct
            metrics['max_win'] = max(metrics['max_win'], profit_pct)
        else:
            metrics['losses'] += 1
            metrics['total_loss'] += abs(profit_pct)
            metrics['max_loss'] = min(metrics['max_loss'], profit_pct)

        if entry.side == 'long':
            metrics['long_trades'] += 1
        elif entry.side == 'short':
            metrics['short_trades'] += 1

        trades = metrics['trades']
        total_profit = metrics['total_profit']
        total_loss = metrics['total_loss']
        metrics['win_rate'] = metrics['wins'] / trades
        metrics['avg_profit'] = (total_profit - total_loss) / trades
        if total_loss > 0:
            metrics['profit_factor'] = total_profit / total_loss
        else:
            metrics['profit_factor'] = float('inf') if total_profit > 0 else 0.0
        metrics['last_updated'] = utc_now().strftime("%Y-%m-%d %H:%M:%S")

    def generate_performance_report(self, strategies: Optional[List[str]] = None) -> str:
        """Formatted performance report for all or specific strategies"""
        if not strategies:
            strategies = list(self.strategy_metrics.keys())

        report = "📊 <b>STRATEGY PERFORMANCE REPORT</b> 📊\n\n"

        for strategy in strategies:
            metrics = self.strategy_metrics.get(strategy)
            if not metrics or metrics['trades'] == 0:
                continue
            report += f"<b>{strategy.upper()}</b>\n"
            report += f"Trades: {metrics['trades']} (🟢 {metrics['wins']} | 🔴 {metrics['losses']})\n"
            report += f"Win Rate: {metrics['win_rate']:.2%}\n"
            report += f"Avg Profit: {metrics['avg_profit']:.2f}%\n"
            report += f"Profit Factor: {metrics['profit_factor']:.2f}\n"
            report += f"Max Win: {metrics['max_win']:.2f}% | Max Loss: {metrics['max_loss']:.2f}%\n"
            report += f"Long: {metrics['long_trades']} | Short: {metrics['short_trades']}\n"
            report += f"Last Updated: {metrics['last_updated']}\n\n"

        ranked = [s for s in strategies if self.strategy_metrics.get(s, {}).get('trades')]
        if len(ranked) > 1:
            report += "<b>STRATEGY RANKING (by profit factor)</b>\n"
            ranked.sort(key=lambda s: self.strategy_metrics[s]['profit_factor'], reverse=True)
            for i, strategy in enumerate(ranked, 1):
                report += f"{i}. {strategy}: {self.strategy_metrics[strategy]['profit_factor']:.2f}\n"

        return report


def _parse_float(value: str) -> Optional[float]:
    if value in (None, ""):
        return None
    return float(value)


def load_trade_summary(summary_file: str) -> List[TradeJournalEntry]:
    """
    Read journal entries back from a CSV summary file.

    Malformed rows are skipped with a warning.
    """
    entries: List[TradeJournalEntry] = []
    if not os.path.exists(summary_file):
        logger.info(f"No previous trade summary file found at {summary_file}")
        return entries

    with open(summary_file, mode='r', newline='') as f:
        reader = csv.DictReader(f)
        for row in reader:
            try:
                action = row['action']
                is_close = action == 'CLOSE'
                entries.append(TradeJournalEntry(
                    trade_id=int(row['trade_id']),
                    timestamp=datetime.fromisoformat(row['timestamp']),
                    action=action,
                    strategy_id=row['strategy'],
                    pair=row['pair'],
                    side=row['side'],
                    price=float(row['price']),
                    size=float(row['size']),
                    pnl=(_parse_float(row['profit_amount']) or 0.0) if is_close else 0.0,
                    pnl_percent=(_parse_float(row['profit_percent']) or 0.0) if is_close else 0.0,
                    balance=_parse_float(row['balance']),
                    reason=row.get('reason', ''),
                    entry_price=_parse_float(row['entry_price'])
                ))
            except (KeyError, ValueError, TypeError):
                logger.warning(f"Skipped malformed row for trade ID {row.get('trade_id')}")

    logger.info(f"Loaded {len(entries)} journal entries from {summary_file}")
    return entries


def _get_telegram_bot() -> Bot:
    global _telegram_bot
    if _telegram_bot is None:
        _telegram_bot = Bot(token=TELEGRAM_BOT_TOKEN)
    return _telegram_bot


async def send_telegram_message(message: str) -> bool:
    """Send a message to Telegram. Returns True if successful, False otherwise."""
    if not TELEGRAM_BOT_TOKEN or not TELEGRAM_CHAT_ID:
        logger.debug("Missing Telegram credentials. Message not sent.")
        return False

    retries = 0
    while retries < MAX_RETRIES:
        try:
            await _get_telegram_bot().send_message(
                chat_id=TELEGRAM_CHAT_ID,
                text=message,
                parse_mode='HTML'
            )
            return True
        except Exception as e:
            retries += 1
            if retries >= MAX_RETRIES:
                logger.error(f"Failed to send Telegram message after {MAX_RETRIES} attempts: {e}")
                return False
            await asyncio.sleep(2 ** retries)  # Exponential backoff

    return False
