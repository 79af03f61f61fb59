"""
Configuration module for the trading engine.
"""
import os
import logging
import sys
from dataclasses import dataclass, field, asdict
from typing import Dict, Any, List
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

LOG_FILE = os.getenv("TRADING_ENGINE_LOG_FILE", "trading_engine.log")

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    handlers=[logging.FileHandler(LOG_FILE, encoding='utf-8'), logging.StreamHandler()]
)
logger = logging.getLogger("trading_engine")

# Fix for Windows event loop policy
if sys.platform == 'win32':
    import asyncio
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


def _env_float(name: str, default: float) -> float:
    """Read a float from the environment, falling back to the default."""
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Invalid value for {name}: {value!r}, using default {default}")
        return default


# Exchange API credentials
EXCHANGE_ID = os.getenv("EXCHANGE_ID", "poloniex")
EXCHANGE_API_KEY = os.getenv("EXCHANGE_API_KEY")
EXCHANGE_API_SECRET = os.getenv("EXCHANGE_API_SECRET")
EXCHANGE_PASSWORD = os.getenv("EXCHANGE_PASSWORD")

# Telegram settings
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")
TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID")

# Market data defaults
DEFAULT_PAIR = "BTC-USDT"
DEFAULT_TIMEFRAME = "5m"
DEFAULT_LIMIT = 100
HISTORICAL_TIMEFRAME = "1h"
MAX_RETRIES = 3

# Simulation defaults
INITIAL_BALANCE = _env_float("INITIAL_BALANCE", 10000.0)
FEE_RATE = _env_float("FEE_RATE", 0.001)
SLIPPAGE = _env_float("SLIPPAGE", 0.001)
RISK_PER_TRADE = _env_float("RISK_PER_TRADE", 2.0)  # percent of balance
STOP_LOSS_PERCENT = _env_float("STOP_LOSS_PERCENT", 2.0)
TAKE_PROFIT_PERCENT = _env_float("TAKE_PROFIT_PERCENT", 4.0)
TRAILING_STOP_PERCENT = _env_float("TRAILING_STOP_PERCENT", 1.5)

# Live trading risk limits
MAX_POSITIONS = int(_env_float("MAX_POSITIONS", 3))
MAX_LEVERAGE = _env_float("MAX_LEVERAGE", 5.0)
MAX_DRAWDOWN = _env_float("MAX_DRAWDOWN", 15.0)  # percent
MAX_DAILY_LOSS = _env_float("MAX_DAILY_LOSS", 5.0)  # percent of day's starting balance
CORRELATION_THRESHOLD = _env_float("CORRELATION_THRESHOLD", 0.7)
LIQUIDATION_DISTANCE_PERCENT = 5.0

# Loop intervals (seconds)
UPDATE_INTERVAL = _env_float("UPDATE_INTERVAL", 5.0)
DEMO_POLL_INTERVAL = _env_float("DEMO_POLL_INTERVAL", 5.0)
PRICE_POLL_INTERVAL = _env_float("PRICE_POLL_INTERVAL", 5.0)

# Demo -> live promotion gates
READY_MIN_WIN_RATE = 0.5
READY_MIN_RETURN_PERCENT = 5.0
READY_MIN_TRADES = 20
READY_MIN_DAYS = 7

# Groups of assets that tend to move together
CORRELATED_ASSET_GROUPS: List[List[str]] = [
    ["BTC", "ETH"],
    ["SOL", "ADA", "AVAX"],
    ["BNB", "MATIC", "DOT"],
    ["DOGE", "SHIB"],
]

# Trade journal
BASE_SUMMARY_FILE = "trade_summary.csv"

SUMMARY_HEADERS = [
    "timestamp", "trade_id", "action", "strategy", "pair", "side", "price",
    "size", "entry_price", "exit_price", "profit_amount", "profit_percent",
    "balance", "reason"
]


@dataclass
class TradingConfig:
    """Risk settings for a trading manager instance."""
    max_positions: int = MAX_POSITIONS
    max_leverage: float = MAX_LEVERAGE
    risk_per_trade: float = RISK_PER_TRADE
    stop_loss_percent: float = STOP_LOSS_PERCENT
    take_profit_percent: float = TAKE_PROFIT_PERCENT
    trailing_stop_percent: float = TRAILING_STOP_PERCENT
    max_drawdown: float = MAX_DRAWDOWN
    max_daily_loss: float = MAX_DAILY_LOSS
    correlation_threshold: float = CORRELATION_THRESHOLD
    update_interval: float = UPDATE_INTERVAL
    liquidation_distance: float = LIQUIDATION_DISTANCE_PERCENT
    correlated_groups: List[List[str]] = field(default_factory=lambda: [list(g) for g in CORRELATED_ASSET_GROUPS])

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary."""
        return asdict(self)


def get_strategy_summary_file(strategy_name=None):
    """Get the trade summary CSV filename for the specified strategy."""
    if not strategy_name:
        return BASE_SUMMARY_FILE
    return f"trade_summary_{strategy_name}.csv"


def has_exchange_credentials() -> bool:
    """Return True when live exchange credentials are configured."""
    return bool(EXCHANGE_API_KEY and EXCHANGE_API_SECRET)


def validate_config(require_exchange: bool = True) -> bool:
    """Validate that all required configuration variables are present."""
    if require_exchange and not has_exchange_credentials():
        logger.error("Missing exchange credentials. Please check your .env file.")
        return False
    if not (TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID):
        logger.warning("Telegram credentials not set, notifications are disabled")
    return True
