"""
Live price feed with reference-counted pair subscriptions and price alerts.
"""
import asyncio
import uuid
from typing import Callable, Dict, List, Optional

from trading_engine.config import logger, PRICE_POLL_INTERVAL
from trading_engine.models import PriceAlert, PriceUpdate
from trading_engine.utils.event_bus import EventBus, Topic
from trading_engine.utils.logger import send_telegram_message
from trading_engine.utils.scheduler import PeriodicScheduler

ALERT_CONDITIONS = ('above', 'below')


class PriceSubscription:
    """Token for one subscription to a pair's price stream."""

    def __init__(self, feed: 'PriceFeed', pair: str, handler: Optional[Callable]):
        self._feed = feed
        self.pair = pair
        self.handler = handler
        self.active = True

    def cancel(self):
        """Release the subscription. Safe to call more than once."""
        if self.active:
            self.active = False
            self._feed._unsubscribe(self)


class PriceFeed:
    """
    Latest prices per pair, pulled from the gateway on a fixed interval.

    A pair stays subscribed while at least one subscription for it is active.
    Each distinct handler receives an update once, however many times it
    subscribed to the pair.
    """

    def __init__(self, gateway, event_bus: Optional[EventBus] = None,
                 interval: float = PRICE_POLL_INTERVAL, notify: bool = True):
        self.gateway = gateway
        self.event_bus = event_bus or EventBus()
        self.notify = notify
        self.scheduler = PeriodicScheduler(self.poll, interval, name="price-feed")
        self._subscriptions: Dict[str, List[PriceSubscription]] = {}
        self._latest: Dict[str, PriceUpdate] = {}
        self._alerts: Dict[str, PriceAlert] = {}

    def subscribe(self, pair: str, handler: Optional[Callable] = None) -> PriceSubscription:
        """Subscribe to price updates for a pair."""
        subscriptions = self._subscriptions.setdefault(pair, [])
        if not subscriptions:
            logger.info(f"Subscribed to price updates for {pair}")
        subscription = PriceSubscription(self, pair, handler)
        subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: PriceSubscription):
        subscriptions = self._subscriptions.get(subscription.pair, [])
        if subscription in subscriptions:
            subscriptions.remove(subscription)
        if not subscriptions and subscription.pair in self._subscriptions:
            del self._subscriptions[subscription.pair]
            logger.info(f"Released price subscription for {subscription.pair}")

    def is_subscribed(self, pair: str) -> bool:
        return bool(self._subscriptions.get(pair))

    def subscription_count(self, pair: str) -> int:
        return len(self._subscriptions.get(pair, []))

    @property
    def subscribed_pairs(self) -> List[str]:
        return list(self._subscriptions.keys())

    def get_latest_price(self, pair: str) -> Optional[PriceUpdate]:
        return self._latest.get(pair)

    async def update_price(self, update: PriceUpdate):
        """Store the latest price, notify subscribers and check alerts."""
        self._latest[update.pair] = update

        handlers = []
        for subscription in list(self._subscriptions.get(update.pair, [])):
            if subscription.handler is not None and subscription.handler not in handlers:
                handlers.append(subscription.handler)

        for handler in handlers:
            try:
                result = handler(update)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Price handler failed for {update.pair}: {e}", exc_info=True)

        await self.event_bus.publish(Topic.PRICE_UPDATE, update)
        await self.check_price_alerts()

    async def poll(self):
        """Pull the latest candle of every watched pair from the gateway."""
        pairs = set(self.subscribed_pairs)
        pairs.update(alert.pair for alert in self.get_active_alerts())

        for pair in sorted(pairs):
            candles = await self.gateway.get_market_data(pair)
            if not candles:
                logger.warning(f"No market data for {pair}")
                continue
            last = candles[-1]
            await self.update_price(PriceUpdate(
                pair=pair,
                price=last.close,
                timestamp=last.timestamp,
                volume=last.volume,
                high=last.high,
                low=last.low,
                open=last.open
            ))

    def start(self):
        self.scheduler.start()

    def stop(self):
        self.scheduler.stop()

    def set_price_alert(self, pair: str, condition: str, price: float) -> str:
        """Create a one-shot alert. Returns the alert id."""
        if condition not in ALERT_CONDITIONS:
            raise ValueError(f"Alert condition must be one of {ALERT_CONDITIONS}, got {condition!r}")

        alert_id = f"alert_{uuid.uuid4().hex[:12]}"
        self._alerts[alert_id] = PriceAlert(id=alert_id, pair=pair, condition=condition, price=price)
        logger.info(f"Price alert set for {pair} {condition} {price}")
        return alert_id

    def remove_price_alert(self, alert_id: str) -> bool:
        removed = self._alerts.pop(alert_id, None) is not None
        if removed:
            logger.info(f"Price alert {alert_id} removed")
        return removed

    def get_active_alerts(self) -> List[PriceAlert]:
        return [alert for alert in self._alerts.values() if not alert.triggered]

    async def check_price_alerts(self) -> List[PriceAlert]:
        """Fire every untriggered alert whose condition holds. Returns the fired alerts."""
        fired = []
        for alert in self.get_active_alerts():
            latest = self._latest.get(alert.pair)
            if latest is None or not alert.is_hit(latest.price):
                continue

            alert.triggered = True
            fired.append(alert)
            logger.info(f"Price alert triggered: {alert.pair} {alert.condition} {alert.price}")

            await self.event_bus.publish(Topic.PRICE_ALERT, {'alert': alert, 'current_price': latest.price})
            if self.notify:
                await send_telegram_message(
                    f"🔔 <b>Price Alert</b>\n{alert.pair} is {alert.condition} {alert.price:.2f} "
                    f"(now {latest.price:.2f})"
                )
        return fired
