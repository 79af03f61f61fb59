"""
In-process event bus with typed topics.

Handlers may be plain functions or coroutines. A failing handler is logged
and does not stop delivery to the remaining handlers.
"""
import asyncio
from enum import Enum
from typing import Any, Callable, Dict, List

from trading_engine.config import logger


class Topic(str, Enum):
    POSITION_UPDATE = 'position_update'
    LIQUIDATION_WARNING = 'liquidation_warning'
    MARGIN_UPDATE = 'margin_update'
    PRICE_UPDATE = 'price_update'
    PRICE_ALERT = 'price_alert'
    TRADE_JOURNAL = 'trade_journal'


class Subscription:
    """Cancellation token returned by subscribe()."""

    def __init__(self, bus: 'EventBus', topic: Topic, handler: Callable):
        self._bus = bus
        self.topic = topic
        self.handler = handler
        self.active = True

    def cancel(self):
        """Stop receiving events. Safe to call more than once."""
        if self.active:
            self._bus._remove(self)
            self.active = False


class EventBus:
    """Publish/subscribe hub shared by the gateway, price feed and managers."""

    def __init__(self):
        self._subscriptions: Dict[Topic, List[Subscription]] = {topic: [] for topic in Topic}

    def subscribe(self, topic: Topic, handler: Callable) -> Subscription:
        """
        Register a handler for a topic.

        Registering the same handler twice returns the existing subscription
        instead of delivering every event twice.
        """
        for subscription in self._subscriptions[topic]:
            if subscription.handler == handler:
                return subscription
        subscription = Subscription(self, topic, handler)
        self._subscriptions[topic].append(subscription)
        return subscription

    def _remove(self, subscription: Subscription):
        subscriptions = self._subscriptions[subscription.topic]
        if subscription in subscriptions:
            subscriptions.remove(subscription)

    def subscriber_count(self, topic: Topic) -> int:
        return len(self._subscriptions[topic])

    async def publish(self, topic: Topic, payload: Any):
        """Deliver a payload to every handler of the topic."""
        for subscription in list(self._subscriptions[topic]):
            try:
                result = subscription.handler(payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Event handler failed for {topic.value}: {e}", exc_info=True)
