"""
Change notifier - invalidation events for relation collections
"""
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Callable, Union, List
import asyncio
import inspect
import logging
import uuid

from .domain.models import ChangeEvent, Collection, RowChange

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ColumnFilter:
    """Equality filter on one column, written as ``column=eq.value``"""
    column: str
    value: str

    @classmethod
    def parse(cls, text: str) -> "ColumnFilter":
        column, sep, rest = text.partition("=")
        if not sep or not rest.startswith("eq.") or not column:
            raise ValueError(f"Unsupported filter: {text!r}")
        return cls(column=column.strip(), value=rest[len("eq."):])

    def matches(self, row: Dict[str, Any]) -> bool:
        if self.column not in row or row[self.column] is None:
            return False
        return str(row[self.column]) == self.value

    def __str__(self) -> str:
        return f"{self.column}=eq.{self.value}"


OnChange = Callable[[ChangeEvent], Any]


@dataclass
class Subscription:
    """Handle returned by ``ChangeNotifier.subscribe``"""
    collection: Collection
    predicate: Optional[ColumnFilter]
    on_change: OnChange
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def wants(self, change: RowChange) -> bool:
        if change.collection != self.collection:
            return False
        return self.predicate is None or self.predicate.matches(change.row)


class ChangeNotifier:
    """
    Routes committed writes to interested subscribers.

    Subscribers receive a ``ChangeEvent`` naming the collection only; they
    must re-query rather than apply a delta. Delivery is at-least-once and
    unordered with respect to the subscriber's own writes.
    """

    def __init__(self, publisher=None):
        self.instance_id = uuid.uuid4().hex
        self.publisher = publisher
        self._subscriptions: Dict[str, Subscription] = {}

    def subscribe(
        self,
        collection: Union[Collection, str],
        predicate: Union[ColumnFilter, str, None],
        on_change: OnChange,
    ) -> Subscription:
        """Register ``on_change`` for writes to ``collection`` matching ``predicate``"""
        if isinstance(predicate, str):
            predicate = ColumnFilter.parse(predicate)
        subscription = Subscription(
            collection=Collection(collection), predicate=predicate, on_change=on_change
        )
        self._subscriptions[subscription.id] = subscription
        logger.debug(f"Subscribed {subscription.id} to {subscription.collection.value} {predicate}")
        return subscription

    def unsubscribe(self, handle: Union[Subscription, str]) -> bool:
        """Remove a subscription; False if it was already gone"""
        key = handle.id if isinstance(handle, Subscription) else handle
        return self._subscriptions.pop(key, None) is not None

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def dispatch(self, change: RowChange) -> int:
        """
        Deliver a change to matching local subscribers

        Returns:
            Number of subscribers notified
        """
        targets: List[Subscription] = [
            s for s in list(self._subscriptions.values()) if s.wants(change)
        ]
        if not targets:
            return 0

        results = await asyncio.gather(
            *(self._deliver(s, change) for s in targets), return_exceptions=True
        )
        for subscription, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.error(f"Subscriber {subscription.id} failed on {change.collection.value}: {result}")
        return len(targets)

    async def _deliver(self, subscription: Subscription, change: RowChange):
        event = ChangeEvent(
            collection=change.collection,
            event_type=change.event_type,
            filter=str(subscription.predicate) if subscription.predicate else None,
        )
        result = subscription.on_change(event)
        if inspect.isawaitable(result):
            await result

    async def publish(self, change: RowChange) -> int:
        """Dispatch locally and fan the change out to other instances"""
        delivered = await self.dispatch(change)
        if self.publisher is not None:
            await self.publisher.publish_change(change, origin=self.instance_id)
        return delivered

    async def receive(self, payload: Dict[str, Any]) -> int:
        """Dispatch a change published by another instance"""
        if payload.get("origin") == self.instance_id:
            return 0
        try:
            change = RowChange(
                collection=Collection(payload["collection"]),
                event_type=payload.get("event_type") or "*",
                row=payload.get("row") or {},
            )
        except (KeyError, ValueError) as e:
            logger.error(f"Invalid relation change event: {e}")
            return 0
        return await self.dispatch(change)


# Global notifier instance
notifier = ChangeNotifier()


async def get_notifier() -> ChangeNotifier:
    """Dependency for getting notifier instance"""
    return notifier
