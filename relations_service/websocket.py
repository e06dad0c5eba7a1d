"""
WebSocket connections that relay relation invalidations to clients
"""
from typing import Dict, List
from fastapi import WebSocket
import logging
import uuid

from .domain.models import ChangeEvent, Collection
from .notifier import ChangeNotifier, Subscription

logger = logging.getLogger(__name__)


def watched_filters(user_id: str) -> List[tuple]:
    """Collections and filters a signed-in user's screens depend on"""
    return [
        (Collection.FRIEND_REQUESTS, f"to_user=eq.{user_id}"),
        (Collection.FRIENDSHIPS, f"receiver_id=eq.{user_id}"),
        (Collection.FRIENDSHIPS, f"requester_id=eq.{user_id}"),
        (Collection.FOLLOWS, f"following_id=eq.{user_id}"),
        (Collection.FOLLOWS, f"follower_id=eq.{user_id}"),
    ]


class ConnectionManager:
    """Tracks open sockets and their notifier subscriptions"""

    def __init__(self, notifier: ChangeNotifier):
        self.notifier = notifier
        # key=connection id, value=(user id, websocket)
        self.active_connections: Dict[str, tuple] = {}
        self.subscriptions: Dict[str, List[Subscription]] = {}

    async def connect(self, user_id: str, websocket: WebSocket) -> str:
        """Register an accepted socket and subscribe it for the user"""
        connection_id = uuid.uuid4().hex
        self.active_connections[connection_id] = (user_id, websocket)

        async def on_change(event: ChangeEvent):
            await self.send_event(connection_id, event)

        self.subscriptions[connection_id] = [
            self.notifier.subscribe(collection, predicate, on_change)
            for collection, predicate in watched_filters(user_id)
        ]
        logger.info(f"WebSocket {connection_id} opened for user {user_id}")
        return connection_id

    def disconnect(self, connection_id: str):
        for subscription in self.subscriptions.pop(connection_id, []):
            self.notifier.unsubscribe(subscription)
        if self.active_connections.pop(connection_id, None) is not None:
            logger.info(f"WebSocket {connection_id} closed")

    def get_online_ids(self) -> List[str]:
        return sorted({user_id for user_id, _ in self.active_connections.values()})

    async def send_event(self, connection_id: str, event: ChangeEvent):
        entry = self.active_connections.get(connection_id)
        if entry is None:
            return
        _, websocket = entry
        try:
            await websocket.send_json(
                {
                    "event": "invalidate",
                    "collection": event.collection.value,
                    "type": event.event_type,
                    "filter": event.filter,
                }
            )
        except Exception as e:
            logger.warning(f"Dropping WebSocket {connection_id}: {e}")
            self.disconnect(connection_id)
