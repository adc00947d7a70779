"""
Realtime fan-out.

Decides which rooms hear about an order or payment change and publishes one
message per room to Redis. The ws_bridge service relays each room channel to
the sockets that joined that room.

- Role rooms: admin, kitchen, runner
- Table rooms: table:{table_id} (customers seated at that table)

Publishing is fire-and-forget: a missing Redis or a failed publish is logged
and never fails the operation that triggered it.
"""
import json
import logging

import redis

from .models import Role
from .settings import settings

logger = logging.getLogger(__name__)

ORDER_CREATED = "order_created"
ORDER_STATUS_UPDATED = "order_status_updated"
PAYMENT_STATUS_UPDATED = "payment_status_updated"


def role_room(role: Role) -> str:
    return role.value


def table_room(table_id: int) -> str:
    return f"table:{table_id}"


def room_channel(room: str, prefix: str | None = None) -> str:
    return f"{prefix or settings.realtime_channel_prefix}:{room}"


class RedisPublisher:
    """Publishes room messages to Redis pub/sub, connecting lazily."""

    def __init__(self, redis_url: str, channel_prefix: str):
        self.redis_url = redis_url
        self.channel_prefix = channel_prefix
        self._client: redis.Redis | None = None

    def _get_client(self) -> redis.Redis | None:
        if self._client is None:
            try:
                client = redis.from_url(self.redis_url)
                client.ping()
                self._client = client
            except redis.RedisError as e:
                logger.warning(f"Redis unavailable at {self.redis_url}: {e}")
                return None
        return self._client

    def publish(self, room: str, message: str) -> int:
        """Publish to a room; returns the number of bridge subscribers that got it."""
        client = self._get_client()
        if client is None:
            return 0
        try:
            return client.publish(room_channel(room, self.channel_prefix), message)
        except redis.RedisError:
            # Reconnect on the next publish
            self._client = None
            raise


class Fanout:
    """Routes order and payment events to their audience."""

    def __init__(self, publisher):
        self.publisher = publisher

    def order_created(self, order: dict) -> None:
        self._emit(ORDER_CREATED, [role_room(Role.admin), role_room(Role.kitchen)], order)

    def order_status_updated(self, order: dict) -> None:
        rooms = [
            role_room(Role.admin),
            role_room(Role.kitchen),
            role_room(Role.runner),
            table_room(order["table_id"]),
        ]
        self._emit(ORDER_STATUS_UPDATED, rooms, order)

    def payment_status_updated(self, table_id: int, payment: dict) -> None:
        self._emit(PAYMENT_STATUS_UPDATED, [table_room(table_id)], payment)

    def _emit(self, event: str, rooms: list[str], data: dict) -> None:
        message = json.dumps({"event": event, "data": data}, default=str)
        for room in rooms:
            try:
                self.publisher.publish(room, message)
            except Exception as e:
                logger.warning(f"Failed to publish {event} to room {room}: {e}")


_fanout: Fanout | None = None


def get_fanout() -> Fanout:
    global _fanout
    if _fanout is None:
        _fanout = Fanout(RedisPublisher(settings.redis_url, settings.realtime_channel_prefix))
    return _fanout
