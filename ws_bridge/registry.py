import asyncio
import logging
from collections.abc import Iterable

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """
    Room membership for connected sockets.

    A socket is added to its rooms when it connects and removed from all of
    them when it disconnects or a send to it fails. Broadcasts send to a
    snapshot of the room taken under the lock.
    """

    def __init__(self):
        self._rooms: dict[str, set[WebSocket]] = {}
        self._memberships: dict[WebSocket, set[str]] = {}
        self._lock = asyncio.Lock()

    async def join(self, websocket: WebSocket, rooms: Iterable[str]) -> None:
        async with self._lock:
            joined = self._memberships.setdefault(websocket, set())
            for room in rooms:
                self._rooms.setdefault(room, set()).add(websocket)
                joined.add(room)

    async def leave(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._discard(websocket)

    def _discard(self, websocket: WebSocket) -> None:
        for room in self._memberships.pop(websocket, set()):
            members = self._rooms.get(room)
            if members is None:
                continue
            members.discard(websocket)
            if not members:
                del self._rooms[room]

    async def members(self, room: str) -> set[WebSocket]:
        async with self._lock:
            return set(self._rooms.get(room, ()))

    async def rooms_of(self, websocket: WebSocket) -> set[str]:
        async with self._lock:
            return set(self._memberships.get(websocket, ()))

    async def broadcast(self, room: str, message: str) -> int:
        """Send to every socket in `room`; returns how many sends succeeded."""
        delivered = 0
        dead = []
        for websocket in await self.members(room):
            try:
                await websocket.send_text(message)
                delivered += 1
            except Exception as e:
                logger.info(f"Dropping dead connection from room {room}: {e}")
                dead.append(websocket)

        if dead:
            async with self._lock:
                for websocket in dead:
                    self._discard(websocket)
        return delivered

    def counts(self) -> dict[str, int]:
        return {room: len(members) for room, members in list(self._rooms.items())}
