"""
WebSocket Bridge Microservice

Subscribes to the API's room channels on Redis and relays each message to the
sockets that joined that room.
- Role rooms: admin, kitchen, runner, customer
- Table rooms: table:{table_id} (customers seated at a table)

Staff may also send status updates over the socket; they are forwarded to the
API's status endpoint with the connection's own credential, so the API stays
the only place where transitions are decided.
"""
import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import redis.asyncio as redis
from fastapi import FastAPI, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from starlette.types import ASGIApp, Receive, Scope, Send

from .registry import ConnectionRegistry

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Configuration
API_URL = os.getenv("API_URL", "http://localhost:8000")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")
CHANNEL_PREFIX = os.getenv("REALTIME_CHANNEL_PREFIX", "tableside:room")

CUSTOMER_ROLE = "customer"
POLICY_VIOLATION = 1008


async def verify_identity(token: str) -> Optional[dict]:
    """Resolve a staff credential through the API; None if invalid or inactive."""
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(
                f"{API_URL}/users/me", headers={"Authorization": f"Bearer {token}"}
            )
    except httpx.HTTPError as e:
        logger.error(f"Error verifying credential: {e}", exc_info=True)
        return None
    if response.status_code != 200:
        return None
    identity = response.json()
    if not identity.get("is_active", False):
        return None
    return identity


async def validate_table(table_id: int) -> Optional[dict]:
    """Validate a table id by calling the API."""
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(f"{API_URL}/internal/validate-table/{table_id}")
    except httpx.HTTPError as e:
        logger.error(f"Error validating table {table_id}: {e}", exc_info=True)
        return None
    if response.status_code == 200:
        return response.json()
    return None


async def forward_status_update(token: Optional[str], order_id: int, status: str) -> tuple[int, dict]:
    """PUT the status change to the API as the connected user."""
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.put(
                f"{API_URL}/orders/{order_id}/status",
                json={"status": status},
                headers=headers,
            )
    except httpx.HTTPError as e:
        logger.error(f"Error forwarding status update for order {order_id}: {e}", exc_info=True)
        return 503, {"error": "Unavailable", "detail": "Order service unreachable"}
    try:
        body = response.json()
    except ValueError:
        body = {"detail": response.text}
    return response.status_code, body


def room_from_channel(channel: str) -> Optional[str]:
    prefix = f"{CHANNEL_PREFIX}:"
    if not channel.startswith(prefix):
        return None
    return channel[len(prefix):] or None


async def relay_room_message(registry: ConnectionRegistry, channel: str, data: str) -> int:
    room = room_from_channel(channel)
    if room is None:
        logger.warning(f"Ignoring message on unexpected channel {channel}")
        return 0
    return await registry.broadcast(room, data)


async def redis_listener(registry: ConnectionRegistry):
    """Subscribe to Redis and broadcast to WebSocket clients."""
    while True:
        try:
            r = redis.from_url(REDIS_URL)
            pubsub = r.pubsub()
            await pubsub.psubscribe(f"{CHANNEL_PREFIX}:*")

            async for message in pubsub.listen():
                if message["type"] == "pmessage":
                    await relay_room_message(
                        registry, message["channel"].decode(), message["data"].decode()
                    )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Redis connection error: {e}", exc_info=True)
            await asyncio.sleep(5)  # Retry after 5 seconds


async def handle_client_message(websocket: WebSocket, token: Optional[str], raw: str) -> None:
    """Answer one inbound socket message; errors go to this connection only."""
    try:
        message = json.loads(raw)
    except ValueError:
        await websocket.send_json({"event": "error", "error": "InvalidInput", "detail": "Message must be JSON"})
        return
    if not isinstance(message, dict):
        await websocket.send_json({"event": "error", "error": "InvalidInput", "detail": "Message must be an object"})
        return

    message_type = message.get("type")
    if message_type == "ping":
        await websocket.send_json({"event": "pong"})
        return

    if message_type == "update_order_status":
        order_id = message.get("order_id")
        status = message.get("status")
        if not isinstance(order_id, int) or not isinstance(status, str):
            await websocket.send_json({
                "event": "error",
                "error": "InvalidInput",
                "detail": "order_id and status are required",
            })
            return

        status_code, body = await forward_status_update(token, order_id, status)
        if status_code >= 400:
            await websocket.send_json({
                "event": "error",
                "error": body.get("error", "Unavailable"),
                "detail": body.get("detail", "Failed to update order"),
                "order_id": order_id,
            })
            return
        await websocket.send_json({"event": "status_update_accepted", "data": body})
        return

    await websocket.send_json({
        "event": "error",
        "error": "InvalidInput",
        "detail": f"Unknown message type: {message_type}",
    })


class ASGIRequestLoggingMiddleware:
    """ASGI middleware that logs every HTTP and WebSocket request reaching the bridge."""

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] in ("http", "websocket"):
            client_host = scope["client"][0] if scope.get("client") else "unknown"
            # Query strings carry credentials; log the path only
            logger.info(f"{scope['type'].upper()} {scope.get('path', 'UNKNOWN')} from {client_host}")
        await self.app(scope, receive, send)


def create_app(registry: Optional[ConnectionRegistry] = None, listen: bool = True) -> FastAPI:
    registry = registry or ConnectionRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = asyncio.create_task(redis_listener(registry)) if listen else None
        yield
        if task:
            task.cancel()

    app = FastAPI(title="Tableside WS Bridge", lifespan=lifespan)
    app.state.registry = registry
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(ASGIRequestLoggingMiddleware)

    @app.get("/health")
    def health():
        rooms = registry.counts()
        return {
            "status": "ok",
            "rooms": rooms,
            "config": {"api_url_configured": bool(API_URL)},
        }

    @app.websocket("/ws")
    async def websocket_endpoint(
        websocket: WebSocket,
        token: Optional[str] = Query(None),
        table_id: Optional[int] = Query(None),
    ):
        """Staff connect with a token; customers connect anonymously with their table id."""
        client_host = websocket.client.host if websocket.client else "unknown"
        await websocket.accept()

        role = CUSTOMER_ROLE
        if token:
            identity = await verify_identity(token)
            if identity is None:
                logger.warning(f"WebSocket /ws: invalid token from {client_host}")
                await websocket.close(code=POLICY_VIOLATION, reason="Invalid authentication token")
                return
            role = identity["role"]

        rooms = [role]
        if role == CUSTOMER_ROLE and table_id is not None:
            if await validate_table(table_id) is None:
                logger.warning(f"WebSocket /ws: invalid table {table_id} from {client_host}")
                await websocket.close(code=POLICY_VIOLATION, reason="Invalid table")
                return
            rooms.append(f"table:{table_id}")

        await registry.join(websocket, rooms)
        logger.info(f"WebSocket /ws: {role} from {client_host} joined {rooms}")
        await websocket.send_json({"event": "connected", "role": role, "rooms": rooms})

        try:
            while True:
                raw = await websocket.receive_text()
                await handle_client_message(websocket, token, raw)
        except WebSocketDisconnect:
            pass
        finally:
            await registry.leave(websocket)
            logger.info(f"WebSocket /ws: {role} from {client_host} disconnected")

    return app


app = create_app()
