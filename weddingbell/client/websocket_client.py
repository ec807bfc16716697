"""
WebSocket client for the WeddingBell real-time endpoint.

Used by front-end services and integration scripts to receive notifications
and presence events.

Features:
- Authentication with an access token, by ``auth`` frame or query string
- Room joins tracked locally and re-requested after every reconnect
- Automatic reconnection with exponential backoff (1s doubling, 5s cap,
  10 attempts by default)
- Handlers registered per frame type; ``*`` receives every frame
- Server pings answered with ``pong``

Usage:
    client = WeddingBellClient(ClientConfig(url=..., token=token))
    client.on("notification", show_toast)
    await client.connect()
    await client.join_room("wedding:42")
"""

import asyncio
import inspect
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from urllib.parse import quote

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from weddingbell.app.utils.decorators import compute_backoff_delay
from weddingbell.app.utils.logging import get_logger

logger = get_logger(__name__)

FrameHandler = Callable[[Dict[str, Any]], Any]
Connector = Callable[[str], Awaitable[Any]]


class ConnectionState(str, Enum):
    """Client connection states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass
class ClientConfig:
    """Configuration for the WebSocket client."""
    url: str = "ws://localhost:8000/api/v1/ws/connect"
    token: Optional[str] = None
    token_in_query: bool = False
    auth_timeout: float = 10.0
    reconnect_delay: float = 1.0
    max_reconnect_delay: float = 5.0
    max_reconnect_attempts: int = 10


class ClientError(Exception):
    """Base exception for client errors."""

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class ClientAuthenticationError(ClientError):
    """The server refused the access token."""


def _frame(frame_type: str, data: Optional[Dict[str, Any]] = None) -> str:
    return json.dumps({
        "type": frame_type,
        "data": data or {},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })


class WeddingBellClient:
    """Async client with room tracking and automatic reconnection."""

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        connect: Optional[Connector] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        """
        Initialize the client.

        Args:
            config: Client configuration
            connect: Opens a connection for a URL; defaults to ``websockets.connect``
            sleep: Awaitable sleep used between reconnect attempts
        """
        self.config = config or ClientConfig()
        self._connect = connect or websockets.connect
        self._sleep = sleep

        self.state = ConnectionState.DISCONNECTED
        self.connection_id: Optional[str] = None
        self.user_id: Optional[str] = None
        self.joined_rooms: Set[str] = set()
        self.reconnect_count = 0

        self._ws: Any = None
        self._handlers: Dict[str, List[FrameHandler]] = {}
        self._receive_task: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.AUTHENTICATED

    def on(self, frame_type: str, handler: FrameHandler) -> None:
        """Register a handler for a frame type, or ``*`` for every frame."""
        self._handlers.setdefault(frame_type, []).append(handler)

    def _url(self) -> str:
        if self.config.token_in_query and self.config.token:
            separator = "&" if "?" in self.config.url else "?"
            return f"{self.config.url}{separator}token={quote(self.config.token)}"
        return self.config.url

    async def connect(self) -> None:
        """
        Connect, authenticate and start receiving.

        Raises:
            ClientAuthenticationError: If the token is refused
            ClientError: If the server cannot be reached
        """
        self._closing = False
        try:
            await self._open()
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            self.state = ConnectionState.FAILED
            raise ClientError(f"Failed to connect: {e}")
        self._receive_task = asyncio.create_task(self._receive_loop())

    async def _open(self) -> None:
        self.state = ConnectionState.CONNECTING
        ws = await self._connect(self._url())
        try:
            if not self.config.token_in_query:
                await ws.send(_frame("auth", {"token": self.config.token}))
            reply = json.loads(await asyncio.wait_for(ws.recv(), timeout=self.config.auth_timeout))
        except BaseException:
            await ws.close()
            raise

        if reply.get("type") != "authenticated":
            await ws.close()
            self.state = ConnectionState.FAILED
            error = reply.get("data") or {}
            raise ClientAuthenticationError(
                error.get("message", "Authentication failed"),
                error_code=error.get("code")
            )

        data = reply.get("data") or {}
        self._ws = ws
        self.connection_id = data.get("connection_id")
        self.user_id = data.get("user_id")
        self.state = ConnectionState.AUTHENTICATED
        logger.info("Connected", connection_id=self.connection_id, user_id=self.user_id)

    async def send(self, frame_type: str, data: Optional[Dict[str, Any]] = None) -> None:
        if self._ws is None:
            raise ClientError("Not connected")
        await self._ws.send(_frame(frame_type, data))

    async def join_room(self, room: str) -> None:
        """Join ``room`` now and after every reconnect."""
        self.joined_rooms.add(room)
        if self.is_connected:
            await self.send("join_room", {"room": room})

    async def leave_room(self, room: str) -> None:
        self.joined_rooms.discard(room)
        if self.is_connected:
            await self.send("leave_room", {"room": room})

    async def reconnect(self) -> bool:
        """
        Reopen the connection with exponential backoff and rejoin rooms.

        Returns:
            True once connected again; False when attempts are exhausted or
            the token is refused
        """
        self.state = ConnectionState.RECONNECTING
        for attempt in range(1, self.config.max_reconnect_attempts + 1):
            delay = compute_backoff_delay(
                attempt,
                self.config.reconnect_delay,
                max_delay=self.config.max_reconnect_delay,
                jitter=False
            )
            logger.info("Reconnecting", attempt=attempt, delay=delay)
            await self._sleep(delay)

            try:
                await self._open()
            except ClientAuthenticationError as e:
                logger.error("Reconnect refused", error=e.message)
                await self._emit({"type": "reconnect_failed", "data": {"reason": e.message}})
                return False
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                logger.warning("Reconnect attempt failed", attempt=attempt, error=str(e))
                continue

            self.reconnect_count += 1
            for room in sorted(self.joined_rooms):
                await self.send("join_room", {"room": room})
            await self._emit({"type": "reconnected", "data": {"attempt": attempt}})
            return True

        self.state = ConnectionState.FAILED
        logger.error("Reconnect attempts exhausted", attempts=self.config.max_reconnect_attempts)
        await self._emit({"type": "reconnect_failed", "data": {"reason": "attempts exhausted"}})
        return False

    async def _receive_loop(self) -> None:
        while not self._closing:
            try:
                raw = await self._ws.recv()
            except ConnectionClosed as e:
                if self._closing:
                    break
                logger.warning("Connection lost", code=e.rcvd.code if e.rcvd else None)
                if not await self.reconnect():
                    break
                continue

            try:
                frame = json.loads(raw)
            except ValueError:
                logger.warning("Ignoring non-JSON frame")
                continue
            if frame.get("type") == "ping":
                await self.send("pong")
            await self._emit(frame)

    async def _emit(self, frame: Dict[str, Any]) -> None:
        handlers = self._handlers.get(frame.get("type"), []) + self._handlers.get("*", [])
        for handler in handlers:
            try:
                result = handler(frame)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Frame handler failed", frame_type=frame.get("type"), error=str(e))

    async def close(self) -> None:
        """Close the connection without reconnecting."""
        self._closing = True
        self.state = ConnectionState.CLOSED
        if self._ws is not None:
            await self._ws.close()
        if self._receive_task is not None and not self._receive_task.done():
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
        self._ws = None
