"""
Presence and room layer for WeddingBell real-time connections.

Every socket goes through the same lifecycle: connected, authenticated (or
closed with 1008), joined after its first explicit room join, then any number
of further joins and leaves until it disconnects. Rooms are relayed across processes over the pub/sub bus; each
process delivers relayed frames to its own sockets only.

Key Features:
- JWT authentication within a handshake timeout
- Permitted rooms computed once from the token claims
- Explicit joins checked against the permitted set
- ``user_online``/``user_offline`` broadcasts per room
- Wedding domain events (music requests, photos, tasks and assignments, messages)
- Heartbeat pings and idle connection cleanup
- Per-address connection rate limiting and per-user connection cap

Frames are JSON objects ``{type, data, timestamp}`` in both directions.
"""

import asyncio
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from weddingbell.app.core.exceptions import (
    AuthenticationError,
    ErrorCode,
    WebSocketError,
)
from weddingbell.app.core.pubsub import PubSubBus
from weddingbell.app.models.domain.notification import format_datetime, utc_now
from weddingbell.app.utils.decorators import SlidingWindowRateLimiter
from weddingbell.app.utils.logging import WebSocketLogger, get_logger
from weddingbell.app.utils.security import (
    AccessControl,
    TokenClaims,
    TokenManager,
    UserRole,
)
from weddingbell.config.settings import PresenceSettings

logger = get_logger(__name__)
websocket_logger = WebSocketLogger()

POLICY_VIOLATION = 1008

ORIGIN_KEY = "_origin"


class ConnectionState(str, Enum):
    """Socket connection states."""
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    JOINED = "joined"
    CLOSED = "closed"


def build_frame(frame_type: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "type": frame_type,
        "data": data or {},
        "timestamp": format_datetime(utc_now()),
    }


@dataclass
class Session:
    """One socket connection."""
    connection_id: str
    websocket: Any
    client_ip: str
    connected_at: float
    last_seen: float
    state: ConnectionState = ConnectionState.CONNECTED
    claims: Optional[TokenClaims] = None
    permitted_rooms: Set[str] = field(default_factory=set)
    rooms: Set[str] = field(default_factory=set)

    @property
    def user_id(self) -> Optional[str]:
        return self.claims.user_id if self.claims else None

    @property
    def personal_room(self) -> Optional[str]:
        return f"user:{self.user_id}" if self.claims else None


EventHandler = Callable[[Session, Dict[str, Any]], Awaitable[None]]


class PresenceManager:
    """
    Manages authenticated sockets, their rooms and presence broadcasts.

    The transport only needs ``send_json(dict)`` and ``close(code=...)``,
    which FastAPI's ``WebSocket`` provides.
    """

    def __init__(
        self,
        token_manager: TokenManager,
        bus: PubSubBus,
        settings: Optional[PresenceSettings] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the presence manager.

        Args:
            token_manager: Access token verification
            bus: Cross-process fan-out for rooms
            settings: Heartbeat, handshake and limit settings
            clock: Monotonic clock used for activity tracking
        """
        self.token_manager = token_manager
        self.bus = bus
        self.settings = settings or PresenceSettings()
        self.clock = clock

        self.sessions: Dict[str, Session] = {}
        self._user_sessions: Dict[str, Set[str]] = defaultdict(set)
        self._room_sessions: Dict[str, Set[str]] = defaultdict(set)

        self.rate_limiter = SlidingWindowRateLimiter(
            max_requests=self.settings.connection_rate_limit,
            window_seconds=60
        )
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._running = False

        self.event_handlers: Dict[str, EventHandler] = {
            "ping": self._handle_ping,
            "pong": self._handle_pong,
            "join_room": self._handle_join_room,
            "leave_room": self._handle_leave_room,
            "music_request": self._handle_music_request,
            "mic_request": self._handle_mic_request,
            "accept_music_request": self._music_decision_handler("accepted"),
            "reject_music_request": self._music_decision_handler("rejected"),
            "new_photo": self._wedding_event_handler("new_photo"),
            "task_update": self._wedding_event_handler("task_update"),
            "task_assigned": self._handle_task_assigned,
            "typing": self._handle_typing,
            "send_message": self._handle_send_message,
            "update_presence": self._handle_update_presence,
            "broadcast_announcement": self._handle_announcement,
        }

    # Lifecycle

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info(
            "PresenceManager started",
            heartbeat_interval=self.settings.heartbeat_interval,
            heartbeat_timeout=self.settings.heartbeat_timeout
        )

    async def stop(self) -> None:
        self._running = False
        if self._heartbeat_task and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
        for session in list(self.sessions.values()):
            await self.disconnect(session, reason="server shutdown", close_code=1001)
        logger.info("PresenceManager stopped")

    def allow_connection(self, client_ip: str) -> bool:
        """Apply the per-address connection rate limit."""
        return self.rate_limiter.allow(client_ip)

    def register(self, websocket: Any, client_ip: str = "unknown") -> Session:
        now = self.clock()
        session = Session(
            connection_id=str(uuid.uuid4()),
            websocket=websocket,
            client_ip=client_ip,
            connected_at=now,
            last_seen=now,
        )
        self.sessions[session.connection_id] = session
        websocket_logger.connection_established(session.connection_id)
        return session

    async def authenticate(self, session: Session, token: Optional[str]) -> TokenClaims:
        """
        Verify ``token`` and attach its identity to ``session``.

        The session joins its personal ``user:{id}`` room without any
        presence broadcast.

        Raises:
            AuthenticationError: If the token is invalid
            WebSocketError: If the user already has too many connections
        """
        claims = self.token_manager.verify_token(token)

        if len(self._user_sessions.get(claims.user_id, ())) >= self.settings.max_connections_per_user:
            raise WebSocketError(
                "Too many connections for user",
                error_code=ErrorCode.WEBSOCKET_RATE_LIMIT_EXCEEDED,
                connection_id=session.connection_id,
                user_id=claims.user_id
            )

        session.claims = claims
        session.permitted_rooms = AccessControl.permitted_rooms(claims)
        session.state = ConnectionState.AUTHENTICATED
        self._user_sessions[claims.user_id].add(session.connection_id)
        await self._add_to_room(session, session.personal_room)

        await self.send(session, "authenticated", {
            "user_id": claims.user_id,
            "role": claims.role.value,
            "connection_id": session.connection_id,
            "rooms": sorted(session.permitted_rooms),
        })
        logger.info(
            "Socket authenticated",
            connection_id=session.connection_id,
            user_id=claims.user_id,
            role=claims.role.value
        )
        return claims

    async def reject(self, session: Session, error: Exception) -> None:
        """Send an error frame and close with 1008. No presence broadcast."""
        if isinstance(error, (AuthenticationError, WebSocketError)):
            code, message = error.error_code.value, error.message
        else:
            code, message = ErrorCode.WEBSOCKET_AUTHENTICATION_FAILED.value, str(error)
        await self.send(session, "error", {"code": code, "message": message})
        websocket_logger.error_occurred(session.connection_id, message, error_code=code)
        await self._close(session, POLICY_VIOLATION)
        self.sessions.pop(session.connection_id, None)
        session.state = ConnectionState.CLOSED

    async def disconnect(
        self,
        session: Session,
        reason: str = "client disconnect",
        close_code: Optional[int] = None
    ) -> None:
        """
        Drop a session and announce the user offline in every room where
        they have no other local socket.
        """
        if self.sessions.pop(session.connection_id, None) is None:
            return
        session.state = ConnectionState.CLOSED

        user_id = session.user_id
        if user_id:
            self._user_sessions[user_id].discard(session.connection_id)
            if not self._user_sessions[user_id]:
                del self._user_sessions[user_id]

        for room in list(session.rooms):
            await self._remove_from_room(session, room)
            if user_id and room != session.personal_room and not self._user_in_room(user_id, room):
                await self._broadcast_best_effort(room, "user_offline", {"user_id": user_id, "room": room})

        if close_code is not None:
            await self._close(session, close_code)
        websocket_logger.connection_closed(session.connection_id, reason=reason, code=close_code)

    # Rooms

    async def join_room(self, session: Session, room: str) -> bool:
        """Join ``room`` if the session's claims permit it."""
        if session.claims is None or not room or not AccessControl.can_join(session.permitted_rooms, room):
            websocket_logger.room_denied(session.connection_id, session.user_id, room)
            await self.send_error(session, ErrorCode.WEBSOCKET_ROOM_FORBIDDEN, f"Not allowed to join {room}")
            return False

        await self._add_to_room(session, room)
        if session.state == ConnectionState.AUTHENTICATED:
            session.state = ConnectionState.JOINED
        websocket_logger.room_joined(session.connection_id, session.user_id, room)

        await self.send(session, "room_joined", {"room": room, "online_users": self.online_users(room)})
        await self._broadcast_best_effort(
            room,
            "user_online",
            {"user_id": session.user_id, "room": room},
            origin=session.connection_id
        )
        return True

    async def leave_room(self, session: Session, room: str) -> bool:
        if room not in session.rooms or room == session.personal_room:
            return False
        await self._remove_from_room(session, room)
        await self.send(session, "room_left", {"room": room})
        if not self._user_in_room(session.user_id, room):
            await self._broadcast_best_effort(room, "user_offline", {"user_id": session.user_id, "room": room})
        return True

    def online_users(self, room: str) -> List[str]:
        """Users with a local socket in ``room``."""
        users = {
            self.sessions[cid].user_id
            for cid in self._room_sessions.get(room, set())
            if cid in self.sessions
        }
        return sorted(u for u in users if u)

    def _user_in_room(self, user_id: Optional[str], room: str) -> bool:
        return any(
            self.sessions[cid].user_id == user_id
            for cid in self._room_sessions.get(room, set())
            if cid in self.sessions
        )

    async def _add_to_room(self, session: Session, room: str) -> None:
        session.rooms.add(room)
        first_local = not self._room_sessions.get(room)
        self._room_sessions[room].add(session.connection_id)
        if first_local:
            await self.bus.subscribe(room, self._relay)

    async def _remove_from_room(self, session: Session, room: str) -> None:
        session.rooms.discard(room)
        members = self._room_sessions.get(room)
        if members is None:
            return
        members.discard(session.connection_id)
        if not members:
            del self._room_sessions[room]
            await self.bus.unsubscribe(room, self._relay)

    # Messaging

    async def send(self, session: Session, frame_type: str, data: Optional[Dict[str, Any]] = None) -> bool:
        return await self._send_frame(session, build_frame(frame_type, data))

    async def send_error(self, session: Session, code: ErrorCode, message: str) -> None:
        await self.send(session, "error", {"code": code.value, "message": message})

    async def broadcast(
        self,
        room: str,
        frame_type: str,
        data: Dict[str, Any],
        origin: Optional[str] = None
    ) -> int:
        """Publish a frame to every socket in ``room`` across processes."""
        frame = build_frame(frame_type, data)
        if origin:
            frame[ORIGIN_KEY] = origin
        return await self.bus.publish(room, frame)

    async def _broadcast_best_effort(
        self,
        room: str,
        frame_type: str,
        data: Dict[str, Any],
        origin: Optional[str] = None
    ) -> None:
        try:
            await self.broadcast(room, frame_type, data, origin=origin)
        except Exception as e:
            logger.warning("Presence broadcast failed", room=room, frame_type=frame_type, error=str(e))

    async def _relay(self, room: str, message: Dict[str, Any]) -> None:
        frame = dict(message)
        origin = frame.pop(ORIGIN_KEY, None)
        for connection_id in list(self._room_sessions.get(room, set())):
            session = self.sessions.get(connection_id)
            if session is None or connection_id == origin:
                continue
            await self._send_frame(session, frame)

    async def _send_frame(self, session: Session, frame: Dict[str, Any]) -> bool:
        try:
            await session.websocket.send_json(frame)
            return True
        except Exception as e:
            logger.debug("Socket send failed", connection_id=session.connection_id, error=str(e))
            return False

    async def _close(self, session: Session, code: int) -> None:
        try:
            await session.websocket.close(code=code)
        except Exception as e:
            logger.debug("Socket already closed", connection_id=session.connection_id, error=str(e))

    # Incoming frames

    async def handle_frame(self, session: Session, frame: Dict[str, Any]) -> None:
        """Dispatch one client frame. Errors are answered with an error frame."""
        session.last_seen = self.clock()
        frame_type = frame.get("type")
        data = frame.get("data") or {}

        handler = self.event_handlers.get(frame_type)
        if handler is None:
            await self.send_error(session, ErrorCode.WEBSOCKET_MESSAGE_INVALID, f"Unknown frame type: {frame_type}")
            return
        if not isinstance(data, dict):
            await self.send_error(session, ErrorCode.WEBSOCKET_MESSAGE_INVALID, "Frame data must be an object")
            return

        try:
            await handler(session, data)
        except WebSocketError as e:
            websocket_logger.error_occurred(session.connection_id, e.message, error_code=e.error_code.value)
            await self.send_error(session, e.error_code, e.message)

    def _require_member(self, session: Session, wedding_id: Any) -> str:
        room = f"wedding:{wedding_id}"
        if not wedding_id or not AccessControl.can_join(session.permitted_rooms, room):
            raise WebSocketError(
                f"Not a member of wedding {wedding_id}",
                error_code=ErrorCode.WEBSOCKET_ROOM_FORBIDDEN,
                connection_id=session.connection_id,
                user_id=session.user_id
            )
        return str(wedding_id)

    def _require_role(self, session: Session, roles: Set[UserRole], event: str) -> None:
        if session.claims is None or (session.claims.role not in roles and not session.claims.is_admin):
            raise WebSocketError(
                f"Role not allowed to send {event}",
                error_code=ErrorCode.WEBSOCKET_ROOM_FORBIDDEN,
                connection_id=session.connection_id,
                user_id=session.user_id
            )

    async def _handle_ping(self, session: Session, data: Dict[str, Any]) -> None:
        await self.send(session, "pong", {"server_time": format_datetime(utc_now())})

    async def _handle_pong(self, session: Session, data: Dict[str, Any]) -> None:
        """Answer to a server ping; activity is already recorded."""

    async def _handle_join_room(self, session: Session, data: Dict[str, Any]) -> None:
        await self.join_room(session, str(data.get("room") or ""))

    async def _handle_leave_room(self, session: Session, data: Dict[str, Any]) -> None:
        await self.leave_room(session, str(data.get("room") or ""))

    async def _handle_music_request(self, session: Session, data: Dict[str, Any]) -> None:
        self._require_role(session, {UserRole.GUEST, UserRole.COUPLE}, "music_request")
        wedding_id = self._require_member(session, data.get("wedding_id"))

        request = {
            **data,
            "request_id": data.get("request_id") or f"req_{uuid.uuid4().hex[:12]}",
            "wedding_id": wedding_id,
            "requested_by": session.user_id,
            "requested_at": format_datetime(utc_now()),
        }
        await self.broadcast(f"wedding:{wedding_id}:dj", "music_request", request)
        await self.send(session, "music_request_sent", {"request_id": request["request_id"]})

    async def _handle_mic_request(self, session: Session, data: Dict[str, Any]) -> None:
        wedding_id = self._require_member(session, data.get("wedding_id"))
        await self.broadcast(f"wedding:{wedding_id}:dj", "mic_request", {
            **data,
            "wedding_id": wedding_id,
            "requested_by": session.user_id,
            "urgent": True,
        })

    def _music_decision_handler(self, status: str) -> EventHandler:
        async def handler(session: Session, data: Dict[str, Any]) -> None:
            self._require_role(session, {UserRole.DJ}, f"music request {status}")
            wedding_id = self._require_member(session, data.get("wedding_id"))
            await self.broadcast(f"wedding:{wedding_id}:dj", "music_request_update", {
                **data,
                "wedding_id": wedding_id,
                "status": status,
                "decided_by": session.user_id,
            })
        return handler

    def _wedding_event_handler(self, event_type: str) -> EventHandler:
        async def handler(session: Session, data: Dict[str, Any]) -> None:
            wedding_id = self._require_member(session, data.get("wedding_id"))
            await self.broadcast(f"wedding:{wedding_id}", event_type, {
                **data,
                "wedding_id": wedding_id,
                "user_id": session.user_id,
            }, origin=session.connection_id)
        return handler

    async def _handle_task_assigned(self, session: Session, data: Dict[str, Any]) -> None:
        """Tell the assignee, on any of their sockets, that a task is theirs."""
        task_id = data.get("task_id")
        assigned_to = data.get("assigned_to")
        if not task_id or not assigned_to:
            raise WebSocketError(
                "task_assigned needs a task_id and an assigned_to",
                error_code=ErrorCode.WEBSOCKET_MESSAGE_INVALID
            )

        assigned_by = session.claims.name or session.user_id
        await self.broadcast(f"user:{assigned_to}", "task_assigned", {
            "task_id": task_id,
            "wedding_id": data.get("wedding_id"),
            "assigned_by": session.user_id,
            "message": f"{assigned_by} vous a assigné une nouvelle tâche",
        })

    async def _handle_typing(self, session: Session, data: Dict[str, Any]) -> None:
        recipient = data.get("recipient_id")
        if not recipient:
            raise WebSocketError("typing needs a recipient_id", error_code=ErrorCode.WEBSOCKET_MESSAGE_INVALID)
        await self.broadcast(f"user:{recipient}", "user_typing", {
            "user_id": session.user_id,
            "typing": bool(data.get("typing", True)),
        })

    async def _handle_send_message(self, session: Session, data: Dict[str, Any]) -> None:
        message = {
            "message_id": f"msg_{uuid.uuid4().hex[:12]}",
            "from": session.user_id,
            "content": data.get("content", ""),
            "sent_at": format_datetime(utc_now()),
        }
        recipient = data.get("recipient_id")
        if recipient:
            await self.broadcast(f"user:{recipient}", "new_message", message)
        else:
            wedding_id = self._require_member(session, data.get("wedding_id"))
            message["wedding_id"] = wedding_id
            await self.broadcast(f"wedding:{wedding_id}", "new_message", message, origin=session.connection_id)
        await self.send(session, "message_sent", {"message_id": message["message_id"]})

    async def _handle_update_presence(self, session: Session, data: Dict[str, Any]) -> None:
        wedding_id = self._require_member(session, data.get("wedding_id"))
        await self.broadcast(f"wedding:{wedding_id}", "presence_update", {
            "user_id": session.user_id,
            "status": data.get("status", "online"),
        }, origin=session.connection_id)

    async def _handle_announcement(self, session: Session, data: Dict[str, Any]) -> None:
        if session.claims is None or not session.claims.is_admin:
            raise WebSocketError(
                "Only admins can broadcast announcements",
                error_code=ErrorCode.WEBSOCKET_ROOM_FORBIDDEN,
                connection_id=session.connection_id,
                user_id=session.user_id
            )
        room = data.get("room")
        if not room:
            raise WebSocketError("Announcement needs a target room", error_code=ErrorCode.WEBSOCKET_MESSAGE_INVALID)
        await self.broadcast(room, "announcement", {
            "message": data.get("message", ""),
            "level": data.get("level", "info"),
            "from": session.user_id,
        })

    # Heartbeat

    async def check_heartbeats(self) -> int:
        """
        Ping every live socket and close the ones idle past the timeout.

        Returns:
            Number of sessions closed
        """
        now = self.clock()
        closed = 0
        for session in list(self.sessions.values()):
            if now - session.last_seen > self.settings.heartbeat_timeout:
                await self.disconnect(session, reason="heartbeat timeout", close_code=POLICY_VIOLATION)
                closed += 1
            else:
                await self.send(session, "ping")
        return closed

    async def _heartbeat_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.settings.heartbeat_interval)
                closed = await self.check_heartbeats()
                if closed:
                    logger.info("Idle sockets closed", count=closed)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in heartbeat loop", error=str(e))

    def get_stats(self) -> Dict[str, Any]:
        return {
            "connections": len(self.sessions),
            "users": len(self._user_sessions),
            "rooms": len(self._room_sessions),
        }
