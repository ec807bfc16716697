"""
WebSocket endpoint for real-time delivery and presence.

Connection flow:
1. The per-address rate limit is checked before the socket is accepted.
2. The client authenticates with ``?token=`` or an ``auth`` frame sent
   within the handshake timeout.
3. A failed or late authentication gets an error frame and a 1008 close,
   before any room is joined and without presence broadcast.
4. Authenticated frames are dispatched to the presence manager until the
   client disconnects.
"""

import asyncio
import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status

from weddingbell.app.api.deps import get_presence_manager
from weddingbell.app.core.exceptions import AuthenticationError, ErrorCode, WebSocketError
from weddingbell.app.core.presence_manager import PresenceManager, Session
from weddingbell.app.utils.logging import correlation_context, get_logger

logger = get_logger(__name__)

router = APIRouter()


async def _receive_frame(websocket: WebSocket) -> Dict[str, Any]:
    """
    Receive one JSON object frame.

    Raises:
        WebSocketError: If the frame is not a JSON object
    """
    text = await websocket.receive_text()
    try:
        frame = json.loads(text)
    except ValueError:
        raise WebSocketError("Frame is not valid JSON", error_code=ErrorCode.WEBSOCKET_MESSAGE_INVALID)
    if not isinstance(frame, dict):
        raise WebSocketError("Frame must be a JSON object", error_code=ErrorCode.WEBSOCKET_MESSAGE_INVALID)
    return frame


async def _await_auth_token(websocket: WebSocket) -> Optional[str]:
    frame = await _receive_frame(websocket)
    if frame.get("type") != "auth":
        raise AuthenticationError(
            "First frame must be an auth frame",
            error_code=ErrorCode.WEBSOCKET_AUTHENTICATION_FAILED
        )
    data = frame.get("data") or {}
    return data.get("token") if isinstance(data, dict) else None


async def _authenticate(
    websocket: WebSocket,
    presence: PresenceManager,
    session: Session,
    token: Optional[str]
) -> bool:
    try:
        if not token:
            token = await asyncio.wait_for(
                _await_auth_token(websocket),
                timeout=presence.settings.handshake_timeout
            )
        await presence.authenticate(session, token)
        return True
    except asyncio.TimeoutError:
        await presence.reject(session, AuthenticationError(
            "Authentication timed out",
            error_code=ErrorCode.WEBSOCKET_AUTHENTICATION_FAILED
        ))
    except (AuthenticationError, WebSocketError) as e:
        await presence.reject(session, e)
    return False


@router.websocket("/connect")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Access token; an auth frame may be sent instead"),
    presence: PresenceManager = Depends(get_presence_manager)
):
    client_ip = websocket.client.host if websocket.client else "unknown"

    if not presence.allow_connection(client_ip):
        logger.warning("WebSocket connection rate limited", client_ip=client_ip)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    session = presence.register(websocket, client_ip)

    with correlation_context(session.connection_id):
        try:
            if not await _authenticate(websocket, presence, session, token):
                return

            while True:
                try:
                    frame = await _receive_frame(websocket)
                except WebSocketError as e:
                    await presence.send_error(session, e.error_code, e.message)
                    continue
                await presence.handle_frame(session, frame)

        except WebSocketDisconnect as e:
            logger.debug("WebSocket disconnected", connection_id=session.connection_id, code=e.code)
        finally:
            await presence.disconnect(session)
