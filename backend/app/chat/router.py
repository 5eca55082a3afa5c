"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws: Real-time duplex channel
    - GET /rooms: Known rooms with head and floor sequences
    - GET /rooms/{room_id}/messages: Catch-up (`since`) or snapshot (`limit`) read
    - POST /rooms/direct: Open a direct room between two identities
    - GET /presence: Current presence snapshot

Protocol Flow:
    1. Client connects, sends: {type: "join", identity: {id, displayName, profileRef}}
       → Server sends: {type: "joined"}, {type: "presenceSnapshot"}
       → Others receive: {type: "presenceChanged", state: "online"}
    2. Client sends: {type: "subscribe", roomId, lastSeenSequence}
       → Server sends: [catchupGap], messageAppended..., {type: "subscribed"}
    3. Client sends: {type: "send", roomId, body: {text, attachmentUrl}, requestId}
       → Subscribers receive: {type: "messageAppended", message}
       → Sender receives: {type: "sendAck", ok, sequence}
    4. Client sends: {type: "typing", roomId, isTyping}
       → Other live subscribers receive: {type: "typing"}
    5. Client sends: {type: "heartbeat"} → {type: "heartbeatAck"}
    6. On disconnect → presence grace period, then {type: "presenceChanged", state: "offline"}
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from .errors import (
    ChatError,
    DuplicateHandshake,
    InvalidMessage,
    NotJoined,
    RoomNotFound,
    SequenceTooOld,
    StorageUnavailable,
    UnknownConnection,
)
from .manager import ChatManager, get_manager
from .registry import ConnectionHandle
from .schemas import CLIENT_MESSAGES

logger = logging.getLogger(__name__)

router = APIRouter()


def _require_manager() -> ChatManager:
    manager = get_manager()
    if manager is None:
        raise HTTPException(status_code=503, detail="Chat service not ready")
    return manager


def _error_response(exc: ChatError, status_code: int, **extra) -> JSONResponse:
    payload = {"error": exc.code, "detail": str(exc), **extra}
    if exc.remediation:
        payload["remediation"] = exc.remediation
    return JSONResponse(payload, status_code=status_code)


# =============================================================================
# HTTP side channel
# =============================================================================


class OpenDirectBody(BaseModel):
    """Request model for opening a direct room."""
    a: str
    b: str


@router.get("/rooms")
async def list_rooms() -> dict:
    """List known rooms with their head and oldest retained sequence."""
    manager = _require_manager()
    return {
        "rooms": [
            {
                **room.model_dump(),
                "headSequence": manager.store.head(room.roomId),
                "oldestSequence": manager.store.floor(room.roomId),
            }
            for room in manager.store.rooms()
        ]
    }


@router.get("/rooms/{room_id}/messages")
async def get_room_messages(
    room_id: str,
    since: Optional[int] = Query(None, ge=0, description="Return messages after this sequence"),
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Snapshot size"),
) -> JSONResponse:
    """Catch-up or snapshot read for a room.

    With ``since`` the response holds every message with a greater sequence,
    or a 410 ``SequenceTooOld`` if some of them were truncated. Without it,
    the response is a snapshot of the last ``limit`` messages.

    Example:
        GET /rooms/global/messages?since=41
        GET /rooms/global/messages?limit=50
    """
    manager = _require_manager()
    try:
        if since is not None:
            messages = await manager.store.read_since(room_id, since)
        else:
            messages = await manager.store.snapshot(
                room_id, limit or manager.settings.snapshot_limit
            )
    except RoomNotFound as exc:
        return _error_response(exc, 404)
    except SequenceTooOld as exc:
        return _error_response(exc, 410, oldestSequence=exc.oldest)
    except StorageUnavailable as exc:
        return _error_response(exc, 503)

    return JSONResponse({
        "roomId": room_id,
        "headSequence": manager.store.head(room_id),
        "oldestSequence": manager.store.floor(room_id),
        "messages": [m.model_dump() for m in messages],
    })


@router.post("/rooms/direct")
async def open_direct_room(request: OpenDirectBody) -> JSONResponse:
    """Open (idempotently) the direct room between two identities."""
    manager = _require_manager()
    try:
        room = await manager.store.open_direct(request.a, request.b)
    except InvalidMessage as exc:
        return _error_response(exc, 400)
    except RoomNotFound as exc:
        return _error_response(exc, 400)
    except StorageUnavailable as exc:
        return _error_response(exc, 503)
    return JSONResponse(room.model_dump())


@router.get("/presence")
async def get_presence() -> dict:
    """Presence snapshot (grace period is reported as online)."""
    manager = _require_manager()
    return {"presence": [record.to_wire() for record in manager.presence_snapshot()]}


# =============================================================================
# WebSocket
# =============================================================================


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for the duplex message channel.

    The connection must ``join`` before anything else. Replies after join go
    through the connection's outbound queue so they stay ordered with
    broadcast events.
    """
    manager = get_manager()
    if manager is None:
        await websocket.close(code=1013)
        return

    await websocket.accept()
    handle: Optional[ConnectionHandle] = None
    logger.info("[WS] New connection")

    async def reply_error(exc: ChatError) -> None:
        if handle is not None and manager.registry.get(handle) is not None:
            manager.router.send_to(handle, exc.to_wire())
        else:
            await websocket.send_json(exc.to_wire())

    try:
        while True:
            try:
                data = await websocket.receive_json()
            except (ValueError, KeyError):
                # KeyError: a binary frame has no "text" field.
                await reply_error(InvalidMessage("Invalid JSON"))
                continue

            message_type = data.get("type") if isinstance(data, dict) else None
            model = CLIENT_MESSAGES.get(message_type)
            if model is None:
                await reply_error(InvalidMessage(f"Unknown message type: {message_type}"))
                continue

            try:
                request = model.model_validate(data)
            except ValidationError as exc:
                await reply_error(InvalidMessage(f"Invalid {message_type}: {exc.errors()[0]['msg']}"))
                continue

            try:
                # --- Handle JOIN (registration) ---
                if message_type == "join":
                    if handle is not None:
                        raise DuplicateHandshake("Connection already joined")
                    handle = await manager.join(websocket, request.identity)
                    logger.info(f"[WS] JOIN identity={request.identity.id} handle={handle}")
                    continue

                if handle is None:
                    raise NotJoined("Send join first")

                # --- Handle SUBSCRIBE (catch-up then live) ---
                if message_type == "subscribe":
                    await manager.subscribe(handle, request.roomId, request.lastSeenSequence)
                    continue

                if message_type == "unsubscribe":
                    manager.unsubscribe(handle, request.roomId)
                    continue

                # --- Handle SEND (durable append) ---
                if message_type == "send":
                    await manager.send(handle, request.roomId, request.body, request.requestId)
                    continue

                if message_type == "heartbeat":
                    manager.heartbeat(handle)
                    continue

                # --- Handle TYPING indicator (best-effort) ---
                if message_type == "typing":
                    manager.typing(handle, request.roomId, request.isTyping)
                    continue

                if message_type == "profile":
                    await manager.update_profile(handle, request.displayName, request.profileRef)
                    continue

                if message_type == "openDirect":
                    await manager.open_direct(handle, request.peerId)
                    continue

            except UnknownConnection:
                # Closed underneath us (overflow or reaper); nothing left to serve.
                logger.debug(f"[WS] Connection {handle} already unregistered")
                break
            except ChatError as exc:
                logger.info(f"[WS] {exc.code} for {handle or 'unjoined connection'}: {exc}")
                await reply_error(exc)

    except WebSocketDisconnect:
        logger.info(f"[WS] Client disconnected: {handle}")
    except RuntimeError as exc:
        # Raised by Starlette when the server side already closed the socket.
        logger.debug(f"[WS] Connection {handle} closed: {exc}")
    finally:
        if handle is not None:
            await manager.disconnect(handle)
