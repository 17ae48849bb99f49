import asyncio
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from typing import Dict, Optional
from uuid import uuid4
import logging

from meshcall.models import (
    Answer,
    Connected,
    ErrorEvent,
    GetUsers,
    IceCandidate,
    JoinRoom,
    LeaveRoom,
    MediaStateChange,
    MediaStateUpdated,
    NewMessage,
    Offer,
    ParticipantJoined,
    ParticipantLeft,
    ParticipantUpdate,
    ParticipantUpdated,
    ParticipantsList,
    RelayedAnswer,
    RelayedIceCandidate,
    RelayedOffer,
    RoomUsers,
    ScreenShareEnded,
    ScreenShareNotice,
    ScreenShareStarted,
    SendMessage,
    WireModel,
    parse_client_message,
)
from meshcall.registry import RoomRegistry

logger = logging.getLogger(__name__)

router = APIRouter()


class ConnectionManager:
    """Live websocket per connection id, plus room fan-out through the registry."""

    def __init__(self, registry: RoomRegistry):
        self.registry = registry
        self.active_connections: Dict[str, WebSocket] = {}

    async def connect(self, websocket: WebSocket, connection_id: str):
        await websocket.accept()
        self.active_connections[connection_id] = websocket

    def disconnect(self, connection_id: str):
        self.active_connections.pop(connection_id, None)

    def is_connected(self, connection_id: str) -> bool:
        return connection_id in self.active_connections

    async def send_to_client(self, message: WireModel, connection_id: str) -> bool:
        websocket = self.active_connections.get(connection_id)
        if websocket is None:
            # Target already gone; its participant-left reaches the sender on its own
            logger.debug(f"Dropping {message.type} for disconnected client {connection_id}")
            return False
        try:
            await websocket.send_json(message.to_wire())
            return True
        except Exception as e:
            logger.error(f"❌ Error sending to client {connection_id}: {e}")
            return False

    async def send_to_peer(self, message: WireModel, sender_id: str, target_id: str) -> bool:
        """Forward signaling only between members of the same room."""
        room_id = self.registry.room_of(sender_id)
        if room_id is None or self.registry.room_of(target_id) != room_id:
            logger.debug(f"Dropping {message.type} from {sender_id}: {target_id} is not in its room")
            return False
        return await self.send_to_client(message, target_id)

    async def broadcast_to_room(self, message: WireModel, room_id: str, exclude_client: Optional[str] = None):
        for participant in self.registry.list_participants(room_id, exclude=exclude_client):
            await self.send_to_client(message, participant.connection_id)

    async def announce_join(self, room_id: str, connection_id: str, display_name: str):
        for event_type in ("participant-joined", "user-joined"):
            await self.broadcast_to_room(
                ParticipantJoined(type=event_type, connection_id=connection_id, display_name=display_name),
                room_id,
                exclude_client=connection_id,
            )

    async def announce_leave(self, room_id: str, connection_id: str):
        for event_type in ("participant-left", "user-left"):
            await self.broadcast_to_room(
                ParticipantLeft(type=event_type, connection_id=connection_id),
                room_id,
                exclude_client=connection_id,
            )


registry = RoomRegistry()
manager = ConnectionManager(registry)


async def handle_message(message, room_id: str, connection_id: str):
    if isinstance(message, Offer):
        await manager.send_to_peer(
            RelayedOffer(from_id=connection_id, sdp=message.sdp), connection_id, message.target_connection_id
        )

    elif isinstance(message, Answer):
        await manager.send_to_peer(
            RelayedAnswer(from_id=connection_id, sdp=message.sdp), connection_id, message.target_connection_id
        )

    elif isinstance(message, IceCandidate):
        await manager.send_to_peer(
            RelayedIceCandidate(from_id=connection_id, candidate=message.candidate),
            connection_id,
            message.target_connection_id,
        )

    elif isinstance(message, JoinRoom):
        if message.room_id != room_id:
            await manager.send_to_client(
                ErrorEvent(detail=f"connection is bound to room {room_id}; open a new channel to switch rooms"),
                connection_id,
            )
            return
        returning_after_leave = registry.room_of(connection_id) is None
        snapshot = registry.admit(room_id, connection_id, message.display_name)
        if returning_after_leave:
            await manager.announce_join(room_id, connection_id, message.display_name)
        await manager.send_to_client(ParticipantsList(participants=snapshot), connection_id)

    elif isinstance(message, GetUsers):
        await manager.send_to_client(
            RoomUsers(participants=registry.list_participants(message.room_id)), connection_id
        )

    elif isinstance(message, LeaveRoom):
        left_room = registry.leave(connection_id)
        if left_room:
            await manager.announce_leave(left_room, connection_id)

    elif isinstance(message, MediaStateChange):
        if message.connection_id != connection_id:
            await manager.send_to_client(
                ErrorEvent(detail="media state can only be changed for your own connection"), connection_id
            )
            return
        participant = registry.update_media_state(connection_id, message.is_muted, message.is_video_off)
        if participant is None:
            return
        await manager.broadcast_to_room(
            MediaStateUpdated(
                connection_id=connection_id,
                is_muted=participant.is_muted,
                is_video_off=participant.is_video_off,
            ),
            registry.room_of(connection_id),
            exclude_client=connection_id,
        )

    elif isinstance(message, (ScreenShareStarted, ScreenShareEnded)):
        current_room = registry.room_of(connection_id)
        if current_room:
            await manager.broadcast_to_room(
                ScreenShareNotice(type=message.type, connection_id=connection_id),
                current_room,
                exclude_client=connection_id,
            )

    elif isinstance(message, SendMessage):
        current_room = registry.room_of(connection_id)
        if current_room:
            payload = message.model_dump(by_alias=True)
            payload["type"] = "new-message"
            await manager.broadcast_to_room(NewMessage.model_validate(payload), current_room, exclude_client=connection_id)

    elif isinstance(message, ParticipantUpdate):
        participant = registry.rename(connection_id, message.display_name)
        if participant is not None:
            await manager.broadcast_to_room(
                ParticipantUpdated(connection_id=connection_id, display_name=participant.display_name),
                registry.room_of(connection_id),
                exclude_client=connection_id,
            )


@router.websocket("/ws/{room_id}")
async def signaling_endpoint(websocket: WebSocket, room_id: str, display_name: str = Query("Anonymous", alias="displayName")):
    connection_id = uuid4().hex
    await manager.connect(websocket, connection_id)

    try:
        await manager.send_to_client(Connected(connection_id=connection_id), connection_id)

        snapshot = registry.admit(room_id, connection_id, display_name)
        await manager.announce_join(room_id, connection_id, display_name)
        await manager.send_to_client(ParticipantsList(participants=snapshot), connection_id)

        while True:
            raw = await websocket.receive_text()
            try:
                message = parse_client_message(raw)
            except ValidationError as e:
                logger.warning(f"Malformed frame from {connection_id}: {e.error_count()} error(s)")
                await manager.send_to_client(ErrorEvent(detail=f"malformed message: {e.errors()[0]['msg']}"), connection_id)
                continue

            logger.info(f"📨 Received {message.type} from {connection_id} in room {room_id}")
            await handle_message(message, room_id, connection_id)

    except WebSocketDisconnect:
        logger.info(f"Client {connection_id} disconnected")
    except Exception as e:
        logger.error(f"❌ Error in websocket: {e}")
    finally:
        left_room = registry.leave(connection_id)
        manager.disconnect(connection_id)
        if left_room:
            # Must reach the room even when this handler is being cancelled
            await asyncio.shield(manager.announce_leave(left_room, connection_id))
