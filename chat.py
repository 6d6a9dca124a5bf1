"""
Support chat over WebSockets.

Members of a room receive each other's messages and typing notices. Rooms are
held in process memory; nothing is stored.
"""

import json
import logging
from collections import defaultdict
from typing import Dict, Set

from fastapi import WebSocket, WebSocketDisconnect

from schemas import utcnow

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 1000

# What a send to a closed or dropped socket raises
SEND_ERRORS = (WebSocketDisconnect, RuntimeError, OSError)


class ChatRooms:
    def __init__(self):
        self.rooms: Dict[str, Set[WebSocket]] = defaultdict(set)

    async def join(self, room_id: str, websocket: WebSocket):
        await websocket.accept()
        self.rooms[room_id].add(websocket)
        logger.info("Client joined room %s (%d connected)", room_id, len(self.rooms[room_id]))

    def leave(self, room_id: str, websocket: WebSocket):
        members = self.rooms.get(room_id)
        if not members or websocket not in members:
            return
        members.discard(websocket)
        if not members:
            del self.rooms[room_id]
        logger.info("Client left room %s", room_id)

    async def broadcast(self, room_id: str, payload: dict, exclude: WebSocket = None):
        for member in list(self.rooms.get(room_id, ())):
            if member is exclude:
                continue
            try:
                await member.send_json(payload)
            except SEND_ERRORS as e:
                logger.warning("Dropping unreachable member of room %s: %s", room_id, e)
                self.leave(room_id, member)

    async def handle(self, room_id: str, user: dict, raw: str, websocket: WebSocket):
        """Act on one text frame from `user`; malformed frames get an error reply."""
        try:
            frame = json.loads(raw)
        except ValueError:
            frame = None
        if not isinstance(frame, dict):
            await websocket.send_json({"type": "error", "message": "Frames must be JSON objects"})
            return

        kind = frame.get("type")
        if kind == "message":
            content = str(frame.get("content", "")).strip()
            if not content or len(content) > MAX_MESSAGE_LENGTH:
                await websocket.send_json({"type": "error", "message": "Message must be 1-1000 characters"})
                return
            await self.broadcast(room_id, {
                "type": "message",
                "room_id": room_id,
                "sender_id": user["id"],
                "sender_name": user.get("name"),
                "content": content,
                "timestamp": utcnow().isoformat(),
            })
        elif kind == "typing":
            await self.broadcast(room_id, {"type": "typing", "room_id": room_id, "sender_id": user["id"]},
                                 exclude=websocket)
        else:
            await websocket.send_json({"type": "error", "message": f"Unknown frame type {kind!r}"})


rooms = ChatRooms()
