"""
Live socket sessions and the rooms they have joined.

All registry mutations are plain dict/set operations with no await in
between, so concurrent connection tasks on one event loop never observe a
half-updated registry. Sending is best-effort: a failure on one socket is
logged and never stops delivery to the others.
"""
import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set
from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder
from lifestream.realtime.rooms import user_room
from lifestream.services.identity import Identity

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ClientSession:
    websocket: WebSocket
    identity: Identity
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    rooms: Set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ConnectionManager:
    """Session registry plus room fan-out for one process."""

    def __init__(self) -> None:
        self.sessions: Dict[str, ClientSession] = {}
        self.rooms: Dict[str, Set[str]] = {}

    def connect(self, websocket: WebSocket, identity: Identity) -> ClientSession:
        session = ClientSession(websocket=websocket, identity=identity)
        self.sessions[session.id] = session
        logger.info(f"Session {session.id} connected for user {identity.id} ({len(self.sessions)} active)")
        return session

    def disconnect(self, session: ClientSession) -> None:
        for room in list(session.rooms):
            self._drop_membership(session, room)
        self.sessions.pop(session.id, None)
        logger.info(f"Session {session.id} disconnected for user {session.identity.id} ({len(self.sessions)} active)")

    def join(self, session: ClientSession, room: str) -> bool:
        """Add the session to a room. Returns False when it was already a member."""
        if room in session.rooms:
            return False
        session.rooms.add(room)
        self.rooms.setdefault(room, set()).add(session.id)
        logger.debug(f"Session {session.id} joined {room}")
        return True

    def leave(self, session: ClientSession, room: str) -> bool:
        if room not in session.rooms:
            return False
        self._drop_membership(session, room)
        logger.debug(f"Session {session.id} left {room}")
        return True

    def _drop_membership(self, session: ClientSession, room: str) -> None:
        session.rooms.discard(room)
        members = self.rooms.get(room)
        if members is not None:
            members.discard(session.id)
            if not members:
                del self.rooms[room]

    def is_member(self, session: ClientSession, room: str) -> bool:
        return session.id in self.rooms.get(room, ())

    def room_members(self, room: str) -> List[ClientSession]:
        return [self.sessions[sid] for sid in self.rooms.get(room, ()) if sid in self.sessions]

    def sessions_for_user(self, user_id: int) -> List[ClientSession]:
        return [s for s in self.sessions.values() if s.identity.id == user_id]

    @property
    def session_count(self) -> int:
        return len(self.sessions)

    @staticmethod
    def _frame(event: str, payload: Any) -> str:
        return json.dumps(jsonable_encoder({"event": event, "data": payload}))

    async def _send_raw(self, session: ClientSession, raw: str) -> None:
        try:
            await session.websocket.send_text(raw)
        except Exception as e:
            logger.warning(f"Send to session {session.id} failed: {e}")

    async def _fan_out(self, targets: Iterable[ClientSession], event: str, payload: Any) -> int:
        targets = list(targets)
        if not targets:
            return 0
        raw = self._frame(event, payload)
        await asyncio.gather(*(self._send_raw(s, raw) for s in targets))
        return len(targets)

    async def emit(self, session: ClientSession, event: str, payload: Any) -> None:
        await self._send_raw(session, self._frame(event, payload))

    async def emit_to_room(
        self,
        room: str,
        event: str,
        payload: Any,
        exclude: Optional[ClientSession] = None,
    ) -> int:
        """Deliver to every member of ``room`` once. Returns the number of sessions targeted."""
        targets = [s for s in self.room_members(room) if s is not exclude]
        return await self._fan_out(targets, event, payload)

    async def emit_to_user(self, user_id: int, event: str, payload: Any) -> int:
        return await self.emit_to_room(user_room(user_id), event, payload)

    async def broadcast(self, event: str, payload: Any, exclude: Optional[ClientSession] = None) -> int:
        targets = [s for s in list(self.sessions.values()) if s is not exclude]
        return await self._fan_out(targets, event, payload)

    async def broadcast_except_sender(self, sender: ClientSession, event: str, payload: Any) -> int:
        return await self.broadcast(event, payload, exclude=sender)
