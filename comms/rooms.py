"""
Room directory: which live connections are joined to which rooms.

Delivery itself goes through the Channels layer (one group per room);
this module keeps the membership index the channel layer does not expose,
so that disconnects can leave every room, empty rooms can be detected,
and the call signalling service can see who is in a call room.

Connection ids are consumer ``channel_name`` values.  The index is
per process; with ``channels_redis`` fan-out still reaches other
instances' members of a group, but membership lookups only see local
connections.
"""
from __future__ import annotations

import hashlib
import logging
import re
import threading
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer

logger = logging.getLogger(__name__)

# Channels group names: ASCII alphanumerics, hyphens, underscores, periods; < 100 chars.
_GROUP_SAFE = re.compile(r'^[A-Za-z0-9_\-.]{1,80}$')

ROOM_EVENT = 'room.event'


def conversation_room(patient_id, doctor_id) -> str:
    """Room shared by a patient and a doctor; patient id always comes first."""
    return f"{patient_id}-{doctor_id}"


def personal_room(user_id) -> str:
    return str(user_id)


def group_name(room: str) -> str:
    room = str(room)
    if _GROUP_SAFE.match(room):
        return f"room.{room}"
    digest = hashlib.sha1(room.encode('utf-8')).hexdigest()
    return f"room.h.{digest}"


class RoomDirectory:
    """Thread-safe membership index plus channel-layer fan-out."""

    def __init__(self, channel_layer=None):
        self._channel_layer = channel_layer
        self._lock = threading.Lock()
        # room -> {connection_id: user_id}
        self._rooms: Dict[str, Dict[str, Optional[str]]] = defaultdict(dict)
        # connection_id -> rooms
        self._connections: Dict[str, Set[str]] = defaultdict(set)
        self._users: Dict[str, Optional[str]] = {}

    @property
    def channel_layer(self):
        if self._channel_layer is None:
            self._channel_layer = get_channel_layer()
        return self._channel_layer

    # ------------------------------------------------------------------
    # membership
    # ------------------------------------------------------------------
    async def join(self, connection_id: str, user_id, room: str) -> bool:
        """Register membership; returns False when it already existed."""
        room = str(room)
        user_id = None if user_id is None else str(user_id)
        with self._lock:
            members = self._rooms[room]
            added = connection_id not in members
            members[connection_id] = user_id
            self._connections[connection_id].add(room)
            self._users[connection_id] = user_id
        if added:
            await self.channel_layer.group_add(group_name(room), connection_id)
            logger.debug("conn=%s user=%s joined room=%s", connection_id, user_id, room)
        return added

    async def leave(self, connection_id: str, room: str) -> bool:
        room = str(room)
        with self._lock:
            removed = self._drop(connection_id, room)
        if removed:
            await self.channel_layer.group_discard(group_name(room), connection_id)
            logger.debug("conn=%s left room=%s", connection_id, room)
        return removed

    async def leave_all(self, connection_id: str) -> List[str]:
        with self._lock:
            rooms = sorted(self._connections.get(connection_id, ()))
            for room in rooms:
                self._drop(connection_id, room)
            self._connections.pop(connection_id, None)
            self._users.pop(connection_id, None)
        for room in rooms:
            await self.channel_layer.group_discard(group_name(room), connection_id)
        if rooms:
            logger.debug("conn=%s left rooms=%s", connection_id, rooms)
        return rooms

    def _drop(self, connection_id: str, room: str) -> bool:
        members = self._rooms.get(room)
        if not members or connection_id not in members:
            return False
        del members[connection_id]
        if not members:
            del self._rooms[room]
        joined = self._connections.get(connection_id)
        if joined is not None:
            joined.discard(room)
        return True

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------
    def members(self, room: str) -> Dict[str, Optional[str]]:
        with self._lock:
            return dict(self._rooms.get(str(room), {}))

    def users_in(self, room: str) -> Set[str]:
        return {u for u in self.members(room).values() if u is not None}

    def rooms_of(self, connection_id: str) -> Set[str]:
        with self._lock:
            return set(self._connections.get(connection_id, ()))

    def user_of(self, connection_id: str) -> Optional[str]:
        with self._lock:
            return self._users.get(connection_id)

    def is_member(self, connection_id: str, room: str) -> bool:
        with self._lock:
            return connection_id in self._rooms.get(str(room), {})

    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    # ------------------------------------------------------------------
    # fan-out
    # ------------------------------------------------------------------
    async def broadcast(self, room: str, event: str, payload: Any = None, *, exclude: Optional[str] = None) -> int:
        """Deliver ``event`` to every connection joined to ``room``.

        The sender is included unless its connection id is passed as
        ``exclude``.  Returns the number of connections addressed; a room
        with nobody else in it is a delivery gap, logged and skipped.
        """
        room = str(room)
        targets = [c for c in self.members(room) if c != exclude]
        if not targets:
            logger.info("delivery gap: no live members in room=%s for event=%s", room, event)
            return 0
        await self.channel_layer.group_send(group_name(room), {
            "type": ROOM_EVENT,
            "room": room,
            "event": event,
            "payload": payload if payload is not None else {},
            "exclude": exclude,
        })
        return len(targets)

    def broadcast_sync(self, room: str, event: str, payload: Any = None, *, exclude: Optional[str] = None) -> int:
        return async_to_sync(self.broadcast)(room, event, payload, exclude=exclude)

    def reset(self) -> None:
        """Forget every membership (the channel layer keeps its own groups)."""
        with self._lock:
            self._rooms.clear()
            self._connections.clear()
            self._users.clear()


_PERSONAL = re.compile(r'^\d+$')
_CONVERSATION = re.compile(r'^(\d+)-(\d+)$')


def can_join(user, room: str) -> bool:
    """Personal and conversation rooms are private to their users; other rooms are open."""
    if getattr(user, 'role', '') == 'admin':
        return True
    room = str(room)
    uid = str(getattr(user, 'id', ''))
    if _PERSONAL.match(room):
        return room == uid
    m = _CONVERSATION.match(room)
    if m:
        return uid in m.groups()
    return True


directory = RoomDirectory()
