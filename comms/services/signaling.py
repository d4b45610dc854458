"""
WebRTC call signalling.

Relays offer/answer/ICE payloads between the two parties of a call room
without looking inside them, and drives each room through
``idle -> ringing -> connected -> ended``.  Sessions are in-memory only
and are rebuilt purely from signalling traffic.

Termination is decided by the state check in :meth:`end_call`: only a
session that exists and is not yet ended is acted on, so duplicate
``end-call`` signals (local hangup plus the echoed ``call-ended``) are
no-ops by construction.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from channels.db import database_sync_to_async
from django.conf import settings

from comms import metrics
from comms.exceptions import SignalingError
from comms.rooms import RoomDirectory, directory
from comms.services.audit import safe_log_action

logger = logging.getLogger(__name__)


class CallState(str, Enum):
    IDLE = 'idle'
    RINGING = 'ringing'
    CONNECTED = 'connected'
    ENDED = 'ended'


@dataclass
class CallSession:
    room: str
    state: CallState = CallState.IDLE
    # connection id -> user id of everyone who has signalled in this call
    participants: Dict[str, Optional[str]] = field(default_factory=dict)
    state_entered_at: Dict[str, float] = field(default_factory=dict)
    offer_from: Optional[str] = None
    ring_timer: Optional[asyncio.Task] = field(default=None, repr=False)
    # departed connection id -> pending grace-period task
    grace: Dict[str, asyncio.Task] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        self.state_entered_at[self.state.value] = time.monotonic()

    def enter(self, state: CallState) -> None:
        logger.info("call room=%s %s -> %s", self.room, self.state.value, state.value)
        self.state = state
        self.state_entered_at[state.value] = time.monotonic()

    @property
    def active(self) -> bool:
        return self.state is not CallState.ENDED

    def cancel_timers(self) -> None:
        if self.ring_timer is not None and not self.ring_timer.done():
            self.ring_timer.cancel()
        self.ring_timer = None
        for task in self.grace.values():
            if not task.done():
                task.cancel()
        self.grace.clear()


def _distinct_parties(members: Dict[str, Optional[str]]) -> set:
    return {u if u is not None else c for c, u in members.items()}


class CallSignalingService:

    def __init__(self, rooms: Optional[RoomDirectory] = None, *,
                 ring_timeout: Optional[float] = None,
                 disconnect_grace: Optional[float] = None,
                 capacity: Optional[int] = None):
        self.rooms = rooms or directory
        self._ring_timeout = ring_timeout
        self._disconnect_grace = disconnect_grace
        self._capacity = capacity
        self._sessions: Dict[str, CallSession] = {}

    @property
    def ring_timeout(self) -> float:
        return self._ring_timeout if self._ring_timeout is not None else settings.CALL_RING_TIMEOUT_SECONDS

    @property
    def disconnect_grace(self) -> float:
        return self._disconnect_grace if self._disconnect_grace is not None else settings.CALL_DISCONNECT_GRACE_SECONDS

    @property
    def capacity(self) -> int:
        return self._capacity if self._capacity is not None else settings.CALL_ROOM_CAPACITY

    # ------------------------------------------------------------------
    # inspection
    # ------------------------------------------------------------------
    def session(self, room: str) -> Optional[CallSession]:
        return self._sessions.get(str(room))

    def state_of(self, room: str) -> CallState:
        session = self.session(room)
        return session.state if session else CallState.IDLE

    def active_count(self) -> int:
        return sum(1 for s in self._sessions.values() if s.active)

    # ------------------------------------------------------------------
    # room admission
    # ------------------------------------------------------------------
    def _reject(self, event: str, reason: str, room: str, connection_id: str):
        metrics.signaling_rejections.labels(event=event).inc()
        logger.warning("signalling %s rejected in room=%s conn=%s: %s", event, room, connection_id, reason)
        raise SignalingError(reason)

    def check_join(self, connection_id: str, user_id, room: str) -> None:
        """Refuse a join that would put a third party into an active call.

        A user re-joining their own call (new tab or reconnect) is let in
        and any pending disconnect teardown for them is cancelled.
        """
        room = str(room)
        session = self._sessions.get(room)
        if session is None or not session.active:
            return
        user_id = None if user_id is None else str(user_id)
        if user_id is not None and user_id in session.participants.values():
            self._resume(session, connection_id, user_id)
            return
        occupants = _distinct_parties(self.rooms.members(room))
        if (user_id or connection_id) in occupants:
            return
        if len(occupants) >= self.capacity:
            self._reject('join', 'call_room_full', room, connection_id)

    def _resume(self, session: CallSession, connection_id: str, user_id: str) -> None:
        for old, uid in list(session.participants.items()):
            if uid == user_id and old in session.grace:
                session.grace.pop(old).cancel()
                del session.participants[old]
                logger.info("call room=%s user=%s reconnected, teardown cancelled", session.room, user_id)
        session.participants.setdefault(connection_id, user_id)

    def _require_member(self, event: str, connection_id: str, room: str) -> None:
        if not self.rooms.is_member(connection_id, room):
            self._reject(event, 'not_in_room', room, connection_id)

    def _admit(self, session: CallSession, connection_id: str, event: str) -> None:
        if connection_id in session.participants:
            return
        user_id = self.rooms.user_of(connection_id)
        if user_id is not None and user_id in session.participants.values():
            self._resume(session, connection_id, user_id)
            return
        if len(_distinct_parties(session.participants)) >= self.capacity:
            self._reject(event, 'call_room_full', session.room, connection_id)
        session.participants[connection_id] = user_id

    # ------------------------------------------------------------------
    # signalling events
    # ------------------------------------------------------------------
    async def call_user(self, connection_id: str, room: str, offer: Any) -> CallSession:
        room = str(room)
        self._require_member('call-user', connection_id, room)
        if offer is None:
            self._reject('call-user', 'missing_offer', room, connection_id)
        session = self._sessions.get(room)
        if session is None:
            session = self._sessions[room] = CallSession(room=room)
        self._admit(session, connection_id, 'call-user')
        if session.state is CallState.IDLE:
            session.offer_from = connection_id
            session.enter(CallState.RINGING)
            self._arm_ring_timer(session)
        else:
            logger.info("call room=%s renegotiation offer from conn=%s", room, connection_id)
        await self.rooms.broadcast(room, 'call-made', {'offer': offer}, exclude=connection_id)
        return session

    async def answer_call(self, connection_id: str, room: str, answer: Any) -> CallSession:
        room = str(room)
        self._require_member('answer-call', connection_id, room)
        session = self._sessions.get(room)
        if session is None or session.state not in (CallState.RINGING, CallState.CONNECTED):
            self._reject('answer-call', 'no_pending_offer', room, connection_id)
        if answer is None:
            self._reject('answer-call', 'missing_answer', room, connection_id)
        self._admit(session, connection_id, 'answer-call')
        if session.state is CallState.RINGING:
            if session.ring_timer is not None:
                session.ring_timer.cancel()
                session.ring_timer = None
            session.enter(CallState.CONNECTED)
        await self.rooms.broadcast(room, 'call-answered', {'answer': answer}, exclude=connection_id)
        return session

    async def ice_candidate(self, connection_id: str, room: str, candidate: Any) -> int:
        room = str(room)
        self._require_member('ice-candidate', connection_id, room)
        if candidate is None:
            self._reject('ice-candidate', 'missing_candidate', room, connection_id)
        session = self._sessions.get(room)
        if session is not None and session.active:
            self._admit(session, connection_id, 'ice-candidate')
        return await self.rooms.broadcast(room, 'ice-candidate', {'candidate': candidate}, exclude=connection_id)

    async def hang_up(self, connection_id: str, room: str) -> Optional[CallSession]:
        """An explicit ``end-call`` from a connection joined to the room."""
        room = str(room)
        self._require_member('end-call', connection_id, room)
        return await self.end_call(room, reason='hangup', connection_id=connection_id)

    async def end_call(self, room: str, *, reason: str = 'hangup', connection_id: Optional[str] = None) -> Optional[CallSession]:
        """Tear the call down once; later calls for the same session do nothing."""
        room = str(room)
        session = self._sessions.get(room)
        if session is None or not session.active:
            logger.debug("end-call for room=%s ignored, no active call", room)
            return None
        previous = session.state
        session.enter(CallState.ENDED)
        self._sessions.pop(room, None)
        session.cancel_timers()
        await self.rooms.broadcast(room, 'call-ended', {})
        metrics.call_sessions_ended.labels(outcome=reason).inc()
        await database_sync_to_async(safe_log_action)(
            user=None, action='call_end', object_type='call_room', object_id=room,
            detail={'reason': reason, 'from': previous.value, 'by': connection_id,
                    'participants': sorted(u for u in session.participants.values() if u)},
        )
        return session

    # ------------------------------------------------------------------
    # timers & disconnects
    # ------------------------------------------------------------------
    def _arm_ring_timer(self, session: CallSession) -> None:
        if self.ring_timeout and self.ring_timeout > 0:
            session.ring_timer = asyncio.ensure_future(self._expire_ringing(session))

    async def _expire_ringing(self, session: CallSession) -> None:
        await asyncio.sleep(self.ring_timeout)
        if self._sessions.get(session.room) is session and session.state is CallState.RINGING:
            session.ring_timer = None
            logger.info("call room=%s unanswered after %ss", session.room, self.ring_timeout)
            await self.end_call(session.room, reason='timeout')

    async def connection_lost(self, connection_id: str) -> None:
        """End, after a grace period, every call the dropped connection was part of."""
        for room, session in list(self._sessions.items()):
            if connection_id not in session.participants or not session.active:
                continue
            user_id = session.participants[connection_id]
            others = [c for c, u in self.rooms.members(room).items() if user_id is not None and u == user_id]
            if others:
                # the same user is still in the call from another tab
                del session.participants[connection_id]
                session.participants.setdefault(others[0], user_id)
                logger.info("call room=%s conn=%s dropped, user=%s still present", room, connection_id, user_id)
                continue
            if not self.rooms.members(room):
                logger.info("call room=%s has no connected participant left", room)
                await self.end_call(room, reason='disconnect', connection_id=connection_id)
                continue
            logger.info("call room=%s conn=%s dropped, ending in %ss unless it returns",
                        room, connection_id, self.disconnect_grace)
            session.grace[connection_id] = asyncio.ensure_future(
                self._expire_disconnected(session, connection_id))

    async def _expire_disconnected(self, session: CallSession, connection_id: str) -> None:
        await asyncio.sleep(self.disconnect_grace)
        if self._sessions.get(session.room) is session and session.grace.pop(connection_id, None) is not None:
            await self.end_call(session.room, reason='disconnect', connection_id=connection_id)

    def reset(self) -> None:
        for session in self._sessions.values():
            session.cancel_timers()
        self._sessions.clear()


signaling = CallSignalingService()
