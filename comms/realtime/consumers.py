import json
import logging

from channels.db import database_sync_to_async
from channels.generic.websocket import AsyncWebsocketConsumer
from django.contrib.auth.models import AnonymousUser

from comms.exceptions import PersistenceError, SignalingError, ValidationError
from comms.rooms import can_join, conversation_room, directory
from comms.services import chat
from comms.services.signaling import signaling

logger = logging.getLogger(__name__)


async def _ws_error(ws, code: int, message: str, **extra):
    """
    Uniform error frame.
    App codes: 4xxx (client errors), 5xxx (server errors).
    """
    await ws.send(json.dumps({"event": "error", "data": {"code": code, "message": message, **extra}}))


def _room_of(data: dict) -> str:
    room = data.get("room")
    if isinstance(room, int) and not isinstance(room, bool):
        room = str(room)
    if not isinstance(room, str) or not room.strip():
        raise ValidationError("invalid room", detail={"room": ["room is required"]})
    return room.strip()


class RealtimeConsumer(AsyncWebsocketConsumer):
    """One socket per portal tab: chat fan-out plus call signalling.

    Frames are ``{"event": <name>, "data": {...}}`` in both directions.
    Channels runs a consumer's handlers one at a time, so events from a
    single connection are processed in the order they arrive.
    """

    handlers = {
        "join": "on_join",
        "leave": "on_leave",
        "sendMessage": "on_send_message",
        "markRead": "on_mark_read",
        "call-user": "on_call_user",
        "answer-call": "on_answer_call",
        "ice-candidate": "on_ice_candidate",
        "end-call": "on_end_call",
    }

    async def connect(self):
        user = self.scope.get("user") or AnonymousUser()
        if not getattr(user, "is_authenticated", False):
            await self.close(code=4001)
            return
        self.user = user
        await self.accept()
        logger.debug("conn=%s user=%s connected", self.channel_name, user.id)

    async def disconnect(self, close_code):
        rooms = await directory.leave_all(self.channel_name)
        await signaling.connection_lost(self.channel_name)
        logger.debug("conn=%s disconnected code=%s rooms=%s", self.channel_name, close_code, rooms)

    async def receive(self, text_data=None, bytes_data=None):
        if not text_data:
            return

        try:
            frame = json.loads(text_data)
        except ValueError:
            await _ws_error(self, 4000, "invalid_json")
            return

        if not isinstance(frame, dict) or not isinstance(frame.get("data", {}), dict):
            await _ws_error(self, 4001, "invalid_payload")
            return

        event = frame.get("event")
        handler = self.handlers.get(event)
        if handler is None:
            await _ws_error(self, 4002, "unsupported_event")
            return

        try:
            await getattr(self, handler)(frame.get("data") or {})
        except ValidationError as e:
            await _ws_error(self, 4004, "validation_error", detail=e.detail or str(e))
        except PermissionError:
            await _ws_error(self, 4003, "forbidden")
        except SignalingError as e:
            await _ws_error(self, 4009, "signaling_error", detail=str(e), event=event)
        except PersistenceError:
            await _ws_error(self, 5003, "persistence_error")
        except Exception:
            # Avoid leaking internal exception details
            logger.exception("conn=%s failed handling event=%s", self.channel_name, event)
            await _ws_error(self, 5000, "server_error")

    async def ack(self, event: str, **data):
        await self.send(json.dumps({"event": "ack", "data": {"event": event, **data}}))

    # ------------------------------------------------------------------
    # rooms
    # ------------------------------------------------------------------
    async def on_join(self, data):
        room = _room_of(data)
        if data.get("userId") not in (None, "", self.user.id, str(self.user.id)):
            logger.debug("conn=%s join userId=%s ignored, using verified user=%s",
                         self.channel_name, data.get("userId"), self.user.id)
        if not can_join(self.user, room):
            raise PermissionError("room is private")
        signaling.check_join(self.channel_name, self.user.id, room)
        await directory.join(self.channel_name, self.user.id, room)
        await self.ack("join", room=room)

    async def on_leave(self, data):
        room = _room_of(data)
        await directory.leave(self.channel_name, room)
        await self.ack("leave", room=room)

    # ------------------------------------------------------------------
    # chat
    # ------------------------------------------------------------------
    async def on_send_message(self, data):
        msg, created = await database_sync_to_async(chat.send_message)(
            data.get("patientId"), data.get("doctorId"), data.get("message"), data.get("sender"),
            user=self.user, client_id=data.get("clientId"),
        )
        if data.get("room") and str(data["room"]) != conversation_room(msg.patient_id, msg.doctor_id):
            logger.debug("conn=%s sent to room=%s, delivered to conversation room instead",
                         self.channel_name, data["room"])
        await self.ack("sendMessage", messageId=msg.id, created=created, clientId=msg.client_id)

    async def on_mark_read(self, data):
        updated = await database_sync_to_async(chat.mark_read)(
            self.user.id, getattr(self.user, "role", ""), data.get("counterpartId"), user=self.user,
        )
        await self.ack("markRead", counterpartId=data.get("counterpartId"), updated=updated)

    # ------------------------------------------------------------------
    # call signalling
    # ------------------------------------------------------------------
    async def on_call_user(self, data):
        await signaling.call_user(self.channel_name, _room_of(data), data.get("offer"))

    async def on_answer_call(self, data):
        await signaling.answer_call(self.channel_name, _room_of(data), data.get("answer"))

    async def on_ice_candidate(self, data):
        await signaling.ice_candidate(self.channel_name, _room_of(data), data.get("candidate"))

    async def on_end_call(self, data):
        await signaling.hang_up(self.channel_name, _room_of(data))

    # Handler for directory broadcasts:
    # await channel_layer.group_send(group, {"type": "room.event", "event": ..., "payload": {...}})
    async def room_event(self, event):
        if event.get("exclude") and event["exclude"] == self.channel_name:
            return
        await self.send(json.dumps({
            "event": event["event"],
            "room": event.get("room"),
            "data": event.get("payload") or {},
        }))
