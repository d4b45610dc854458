"""
Chat delivery: validate, persist, then fan out chat messages.

All state lives in :class:`comms.models.ChatMessage`; these functions are
stateless between calls.  Fan-out happens strictly after the write has
committed, so a peer can never observe a message that is not stored.
"""
import html
import logging
from typing import Dict, List, Optional, Tuple

import bleach
from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import Count, Q

from comms import metrics
from comms.exceptions import PersistenceError, ValidationError
from comms.models import ChatMessage
from comms.rooms import conversation_room, directory, personal_room
from comms.serializers.chat import ChatMessageSerializer, ChatSendSerializer
from comms.services.audit import safe_log_action

User = get_user_model()
logger = logging.getLogger(__name__)

PATIENT = ChatMessage.SENDER_PATIENT
DOCTOR = ChatMessage.SENDER_DOCTOR


def _opposite(role: str) -> str:
    return DOCTOR if role == PATIENT else PATIENT


def coerce_id(value, field: str = 'id') -> int:
    try:
        ident = None if isinstance(value, bool) else int(value)
    except (TypeError, ValueError):
        ident = None
    if ident is None or ident < 1:
        raise ValidationError(f'invalid {field}', detail={field: ['must be a positive integer']})
    return ident


def coerce_role(value) -> str:
    if value not in (PATIENT, DOCTOR):
        raise ValidationError('invalid role', detail={'role': [f'must be one of {PATIENT}, {DOCTOR}']})
    return value


def serialize_message(msg: ChatMessage) -> dict:
    return dict(ChatMessageSerializer(msg).data)


def check_send_access(user, patient_id: int, doctor_id: int, sender: str) -> None:
    """A patient may only speak as themselves, a doctor likewise."""
    role = getattr(user, 'role', '')
    if role == PATIENT:
        allowed = sender == PATIENT and user.id == patient_id
    elif role == DOCTOR:
        allowed = sender == DOCTOR and user.id == doctor_id
    else:
        allowed = False
    if not allowed:
        raise PermissionError('not a participant of this conversation')


def check_viewer_access(user, viewer_id: int, viewer_role: str) -> None:
    if getattr(user, 'role', '') == 'admin':
        return
    if getattr(user, 'role', '') != viewer_role or user.id != viewer_id:
        raise PermissionError('cannot read another user\'s conversations')


def _clean_body(body: str) -> str:
    # plain text: drop every tag, keep literal < > & as typed
    return html.unescape(bleach.clean((body or '').strip(), tags=set(), strip=True)).strip()


def _validate_send(patient_id, doctor_id, body, sender, client_id) -> dict:
    data = {'patientId': patient_id, 'doctorId': doctor_id, 'message': body, 'sender': sender}
    if client_id not in (None, ''):
        data['clientId'] = client_id
    s = ChatSendSerializer(data=data)
    if not s.is_valid():
        raise ValidationError('invalid message', detail=s.errors)
    vd = dict(s.validated_data)
    vd['message'] = _clean_body(vd['message'])
    if not vd['message']:
        raise ValidationError('empty message', detail={'message': ['message is empty']})
    return vd


def _party(user_id: int, role: str) -> User:
    try:
        return User.objects.get(pk=user_id, role=role)
    except User.DoesNotExist:
        raise ValidationError(f'unknown {role}', detail={f'{role}Id': [f'no {role} with id {user_id}']})


def _existing_for_client_id(client_id: str, patient_id: int, doctor_id: int) -> Optional[ChatMessage]:
    msg = ChatMessage.objects.filter(client_id=client_id).first()
    if msg is not None and (msg.patient_id, msg.doctor_id) != (patient_id, doctor_id):
        raise ValidationError('clientId already used', detail={'clientId': ['already used by another conversation']})
    return msg


def send_message(patient_id, doctor_id, body, sender, *, user=None, client_id: Optional[str] = None) -> Tuple[ChatMessage, bool]:
    """Persist one message and fan it out.

    Returns ``(message, created)``.  When ``client_id`` names a message
    that is already stored, that message is returned with
    ``created=False`` and nothing is written or broadcast again.
    """
    vd = _validate_send(patient_id, doctor_id, body, sender, client_id)
    patient_id, doctor_id, sender = vd['patientId'], vd['doctorId'], vd['sender']
    client_id = vd.get('clientId')

    if user is not None:
        check_send_access(user, patient_id, doctor_id, sender)

    if client_id:
        existing = _existing_for_client_id(client_id, patient_id, doctor_id)
        if existing is not None:
            logger.info("duplicate send for clientId=%s, returning message=%s", client_id, existing.id)
            return existing, False

    patient = _party(patient_id, PATIENT)
    doctor = _party(doctor_id, DOCTOR)

    try:
        with transaction.atomic():
            msg = ChatMessage.objects.create(
                patient=patient, doctor=doctor, message=vd['message'], sender=sender,
                read=False, client_id=client_id or None,
            )
    except IntegrityError as exc:
        if client_id:
            existing = _existing_for_client_id(client_id, patient_id, doctor_id)
            if existing is not None:
                return existing, False
        logger.exception("chat message write failed (integrity)")
        raise PersistenceError('failed to store message') from exc
    except DatabaseError as exc:
        logger.exception("chat message write failed")
        raise PersistenceError('failed to store message') from exc

    safe_log_action(user=user, action='chat_send', object_type='chat_message', object_id=msg.id,
                    detail={'patientId': patient_id, 'doctorId': doctor_id, 'sender': sender})
    metrics.chat_messages_sent.labels(sender=sender).inc()

    fan_out(msg)
    return msg, True


def fan_out(msg: ChatMessage) -> None:
    """Broadcast a stored message to its conversation room and, if configured, badge the recipient."""
    payload = serialize_message(msg)
    room = conversation_room(msg.patient_id, msg.doctor_id)
    if not directory.broadcast_sync(room, 'message', payload):
        metrics.chat_delivery_gaps.labels(event='message').inc()

    recipient_role = _opposite(msg.sender)
    if recipient_role not in settings.CHAT_NOTIFY_RECIPIENT_ROLES:
        return
    recipient_id = msg.patient_id if recipient_role == PATIENT else msg.doctor_id
    badge = {
        'messageId': msg.id,
        'patientId': msg.patient_id,
        'doctorId': msg.doctor_id,
        'message': msg.message,
        'sender': msg.sender,
        'timestamp': payload['timestamp'],
        'read': False,
    }
    if not directory.broadcast_sync(personal_room(recipient_id), 'newMessage', badge):
        metrics.chat_delivery_gaps.labels(event='newMessage').inc()


def _conversation(user_id: int, counterpart_id: int):
    return ChatMessage.objects.filter(
        Q(patient_id=user_id, doctor_id=counterpart_id) | Q(patient_id=counterpart_id, doctor_id=user_id)
    ).order_by('timestamp', 'id')


def get_history_page(user_id, counterpart_id, *, after: Optional[int] = None, limit: Optional[int] = None) -> Tuple[List[ChatMessage], Optional[int]]:
    """Messages of the conversation, oldest first, plus the next cursor (or None)."""
    user_id = coerce_id(user_id, 'userId')
    counterpart_id = coerce_id(counterpart_id, 'otherUserId')
    qs = _conversation(user_id, counterpart_id)
    if after:
        qs = qs.filter(id__gt=after)
    if not limit:
        return list(qs), None
    limit = min(int(limit), settings.CHAT_HISTORY_MAX_PAGE)
    items = list(qs[:limit + 1])
    if len(items) > limit:
        items = items[:limit]
        return items, items[-1].id
    return items, None


def get_history(user_id, counterpart_id) -> List[ChatMessage]:
    items, _ = get_history_page(user_id, counterpart_id)
    return items


def get_unread_counts(viewer_id, viewer_role: str) -> Dict[str, int]:
    """``{counterpartId: unread}`` for messages addressed to the viewer."""
    viewer_id = coerce_id(viewer_id, 'viewerId')
    viewer_role = coerce_role(viewer_role)
    if viewer_role == PATIENT:
        qs, key = ChatMessage.objects.filter(patient_id=viewer_id, sender=DOCTOR, read=False), 'doctor_id'
    else:
        qs, key = ChatMessage.objects.filter(doctor_id=viewer_id, sender=PATIENT, read=False), 'patient_id'
    rows = qs.order_by().values(key).annotate(unread=Count('id'))
    return {str(row[key]): row['unread'] for row in rows}


def mark_read(viewer_id, viewer_role: str, counterpart_id, *, user=None) -> int:
    """Flip every unread message from the counterpart to the viewer; returns the number flipped."""
    viewer_id = coerce_id(viewer_id, 'viewerId')
    viewer_role = coerce_role(viewer_role)
    counterpart_id = coerce_id(counterpart_id, 'counterpartId')
    if viewer_role == PATIENT:
        qs = ChatMessage.objects.filter(patient_id=viewer_id, doctor_id=counterpart_id)
    else:
        qs = ChatMessage.objects.filter(doctor_id=viewer_id, patient_id=counterpart_id)
    try:
        updated = qs.filter(sender=_opposite(viewer_role), read=False).update(read=True)
    except DatabaseError as exc:
        logger.exception("mark-read failed viewer=%s counterpart=%s", viewer_id, counterpart_id)
        raise PersistenceError('failed to update read state') from exc
    if updated:
        patient_id, doctor_id = (viewer_id, counterpart_id) if viewer_role == PATIENT else (counterpart_id, viewer_id)
        safe_log_action(user=user, action='chat_mark_read', object_type='conversation',
                        object_id=conversation_room(patient_id, doctor_id),
                        detail={'updated': updated, 'viewerRole': viewer_role})
    return updated
