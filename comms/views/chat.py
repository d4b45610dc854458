"""
Chat HTTP endpoints.

History, send, unread aggregates and mark-read for the two portals.
``POST /api/chat/send`` and the socket ``sendMessage`` event share the
same service call, so a message is stored exactly once whichever path
the client uses.
"""
from __future__ import annotations

from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from comms.serializers.chat import ChatHistoryQuerySerializer, ChatMessageSerializer, ChatSendSerializer
from comms.services import chat


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def chat_history(request, other_user_id: int):
    """Messages between the caller and ``other_user_id``, oldest first."""
    q = ChatHistoryQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    items, next_cursor = chat.get_history_page(
        request.user.id, other_user_id,
        after=q.validated_data.get('after'),
        limit=q.validated_data.get('limit'),
    )
    resp = Response(ChatMessageSerializer(items, many=True).data)
    if next_cursor is not None:
        resp['X-Next-Cursor'] = str(next_cursor)
    return resp


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def chat_send(request):
    s = ChatSendSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    vd = s.validated_data
    msg, created = chat.send_message(
        vd['patientId'], vd['doctorId'], vd['message'], vd['sender'],
        user=request.user, client_id=vd.get('clientId'),
    )
    return Response(chat.serialize_message(msg), status=status.HTTP_201_CREATED if created else status.HTTP_200_OK)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def unread_counts_for_doctor(request, doctor_id: int):
    chat.check_viewer_access(request.user, doctor_id, chat.DOCTOR)
    return Response(chat.get_unread_counts(doctor_id, chat.DOCTOR))


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def unread_counts_for_patient(request, patient_id: int):
    chat.check_viewer_access(request.user, patient_id, chat.PATIENT)
    return Response(chat.get_unread_counts(patient_id, chat.PATIENT))


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def mark_read(request, counterpart_id: int):
    """Mark every unread message the counterpart sent to the caller as read."""
    n = chat.mark_read(request.user.id, getattr(request.user, 'role', ''), counterpart_id, user=request.user)
    return Response({'ok': True, 'updated': n})
