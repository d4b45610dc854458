from django.conf import settings
from rest_framework import serializers

from comms.models import ChatMessage


class ChatSendSerializer(serializers.Serializer):
    patientId = serializers.IntegerField(min_value=1)
    doctorId = serializers.IntegerField(min_value=1)
    message = serializers.CharField(max_length=settings.CHAT_MESSAGE_MAX_LENGTH, trim_whitespace=True)
    sender = serializers.ChoiceField(choices=[ChatMessage.SENDER_PATIENT, ChatMessage.SENDER_DOCTOR])
    clientId = serializers.CharField(max_length=64, required=False, allow_blank=False)


class ChatHistoryQuerySerializer(serializers.Serializer):
    after = serializers.IntegerField(min_value=0, required=False)
    limit = serializers.IntegerField(min_value=1, max_value=settings.CHAT_HISTORY_MAX_PAGE, required=False)


class ChatMessageSerializer(serializers.ModelSerializer):
    """Wire layout of a stored message: ``{id, patientId, doctorId, message, sender, timestamp, read}``."""
    patientId = serializers.IntegerField(source='patient_id', read_only=True)
    doctorId = serializers.IntegerField(source='doctor_id', read_only=True)
    clientId = serializers.CharField(source='client_id', read_only=True, allow_null=True)

    class Meta:
        model = ChatMessage
        fields = ['id', 'patientId', 'doctorId', 'message', 'sender', 'timestamp', 'read', 'clientId']
        read_only_fields = fields
