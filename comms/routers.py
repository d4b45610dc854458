"""
URL mappings for the chat API.

Paths mirror the portals' existing calls; trailing slashes are
deliberately omitted.
"""
from django.urls import path, include

from .views import chat
from .views import health


urlpatterns = [
    path('', include('django_prometheus.urls')),
    path('healthz', health.healthz),
    # Chat
    path('api/chat/history/<int:other_user_id>', chat.chat_history, name='chat_history'),
    path('api/chat/send', chat.chat_send, name='chat_send'),
    path('api/chat/unread-counts/<int:doctor_id>', chat.unread_counts_for_doctor, name='chat_unread_doctor'),
    path('api/chat/unread-counts-patient/<int:patient_id>', chat.unread_counts_for_patient, name='chat_unread_patient'),
    path('api/chat/mark-read/<int:counterpart_id>', chat.mark_read, name='chat_mark_read'),
]
