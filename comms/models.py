"""
Database models for the real-time communication backend.

The user table doubles as the user directory consumed by chat delivery:
only the role and primary key matter to the messaging core.  Chat
messages form the durable, append-only message store; everything about
rooms and calls is ephemeral and lives in memory (see ``comms.rooms`` and
``comms.services.signaling``).
"""
from __future__ import annotations

from django.contrib.auth.models import AbstractUser
from django.db import models


class User(AbstractUser):
    """Custom user model carrying the portal role.

    Roles mirror the two front-ends: patients use the patient portal,
    doctors and admins share the admin/doctor dashboard.
    """
    ROLE_PATIENT = 'patient'
    ROLE_DOCTOR = 'doctor'
    ROLE_ADMIN = 'admin'
    ROLE_CHOICES = [
        (ROLE_PATIENT, 'Patient'),
        (ROLE_DOCTOR, 'Doctor'),
        (ROLE_ADMIN, 'Administrator'),
    ]
    role = models.CharField(max_length=10, choices=ROLE_CHOICES, default=ROLE_PATIENT, db_index=True)

    def __str__(self) -> str:
        return f"{self.username} ({self.role})"


class ChatMessage(models.Model):
    """One chat line between a patient and a doctor.

    A message is immutable once stored, except for ``read`` which only
    ever moves from False to True.
    """
    SENDER_PATIENT = 'patient'
    SENDER_DOCTOR = 'doctor'
    SENDER_CHOICES = [
        (SENDER_PATIENT, 'Patient'),
        (SENDER_DOCTOR, 'Doctor'),
    ]

    patient = models.ForeignKey(User, on_delete=models.CASCADE, related_name='patient_messages')
    doctor = models.ForeignKey(User, on_delete=models.CASCADE, related_name='doctor_messages')
    message = models.TextField()
    sender = models.CharField(max_length=10, choices=SENDER_CHOICES)
    timestamp = models.DateTimeField(auto_now_add=True)
    read = models.BooleanField(default=False)
    # Optional idempotency key supplied by the client; lets the socket and
    # HTTP send paths share one write without storing duplicates.
    client_id = models.CharField(max_length=64, null=True, blank=True, unique=True)

    class Meta:
        ordering = ['timestamp', 'id']
        indexes = [
            models.Index(fields=['patient', 'doctor', 'timestamp'], name='chat_conv_ts_idx'),
            models.Index(fields=['doctor', 'sender', 'read'], name='chat_doctor_unread_idx'),
            models.Index(fields=['patient', 'sender', 'read'], name='chat_patient_unread_idx'),
        ]

    def __str__(self) -> str:
        return f"{self.sender}: {self.patient_id}-{self.doctor_id} #{self.pk}"

    def save(self, *args, **kwargs):
        if self.pk is not None and not self._state.adding:
            stored = type(self).objects.filter(pk=self.pk).values(
                'patient_id', 'doctor_id', 'message', 'sender', 'read').first()
            if stored:
                if stored['read'] and not self.read:
                    raise ValueError('read flag cannot go back to unread')
                for field_name in ('patient_id', 'doctor_id', 'message', 'sender'):
                    if getattr(self, field_name) != stored[field_name]:
                        raise ValueError(f'{field_name} of a stored message is immutable')
        super().save(*args, **kwargs)


class AuditEvent(models.Model):
    user = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True)
    action = models.CharField(max_length=64)
    object_type = models.CharField(max_length=64, blank=True, null=True)
    object_id = models.CharField(max_length=128, blank=True, null=True)
    detail = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=['action', 'created_at'], name='audit_action_idx'),
            models.Index(fields=['object_type', 'object_id', 'created_at'], name='audit_object_idx'),
        ]
