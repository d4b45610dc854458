"""
Django admin registrations for the comms models.

Lets superusers inspect users, stored chat messages and the audit trail
via ``/admin/``.  Chat messages are read-only here: apart from the read
flag they never change after being stored.
"""

from django.contrib import admin

from .models import AuditEvent, ChatMessage, User


@admin.register(User)
class UserAdmin(admin.ModelAdmin):
    list_display = ('username', 'role', 'is_staff', 'is_superuser')
    list_filter = ('role',)
    search_fields = ('username', 'first_name', 'last_name', 'email')


@admin.register(ChatMessage)
class ChatMessageAdmin(admin.ModelAdmin):
    list_display = ('id', 'patient', 'doctor', 'sender', 'timestamp', 'read')
    list_filter = ('sender', 'read')
    search_fields = ('message', 'client_id')
    readonly_fields = ('patient', 'doctor', 'message', 'sender', 'timestamp', 'read', 'client_id')

    def has_add_permission(self, request):
        return False


@admin.register(AuditEvent)
class AuditEventAdmin(admin.ModelAdmin):
    list_display = ('action', 'object_type', 'object_id', 'user', 'created_at')
    list_filter = ('action',)
    readonly_fields = ('user', 'action', 'object_type', 'object_id', 'detail', 'created_at')
