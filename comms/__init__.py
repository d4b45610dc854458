"""Real-time communication app for the hospital portals.

This package contains the chat message store, the in-memory room
directory, chat delivery and call signalling services, the WebSocket
consumer and the chat HTTP endpoints used by the admin/doctor and
patient front-ends.
"""
