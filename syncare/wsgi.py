"""
WSGI config for the syncare project.

It exposes the WSGI callable as a module-level variable named ``application``.
Only the HTTP API is served over WSGI; WebSocket traffic needs the ASGI
entrypoint in ``syncare.asgi``.
"""
import os

from django.core.wsgi import get_wsgi_application  # type: ignore

# Set the default settings module for the 'django' program.
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'syncare.settings')

# Obtain the WSGI application for use by the server
application = get_wsgi_application()
