"""
Resolve ``?token=<jwt>`` on WebSocket connections to a user.

Browsers cannot set an ``Authorization`` header on a WebSocket upgrade,
so the portals pass their access token in the query string.  Without a
token the user resolved by ``AuthMiddlewareStack`` (session) is kept.
"""
from urllib.parse import parse_qs

from channels.db import database_sync_to_async
from channels.middleware import BaseMiddleware
from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from rest_framework_simplejwt.exceptions import TokenError
from rest_framework_simplejwt.settings import api_settings
from rest_framework_simplejwt.tokens import AccessToken

User = get_user_model()


@database_sync_to_async
def get_user_for_token(raw: str):
    try:
        token = AccessToken(raw)
    except TokenError:
        return None
    user_id = token.get(api_settings.USER_ID_CLAIM)
    if user_id is None:
        return None
    return User.objects.filter(pk=user_id, is_active=True).first()


class JWTAuthMiddleware(BaseMiddleware):

    async def __call__(self, scope, receive, send):
        query = parse_qs((scope.get('query_string') or b'').decode('latin-1'))
        raw = (query.get('token') or [None])[0]
        if raw:
            user = await get_user_for_token(raw)
            scope = dict(scope, user=user or AnonymousUser())
        return await super().__call__(scope, receive, send)
