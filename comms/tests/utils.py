import asyncio

from rest_framework.authtoken.models import Token
from rest_framework.test import APIClient


async def drain(layer, channel, timeout=0.05):
    """Everything queued for ``channel``, with the consumer-side exclude filter applied."""
    frames = []
    while True:
        try:
            msg = await asyncio.wait_for(layer.receive(channel), timeout)
        except asyncio.TimeoutError:
            return frames
        if msg.get('exclude') != channel:
            frames.append(msg)


def client_for(user) -> APIClient:
    """Return an APIClient authenticated the way the portals do (``Token <key>``)."""
    client = APIClient()
    token, _ = Token.objects.get_or_create(user=user)
    client.credentials(HTTP_AUTHORIZATION=f'Token {token.key}')
    return client
