"""
Token authentication for the chat HTTP API.

Tokens are issued by the hospital's auth service; this backend only
verifies them.  DRF's ``TokenAuthentication`` handles ``Token <key>``
headers and simplejwt's ``JWTAuthentication`` (configured next to it in
settings) handles ``Bearer <jwt>`` headers.
"""
from __future__ import annotations

from rest_framework import authentication


class TokenAuthentication(authentication.TokenAuthentication):
    """Custom token authentication using the ``Token`` keyword.

    Kept as a subclass to provide a stable import path for the project's
    configuration and to allow later customisation.
    """

    keyword = 'Token'
