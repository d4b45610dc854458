"""
Error taxonomy of the real-time core and the unified API error format.

``PermissionError`` (the builtin) is used for access violations, as the
services raise it; the classes below cover everything else.
"""
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler


class RealtimeError(Exception):
    code = 'realtime_error'

    def __init__(self, message: str = '', detail=None):
        super().__init__(message or self.code)
        self.detail = detail


class ValidationError(RealtimeError):
    """Malformed ids or missing fields; raised before any write or fan-out."""
    code = 'validation_error'


class PersistenceError(RealtimeError):
    """The message store write failed; nothing was broadcast."""
    code = 'persistence_error'


class SignalingError(RealtimeError):
    """Out-of-state or malformed signalling traffic."""
    code = 'signaling_error'


_DOMAIN_STATUS = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    PersistenceError: status.HTTP_503_SERVICE_UNAVAILABLE,
    SignalingError: status.HTTP_409_CONFLICT,
}


def _error(code: str, message, status_code: int) -> Response:
    return Response({'ok': False, 'error': {'code': code, 'message': message}}, status=status_code)


def api_exception_handler(exc, context):
    for cls, status_code in _DOMAIN_STATUS.items():
        if isinstance(exc, cls):
            return _error(exc.code, exc.detail or str(exc), status_code)
    if isinstance(exc, PermissionError):
        return _error('forbidden', str(exc) or 'forbidden', status.HTTP_403_FORBIDDEN)

    resp = drf_exception_handler(exc, context)
    if resp is None:
        return _error('server_error', str(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    # normalize response
    detail = None
    if isinstance(resp.data, dict):
        detail = resp.data.get('detail') or resp.data
    else:
        detail = str(resp.data)
    return _error('api_error', detail, resp.status_code)
