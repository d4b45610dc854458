from django.db import connections
from django.http import JsonResponse

from comms.rooms import directory
from comms.services.signaling import signaling


def healthz(request):
    try:
        with connections['default'].cursor() as c:
            c.execute('SELECT 1')
            row = c.fetchone()
    except Exception as e:
        return JsonResponse({'ok': False, 'error': str(e)}, status=500)
    return JsonResponse({
        'ok': True,
        'db': bool(row and row[0] == 1),
        'connections': directory.connection_count(),
        'activeCalls': signaling.active_count(),
    })
