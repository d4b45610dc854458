import pytest
from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer

from comms.models import User
from comms.rooms import directory
from comms.services.signaling import signaling


@pytest.fixture(autouse=True)
def clean_realtime_state():
    """Rooms and call sessions are process-wide; start every test empty."""
    directory.reset()
    signaling.reset()
    yield
    signaling.reset()
    directory.reset()
    async_to_sync(get_channel_layer().flush)()


@pytest.fixture
def patient(db):
    return User.objects.create_user(username='patient1', password='P@ssw0rd1', role='patient')


@pytest.fixture
def other_patient(db):
    return User.objects.create_user(username='patient2', password='P@ssw0rd1', role='patient')


@pytest.fixture
def doctor(db):
    return User.objects.create_user(username='doctor1', password='P@ssw0rd1', role='doctor')


@pytest.fixture
def other_doctor(db):
    return User.objects.create_user(username='doctor2', password='P@ssw0rd1', role='doctor')


@pytest.fixture
def admin_user(db):
    return User.objects.create_user(username='admin1', password='P@ssw0rd1', role='admin')


@pytest.fixture
def broadcasts(monkeypatch):
    """Record every broadcast issued through the room directory instead of sending it."""
    calls = []

    def record(room, event, payload=None, *, exclude=None):
        calls.append({'room': room, 'event': event, 'payload': payload, 'exclude': exclude})
        return 1

    monkeypatch.setattr(directory, 'broadcast_sync', record)
    return calls
