import pytest
from django.db import DatabaseError
from django.test import override_settings

from comms.exceptions import PersistenceError, ValidationError
from comms.models import AuditEvent, ChatMessage
from comms.services import chat

pytestmark = pytest.mark.django_db


def test_message_is_stored_before_it_is_broadcast(monkeypatch, patient, doctor):
    seen = []

    def record(room, event, payload=None, *, exclude=None):
        # the row must already be readable when any broadcast happens
        if event == 'message':
            seen.append(ChatMessage.objects.filter(pk=payload['id']).exists())
        return 1

    monkeypatch.setattr(chat.directory, 'broadcast_sync', record)
    msg, created = chat.send_message(patient.id, doctor.id, 'hello', 'patient', user=patient)
    assert created is True
    assert seen == [True]
    assert msg.read is False
    assert msg.timestamp is not None


def test_send_fans_out_to_conversation_room_only_for_patient_sender(broadcasts, patient, doctor):
    chat.send_message(patient.id, doctor.id, 'hello', 'patient')
    assert [(b['room'], b['event']) for b in broadcasts] == [(f'{patient.id}-{doctor.id}', 'message')]
    payload = broadcasts[0]['payload']
    assert payload['patientId'] == patient.id
    assert payload['doctorId'] == doctor.id
    assert payload['sender'] == 'patient'
    assert payload['read'] is False


def test_doctor_message_badges_patient_personal_room(broadcasts, patient, doctor):
    msg, _ = chat.send_message(patient.id, doctor.id, 'take two', 'doctor', user=doctor)
    assert [(b['room'], b['event']) for b in broadcasts] == [
        (f'{patient.id}-{doctor.id}', 'message'),
        (str(patient.id), 'newMessage'),
    ]
    badge = broadcasts[1]['payload']
    assert badge['messageId'] == msg.id
    assert badge['sender'] == 'doctor'
    assert badge['message'] == 'take two'
    assert badge['read'] is False


@override_settings(CHAT_NOTIFY_RECIPIENT_ROLES={'patient', 'doctor'})
def test_notify_roles_are_configurable(broadcasts, patient, doctor):
    chat.send_message(patient.id, doctor.id, 'hello', 'patient')
    assert (str(doctor.id), 'newMessage') in [(b['room'], b['event']) for b in broadcasts]


def test_failed_write_is_not_broadcast(monkeypatch, broadcasts, patient, doctor):
    def boom(*args, **kwargs):
        raise DatabaseError('disk full')

    monkeypatch.setattr(ChatMessage.objects, 'create', boom)
    with pytest.raises(PersistenceError):
        chat.send_message(patient.id, doctor.id, 'hello', 'patient')
    assert broadcasts == []
    assert ChatMessage.objects.count() == 0


@pytest.mark.parametrize('patient_id, doctor_id, body, sender', [
    (None, 1, 'hi', 'patient'),
    ('abc', 1, 'hi', 'patient'),
    (1, 0, 'hi', 'patient'),
    (1, 2, '', 'patient'),
    (1, 2, '   ', 'patient'),
    (1, 2, 'hi', 'nurse'),
    (1, 2, 'x' * 2001, 'patient'),
])
def test_invalid_input_is_rejected_before_any_write(broadcasts, patient_id, doctor_id, body, sender):
    with pytest.raises(ValidationError):
        chat.send_message(patient_id, doctor_id, body, sender)
    assert ChatMessage.objects.count() == 0
    assert broadcasts == []


def test_markup_is_stripped(broadcasts, patient, doctor):
    msg, _ = chat.send_message(patient.id, doctor.id, '<script>x</script><b>pain</b> in chest', 'patient')
    assert '<' not in msg.message
    assert 'pain in chest' in msg.message


def test_plain_text_symbols_are_stored_verbatim(broadcasts, patient, doctor):
    msg, _ = chat.send_message(patient.id, doctor.id, 'BP < 120 & pulse > 60', 'patient')
    assert msg.message == 'BP < 120 & pulse > 60'
    msg.refresh_from_db()
    assert msg.message == 'BP < 120 & pulse > 60'
    assert broadcasts[0]['payload']['message'] == 'BP < 120 & pulse > 60'


def test_unknown_party_is_rejected(broadcasts, patient, doctor):
    with pytest.raises(ValidationError):
        chat.send_message(patient.id, patient.id, 'hi', 'patient')
    with pytest.raises(ValidationError):
        chat.send_message(doctor.id, doctor.id, 'hi', 'patient')


def test_sender_must_be_the_authenticated_party(broadcasts, patient, other_patient, doctor):
    with pytest.raises(PermissionError):
        chat.send_message(patient.id, doctor.id, 'hi', 'patient', user=other_patient)
    with pytest.raises(PermissionError):
        chat.send_message(patient.id, doctor.id, 'hi', 'doctor', user=patient)
    assert ChatMessage.objects.count() == 0


def test_client_id_makes_send_idempotent(broadcasts, patient, doctor):
    first, created = chat.send_message(patient.id, doctor.id, 'hi', 'patient', client_id='tab1-0001')
    again, created_again = chat.send_message(patient.id, doctor.id, 'hi', 'patient', client_id='tab1-0001')
    assert created is True and created_again is False
    assert again.pk == first.pk
    assert ChatMessage.objects.count() == 1
    assert len([b for b in broadcasts if b['event'] == 'message']) == 1


def test_client_id_cannot_be_reused_across_conversations(broadcasts, patient, other_patient, doctor):
    chat.send_message(patient.id, doctor.id, 'hi', 'patient', client_id='tab1-0001')
    with pytest.raises(ValidationError):
        chat.send_message(other_patient.id, doctor.id, 'hi', 'patient', client_id='tab1-0001')


def test_history_is_oldest_first_and_scoped_to_the_pair(broadcasts, patient, other_patient, doctor):
    chat.send_message(patient.id, doctor.id, 'one', 'patient')
    chat.send_message(patient.id, doctor.id, 'two', 'doctor')
    chat.send_message(other_patient.id, doctor.id, 'elsewhere', 'patient')
    chat.send_message(patient.id, doctor.id, 'three', 'patient')

    assert [m.message for m in chat.get_history(patient.id, doctor.id)] == ['one', 'two', 'three']
    # the same conversation seen from the doctor's side
    assert [m.message for m in chat.get_history(doctor.id, patient.id)] == ['one', 'two', 'three']
    assert chat.get_history(patient.id, other_patient.id) == []


def test_history_pagination(broadcasts, patient, doctor):
    for i in range(5):
        chat.send_message(patient.id, doctor.id, f'm{i}', 'patient')

    page, cursor = chat.get_history_page(patient.id, doctor.id, limit=2)
    assert [m.message for m in page] == ['m0', 'm1']
    page, cursor = chat.get_history_page(patient.id, doctor.id, after=cursor, limit=2)
    assert [m.message for m in page] == ['m2', 'm3']
    page, cursor = chat.get_history_page(patient.id, doctor.id, after=cursor, limit=2)
    assert [m.message for m in page] == ['m4']
    assert cursor is None


def test_unread_counts_per_counterpart(broadcasts, patient, other_patient, doctor, other_doctor):
    chat.send_message(patient.id, doctor.id, 'a', 'patient')
    chat.send_message(patient.id, doctor.id, 'b', 'patient')
    chat.send_message(other_patient.id, doctor.id, 'c', 'patient')
    chat.send_message(patient.id, doctor.id, 'reply', 'doctor')
    chat.send_message(patient.id, other_doctor.id, 'd', 'patient')

    assert chat.get_unread_counts(doctor.id, 'doctor') == {str(patient.id): 2, str(other_patient.id): 1}
    assert chat.get_unread_counts(patient.id, 'patient') == {str(doctor.id): 1}
    assert chat.get_unread_counts(other_doctor.id, 'doctor') == {str(patient.id): 1}


def test_mark_read_only_touches_counterpart_messages(broadcasts, patient, doctor):
    chat.send_message(patient.id, doctor.id, 'a', 'patient')
    chat.send_message(patient.id, doctor.id, 'b', 'patient')
    chat.send_message(patient.id, doctor.id, 'reply', 'doctor')

    assert chat.mark_read(doctor.id, 'doctor', patient.id, user=doctor) == 2
    assert chat.get_unread_counts(doctor.id, 'doctor') == {}
    # the doctor's own message stays unread for the patient
    assert chat.get_unread_counts(patient.id, 'patient') == {str(doctor.id): 1}
    assert chat.mark_read(doctor.id, 'doctor', patient.id) == 0
    assert AuditEvent.objects.filter(action='chat_mark_read').count() == 1


def test_read_flag_never_goes_back(broadcasts, patient, doctor):
    msg, _ = chat.send_message(patient.id, doctor.id, 'a', 'patient')
    chat.mark_read(doctor.id, 'doctor', patient.id)
    msg.refresh_from_db()
    assert msg.read is True
    msg.read = False
    with pytest.raises(ValueError):
        msg.save()


def test_mark_read_rejects_bad_ids(patient):
    with pytest.raises(ValidationError):
        chat.mark_read(patient.id, 'patient', 'nope')
    with pytest.raises(ValidationError):
        chat.mark_read(patient.id, 'nurse', 2)


def test_send_is_audited(broadcasts, patient, doctor):
    msg, _ = chat.send_message(patient.id, doctor.id, 'hello', 'patient', user=patient)
    event = AuditEvent.objects.get(action='chat_send')
    assert event.user == patient
    assert event.object_id == str(msg.id)
