"""
Integration tests for the chat HTTP API.

Covers the endpoints the two portals call: history, send, unread
aggregates and mark-read, plus authentication and access control.
Sockets are not connected here, so every broadcast is a logged
delivery gap and the HTTP response is the only observable effect.
"""
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APIClient, APITestCase
from rest_framework_simplejwt.tokens import AccessToken

from comms.models import ChatMessage, User
from comms.tests.utils import client_for


class ChatAPITests(APITestCase):
    def setUp(self) -> None:
        self.patient = User.objects.create_user(username="patient1", password="P@ssw0rd1", role="patient")
        self.patient2 = User.objects.create_user(username="patient2", password="P@ssw0rd1", role="patient")
        self.doctor = User.objects.create_user(username="doctor1", password="P@ssw0rd1", role="doctor")
        self.admin = User.objects.create_user(username="admin1", password="P@ssw0rd1", role="admin")

        self.patient_client = client_for(self.patient)
        self.patient2_client = client_for(self.patient2)
        self.doctor_client = client_for(self.doctor)
        self.admin_client = client_for(self.admin)

    def _send(self, client, body, sender, patient=None, **extra):
        payload = {
            "patientId": (patient or self.patient).id,
            "doctorId": self.doctor.id,
            "message": body,
            "sender": sender,
            **extra,
        }
        return client.post(reverse("chat_send"), payload, format="json")

    def test_requires_authentication(self):
        anon = APIClient()
        resp = anon.get(reverse("chat_history", args=[self.doctor.id]))
        self.assertEqual(resp.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertFalse(resp.data["ok"])
        resp = anon.post(reverse("chat_send"), {}, format="json")
        self.assertEqual(resp.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_bearer_jwt_is_accepted(self):
        client = APIClient()
        client.credentials(HTTP_AUTHORIZATION=f"Bearer {AccessToken.for_user(self.patient)}")
        resp = client.get(reverse("chat_history", args=[self.doctor.id]))
        self.assertEqual(resp.status_code, status.HTTP_200_OK)

    def test_send_and_history(self):
        resp = self._send(self.patient_client, "I have a headache", "patient")
        self.assertEqual(resp.status_code, status.HTTP_201_CREATED)
        self.assertEqual(resp.data["patientId"], self.patient.id)
        self.assertEqual(resp.data["doctorId"], self.doctor.id)
        self.assertFalse(resp.data["read"])
        self.assertIn("timestamp", resp.data)

        resp = self._send(self.doctor_client, "Drink water", "doctor")
        self.assertEqual(resp.status_code, status.HTTP_201_CREATED)

        resp = self.patient_client.get(reverse("chat_history", args=[self.doctor.id]))
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual([m["message"] for m in resp.data], ["I have a headache", "Drink water"])
        self.assertEqual([m["sender"] for m in resp.data], ["patient", "doctor"])

        resp = self.doctor_client.get(reverse("chat_history", args=[self.patient.id]))
        self.assertEqual(len(resp.data), 2)

    def test_history_pagination_header(self):
        for i in range(3):
            self._send(self.patient_client, f"m{i}", "patient")
        url = reverse("chat_history", args=[self.doctor.id])
        resp = self.patient_client.get(url, {"limit": 2})
        self.assertEqual(len(resp.data), 2)
        cursor = resp["X-Next-Cursor"]
        resp = self.patient_client.get(url, {"limit": 2, "after": cursor})
        self.assertEqual([m["message"] for m in resp.data], ["m2"])
        self.assertNotIn("X-Next-Cursor", resp)

    def test_send_with_client_id_is_stored_once(self):
        first = self._send(self.patient_client, "hello", "patient", clientId="tab-1")
        again = self._send(self.patient_client, "hello", "patient", clientId="tab-1")
        self.assertEqual(first.status_code, status.HTTP_201_CREATED)
        self.assertEqual(again.status_code, status.HTTP_200_OK)
        self.assertEqual(first.data["id"], again.data["id"])
        self.assertEqual(ChatMessage.objects.count(), 1)

    def test_send_validation(self):
        resp = self._send(self.patient_client, "", "patient")
        self.assertEqual(resp.status_code, status.HTTP_400_BAD_REQUEST)
        resp = self._send(self.patient_client, "hi", "nurse")
        self.assertEqual(resp.status_code, status.HTTP_400_BAD_REQUEST)
        resp = self.patient_client.post(reverse("chat_send"), {"message": "hi"}, format="json")
        self.assertEqual(resp.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(ChatMessage.objects.count(), 0)

    def test_send_as_someone_else_is_forbidden(self):
        resp = self._send(self.patient2_client, "spoof", "patient")
        self.assertEqual(resp.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(resp.data["error"]["code"], "forbidden")
        resp = self._send(self.patient_client, "spoof", "doctor")
        self.assertEqual(resp.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(ChatMessage.objects.count(), 0)

    def test_send_to_unknown_doctor(self):
        resp = self.patient_client.post(reverse("chat_send"), {
            "patientId": self.patient.id, "doctorId": self.patient2.id,
            "message": "hi", "sender": "patient",
        }, format="json")
        self.assertEqual(resp.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(resp.data["error"]["code"], "validation_error")

    def test_unread_counts_and_mark_read(self):
        self._send(self.patient_client, "one", "patient")
        self._send(self.patient_client, "two", "patient")
        self._send(self.patient2_client, "three", "patient", patient=self.patient2)
        self._send(self.doctor_client, "reply", "doctor")

        resp = self.doctor_client.get(reverse("chat_unread_doctor", args=[self.doctor.id]))
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual(resp.data, {str(self.patient.id): 2, str(self.patient2.id): 1})

        resp = self.patient_client.get(reverse("chat_unread_patient", args=[self.patient.id]))
        self.assertEqual(resp.data, {str(self.doctor.id): 1})

        resp = self.doctor_client.post(reverse("chat_mark_read", args=[self.patient.id]))
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual(resp.data, {"ok": True, "updated": 2})

        resp = self.doctor_client.get(reverse("chat_unread_doctor", args=[self.doctor.id]))
        self.assertEqual(resp.data, {str(self.patient2.id): 1})

    def test_unread_counts_of_another_user_are_forbidden(self):
        resp = self.patient_client.get(reverse("chat_unread_doctor", args=[self.doctor.id]))
        self.assertEqual(resp.status_code, status.HTTP_403_FORBIDDEN)
        resp = self.patient_client.get(reverse("chat_unread_patient", args=[self.patient2.id]))
        self.assertEqual(resp.status_code, status.HTTP_403_FORBIDDEN)
        resp = self.admin_client.get(reverse("chat_unread_patient", args=[self.patient2.id]))
        self.assertEqual(resp.status_code, status.HTTP_200_OK)

    def test_healthz(self):
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["activeCalls"], 0)
