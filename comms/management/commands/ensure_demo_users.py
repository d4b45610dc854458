# comms/management/commands/ensure_demo_users.py
from django.core.management.base import BaseCommand
from rest_framework.authtoken.models import Token
from rest_framework_simplejwt.tokens import AccessToken

from comms.models import User

DEMO_SET = [
    ("patient1", User.ROLE_PATIENT),
    ("patient2", User.ROLE_PATIENT),
    ("doctor1", User.ROLE_DOCTOR),
    ("admin1", User.ROLE_ADMIN),
]


class Command(BaseCommand):
    help = "Ensure demo chat users exist and print their API token and WebSocket JWT (idempotent)."

    def add_arguments(self, parser):
        parser.add_argument("--password", default="P@ssw0rd1")

    def handle(self, *args, **opts):
        for username, role in DEMO_SET:
            u, created = User.objects.get_or_create(username=username, defaults={"role": role, "is_active": True})
            if created or u.role != role or not u.is_active:
                u.role = role
                u.is_active = True
                u.set_password(opts["password"])
                u.save()
            token, _ = Token.objects.get_or_create(user=u)
            jwt = AccessToken.for_user(u)
            self.stdout.write(self.style.SUCCESS(
                f"ok: {username} ({role}) id={u.id} token={token.key} ws=?token={jwt}"
            ))
        self.stdout.write(self.style.SUCCESS("All demo users ensured."))
