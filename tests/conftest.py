import os
import re

import pytest

# Predictable settings before the application module builds its default app.
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("SESSION_SECRET", "test-secret")

from app import create_app  # noqa: E402  (import after env vars are set)
from mailer import MailDeliveryError, Mailer  # noqa: E402

OTP_IN_TEXT = re.compile(r"\b(\d{6})\b")


class RecordingMailer(Mailer):
    """Captures payloads instead of talking to a relay."""

    def __init__(self):
        self.sent = []
        self.configured = True
        self.fail_with = None

    def is_configured(self):
        return self.configured

    def send(self, payload):
        if self.fail_with:
            raise MailDeliveryError(self.fail_with)
        self.sent.append(payload)
        return f"message-{len(self.sent)}"

    def sent_to(self, email):
        return [payload for payload in self.sent if email in payload["to"]]

    def last_code(self, email):
        messages = self.sent_to(email)
        assert messages, f"no mail sent to {email}"
        return OTP_IN_TEXT.search(messages[-1]["text"]).group(1)


@pytest.fixture()
def mailer():
    return RecordingMailer()


@pytest.fixture()
def app(tmp_path, mailer):
    application = create_app(
        {
            "TESTING": True,
            "STORAGE_BACKEND": "file",
            "DATA_DIR": str(tmp_path / "data"),
            "PUBLIC_DIR": str(tmp_path / "public"),
            "BCRYPT_ROUNDS": 4,
            "MAIL_SENDER": "shop@heime.test",
            "ADMIN_EMAIL": "owner@heime.test",
            "TRUSTED_PROXY_HOPS": 0,
        },
        mailer=mailer,
    )
    return application


@pytest.fixture()
def client(app):
    with app.test_client() as test_client:
        yield test_client


@pytest.fixture()
def storage(app):
    return app.extensions["storage"]


def start_signup(client, mailer, email="hoodie.fan@example.com", username="HoodieFan"):
    response = client.post("/api/auth/signup", json={"email": email, "username": username})
    assert response.status_code == 200, response.get_json()
    return response.get_json()["token"], mailer.last_code(email)


def verify(client, email, otp, token):
    return client.post(
        "/api/auth/verify-otp", json={"email": email, "otp": otp, "token": token}
    )


def register_account(
    client,
    mailer,
    email="hoodie.fan@example.com",
    username="HoodieFan",
    password="s3cret-pass",
):
    token, otp = start_signup(client, mailer, email, username)
    verified = verify(client, email, otp, token)
    assert verified.status_code == 200, verified.get_json()
    created = client.post(
        "/api/auth/create-password",
        json={"email": email, "password": password, "token": verified.get_json()["token"]},
    )
    assert created.status_code == 200, created.get_json()
    return email, password
