
import pytest
import resend

from mailer import (
    MailDeliveryError,
    Mailer,
    MailerNotConfigured,
    ResendMailer,
    SmtpMailer,
    build_mailer,
    build_mime_message,
)

PAYLOAD = {
    "from": "HEIME <heime@cloth.com>",
    "to": ["buyer@example.com"],
    "reply_to": "heime@cloth.com",
    "headers": {"X-Mailer": "HEIME Contact System"},
    "subject": "Hello",
    "html": "<p>Hi</p>",
    "text": "Hi",
}


class StubMailer(Mailer):
    def __init__(self, fail_for=None):
        self.fail_for = fail_for

    def is_configured(self):
        return True

    def send(self, payload):
        if payload["to"][0] == self.fail_for:
            raise MailDeliveryError("rejected")
        return payload["to"][0]


def test_send_all_returns_ids_in_order():
    mailer = StubMailer()

    ids = mailer.send_all([{"to": ["one@example.com"]}, {"to": ["two@example.com"]}])

    assert ids == ["one@example.com", "two@example.com"]


def test_send_all_fails_when_any_message_fails():
    mailer = StubMailer(fail_for="two@example.com")

    with pytest.raises(MailDeliveryError):
        mailer.send_all([{"to": ["one@example.com"]}, {"to": ["two@example.com"]}])


def test_send_all_requires_configuration():
    with pytest.raises(MailerNotConfigured):
        ResendMailer("").send_all([PAYLOAD])


def test_resend_mailer_returns_message_id(monkeypatch):
    captured = {}

    def fake_send(params):
        captured.update(params)
        return {"id": "re_123"}

    monkeypatch.setattr(resend.Emails, "send", fake_send)

    assert ResendMailer("re_key").send(PAYLOAD) == "re_123"
    assert captured["subject"] == "Hello"
    assert resend.api_key == "re_key"


def test_resend_mailer_wraps_failures(monkeypatch):
    def fake_send(params):
        raise RuntimeError("quota exceeded")

    monkeypatch.setattr(resend.Emails, "send", fake_send)

    with pytest.raises(MailDeliveryError, match="quota exceeded"):
        ResendMailer("re_key").send(PAYLOAD)


def test_resend_mailer_rejects_response_without_id(monkeypatch):
    monkeypatch.setattr(resend.Emails, "send", lambda params: {"error": "bad sender"})

    with pytest.raises(MailDeliveryError):
        ResendMailer("re_key").send(PAYLOAD)


def test_build_mime_message_carries_headers_and_both_bodies():
    message = build_mime_message(PAYLOAD)

    assert message["To"] == "buyer@example.com"
    assert message["Reply-To"] == "heime@cloth.com"
    assert message["X-Mailer"] == "HEIME Contact System"
    assert message.get_body(("plain",)).get_content().strip() == "Hi"
    assert "<p>Hi</p>" in message.get_body(("html",)).get_content()


def test_smtp_mailer_uses_starttls_and_login(monkeypatch):
    calls = []

    class FakeSMTP:
        def __init__(self, host, port, timeout):
            calls.append(("connect", host, port))

        def __enter__(self):
            return self

        def __exit__(self, *exc_info):
            return False

        def starttls(self):
            calls.append(("starttls",))

        def login(self, user, password):
            calls.append(("login", user))

        def send_message(self, message):
            calls.append(("send", message["To"]))

    monkeypatch.setattr("mailer.smtplib.SMTP", FakeSMTP)
    mailer = SmtpMailer("smtp.gmail.com", 587, "shop@gmail.com", "app-password")

    mailer.send(PAYLOAD)

    assert calls == [
        ("connect", "smtp.gmail.com", 587),
        ("starttls",),
        ("login", "shop@gmail.com"),
        ("send", "buyer@example.com"),
    ]


def test_smtp_mailer_wraps_connection_errors(monkeypatch):
    def refuse(*args, **kwargs):
        raise OSError("connection refused")

    monkeypatch.setattr("mailer.smtplib.SMTP", refuse)

    with pytest.raises(MailDeliveryError, match="connection refused"):
        SmtpMailer("smtp.gmail.com", 587, "shop@gmail.com", "app-password").send(PAYLOAD)


def test_build_mailer_picks_backend():
    assert isinstance(build_mailer({"MAIL_BACKEND": "resend", "RESEND_API_KEY": "k"}), ResendMailer)
    smtp = build_mailer({"MAIL_BACKEND": "smtp", "SMTP_HOST": "smtp.gmail.com", "SMTP_PORT": 587})
    assert isinstance(smtp, SmtpMailer)
    assert smtp.is_configured() is False
    with pytest.raises(ValueError):
        build_mailer({"MAIL_BACKEND": "pigeon"})
