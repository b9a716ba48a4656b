import logging
import smtplib
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Dict, List, Optional

import resend

logger = logging.getLogger(__name__)


class MailerNotConfigured(Exception):
    pass


class MailDeliveryError(Exception):
    pass


class Mailer(ABC):
    """Sends Resend-style payloads: from, to, subject, html, text, reply_to, headers."""

    @abstractmethod
    def is_configured(self) -> bool:
        ...

    @abstractmethod
    def send(self, payload: Dict[str, object]) -> str:
        """Deliver one message and return the relay's message id."""

    def send_all(self, payloads: List[Dict[str, object]]) -> List[str]:
        """Deliver every payload concurrently; any failure fails the batch."""
        if not self.is_configured():
            raise MailerNotConfigured("Email service is not configured.")
        if not payloads:
            return []

        with ThreadPoolExecutor(max_workers=len(payloads)) as executor:
            futures = [executor.submit(self.send, payload) for payload in payloads]
        return [future.result() for future in futures]


class ResendMailer(Mailer):
    def __init__(self, api_key: Optional[str]):
        self.api_key = (api_key or "").strip()
        if self.api_key:
            resend.api_key = self.api_key

    def is_configured(self):
        return bool(self.api_key)

    def send(self, payload):
        if not self.is_configured():
            raise MailerNotConfigured("Resend API key is not configured.")

        resend.api_key = self.api_key
        try:
            response = resend.Emails.send(payload)
        except Exception as exc:
            raise MailDeliveryError(str(exc)) from exc

        if isinstance(response, dict):
            message_id = response.get("id")
        else:
            message_id = getattr(response, "id", None)
        if not message_id:
            raise MailDeliveryError(str(response))

        logger.info("Resend accepted %r for %s", payload.get("subject"), payload.get("to"))
        return message_id


def build_mime_message(payload: Dict[str, object]) -> EmailMessage:
    message = EmailMessage()
    recipients = payload.get("to") or []
    if isinstance(recipients, str):
        recipients = [recipients]

    message["From"] = str(payload.get("from") or "")
    message["To"] = ", ".join(str(recipient) for recipient in recipients)
    message["Subject"] = str(payload.get("subject") or "")
    if payload.get("reply_to"):
        message["Reply-To"] = str(payload["reply_to"])
    headers = payload.get("headers")
    if isinstance(headers, dict):
        for name, value in headers.items():
            message[name] = str(value)
    message["Message-ID"] = make_msgid()

    message.set_content(str(payload.get("text") or ""))
    if payload.get("html"):
        message.add_alternative(str(payload["html"]), subtype="html")
    return message


class SmtpMailer(Mailer):
    def __init__(
        self,
        host: Optional[str],
        port: int,
        username: Optional[str],
        password: Optional[str],
        timeout: float = 20,
    ):
        self.host = (host or "").strip()
        self.port = port
        self.username = (username or "").strip()
        self.password = password or ""
        self.timeout = timeout

    def is_configured(self):
        return bool(self.host and self.username and self.password)

    def send(self, payload):
        if not self.is_configured():
            raise MailerNotConfigured("SMTP credentials are not configured.")

        message = build_mime_message(payload)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.starttls()
                server.login(self.username, self.password)
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise MailDeliveryError(str(exc)) from exc

        logger.info("SMTP relay accepted %r for %s", message["Subject"], message["To"])
        return message["Message-ID"]


def build_mailer(config) -> Mailer:
    backend = str(config.get("MAIL_BACKEND") or "resend").strip().lower()
    if backend == "smtp":
        return SmtpMailer(
            config.get("SMTP_HOST"),
            int(config.get("SMTP_PORT") or 587),
            config.get("SMTP_USER"),
            config.get("SMTP_PASSWORD"),
        )
    if backend == "resend":
        return ResendMailer(config.get("RESEND_API_KEY"))
    raise ValueError(f"Unsupported mail backend: {backend!r}")
