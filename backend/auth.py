"""Email/OTP signup, password login and server-side sessions.

Signup walks each email through ``NONE -> OTP_ISSUED -> OTP_VERIFIED ->
ACCOUNT_CREATED``. The OTP record's ``verified`` flag together with its
current token is the only thing that unlocks password creation. Records
fall back to ``NONE`` when they expire (purged lazily here, and by a TTL
index on MongoDB) or after too many wrong codes.
"""
import hmac
import logging
import re
import secrets
from datetime import timedelta
from typing import Dict, Optional

import bcrypt

from emails import build_verification_email
from mailer import MailDeliveryError, Mailer
from storage import DuplicateRecordError, Storage, as_utc, utcnow

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9]{3,20}$")
OTP_LENGTH = 6
OTP_PATTERN = re.compile(r"^\d{6}$")
MIN_PASSWORD_LENGTH = 6
# bcrypt only reads the first 72 bytes and bcrypt 5 refuses anything longer.
MAX_PASSWORD_BYTES = 72
MAX_FAILED_OTP_ATTEMPTS = 5


class AuthError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def is_valid_email(value: Optional[str]) -> bool:
    normalized = normalize_email(value)
    return bool(normalized and EMAIL_PATTERN.match(normalized))


def is_valid_username(value: Optional[str]) -> bool:
    return bool(USERNAME_PATTERN.match(str(value or "").strip()))


def generate_otp_code(length: int = OTP_LENGTH) -> str:
    upper_bound = 10**length
    return f"{secrets.randbelow(upper_bound):0{length}d}"


def generate_token() -> str:
    return secrets.token_hex(32)


def secrets_match(expected, provided) -> bool:
    if not isinstance(expected, str) or not isinstance(provided, str):
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def is_expired(record: Dict) -> bool:
    expires_at = as_utc(record.get("expires_at"))
    return expires_at is None or expires_at <= utcnow()


class AuthService:
    def __init__(
        self,
        storage: Storage,
        mailer: Mailer,
        sender: str,
        otp_expiration_minutes: int = 10,
        session_max_age_hours: int = 24,
        bcrypt_rounds: int = 12,
    ):
        self.storage = storage
        self.mailer = mailer
        self.sender = sender
        self.otp_lifetime = timedelta(minutes=otp_expiration_minutes)
        self.session_lifetime = timedelta(hours=session_max_age_hours)
        self.bcrypt_rounds = bcrypt_rounds
        self._placeholder_hash: Optional[bytes] = None

    def _hash_secret(self, value: str) -> str:
        hashed = bcrypt.hashpw(value.encode("utf-8"), bcrypt.gensalt(self.bcrypt_rounds))
        return hashed.decode("utf-8")

    # --- OTP lifecycle ---

    def _code_matches(self, record: Dict, otp: str) -> bool:
        stored_hash = record.get("otp_hash")
        if not isinstance(stored_hash, str) or not OTP_PATTERN.match(otp):
            return False
        return bcrypt.checkpw(otp.encode("utf-8"), stored_hash.encode("utf-8"))

    def _require_mailer(self):
        if not self.mailer.is_configured():
            raise AuthError("Email service is not configured.", 500)

    def _send_code(self, email: str, otp: str, resent: bool = False):
        payload = build_verification_email(
            self.sender,
            email,
            otp,
            int(self.otp_lifetime.total_seconds() // 60),
            resent=resent,
        )
        self.mailer.send(payload)

    def signup(self, email, username) -> str:
        """Issue an OTP for a new account; returns the correlation token."""
        self._require_mailer()

        email = normalize_email(email)
        username = str(username or "").strip()
        if not is_valid_email(email):
            raise AuthError("Please enter a valid email address.")
        if not is_valid_username(username):
            raise AuthError(
                "Username must be 3-20 characters and contain only letters and numbers."
            )

        if self.storage.users.get(email):
            raise AuthError("An account with this email already exists. Please login instead.")
        if self.storage.users.find_one("username_lower", username.lower()):
            raise AuthError("This username is already taken. Please choose another one.")

        otp = generate_otp_code()
        token = generate_token()
        now = utcnow()
        self.storage.otps.put(
            {
                "email": email,
                "otp_hash": self._hash_secret(otp),
                "token": token,
                "expires_at": now + self.otp_lifetime,
                "username": username,
                "username_lower": username.lower(),
                "verified": False,
                "failed_attempts": 0,
                "created_at": now,
            }
        )

        try:
            self._send_code(email, otp)
        except MailDeliveryError as exc:
            self.storage.otps.delete(email)
            logger.error("OTP dispatch failed for %s: %s", email, exc)
            raise AuthError("Failed to send OTP. Please try again later.", 502) from exc

        logger.info("OTP sent to %s", email)
        return token

    def verify_otp(self, email, otp, token) -> str:
        """Mark the pending record verified; returns the password-step token."""
        email = normalize_email(email)
        otp = str(otp or "").strip()
        token = str(token or "").strip()
        if not email or not otp or not token:
            raise AuthError("Missing required fields.")

        record = self.storage.otps.get(email)
        if not record:
            raise AuthError("OTP not found. Please request a new OTP.")
        if not secrets_match(record.get("token"), token):
            raise AuthError("Invalid token.")
        if is_expired(record):
            self.storage.otps.delete(email)
            raise AuthError("OTP has expired. Please request a new one.")

        if not self._code_matches(record, otp):
            failed_attempts = int(record.get("failed_attempts") or 0) + 1
            if failed_attempts >= MAX_FAILED_OTP_ATTEMPTS:
                self.storage.otps.delete(email)
                logger.warning("Discarded OTP for %s after %d failed attempts", email, failed_attempts)
                raise AuthError("Too many incorrect attempts. Please sign up again.")
            record["failed_attempts"] = failed_attempts
            self.storage.otps.put(record)
            raise AuthError("Invalid OTP. Please try again.")

        new_token = generate_token()
        record.update(
            {
                "token": new_token,
                "verified": True,
                "expires_at": utcnow() + self.otp_lifetime,
                "failed_attempts": 0,
            }
        )
        self.storage.otps.put(record)
        return new_token

    def resend_otp(self, email) -> str:
        """Replace the pending code and token; verification starts over."""
        self._require_mailer()

        email = normalize_email(email)
        if not email:
            raise AuthError("Please enter a valid email address.")

        record = self.storage.otps.get(email)
        if record and is_expired(record):
            self.storage.otps.delete(email)
            record = None
        if not record:
            raise AuthError(
                "No OTP request found for this email. Please start signup again.", 404
            )

        previous = dict(record)
        otp = generate_otp_code()
        while self._code_matches(previous, otp):
            otp = generate_otp_code()
        token = generate_token()
        record.update(
            {
                "otp_hash": self._hash_secret(otp),
                "token": token,
                "expires_at": utcnow() + self.otp_lifetime,
                "verified": False,
                "failed_attempts": 0,
            }
        )
        self.storage.otps.put(record)

        try:
            self._send_code(email, otp, resent=True)
        except MailDeliveryError as exc:
            self.storage.otps.put(previous)
            logger.error("OTP resend failed for %s: %s", email, exc)
            raise AuthError("Failed to resend OTP. Please try again later.", 502) from exc

        logger.info("OTP resent to %s", email)
        return token

    # --- accounts ---

    def _placeholder(self) -> bytes:
        if self._placeholder_hash is None:
            self._placeholder_hash = bcrypt.hashpw(
                secrets.token_bytes(16), bcrypt.gensalt(self.bcrypt_rounds)
            )
        return self._placeholder_hash

    def create_password(self, email, password, token) -> Dict:
        email = normalize_email(email)
        password = str(password or "")
        token = str(token or "").strip()
        if not email or not password or not token:
            raise AuthError("Missing required fields.")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise AuthError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters long."
            )
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise AuthError(
                f"Password must be at most {MAX_PASSWORD_BYTES} bytes long."
            )

        invalid = "Invalid or expired verification. Please start over."
        record = self.storage.otps.get(email)
        if (
            not record
            or not record.get("verified")
            or not secrets_match(record.get("token"), token)
            or not record.get("username")
        ):
            raise AuthError(invalid)
        if is_expired(record):
            self.storage.otps.delete(email)
            raise AuthError(invalid)

        username = record["username"]
        user = {
            "email": email,
            "username": username,
            "username_lower": username.lower(),
            "password": self._hash_secret(password),
            "created_at": utcnow(),
        }
        try:
            self.storage.users.insert(user)
        except DuplicateRecordError as exc:
            raise AuthError("An account with this email or username already exists.") from exc

        self.storage.otps.delete(email)
        logger.info("Account created for %s", email)
        return user

    # --- sessions ---

    def login(self, email, password) -> Dict:
        """Check credentials and open a session; returns the session record."""
        email = normalize_email(email)
        password = str(password or "")
        if not email or not password:
            raise AuthError("Please enter both email and password.")

        user = self.storage.users.get(email)
        stored_hash = user.get("password") if user else None
        if isinstance(stored_hash, str):
            candidate = stored_hash.encode("utf-8")
        else:
            candidate = stored_hash or self._placeholder()
        encoded = password.encode("utf-8")
        password_matches = bcrypt.checkpw(encoded[:MAX_PASSWORD_BYTES], candidate)

        if not user or not password_matches or len(encoded) > MAX_PASSWORD_BYTES:
            raise AuthError("Invalid email or password.", 401)

        now = utcnow()
        session_record = {
            "sid": generate_token(),
            "email": user["email"],
            "username": user.get("username", ""),
            "user_created_at": user.get("created_at"),
            "created_at": now,
            "expires_at": now + self.session_lifetime,
        }
        self.storage.sessions.put(session_record)
        logger.info("User logged in: %s", email)
        return session_record

    def get_session(self, sid: Optional[str]) -> Optional[Dict]:
        if not sid:
            return None
        record = self.storage.sessions.get(sid)
        if not record:
            return None
        if is_expired(record):
            self.storage.sessions.delete(sid)
            return None
        return record

    def logout(self, sid: Optional[str]) -> None:
        if sid:
            self.storage.sessions.delete(sid)
