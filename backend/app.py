import logging
import os
from datetime import timedelta
from typing import Dict, Optional

from dotenv import load_dotenv
from flask import Flask, jsonify, request, send_from_directory, session
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from auth import AuthError, AuthService, is_valid_email, normalize_email
from emails import build_contact_emails, build_order_emails
from mailer import MailDeliveryError, Mailer, MailerNotConfigured, build_mailer
from orders import OrderValidationError, build_order_document
from storage import DuplicateRecordError, Storage, as_utc, build_storage

load_dotenv()

BACKEND_DIR = os.path.dirname(os.path.abspath(__file__))
PROJECT_DIR = os.path.dirname(BACKEND_DIR)


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def load_settings() -> Dict[str, object]:
    """Configuration from the environment (and ``.env``)."""
    smtp_user = (os.getenv("SMTP_USER") or os.getenv("GMAIL_USER") or "").strip()
    mail_sender = (os.getenv("MAIL_SENDER") or "heime@cloth.com").strip()

    return {
        "SECRET_KEY": os.getenv("SESSION_SECRET", "change-me-in-production"),
        "STORAGE_BACKEND": os.getenv("STORAGE_BACKEND", "file"),
        "MONGO_URI": os.getenv("MONGODB_URI")
        or os.getenv("MONGO_URI", "mongodb://localhost:27017/heime"),
        "DATA_DIR": os.getenv("DATA_DIR", os.path.join(BACKEND_DIR, "data")),
        "PUBLIC_DIR": os.getenv("PUBLIC_DIR", os.path.join(PROJECT_DIR, "public")),
        "MAIL_BACKEND": os.getenv("MAIL_BACKEND", "resend"),
        "RESEND_API_KEY": (os.getenv("RESEND_API_KEY") or "").strip(),
        "SMTP_HOST": os.getenv("SMTP_HOST", "smtp.gmail.com"),
        "SMTP_PORT": env_int("SMTP_PORT", 587),
        "SMTP_USER": smtp_user,
        "SMTP_PASSWORD": os.getenv("SMTP_PASSWORD") or os.getenv("GMAIL_APP_PASSWORD") or "",
        "MAIL_SENDER": mail_sender,
        "ADMIN_EMAIL": (os.getenv("ADMIN_EMAIL") or smtp_user or mail_sender).strip(),
        "OTP_EXPIRATION_MINUTES": env_int("OTP_EXPIRATION_MINUTES", 10),
        "SESSION_MAX_AGE_HOURS": env_int("SESSION_MAX_AGE_HOURS", 24),
        "BCRYPT_ROUNDS": env_int("BCRYPT_ROUNDS", 12),
        "TRUSTED_PROXY_HOPS": env_int("TRUSTED_PROXY_HOPS", 1),
        "CORS_ALLOWED_ORIGINS": os.getenv("CORS_ALLOWED_ORIGINS", ""),
        "SESSION_COOKIE_SECURE": env_flag("SESSION_COOKIE_SECURE"),
        "LOG_LEVEL": os.getenv("LOG_LEVEL", "INFO"),
    }


def respond(message: str, status_code: int = 200, **fields):
    return (
        jsonify({"success": status_code < 400, "message": message, **fields}),
        status_code,
    )


def serialize_timestamp(value) -> Optional[str]:
    moment = as_utc(value)
    return moment.isoformat().replace("+00:00", "Z") if moment else None


def serialize_session_user(session_record: Dict) -> Dict[str, object]:
    return {
        "email": session_record.get("email", ""),
        "username": session_record.get("username", ""),
        "createdAt": serialize_timestamp(session_record.get("user_created_at")),
    }


def create_app(
    config: Optional[Dict[str, object]] = None,
    *,
    mailer: Optional[Mailer] = None,
    storage: Optional[Storage] = None,
) -> Flask:
    """Create and configure the Flask application."""
    settings = load_settings()
    if config:
        settings.update(config)

    app = Flask(__name__, static_folder=settings["PUBLIC_DIR"], static_url_path="")
    app.config.update(settings)
    app.logger.setLevel(str(app.config["LOG_LEVEL"]).upper())

    # --- Configuration ---
    session_lifetime = timedelta(hours=int(app.config["SESSION_MAX_AGE_HOURS"]))
    app.config.update(
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE="Lax",
        PERMANENT_SESSION_LIFETIME=session_lifetime,
    )

    # Honor proxy headers so secure cookies and client IPs survive the load balancer.
    trusted_proxy_hops = max(0, int(app.config["TRUSTED_PROXY_HOPS"]))
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Initialize extensions ---
    allowed_origins = [
        origin.strip()
        for origin in str(app.config["CORS_ALLOWED_ORIGINS"]).split(",")
        if origin.strip()
    ]
    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    storage = storage or build_storage(app)
    mailer = mailer or build_mailer(app.config)
    if not mailer.is_configured():
        app.logger.warning(
            "Email service is not configured; signup, contact and orders will fail."
        )

    auth_service = AuthService(
        storage,
        mailer,
        app.config["MAIL_SENDER"],
        otp_expiration_minutes=int(app.config["OTP_EXPIRATION_MINUTES"]),
        session_max_age_hours=int(app.config["SESSION_MAX_AGE_HOURS"]),
        bcrypt_rounds=int(app.config["BCRYPT_ROUNDS"]),
    )
    app.extensions["storage"] = storage
    app.extensions["mailer"] = mailer
    app.extensions["auth_service"] = auth_service

    # --- Helpers ---

    def read_payload() -> Dict:
        payload = request.get_json(silent=True)
        if isinstance(payload, dict):
            return payload
        return request.form.to_dict()

    def auth_failure(error: AuthError):
        if error.status_code >= 500:
            app.logger.error("Auth request failed: %s", error.message)
        return respond(error.message, error.status_code)

    # --- Error handlers ---

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        if request.path.startswith("/api/"):
            return respond(error.description or error.name, error.code or 500)
        return error

    @app.errorhandler(Exception)
    def handle_unexpected_exception(error: Exception):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return respond("Something went wrong. Please try again later.", 500)

    # --- ROUTES ---

    @app.route("/")
    def index():
        return send_from_directory(app.config["PUBLIC_DIR"], "index.html")

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    @app.route("/api/contact", methods=["POST"])
    def submit_contact_message():
        if not mailer.is_configured():
            app.logger.error("Contact message rejected: email service is not configured")
            return respond(
                "Email service is not configured. Please contact the administrator.", 500
            )

        payload = read_payload()
        contact = {
            field: str(payload.get(field) or "").strip()
            for field in ("name", "email", "phone", "subject", "message")
        }

        if not all(contact[field] for field in ("name", "email", "subject", "message")):
            return respond("Please fill in all required fields.", 400)
        if not is_valid_email(contact["email"]):
            return respond("Please enter a valid email address.", 400)

        try:
            mailer.send_all(
                build_contact_emails(
                    app.config["MAIL_SENDER"], app.config["ADMIN_EMAIL"], contact
                )
            )
        except (MailDeliveryError, MailerNotConfigured) as exc:
            app.logger.error("Error sending contact emails for %s: %s", contact["email"], exc)
            return respond(
                "Sorry, there was an error sending your message. Please try again later.",
                500,
            )

        app.logger.info("Contact message relayed for %s", contact["email"])
        return respond(
            "Thank you for contacting us! We will get back to you as soon as possible."
        )

    @app.route("/api/orders", methods=["POST"])
    def place_order():
        if not mailer.is_configured():
            app.logger.error("Order rejected: email service is not configured")
            return respond("Email service is not configured.", 500)

        payload = read_payload()
        try:
            order = build_order_document(payload)
        except OrderValidationError as exc:
            app.logger.warning("Rejected order payload: %s", exc)
            return respond(str(exc), 400)

        try:
            storage.orders.insert(order)
        except DuplicateRecordError as exc:
            app.logger.error("Order number collision for %s: %s", order["order_number"], exc)
            return respond("Failed to process order: please submit it again.", 500)

        try:
            mailer.send_all(
                build_order_emails(
                    app.config["MAIL_SENDER"], app.config["ADMIN_EMAIL"], order
                )
            )
        except (MailDeliveryError, MailerNotConfigured) as exc:
            app.logger.error(
                "Error sending order emails for %s: %s", order["order_number"], exc
            )
            return respond(f"Failed to process order: {exc}", 500)

        app.logger.info(
            "Order %s recorded for %s", order["order_number"], order["email"]
        )
        return respond(
            "Order processed successfully. Confirmation email sent.",
            orderNumber=order["order_number"],
        )

    @app.route("/api/auth/signup", methods=["POST"])
    def signup():
        payload = read_payload()
        try:
            token = auth_service.signup(payload.get("email"), payload.get("username"))
        except AuthError as exc:
            return auth_failure(exc)
        return respond("OTP sent to your email.", token=token)

    @app.route("/api/auth/verify-otp", methods=["POST"])
    def verify_otp():
        payload = read_payload()
        try:
            token = auth_service.verify_otp(
                payload.get("email"), payload.get("otp"), payload.get("token")
            )
        except AuthError as exc:
            return auth_failure(exc)
        return respond("OTP verified successfully.", token=token)

    @app.route("/api/auth/resend-otp", methods=["POST"])
    def resend_otp():
        payload = read_payload()
        try:
            token = auth_service.resend_otp(payload.get("email"))
        except AuthError as exc:
            return auth_failure(exc)
        return respond("New OTP sent to your email.", token=token)

    @app.route("/api/auth/create-password", methods=["POST"])
    def create_password():
        payload = read_payload()
        try:
            auth_service.create_password(
                payload.get("email"), payload.get("password"), payload.get("token")
            )
        except AuthError as exc:
            return auth_failure(exc)
        return respond("Account created successfully!")

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload = read_payload()
        try:
            session_record = auth_service.login(
                payload.get("email"), payload.get("password")
            )
        except AuthError as exc:
            return auth_failure(exc)

        previous_sid = session.get("sid")
        if previous_sid and previous_sid != session_record["sid"]:
            auth_service.logout(previous_sid)
        session.clear()
        session.permanent = True
        session["sid"] = session_record["sid"]

        return respond(
            "Login successful!", user={"email": normalize_email(session_record["email"])}
        )

    @app.route("/api/auth/logout", methods=["POST"])
    def logout():
        auth_service.logout(session.get("sid"))
        session.clear()
        return respond("Logged out successfully.")

    @app.route("/api/auth/check", methods=["GET"])
    def check_session():
        session_record = auth_service.get_session(session.get("sid"))
        if not session_record:
            session.pop("sid", None)
            return jsonify({"success": True, "authenticated": False})

        return jsonify(
            {
                "success": True,
                "authenticated": True,
                "user": serialize_session_user(session_record),
            }
        )

    return app


app = create_app()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    port = int(os.environ.get("PORT", 3000))
    app.run(host="0.0.0.0", port=port)
