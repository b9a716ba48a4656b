from datetime import datetime
from typing import Dict, List

from flask import render_template

BRAND_NAME = "HEIME"
SUPPORT_ADDRESS = "heime@cloth.com"


def brand_sender(address: str, label: str = BRAND_NAME) -> str:
    return f"{label} <{address}>"


def format_order_date(value: datetime) -> str:
    return value.strftime("%B %d, %Y at %I:%M %p")


def build_verification_email(
    sender: str,
    recipient: str,
    otp: str,
    expiration_minutes: int,
    resent: bool = False,
) -> Dict[str, object]:
    html_body = render_template(
        "emails/verification_code.html",
        otp=otp,
        expiration_minutes=expiration_minutes,
        resent=resent,
    )
    text_body = (
        f"Your {BRAND_NAME} verification code is {otp}. "
        f"It expires in {expiration_minutes} minutes."
    )
    return {
        "from": brand_sender(sender),
        "to": [recipient],
        "reply_to": SUPPORT_ADDRESS,
        "subject": f"Your {BRAND_NAME} Account Verification Code",
        "html": html_body,
        "text": text_body,
    }


def build_contact_emails(
    sender: str, admin_email: str, contact: Dict[str, str]
) -> List[Dict[str, object]]:
    """Admin notification (reply-to the customer) plus the customer's auto-reply."""
    notification = {
        "from": brand_sender(sender),
        "to": [admin_email],
        "reply_to": contact["email"],
        "subject": f"Contact Form: {contact['subject']}",
        "html": render_template("emails/contact_notification.html", contact=contact),
        "text": (
            f"New contact form submission from {contact['name']} <{contact['email']}>\n"
            f"Phone: {contact.get('phone') or 'Not provided'}\n"
            f"Subject: {contact['subject']}\n\n{contact['message']}"
        ),
    }
    auto_reply = {
        "from": brand_sender(SUPPORT_ADDRESS),
        "to": [contact["email"]],
        "reply_to": SUPPORT_ADDRESS,
        "headers": {"X-Mailer": f"{BRAND_NAME} Contact System", "X-Priority": "3"},
        "subject": f"Thank you for contacting {BRAND_NAME}",
        "html": render_template(
            "emails/contact_reply.html",
            contact=contact,
            support_address=SUPPORT_ADDRESS,
        ),
        "text": (
            f"Dear {contact['name']}, we have received your message regarding "
            f"\"{contact['subject']}\" and will reach out within 24-48 hours.\n\n"
            f"The {BRAND_NAME} Team"
        ),
    }
    return [notification, auto_reply]


def build_order_emails(
    sender: str, admin_email: str, order: Dict[str, object]
) -> List[Dict[str, object]]:
    """Admin order notification plus the customer's invoice."""
    order_number = order["order_number"]
    order_date = format_order_date(order["created_at"])
    item_lines = ", ".join(
        f"{item['name']} x{item['quantity']} ({item['total_price']})"
        for item in order["items"]
    )

    notification = {
        "from": brand_sender(sender, f"{BRAND_NAME} Orders"),
        "to": [admin_email],
        "reply_to": order["email"],
        "subject": f"New Order Received - {order_number}",
        "html": render_template(
            "emails/order_notification.html", order=order, order_date=order_date
        ),
        "text": (
            f"New order {order_number} from {order['full_name']} <{order['email']}>.\n"
            f"Items: {item_lines}.\nTotal: {order['total']} AED."
        ),
    }
    invoice = {
        "from": brand_sender(SUPPORT_ADDRESS),
        "to": [order["email"]],
        "reply_to": SUPPORT_ADDRESS,
        "subject": f"Payment Successful - Order Confirmation {order_number}",
        "html": render_template(
            "emails/order_invoice.html",
            order=order,
            order_date=order_date,
            support_address=SUPPORT_ADDRESS,
        ),
        "text": (
            f"Thank you for your purchase! Order {order_number} on {order_date}.\n"
            f"Items: {item_lines}.\nTotal: {order['total']} AED.\n\n"
            f"The {BRAND_NAME} Team"
        ),
    }
    return [notification, invoice]
