import math
import re
from datetime import datetime
from typing import Dict, List, Optional

from storage import utcnow

ORDER_NUMBER_PREFIX = "HEIME-"
ORDER_REQUIRED_FIELDS = ("fullName", "email", "phone", "address", "city", "orderItems", "total")

PAYMENT_METHOD_NAMES = {
    "card": "Credit/Debit Card",
    "applepay": "Apple Pay",
    "googlepay": "Google Pay",
    "paypal": "PayPal",
    "cod": "Cash on Delivery",
    "tabby": "Tabby (Buy Now, Pay Later)",
}


class OrderValidationError(Exception):
    pass


def safe_float(value, default=0.0):
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(numeric):
        return numeric
    return default


def safe_positive_int(value, default=0):
    try:
        numeric = int(float(value))
    except (TypeError, ValueError):
        return default
    return max(default, numeric)


def parse_price(value) -> float:
    """Numeric part of a display price such as ``"1,250 AED"``."""
    if isinstance(value, (int, float)):
        return safe_float(value)
    digits = re.sub(r"[^\d.]", "", str(value or ""))
    return safe_float(digits)


def format_amount(value: float) -> str:
    return f"{value:.0f} AED"


def describe_payment_method(code: Optional[str]) -> str:
    normalized = str(code or "").strip()
    return PAYMENT_METHOD_NAMES.get(normalized.lower(), normalized)


def generate_order_number(now: Optional[datetime] = None) -> str:
    moment = now or utcnow()
    milliseconds = int(moment.timestamp() * 1000)
    return f"{ORDER_NUMBER_PREFIX}{str(milliseconds)[-8:]}"


def normalize_order_items(raw_items: List) -> List[Dict[str, object]]:
    normalized_items: List[Dict[str, object]] = []
    for entry in raw_items:
        if not isinstance(entry, dict):
            continue
        name = str(entry.get("name") or "").strip() or "Item"
        quantity = safe_positive_int(entry.get("quantity"), 1) or 1
        price_label = str(entry.get("price") or "").strip()
        line_total = parse_price(price_label) * quantity
        normalized_items.append(
            {
                "name": name,
                "price": price_label,
                "quantity": quantity,
                "total_price": format_amount(line_total),
            }
        )
    return normalized_items


def build_order_document(payload: Dict, now: Optional[datetime] = None) -> Dict[str, object]:
    """Validate a checkout payload and shape it into the stored order document."""
    missing = [field for field in ORDER_REQUIRED_FIELDS if not payload.get(field)]
    if missing:
        raise OrderValidationError(
            "Missing required order information. Please fill in all required fields."
        )

    raw_items = payload.get("orderItems")
    if not isinstance(raw_items, list):
        raise OrderValidationError("No items in order. Please add items to your cart.")
    items = normalize_order_items(raw_items)
    if not items:
        raise OrderValidationError("No items in order. Please add items to your cart.")

    created_at = now or utcnow()
    payment_method = str(payload.get("paymentMethod") or "").strip()
    subtotal = payload.get("subtotal")
    if subtotal in (None, ""):
        subtotal = f"{sum(parse_price(item['total_price']) for item in items):.0f}"

    return {
        "order_number": generate_order_number(created_at),
        "full_name": str(payload.get("fullName")).strip(),
        "email": str(payload.get("email")).strip().lower(),
        "phone": str(payload.get("phone")).strip(),
        "address": str(payload.get("address")).strip(),
        "city": str(payload.get("city")).strip(),
        "postal_code": str(payload.get("postalCode") or "").strip(),
        "payment_method": payment_method,
        "payment_method_display": describe_payment_method(payment_method),
        "subtotal": str(subtotal).strip(),
        "total": str(payload.get("total")).strip(),
        "items": items,
        "created_at": created_at,
    }
