from datetime import datetime, timezone

import pytest

from orders import (
    OrderValidationError,
    build_order_document,
    describe_payment_method,
    generate_order_number,
    parse_price,
)

ORDER = {
    "fullName": "Omar Haddad",
    "email": "Omar@Example.com",
    "phone": "+971 50 000 0000",
    "address": "12 Marina Walk",
    "city": "Dubai",
    "postalCode": "",
    "paymentMethod": "cod",
    "orderItems": [
        {"name": "Ember Hoodie", "price": "250 AED", "quantity": 2},
        {"name": "Night Zip", "price": "1,100 AED", "quantity": 1},
    ],
    "subtotal": "1600",
    "total": "1600",
}


def test_parse_price_reads_display_strings():
    assert parse_price("250 AED") == 250.0
    assert parse_price("1,100 AED") == 1100.0
    assert parse_price(99.5) == 99.5
    assert parse_price("free") == 0.0
    assert parse_price(None) == 0.0


def test_payment_methods_have_display_names():
    assert describe_payment_method("card") == "Credit/Debit Card"
    assert describe_payment_method("tabby") == "Tabby (Buy Now, Pay Later)"
    assert describe_payment_method("crypto") == "crypto"


def test_order_number_uses_last_eight_digits_of_epoch_millis():
    moment = datetime(2026, 10, 19, 4, 11, 12, 345000, tzinfo=timezone.utc)

    number = generate_order_number(moment)

    assert number == "HEIME-" + str(int(moment.timestamp() * 1000))[-8:]
    assert len(number) == len("HEIME-") + 8


def test_build_order_document_computes_line_totals():
    order = build_order_document(ORDER)

    assert order["email"] == "omar@example.com"
    assert order["payment_method_display"] == "Cash on Delivery"
    assert [item["total_price"] for item in order["items"]] == ["500 AED", "1100 AED"]
    assert order["order_number"].startswith("HEIME-")


def test_build_order_document_rejects_missing_fields():
    with pytest.raises(OrderValidationError):
        build_order_document({**ORDER, "city": ""})


def test_build_order_document_rejects_empty_cart():
    with pytest.raises(OrderValidationError, match="No items"):
        build_order_document({**ORDER, "orderItems": "not-a-list"})


def test_place_order_persists_and_emails_both_parties(client, mailer, storage):
    response = client.post("/api/orders", json=ORDER)

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["success"] is True
    order_number = payload["orderNumber"]

    stored = storage.orders.get(order_number)
    assert stored["full_name"] == "Omar Haddad"
    assert len(stored["items"]) == 2

    [notification] = mailer.sent_to("owner@heime.test")
    assert notification["subject"] == f"New Order Received - {order_number}"
    assert notification["reply_to"] == "omar@example.com"
    [invoice] = mailer.sent_to("omar@example.com")
    assert invoice["subject"] == f"Payment Successful - Order Confirmation {order_number}"
    assert "Ember Hoodie" in invoice["html"]
    assert "500 AED" in invoice["html"]


def test_place_order_validation_error(client, mailer):
    response = client.post("/api/orders", json={**ORDER, "orderItems": []})

    assert response.status_code == 400
    assert response.get_json()["success"] is False
    assert mailer.sent == []


def test_place_order_without_mailer(client, mailer, storage):
    mailer.configured = False

    response = client.post("/api/orders", json=ORDER)

    assert response.status_code == 500
    assert response.get_json()["message"] == "Email service is not configured."


def test_place_order_mail_failure_fails_request(client, mailer):
    mailer.fail_with = "relay down"

    response = client.post("/api/orders", json=ORDER)

    assert response.status_code == 500
    assert response.get_json()["message"] == "Failed to process order: relay down"
