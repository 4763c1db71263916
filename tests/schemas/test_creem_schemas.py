"""Creem 엔벨로프 정규화 테스트"""
from datetime import datetime, timezone

import pytest

from core.errors import ErrorKind, MalformedEventError
from schemas.creem import (
    CheckoutPayload,
    PaymentPayload,
    SubscriptionPayload,
    normalize_envelope,
    parse_datetime,
    to_int,
)


def test_modern_envelope():
    event = normalize_envelope({
        "eventType": "subscription.paid",
        "id": "evt_1",
        "created_at": 1717000000000,
        "object": {
            "id": "sub_1",
            "customer": {"email": "a@x.com"},
            "product": "prod_1",
            "current_period_start_date": "2024-05-01T00:00:00Z",
            "metadata": {"plan_id": "creator_monthly", "credits": "1500"},
        },
    })

    assert event.event_type == "subscription.paid"
    assert event.event_id == "evt_1"
    assert event.created_at == datetime.fromtimestamp(1717000000, tz=timezone.utc)
    view = event.view
    assert isinstance(view, SubscriptionPayload)
    assert view.customer_email == "a@x.com"
    assert view.product_id == "prod_1"
    assert view.plan_reference == "creator_monthly"
    assert view.declared_credits == 1500
    assert view.period_start == datetime(2024, 5, 1, tzinfo=timezone.utc)


def test_legacy_envelope_uses_type_and_data():
    event = normalize_envelope({
        "type": "payment.succeeded",
        "id": 42,
        "data": {"id": "pay_1", "subscriptionId": "sub_1", "amount": "19.5", "currency": "eur"},
    })

    assert event.event_type == "payment.succeeded"
    assert event.event_id == "42"
    view = event.view
    assert isinstance(view, PaymentPayload)
    assert view.payment_id == "pay_1"
    assert view.subscription_id == "sub_1"
    assert view.amount_minor == 20
    assert view.currency_code == "EUR"


def test_event_type_alias_and_unknown_type():
    event = normalize_envelope({"event_type": "customer.created", "data": {"id": "cus_1"}})

    assert event.event_type == "customer.created"
    assert event.event_id is None
    assert event.view is None
    assert event.payload == {"id": "cus_1"}


def test_missing_type_is_unknown():
    assert normalize_envelope({}).event_type == "unknown"


@pytest.mark.parametrize("body", [[], "text", {"eventType": "checkout.completed", "object": "ch_1"}])
def test_malformed_bodies(body):
    with pytest.raises(MalformedEventError) as exc_info:
        normalize_envelope(body)

    assert exc_info.value.kind == ErrorKind.MALFORMED_EVENT


def test_invalid_nested_type_is_malformed():
    with pytest.raises(MalformedEventError):
        normalize_envelope({"eventType": "subscription.paid", "object": {"customer": 12}})


@pytest.mark.parametrize(
    "order,expected",
    [
        ({"id": "ord_1", "transaction_id": "tx_a", "transaction": "tx_b"}, "tx_a"),
        ({"id": "ord_1", "transactionId": "tx_a"}, "tx_a"),
        ({"id": "ord_1", "transaction": "tx_b"}, "tx_b"),
        ({"id": "ord_1", "transaction": {"id": "tx_c"}}, "tx_c"),
        ({"id": "ord_1", "metadata": {"paymentId": "tx_d"}}, "tx_d"),
        ({"id": "ord_1"}, "ord_1"),
    ],
)
def test_checkout_payment_reference_chain(order, expected):
    checkout = CheckoutPayload.model_validate({"id": "ch_1", "order": order})

    assert checkout.payment_reference == expected


def test_checkout_recurring_requires_subscription():
    recurring = CheckoutPayload.model_validate({
        "product": {"id": "prod_1", "billing_type": "recurring"},
        "subscription": "sub_1",
    })
    one_time = CheckoutPayload.model_validate({"product": {"id": "prod_1", "billing_type": "recurring"}})

    assert recurring.is_recurring
    assert recurring.subscription.id == "sub_1"
    assert not one_time.is_recurring


def test_checkout_metadata_lookup_order():
    checkout = CheckoutPayload.model_validate({
        "metadata": {"email": "meta@x.com"},
        "order": {"metadata": {"planId": "starter"}},
        "product": {"metadata": {"credits": 300}},
    })

    assert checkout.customer_email == "meta@x.com"
    assert checkout.plan_reference == "starter"
    assert checkout.declared_credits == 300


def test_subscription_payment_reference_from_last_transaction():
    sub = SubscriptionPayload.model_validate({"id": "sub_1", "last_transaction": {"id": "tx_9", "amount": 1900}})

    assert sub.payment_reference == "tx_9"
    assert sub.amount == 1900
    assert sub.currency == "USD"


def test_helpers():
    assert to_int("12.5") == 13
    assert to_int(True) is None
    assert to_int("abc") is None
    assert parse_datetime("not a date") is None
    assert parse_datetime("2024-05-01T00:00:00").tzinfo == timezone.utc


def test_unhandled_type_skips_payload_validation():
    event = normalize_envelope({
        "eventType": "subscription.scheduled_cancel",
        "id": "evt_sc",
        "object": {"id": "sub_1", "customer": ["a"]},
    })

    assert event.event_type == "subscription.scheduled_cancel"
    assert event.view is None
    assert event.payload["customer"] == ["a"]
