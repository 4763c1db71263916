"""Creem 이벤트 핸들러 통합 테스트 (인메모리 저장소)"""
import copy

import pytest

from core.errors import StoreError
from core.plan_catalog import PlanCatalog, PlanDefinition
from schemas.creem import normalize_envelope
from services.webhook_handlers import HANDLER_MAP, is_unhandled, resolve_handler


@pytest.fixture
def catalog():
    return PlanCatalog([
        PlanDefinition(
            id="basic_monthly",
            category="subscription",
            name="Basic · Monthly",
            credits=300,
            price_cents=1900,
            billing_interval="month",
            group_id="basic",
            product_id="plan_basic",
        ),
        PlanDefinition(
            id="starter",
            category="pack",
            name="Starter Pack",
            credits=150,
            price_cents=900,
            product_id="prod_starter",
        ),
    ])


@pytest.fixture
def store(store):
    store.add_user("u1", "a@x.com")
    return store


async def deliver(gateway, envelope):
    return await gateway.dispatch(normalize_envelope(copy.deepcopy(envelope)))


def subscription_event(event_type="subscription.paid", event_id="evt_a", **fields):
    obj = {
        "id": "sub_1",
        "customer": {"email": "a@x.com"},
        "product": {"id": "plan_basic"},
        "status": "active",
    }
    obj.update(fields)
    return {"eventType": event_type, "id": event_id, "object": obj}


def balance(store, user_id="u1"):
    return store.users[user_id]["credits_balance"]


def test_handler_map_covers_both_cancel_spellings():
    assert HANDLER_MAP["subscription.canceled"] is HANDLER_MAP["subscription.cancelled"]
    assert is_unhandled(resolve_handler("customer.created"))


def test_every_handled_type_has_a_typed_view():
    for event_type in HANDLER_MAP:
        assert normalize_envelope({"eventType": event_type, "object": {}}).view is not None


# Scenario A
@pytest.mark.asyncio
async def test_subscription_paid_grants_credits_and_records_payment(gateway, store):
    outcome = await deliver(gateway, subscription_event())

    assert outcome.status_code == 200
    assert outcome.body == {"received": True}
    assert balance(store) == 300
    created = store.transactions_for("u1", "subscription_created")
    assert len(created) == 1
    assert created[0]["amount"] == 300
    assert created[0]["metadata"]["subscriptionId"] == "sub_1"
    assert len(store.transactions) == 1
    assert [p["status"] for p in store.payments.values()] == ["succeeded"]
    assert store.payments["sub_sub_1_initial"]["amount"] == 1900
    assert store.subscriptions[0]["plan_status"] == "active"
    assert store.users["u1"]["subscription_plan"] == "basic"


# Scenario B
@pytest.mark.asyncio
async def test_subscription_paid_redelivery_is_idempotent(gateway, store):
    event = subscription_event()

    await deliver(gateway, event)
    second = await deliver(gateway, event)

    assert second.status_code == 200
    assert balance(store) == 300
    assert store.users["u1"]["credits_total"] == 300
    assert len(store.transactions) == 1
    assert len(store.payments) == 1
    assert len(store.subscriptions) == 1


@pytest.mark.asyncio
async def test_subscription_renewal_resets_subscription_bucket(gateway, services, store):
    await deliver(gateway, subscription_event())
    await services.ledger.debit("u1", 100, "usage")
    renewal = subscription_event(
        event_id="evt_renew",
        last_transaction_id="tx_2",
        current_period_start_date="2024-06-01T00:00:00Z",
    )

    await deliver(gateway, renewal)
    await deliver(gateway, renewal)

    assert store.users["u1"]["subscription_credits_balance"] == 300
    assert balance(store) == 300
    resets = store.transactions_for("u1", "subscription_period_reset")
    assert len(resets) == 1
    assert resets[0]["metadata"]["previousCredits"] == 200
    assert resets[0]["metadata"]["paymentId"] == "tx_2"
    assert set(store.payments) == {"sub_sub_1_initial", "tx_2"}


@pytest.mark.asyncio
async def test_subscription_active_never_changes_balance(gateway, store):
    outcome = await deliver(gateway, subscription_event("subscription.active", "evt_act"))

    assert outcome.status == "processed"
    assert balance(store) == 0
    assert store.transactions == []
    assert store.subscriptions[0]["plan_status"] == "active"

    await deliver(gateway, subscription_event())
    assert balance(store) == 300


@pytest.mark.asyncio
async def test_paid_before_active_keeps_single_grant(gateway, store):
    await deliver(gateway, subscription_event())
    await deliver(gateway, subscription_event("subscription.active", "evt_act"))

    assert balance(store) == 300
    assert len(store.subscriptions) == 1
    assert store.subscriptions[0]["plan_status"] == "active"


@pytest.mark.asyncio
async def test_late_active_does_not_reopen_canceled_subscription(gateway, store):
    store.add_subscription("u1", "sub_1", status="canceled")

    await deliver(gateway, subscription_event("subscription.active", "evt_late"))

    assert store.subscriptions[0]["plan_status"] == "canceled"


@pytest.mark.asyncio
async def test_subscription_trialing_grants_trial_credits_once(gateway, store):
    event = subscription_event("subscription.trialing", "evt_trial", id="sub_t", status="trialing")

    await deliver(gateway, event)
    await deliver(gateway, event)

    assert store.subscriptions[0]["plan_status"] == "trialing"
    assert len(store.transactions_for("u1", "subscription_trial")) == 1
    assert store.users["u1"]["subscription_credits_balance"] == 300


@pytest.mark.asyncio
async def test_subscription_update_changes_status_and_period(gateway, store):
    store.add_subscription("u1", "sub_1", status="active")
    event = {
        "eventType": "subscription.update",
        "id": "evt_up",
        "object": {"id": "sub_1", "status": "paused", "current_period_end_date": "2024-07-01T00:00:00Z"},
    }

    await deliver(gateway, event)

    row = store.subscriptions[0]
    assert row["plan_status"] == "paused"
    assert row["current_period_end"] == "2024-07-01T00:00:00+00:00"
    assert store.users["u1"]["subscription_status"] == "paused"


@pytest.mark.asyncio
async def test_cancelled_spelling_cancels_subscription(gateway, store):
    store.add_subscription("u1", "sub_1", status="active", current_period_end="2024-06-01T00:00:00+00:00")

    await deliver(gateway, {"eventType": "subscription.cancelled", "id": "evt_c", "object": {"id": "sub_1"}})

    assert store.subscriptions[0]["plan_status"] == "canceled"
    assert store.users["u1"]["subscription_end_date"] == "2024-06-01T00:00:00+00:00"


@pytest.mark.asyncio
async def test_expire_unknown_subscription_is_acknowledged(gateway, store):
    outcome = await deliver(gateway, {"eventType": "subscription.expired", "id": "evt_x", "object": {"id": "sub_404"}})

    assert outcome.status_code == 200
    assert outcome.results["subscription"]["kind"] == "missing_referenced_entity"
    assert store.subscriptions == []


# Scenario C
@pytest.mark.asyncio
async def test_payment_failed_records_failed_payment(gateway, store):
    store.add_subscription("u1", "sub_1")
    event = {
        "type": "payment.failed",
        "id": "evt_f",
        "data": {"payment_id": "pay_f", "subscription_id": "sub_1", "amount": 1900, "currency": "usd"},
    }

    outcome = await deliver(gateway, event)

    assert outcome.status_code == 200
    assert len(store.payments) == 1
    assert store.payments["pay_f"]["status"] == "failed"
    assert store.payments["pay_f"]["user_id"] == "u1"
    assert balance(store) == 0


@pytest.mark.asyncio
async def test_payment_failed_without_subscription_is_noop(gateway, store):
    event = {"type": "payment.failed", "id": "evt_f", "data": {"payment_id": "pay_f", "subscription_id": "sub_404"}}

    outcome = await deliver(gateway, event)

    assert outcome.status_code == 200
    assert store.payments == {}


# Scenario D
@pytest.mark.asyncio
async def test_partial_refund_updates_existing_payment(gateway, store):
    store.payments["tx_1"] = {
        "id": "pay_1", "creem_payment_id": "tx_1", "user_id": "u1", "amount": 1900, "status": "succeeded",
    }
    event = {
        "eventType": "refund.created",
        "id": "evt_r",
        "object": {"id": "rf_1", "payment_id": "tx_1", "status": "partial", "amount": 500},
    }

    await deliver(gateway, event)

    assert len(store.payments) == 1
    assert store.payments["tx_1"]["status"] == "partially_refunded"
    assert store.payments["tx_1"]["refund_amount"] == 500


@pytest.mark.asyncio
async def test_refund_for_unknown_payment_is_acknowledged(gateway, store):
    event = {"eventType": "refund.created", "id": "evt_r", "object": {"payment_id": "tx_404"}}

    outcome = await deliver(gateway, event)

    assert outcome.status_code == 200
    assert store.payments == {}


# Scenario E
@pytest.mark.asyncio
async def test_unresolved_customer_is_parked_and_acknowledged(gateway, store):
    event = subscription_event(customer={"email": "stranger@nowhere.test"})

    outcome = await deliver(gateway, event)

    assert outcome.status_code == 200
    assert outcome.status == "processed"
    assert store.transactions == []
    assert len(store.unmatched) == 1
    assert store.unmatched[0]["webhook_data"] == event
    assert store.unmatched[0]["subscription_id"] == "sub_1"


@pytest.mark.asyncio
async def test_payment_succeeded_resets_bucket_for_subscription(gateway, store):
    store.users["u1"].update(subscription_credits_balance=50, flex_credits_balance=20, credits_balance=70)
    store.add_subscription("u1", "sub_1")
    event = {
        "type": "payment.succeeded",
        "id": "evt_ps",
        "data": {"id": "pay_r1", "subscription_id": "sub_1", "amount": 1900, "metadata": {"planId": "basic_monthly"}},
    }

    await deliver(gateway, event)

    user = store.users["u1"]
    assert user["subscription_credits_balance"] == 300
    assert user["flex_credits_balance"] == 20
    assert user["credits_balance"] == 320
    assert store.payments["pay_r1"]["status"] == "succeeded"


@pytest.mark.asyncio
async def test_payment_succeeded_without_subscription_increments_flex(gateway, store):
    store.users["u1"].update(subscription_credits_balance=50, flex_credits_balance=20, credits_balance=70)
    event = {
        "type": "payment.succeeded",
        "id": "evt_flex",
        "data": {"id": "pay_f1", "customer_email": "a@x.com", "amount": 900, "metadata": {"credits": 120}},
    }

    await deliver(gateway, event)
    await deliver(gateway, event)

    user = store.users["u1"]
    assert user["flex_credits_balance"] == 140
    assert user["subscription_credits_balance"] == 50
    assert len(store.transactions_for("u1", "creem_payment")) == 1


@pytest.mark.asyncio
async def test_payment_succeeded_uses_direct_customer_reference(gateway, store):
    event = {
        "type": "payment.succeeded",
        "id": "evt_direct",
        "data": {"id": "pay_d1", "customer_id": "u1", "metadata": {"planId": "starter"}},
    }

    await deliver(gateway, event)

    assert store.users["u1"]["flex_credits_balance"] == 150
    assert store.payments["pay_d1"]["amount"] == 900
    assert store.matching_logs == []


@pytest.mark.asyncio
async def test_subscription_lookup_failure_falls_back_to_email(gateway, store):
    store.fail("find_subscription", StoreError("statement timeout", code="57014"))
    event = {
        "type": "payment.succeeded",
        "id": "evt_fb",
        "data": {"id": "pay_fb", "subscription_id": "sub_1", "customer_email": "a@x.com", "metadata": {"credits": 50}},
    }

    outcome = await deliver(gateway, event)

    assert outcome.status_code == 200
    assert outcome.results["subscription_lookup"]["success"] is False
    assert store.users["u1"]["flex_credits_balance"] == 50


@pytest.mark.asyncio
async def test_checkout_one_time_grants_pack_credits(gateway, store):
    event = {
        "eventType": "checkout.completed",
        "id": "evt_co",
        "object": {
            "id": "ch_1",
            "order": {"id": "ord_1", "transaction": "tx_c1", "amount": 900, "currency": "usd"},
            "product": {"id": "prod_starter", "billing_type": "onetime"},
            "customer": {"email": "a@x.com"},
        },
    }

    await deliver(gateway, event)
    await deliver(gateway, event)

    assert store.users["u1"]["flex_credits_balance"] == 150
    assert len(store.transactions) == 1
    payment = store.payments["tx_c1"]
    assert payment["amount"] == 900
    assert payment["payment_method"] == "creem"


@pytest.mark.asyncio
async def test_checkout_matches_pack_by_product_name(gateway, store):
    event = {
        "eventType": "checkout.completed",
        "id": "evt_co2",
        "object": {
            "id": "ch_2",
            "order": {"id": "ord_2"},
            "product": {"id": "prod_unknown", "name": "Starter Pack"},
            "customer": {"email": "a@x.com"},
        },
    }

    await deliver(gateway, event)

    assert store.users["u1"]["flex_credits_balance"] == 150
    assert "ord_2" in store.payments


@pytest.mark.asyncio
async def test_checkout_recurring_activates_subscription(gateway, store):
    event = {
        "eventType": "checkout.completed",
        "id": "evt_co3",
        "object": {
            "id": "ch_3",
            "order": {"id": "ord_3"},
            "product": {"id": "plan_basic", "billing_type": "recurring"},
            "customer": {"email": "a@x.com"},
            "subscription": "sub_9",
        },
    }

    await deliver(gateway, event)

    assert store.subscriptions[0]["subscription_id"] == "sub_9"
    assert store.subscriptions[0]["plan_status"] == "active"
    assert len(store.transactions_for("u1", "subscription_created")) == 1
    assert balance(store) == 300


def recurring_checkout(event_id="evt_co_sub"):
    return {
        "eventType": "checkout.completed",
        "id": event_id,
        "object": {
            "id": "ch_4",
            "order": {"id": "ord_4", "transaction": "tx_1"},
            "product": {"id": "plan_basic", "billing_type": "recurring"},
            "customer": {"email": "a@x.com"},
            "subscription": {"id": "sub_1", "status": "active"},
        },
    }


@pytest.mark.asyncio
async def test_checkout_then_paid_grants_first_period_once(gateway, services, store):
    await deliver(gateway, recurring_checkout())
    await services.ledger.debit("u1", 100, "usage")

    outcome = await deliver(gateway, subscription_event(last_transaction_id="tx_1"))

    assert outcome.status_code == 200
    created = store.transactions_for("u1", "subscription_created")
    assert len(created) == 1
    assert created[0]["metadata"]["paymentId"] == "tx_1"
    assert store.transactions_for("u1", "subscription_period_reset") == []
    assert balance(store) == 200
    assert store.users["u1"]["credits_total"] == 300
    assert store.payments["tx_1"]["status"] == "succeeded"


@pytest.mark.asyncio
async def test_paid_then_checkout_grants_first_period_once(gateway, store):
    await deliver(gateway, subscription_event(last_transaction_id="tx_1"))
    await deliver(gateway, recurring_checkout())

    assert len(store.transactions_for("u1", "subscription_created")) == 1
    assert store.transactions_for("u1", "subscription_period_reset") == []
    assert balance(store) == 300
    assert store.users["u1"]["credits_total"] == 300
    assert len(store.subscriptions) == 1


@pytest.mark.asyncio
async def test_dispute_logged_once(gateway, store):
    event = {
        "eventType": "dispute.created",
        "id": "evt_d",
        "object": {"id": "dp_1", "payment_id": "tx_1", "amount": 1900, "reason": "fraudulent"},
    }

    await deliver(gateway, event)
    await deliver(gateway, event)

    assert len(store.disputes) == 1
    assert store.disputes[0]["creem_payment_id"] == "tx_1"


@pytest.mark.asyncio
async def test_unknown_event_is_acknowledged_without_side_effects(gateway, store):
    outcome = await deliver(gateway, {"eventType": "customer.created", "id": "evt_u", "object": {"id": "cus_1"}})

    assert outcome.status_code == 200
    assert outcome.status == "ignored"
    assert store.transactions == [] and store.payments == {} and store.subscriptions == []
    assert store.webhook_audits("evt_u")[0]["status"] == "ignored"


@pytest.mark.asyncio
async def test_critical_store_failure_escalates(gateway, store):
    store.fail("rpc", StoreError("connection lost", code="08006"))

    outcome = await deliver(gateway, subscription_event())

    assert outcome.status_code == 500
    assert outcome.body == {"error": "Webhook processing failed"}
    assert store.webhook_audits("evt_a")[0]["status"] == "failed"


@pytest.mark.asyncio
async def test_processed_event_is_audited_and_replayable(gateway, store):
    event = subscription_event()
    await deliver(gateway, event)

    audit = store.webhook_audits("evt_a")[0]
    assert audit["status"] == "processed"
    assert audit["payload"]["raw_envelope"] == event

    replayed = await gateway.replay("evt_a", reason="ops check")
    assert replayed.status == "replayed"
    assert balance(store) == 300
    assert await gateway.replay("evt_missing") is None
