"""CreditLedger RPC 래퍼 테스트"""
import pytest

from core.errors import InsufficientBalanceError
from services.credit_ledger import CREDIT_FUNCTION, CreditLedger

from fakes import InMemoryStore


@pytest.fixture
def store():
    store = InMemoryStore()
    store.add_user("user-1", "a@example.com", subscription=100, flex=50)
    return store


@pytest.mark.asyncio
async def test_credit_increases_balance_and_total(store):
    ledger = CreditLedger(store)

    snapshot = await ledger.credit("user-1", 30, "creem_payment", {"paymentId": "tx_1"})

    assert snapshot.balance == 180
    assert snapshot.total == 180
    assert snapshot.flex_balance == 80
    assert not snapshot.already_applied
    assert store.transactions_for("user-1")[0]["amount"] == 30


@pytest.mark.asyncio
async def test_credit_with_same_dedup_key_is_applied_once(store):
    ledger = CreditLedger(store)

    await ledger.credit("user-1", 30, "creem_payment", {"paymentId": "tx_1"}, dedup_key="creem_payment:tx_1")
    again = await ledger.credit("user-1", 30, "creem_payment", {"paymentId": "tx_1"}, dedup_key="creem_payment:tx_1")

    assert again.already_applied
    assert again.balance == 180
    assert len(store.transactions_for("user-1", "creem_payment")) == 1


@pytest.mark.asyncio
async def test_credit_falls_back_to_legacy_function_signature():
    store = InMemoryStore(legacy_credit_function=True)
    store.add_user("user-1", "a@example.com")
    ledger = CreditLedger(store)

    snapshot = await ledger.credit("user-1", 10, "subscription_created", bucket="subscription")

    assert snapshot.subscription_balance == 10
    calls = [call for call in store.rpc_calls if call["function"] == CREDIT_FUNCTION]
    assert len(calls) == 2
    assert "p_bucket" not in calls[1]["params"]
    assert calls[1]["params"]["p_metadata"]["bucket"] == "subscription"


@pytest.mark.asyncio
async def test_debit_decreases_balance_and_increases_spent(store):
    ledger = CreditLedger(store)

    snapshot = await ledger.debit("user-1", 120, "usage")

    assert snapshot.balance == 30
    assert snapshot.spent == 120
    assert snapshot.total == 150


@pytest.mark.asyncio
async def test_debit_insufficient_balance(store):
    ledger = CreditLedger(store)

    with pytest.raises(InsufficientBalanceError) as exc_info:
        await ledger.debit("user-1", 500, "usage")

    assert exc_info.value.balance == 150
    assert exc_info.value.requested == 500
    assert store.transactions_for("user-1") == []


@pytest.mark.asyncio
async def test_refund_restores_balance_without_new_grant(store):
    ledger = CreditLedger(store)
    await ledger.debit("user-1", 40, "usage")

    snapshot = await ledger.refund("user-1", 40, "admin_refund")

    assert snapshot.balance == 150
    assert snapshot.spent == 0
    assert snapshot.total == 150


@pytest.mark.asyncio
async def test_reset_replaces_subscription_bucket_and_keeps_flex(store):
    ledger = CreditLedger(store)

    snapshot = await ledger.reset_subscription_period("user-1", 600, "subscription_period_reset", dedup_key="k1")

    assert snapshot.subscription_balance == 600
    assert snapshot.flex_balance == 50
    assert snapshot.balance == 650


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5, "ten"])
async def test_amount_must_be_positive_integer(store, amount):
    ledger = CreditLedger(store)

    with pytest.raises(ValueError):
        await ledger.credit("user-1", amount, "creem_payment")
    assert store.rpc_calls == []


@pytest.mark.asyncio
async def test_unknown_bucket_rejected(store):
    with pytest.raises(ValueError):
        await CreditLedger(store).credit("user-1", 5, "creem_payment", bucket="bonus")
