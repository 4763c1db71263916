"""IdentityResolver 이메일 매칭 단계 테스트"""
import pytest

from core.errors import StoreError
from services.identity_resolver import IdentityResolver, MatchType

from fakes import InMemoryStore


@pytest.fixture
def store():
    store = InMemoryStore()
    store.add_user("user-1", "Alice@Example.com")
    store.add_user("user-2", "bob@example.com")
    return store


def _match_types(store):
    return [log["match_type"] for log in store.matching_logs]


@pytest.mark.asyncio
async def test_exact_match_stops_at_first_step(store):
    resolver = IdentityResolver(store)

    user_id = await resolver.resolve_user_by_email("Alice@Example.com", event_type="subscription.paid")

    assert user_id == "user-1"
    assert _match_types(store) == ["exact"]
    assert store.unmatched == []


@pytest.mark.asyncio
async def test_case_insensitive_match(store):
    resolver = IdentityResolver(store)

    match = await resolver.match_email("  alice@EXAMPLE.com ")

    assert match.user_id == "user-1"
    assert match.match_type is MatchType.CASE_INSENSITIVE


@pytest.mark.asyncio
async def test_alias_match(store):
    store.aliases.append({"id": "alias_1", "user_id": "user-2", "alias_email": "billing@bob.dev", "status": "active"})
    resolver = IdentityResolver(store)

    match = await resolver.match_email("Billing@Bob.dev")

    assert match.user_id == "user-2"
    assert match.match_type is MatchType.ALIAS
    assert _match_types(store) == ["alias"]


@pytest.mark.asyncio
async def test_inactive_alias_is_ignored(store):
    store.aliases.append({"id": "alias_1", "user_id": "user-2", "alias_email": "billing@bob.dev", "status": "inactive"})
    resolver = IdentityResolver(store)

    match = await resolver.match_email("billing@bob.dev")

    assert match.user_id is None
    assert match.match_type is MatchType.NONE


@pytest.mark.asyncio
async def test_static_remap_is_last_step(store):
    resolver = IdentityResolver(store, email_remap={"Old@Corp.example": "bob@example.com"})

    match = await resolver.match_email("old@corp.example")

    assert match.user_id == "user-2"
    assert match.match_type is MatchType.STATIC_REMAP


@pytest.mark.asyncio
async def test_lookup_error_falls_through_to_next_step(store):
    store.fail("find_user_by_email", StoreError("timeout", code="57014"))
    resolver = IdentityResolver(store)

    user_id = await resolver.resolve_user_by_email("Alice@Example.com")

    assert user_id == "user-1"
    assert _match_types(store) == ["error", "case_insensitive"]


@pytest.mark.asyncio
async def test_match_log_failure_keeps_exact_match(store):
    async def broken(entry):
        raise StoreError("email_matching_logs unavailable")

    store.log_email_matching = broken
    resolver = IdentityResolver(store)

    match = await resolver.match_email("Alice@Example.com")

    assert match.user_id == "user-1"
    assert match.match_type == MatchType.EXACT
    assert store.unmatched == []


@pytest.mark.asyncio
async def test_unresolved_email_is_parked_with_context(store):
    resolver = IdentityResolver(store)
    envelope = {"eventType": "checkout.completed", "object": {"id": "ch_1"}}

    user_id = await resolver.resolve_user_by_email(
        "Nobody@Example.com",
        event_type="checkout.completed",
        webhook_data=envelope,
        unmatched_context={"payment_id": "tx_9", "amount": 900, "subscription_id": None},
    )

    assert user_id is None
    assert _match_types(store)[-1] == "none"
    assert len(store.unmatched) == 1
    entry = store.unmatched[0]
    assert entry["email"] == "nobody@example.com"
    assert entry["status"] == "pending"
    assert entry["payment_id"] == "tx_9"
    assert entry["webhook_data"] == envelope
    assert "subscription_id" not in entry


@pytest.mark.asyncio
async def test_missing_email_is_parked(store):
    resolver = IdentityResolver(store)

    assert await resolver.resolve_user_by_email(None, event_type="subscription.paid") is None
    assert store.unmatched[0]["email"] is None


@pytest.mark.asyncio
async def test_park_failure_is_not_propagated(store):
    store.fail("insert_unmatched_email", StoreError("insert failed"))
    resolver = IdentityResolver(store)

    assert await resolver.resolve_user_by_email("ghost@example.com") is None
