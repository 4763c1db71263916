import pytest

from core.plan_catalog import PlanCatalog
from services.credit_ledger import CreditLedger
from services.duplicate_detector import DuplicateDetector
from services.identity_resolver import IdentityResolver
from services.payment_service import PaymentService
from services.schema_probe import SchemaProbe
from services.subscription_service import SubscriptionStateMachine
from services.webhook_gateway import WebhookGateway
from services.webhook_handlers import WebhookServices

from fakes import InMemoryStore

WEBHOOK_SECRET = "whsec_test"

PRODUCT_IDS = {
    "CREEM_PLAN_BASIC_MONTHLY_ID": "prod_basic_monthly",
    "CREEM_PLAN_CREATOR_MONTHLY_ID": "prod_creator_monthly",
    "CREEM_PLAN_PRO_YEARLY_ID": "prod_pro_yearly",
    "CREEM_PACK_STARTER_ID": "prod_starter",
    "CREEM_PACK_CREATOR_ID": "prod_creator_pack",
}


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def catalog():
    return PlanCatalog.default(PRODUCT_IDS)


@pytest.fixture
def services(store, catalog):
    return WebhookServices(
        identity=IdentityResolver(store, email_remap={"old@corp.example": "alice@example.com"}),
        ledger=CreditLedger(store),
        duplicates=DuplicateDetector(store),
        subscriptions=SubscriptionStateMachine(store, SchemaProbe(store)),
        payments=PaymentService(store),
        catalog=catalog,
    )


@pytest.fixture
def gateway(services, store):
    return WebhookGateway(services, WEBHOOK_SECRET, store)
