"""
서비스 팩토리 - 의존성 주입 설정
"""
from datetime import timedelta
from typing import Any, Dict

from supabase import create_client
import logging

from core.config import settings
from core.interfaces import IDatabaseHelper
from core.plan_catalog import PlanCatalog
from database_helper import DatabaseHelper
from services.auth_service import AuthService
from services.credit_ledger import CreditLedger
from services.duplicate_detector import DuplicateDetector
from services.identity_resolver import IdentityResolver
from services.payment_service import PaymentService
from services.reconciliation_service import ReconciliationService
from services.schema_probe import SchemaProbe
from services.subscription_service import SubscriptionStateMachine
from services.webhook_gateway import WebhookGateway
from services.webhook_handlers import WebhookServices

logger = logging.getLogger(__name__)


def build_webhook_services(db_helper: IDatabaseHelper, config: Any) -> WebhookServices:
    """설정값을 생성자 인자로 전달해 웹훅 서비스 묶음 생성"""
    candidates = tuple(config.CREEM_SUBSCRIPTION_ID_CANDIDATES)
    schema_probe = SchemaProbe(
        db_helper,
        candidates=candidates,
        pinned_column=config.CREEM_SUBSCRIPTION_ID_COLUMN,
    )
    return WebhookServices(
        identity=IdentityResolver(db_helper, email_remap=config.EMAIL_REMAP),
        ledger=CreditLedger(db_helper),
        duplicates=DuplicateDetector(
            db_helper,
            flex_window=timedelta(hours=config.FLEX_CREDIT_DEDUP_WINDOW_HOURS),
        ),
        subscriptions=SubscriptionStateMachine(db_helper, schema_probe),
        payments=PaymentService(db_helper),
        catalog=PlanCatalog.from_settings(config),
    )


class ServiceFactory:
    """서비스 인스턴스 생성 및 조회 (프로세스당 1회 생성)"""

    _services: Dict[str, Any] = {}

    @staticmethod
    def configure_dependencies():
        # 웹훅은 사용자 세션 없이 동작하므로 service role 클라이언트만 사용
        supabase_admin = create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)
        supabase_client = supabase_admin
        if settings.SUPABASE_ANON_KEY:
            supabase_client = create_client(settings.SUPABASE_URL, settings.SUPABASE_ANON_KEY)

        db_helper = DatabaseHelper(supabase_admin)
        webhook_services = build_webhook_services(db_helper, settings)

        if not settings.CREEM_WEBHOOK_SECRET:
            logger.warning("[CREEM] CREEM_WEBHOOK_SECRET이 설정되지 않아 모든 웹훅 요청이 거부됩니다.")

        ServiceFactory._services = {
            "db_helper": db_helper,
            "auth_service": AuthService(supabase_client, db_helper, admin_roles=settings.ADMIN_ROLES),
            "webhook_services": webhook_services,
            "webhook_gateway": WebhookGateway(webhook_services, settings.CREEM_WEBHOOK_SECRET, db_helper),
            "reconciliation_service": ReconciliationService(db_helper, webhook_services.ledger),
        }

    @staticmethod
    def _get(name: str):
        if name not in ServiceFactory._services:
            raise ValueError(f"Service {name} not configured")
        return ServiceFactory._services[name]

    @staticmethod
    def get_db_helper() -> IDatabaseHelper:
        """DB 헬퍼 조회"""
        return ServiceFactory._get("db_helper")

    @staticmethod
    def get_auth_service() -> AuthService:
        """인증 서비스 조회"""
        return ServiceFactory._get("auth_service")

    @staticmethod
    def get_webhook_gateway() -> WebhookGateway:
        return ServiceFactory._get("webhook_gateway")

    @staticmethod
    def get_webhook_services() -> WebhookServices:
        return ServiceFactory._get("webhook_services")

    @staticmethod
    def get_reconciliation_service() -> ReconciliationService:
        """정산 서비스 조회"""
        return ServiceFactory._get("reconciliation_service")
