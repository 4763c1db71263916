"""
Creem 플랜/크레딧 팩 카탈로그
"""
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional


SUBSCRIPTION_CATEGORY = "subscription"
PACK_CATEGORY = "pack"


@dataclass(frozen=True)
class PlanDefinition:
    """플랜별 지급 크레딧 및 상품 매핑"""
    id: str
    category: str  # "subscription" | "pack"
    name: str
    credits: int
    price_cents: int = 0
    currency: str = "USD"
    billing_interval: Optional[str] = None  # "month" | "year"
    group_id: Optional[str] = None
    product_id: Optional[str] = None

    @property
    def is_subscription(self) -> bool:
        return self.category == SUBSCRIPTION_CATEGORY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category,
            "name": self.name,
            "credits": self.credits,
            "price_cents": self.price_cents,
            "currency": self.currency,
            "billing_interval": self.billing_interval,
            "group_id": self.group_id,
            "product_id": self.product_id,
        }


# (tier, 표시명, 월 가격, 연 가격, 월 크레딧, 연 크레딧)
_SUBSCRIPTION_TIERS = (
    ("basic", "Basic", 19, 114, 600, 7200),
    ("creator", "Creator", 49, 294, 1500, 18000),
    ("pro", "Pro", 149, 894, 4500, 54000),
)

# (plan id, 환경변수 키, 표시명, 가격(센트), 크레딧)
_CREDIT_PACKS = (
    ("starter", "STARTER", "Starter Pack", 990, 300),
    ("creator_pack", "CREATOR", "Creator Pack", 4900, 1500),
    ("dev_team", "DEV", "Professional Pack", 19900, 6000),
)


def _normalize_name(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", " ", value.lower()).strip()


class PlanCatalog:
    """읽기 전용 플랜 조회기"""

    def __init__(self, plans: Iterable[PlanDefinition]):
        self._plans: List[PlanDefinition] = list(plans)
        self._by_id: Dict[str, PlanDefinition] = {plan.id: plan for plan in self._plans}
        self._by_product: Dict[str, PlanDefinition] = {
            plan.product_id: plan for plan in self._plans if plan.product_id
        }

    @classmethod
    def default(cls, product_ids: Optional[Dict[str, Optional[str]]] = None) -> "PlanCatalog":
        """기본 카탈로그 생성. product_ids 키는 환경변수 이름(CREEM_PLAN_BASIC_MONTHLY_ID 등)"""
        product_ids = product_ids or {}
        plans: List[PlanDefinition] = []

        for base_id, name, monthly_price, yearly_price, monthly_credits, yearly_credits in _SUBSCRIPTION_TIERS:
            env_root = f"CREEM_PLAN_{base_id.upper()}"
            plans.append(PlanDefinition(
                id=f"{base_id}_monthly",
                category=SUBSCRIPTION_CATEGORY,
                name=f"{name} · Monthly",
                credits=monthly_credits,
                price_cents=monthly_price * 100,
                billing_interval="month",
                group_id=base_id,
                product_id=product_ids.get(f"{env_root}_MONTHLY_ID"),
            ))
            plans.append(PlanDefinition(
                id=f"{base_id}_yearly",
                category=SUBSCRIPTION_CATEGORY,
                name=f"{name} · Annual",
                credits=yearly_credits,
                price_cents=yearly_price * 100,
                billing_interval="year",
                group_id=base_id,
                product_id=product_ids.get(f"{env_root}_YEARLY_ID"),
            ))

        for plan_id, env_key, name, price_cents, credits in _CREDIT_PACKS:
            plans.append(PlanDefinition(
                id=plan_id,
                category=PACK_CATEGORY,
                name=name,
                credits=credits,
                price_cents=price_cents,
                product_id=product_ids.get(f"CREEM_PACK_{env_key}_ID"),
            ))

        return cls(plans)

    @classmethod
    def from_settings(cls, settings: Any) -> "PlanCatalog":
        keys = [f"CREEM_PLAN_{tier[0].upper()}_{interval}_ID" for tier in _SUBSCRIPTION_TIERS for interval in ("MONTHLY", "YEARLY")]
        keys += [f"CREEM_PACK_{pack[1]}_ID" for pack in _CREDIT_PACKS]
        return cls.default({key: getattr(settings, key, None) for key in keys})

    @property
    def plans(self) -> List[PlanDefinition]:
        return list(self._plans)

    def get(self, plan_id: Optional[str]) -> Optional[PlanDefinition]:
        if not plan_id:
            return None
        plan = self._by_id.get(plan_id)
        if plan:
            return plan
        lowered = plan_id.strip().lower()
        for candidate in self._plans:
            if candidate.id.lower() == lowered:
                return candidate
        return None

    def get_by_product(self, product_id: Optional[str]) -> Optional[PlanDefinition]:
        if not product_id:
            return None
        return self._by_product.get(product_id)

    def resolve(self, *references: Optional[str]) -> Optional[PlanDefinition]:
        """plan id 또는 product id 중 먼저 일치하는 플랜"""
        for reference in references:
            if not reference:
                continue
            plan = self.get(reference) or self.get_by_product(reference)
            if plan:
                return plan
        return None

    def match_product_name(self, product_name: Optional[str]) -> Optional[PlanDefinition]:
        """상품명 기반 크레딧 팩 추정 (예: "Creator Pack 1500")"""
        if not product_name:
            return None
        normalized = _normalize_name(product_name)
        if not normalized:
            return None

        packs = [plan for plan in self._plans if plan.category == PACK_CATEGORY]
        for plan in packs:
            if _normalize_name(plan.name) in normalized or _normalize_name(plan.id) in normalized:
                return plan
        for plan in packs:
            if str(plan.credits) in normalized.split():
                return plan
        return None
