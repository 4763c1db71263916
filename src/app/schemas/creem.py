"""
Creem webhook envelope and payload models.

The gateway normalizes every inbound body exactly once:
- envelope: modern ``{eventType, object, id, created_at}`` or legacy ``{type|event_type, data}``
- payload: validated into a typed view chosen by event family

Handlers only read the canonical accessors defined here.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Optional, Type, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.errors import MalformedEventError


PLAN_METADATA_KEYS = ("planId", "plan_id", "planID", "plan", "PlanId", "PlanID", "PLAN_ID")
CREDIT_METADATA_KEYS = ("credits", "planCredits")


def parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        try:
            # 밀리초 단위 타임스탬프 허용
            seconds = float(value) / 1000 if value > 10**11 else float(value)
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            if raw.endswith('Z'):
                raw = raw[:-1] + '+00:00'
            dt = datetime.fromisoformat(raw)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt
        except ValueError:
            return None
    return None


def to_int(value: Any) -> Optional[int]:
    """숫자/문자열 금액을 반올림한 정수로 변환"""
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, str):
            value = value.strip()
            if not value:
                return None
        return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except (InvalidOperation, TypeError, ValueError):
        return None


def positive_int(value: Any) -> Optional[int]:
    number = to_int(value)
    return number if number and number > 0 else None


def _first_metadata_value(keys: tuple, *sources: Dict[str, Any]) -> Any:
    for source in sources:
        if not isinstance(source, dict):
            continue
        for key in keys:
            value = source.get(key)
            if value not in (None, ""):
                return value
    return None


def _as_reference(value: Any) -> Any:
    # Creem은 연관 객체를 id 문자열로만 보내기도 함
    if isinstance(value, str):
        return {"id": value}
    return value


class CreemModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True, coerce_numbers_to_str=True)

    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def metadata_dict(cls, value: Any) -> Dict[str, Any]:
        return value if isinstance(value, dict) else {}


class Customer(CreemModel):
    id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None


class Product(CreemModel):
    id: Optional[str] = None
    name: Optional[str] = None
    billing_type: Optional[str] = None


class Transaction(CreemModel):
    id: Optional[str] = None
    amount: Optional[Any] = None
    currency: Optional[str] = None


class SubscriptionPayload(CreemModel):
    id: Optional[str] = None
    status: Optional[str] = None
    customer: Optional[Customer] = None
    product: Optional[Product] = None
    current_period_start_date: Optional[Any] = None
    current_period_end_date: Optional[Any] = None
    current_period_start: Optional[Any] = None
    current_period_end: Optional[Any] = None
    last_transaction_id: Optional[str] = None
    last_transaction: Optional[Transaction] = None

    @field_validator("customer", "product", "last_transaction", mode="before")
    @classmethod
    def coerce_references(cls, value: Any) -> Any:
        return _as_reference(value)

    @property
    def subscription_id(self) -> Optional[str]:
        return self.id

    @property
    def customer_email(self) -> Optional[str]:
        email = self.customer.email if self.customer else None
        return email or self.metadata.get("customerEmail")

    @property
    def product_id(self) -> Optional[str]:
        return self.product.id if self.product else None

    @property
    def plan_reference(self) -> Optional[str]:
        plan_id = _first_metadata_value(PLAN_METADATA_KEYS, self.metadata)
        return str(plan_id) if plan_id else self.product_id

    @property
    def declared_credits(self) -> Optional[int]:
        return positive_int(_first_metadata_value(CREDIT_METADATA_KEYS, self.metadata))

    @property
    def period_start(self) -> Optional[datetime]:
        return parse_datetime(self.current_period_start_date or self.current_period_start)

    @property
    def period_end(self) -> Optional[datetime]:
        return parse_datetime(self.current_period_end_date or self.current_period_end)

    @property
    def payment_reference(self) -> Optional[str]:
        if self.last_transaction_id:
            return self.last_transaction_id
        return self.last_transaction.id if self.last_transaction else None

    @property
    def amount(self) -> Optional[int]:
        return to_int(self.last_transaction.amount) if self.last_transaction else None

    @property
    def currency(self) -> str:
        currency = self.last_transaction.currency if self.last_transaction else None
        return (currency or "USD").upper()


class Order(CreemModel):
    id: Optional[str] = None
    amount: Optional[Any] = None
    currency: Optional[str] = None
    transaction_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("transaction_id", "transactionId")
    )
    transaction: Optional[Union[str, Dict[str, Any]]] = None

    @property
    def payment_reference(self) -> Optional[str]:
        if self.transaction_id:
            return self.transaction_id
        if isinstance(self.transaction, str) and self.transaction:
            return self.transaction
        if isinstance(self.transaction, dict) and self.transaction.get("id"):
            return str(self.transaction["id"])
        from_metadata = _first_metadata_value(("transaction_id", "paymentId", "transactionId"), self.metadata)
        if from_metadata:
            return str(from_metadata)
        return self.id


class CheckoutPayload(CreemModel):
    id: Optional[str] = None
    order: Optional[Order] = None
    product: Optional[Product] = None
    customer: Optional[Customer] = None
    subscription: Optional[SubscriptionPayload] = None

    @field_validator("order", "product", "customer", "subscription", mode="before")
    @classmethod
    def coerce_references(cls, value: Any) -> Any:
        return _as_reference(value)

    def _metadata_sources(self, include_subscription: bool = False):
        sources = [
            self.metadata,
            self.order.metadata if self.order else {},
            self.product.metadata if self.product else {},
        ]
        if include_subscription and self.subscription:
            sources.append(self.subscription.metadata)
        return sources

    @property
    def is_recurring(self) -> bool:
        billing_type = (self.product.billing_type or "").lower() if self.product else ""
        return billing_type == "recurring" and self.subscription is not None

    @property
    def customer_email(self) -> Optional[str]:
        email = self.customer.email if self.customer else None
        return email or _first_metadata_value(("customerEmail", "email"), *self._metadata_sources())

    @property
    def product_id(self) -> Optional[str]:
        return self.product.id if self.product else None

    @property
    def product_name(self) -> Optional[str]:
        return self.product.name if self.product else None

    @property
    def plan_reference(self) -> Optional[str]:
        plan_id = _first_metadata_value(PLAN_METADATA_KEYS, *self._metadata_sources(include_subscription=True))
        return str(plan_id) if plan_id else None

    @property
    def declared_credits(self) -> Optional[int]:
        return positive_int(_first_metadata_value(CREDIT_METADATA_KEYS, *self._metadata_sources()))

    @property
    def payment_reference(self) -> Optional[str]:
        return self.order.payment_reference if self.order else None

    @property
    def amount(self) -> Optional[int]:
        return to_int(self.order.amount) if self.order else None

    @property
    def currency(self) -> str:
        currency = self.order.currency if self.order else None
        return (currency or "USD").upper()


class PaymentPayload(CreemModel):
    """legacy payment.* 이벤트"""
    payment_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("payment_id", "id"))
    subscription_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("subscription_id", "subscriptionId")
    )
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    amount: Optional[Any] = None
    currency: Optional[str] = None
    payment_method: Optional[str] = Field(default=None, validation_alias=AliasChoices("payment_method", "method"))
    product_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("product_id", "productId"))
    plan_id: Optional[str] = None

    @property
    def customer_reference(self) -> Optional[str]:
        return self.customer_id or self.metadata.get("customerId")

    @property
    def email(self) -> Optional[str]:
        return self.customer_email or self.metadata.get("customerEmail")

    @property
    def plan_reference(self) -> Optional[str]:
        plan_id = self.metadata.get("planId") or self.plan_id
        return str(plan_id) if plan_id else None

    @property
    def product_reference(self) -> Optional[str]:
        return self.product_id or self.metadata.get("productId")

    @property
    def declared_credits(self) -> Optional[int]:
        return positive_int(_first_metadata_value(CREDIT_METADATA_KEYS, self.metadata))

    @property
    def amount_minor(self) -> Optional[int]:
        return to_int(self.amount)

    @property
    def currency_code(self) -> str:
        return (self.currency or "USD").upper()


class RefundPayload(CreemModel):
    id: Optional[str] = None
    payment_id: Optional[str] = None
    amount: Optional[Any] = None
    status: Optional[str] = None

    @property
    def is_partial(self) -> bool:
        return (self.status or "").lower() == "partial"

    @property
    def amount_minor(self) -> Optional[int]:
        return to_int(self.amount)


class DisputePayload(CreemModel):
    id: Optional[str] = None
    payment_id: Optional[str] = None
    amount: Optional[Any] = None
    reason: Optional[str] = None
    status: Optional[str] = None

    @property
    def amount_minor(self) -> Optional[int]:
        return to_int(self.amount)


PayloadView = Union[SubscriptionPayload, CheckoutPayload, PaymentPayload, RefundPayload, DisputePayload, None]

_VIEW_BY_TYPE: Dict[str, Type[CreemModel]] = {
    "subscription.active": SubscriptionPayload,
    "subscription.paid": SubscriptionPayload,
    "subscription.update": SubscriptionPayload,
    "subscription.canceled": SubscriptionPayload,
    "subscription.cancelled": SubscriptionPayload,
    "subscription.expired": SubscriptionPayload,
    "subscription.trialing": SubscriptionPayload,
    "subscription.paused": SubscriptionPayload,
    "checkout.completed": CheckoutPayload,
    "payment.succeeded": PaymentPayload,
    "payment.failed": PaymentPayload,
    "refund.created": RefundPayload,
    "dispute.created": DisputePayload,
}


@dataclass(slots=True)
class WebhookEvent:
    """요청 1회 동안만 존재하는 정규화된 이벤트"""
    event_type: str
    event_id: Optional[str]
    created_at: Optional[datetime]
    payload: Dict[str, Any]
    raw: Dict[str, Any]
    view: PayloadView = field(default=None)


def _view_class(event_type: str) -> Optional[Type[CreemModel]]:
    # 처리하지 않는 타입은 검증 없이 통과시켜 200으로 확인 응답
    return _VIEW_BY_TYPE.get(event_type)


def normalize_envelope(body: Any) -> WebhookEvent:
    """modern/legacy 엔벨로프를 정규 이벤트로 변환"""
    if not isinstance(body, dict):
        raise MalformedEventError(f"webhook body must be a JSON object, got {type(body).__name__}")

    event_type = body.get("eventType") or body.get("type") or body.get("event_type") or "unknown"
    event_type = str(event_type).strip()

    payload = body.get("object")
    if payload is None:
        payload = body.get("data")
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise MalformedEventError(f"webhook payload must be an object for {event_type}")

    event_id = body.get("id")
    view = None
    model = _view_class(event_type)
    if model is not None:
        try:
            view = model.model_validate(payload)
        except ValidationError as exc:
            raise MalformedEventError(f"invalid {event_type} payload: {exc.error_count()} error(s)") from exc

    return WebhookEvent(
        event_type=event_type,
        event_id=str(event_id) if event_id is not None else None,
        created_at=parse_datetime(body.get("created_at")),
        payload=payload,
        raw=body,
        view=view,
    )
