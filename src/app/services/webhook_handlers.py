"""
Creem event handlers.

One handler per canonical event type. Each handler composes the identity resolver,
duplicate detector, credit ledger, subscription state machine and payment records.

Sub-steps run through ``CreemHandlerContext.step``:
- critical steps (the primary side effect) propagate, so the gateway answers 500 and Creem retries
- best-effort steps are recorded in the handler result and processing continues

Unresolvable customers are parked in the unmatched email queue and acknowledged.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from core.errors import ErrorKind, WebhookError, policy_for
from core.plan_catalog import PlanCatalog, PlanDefinition
from schemas.creem import (
    CheckoutPayload,
    DisputePayload,
    PaymentPayload,
    RefundPayload,
    SubscriptionPayload,
    WebhookEvent,
)
from services.credit_ledger import FLEX_BUCKET, SUBSCRIPTION_BUCKET, CreditLedger
from services.duplicate_detector import DuplicateDetector, ledger_dedup_key
from services.identity_resolver import IdentityResolver
from services.payment_service import FAILED, SUCCEEDED, PaymentService
from services.subscription_service import (
    ACTIVE,
    CANCELED,
    EXPIRED,
    PAUSED,
    TRIALING,
    SubscriptionStateMachine,
    normalize_status,
)

logger = logging.getLogger(__name__)

REASON_SUBSCRIPTION_CREATED = "subscription_created"
REASON_SUBSCRIPTION_TRIAL = "subscription_trial"
REASON_PERIOD_RESET = "subscription_period_reset"
REASON_PAYMENT = "creem_payment"

WEBHOOK_SOURCE = "webhook"

HandlerResult = Tuple[Optional[str], Dict[str, Any]]
HandlerFunc = Callable[["CreemHandlerContext"], Awaitable[HandlerResult]]

_FAILED = object()


@dataclass(slots=True)
class WebhookServices:
    identity: IdentityResolver
    ledger: CreditLedger
    duplicates: DuplicateDetector
    subscriptions: SubscriptionStateMachine
    payments: PaymentService
    catalog: PlanCatalog


@dataclass(slots=True)
class CreemHandlerContext:
    event: WebhookEvent
    services: WebhookServices
    results: Dict[str, Any] = field(default_factory=dict)

    @property
    def event_type(self) -> str:
        return self.event.event_type

    async def step(self, name: str, func: Callable[..., Awaitable[Any]], *args, critical: bool = False, **kwargs) -> Any:
        """하위 단계 실행. 비핵심 단계의 실패는 결과에 기록하고 _FAILED 반환"""
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            kind = e.kind if isinstance(e, WebhookError) else ErrorKind.UNEXPECTED_STORE_ERROR
            if critical:
                logger.error("[CREEM] %s failed for %s (%s): %s", name, self.event_type, policy_for(kind).disposition.value, e)
                raise
            logger.error(f"[CREEM] {name} failed (non-critical) for {self.event_type}: {e}")
            self.results[name] = {"success": False, "error": str(e), "kind": kind.value}
            return _FAILED

    def base_metadata(self, plan: Optional[PlanDefinition] = None, **extra: Any) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "source": WEBHOOK_SOURCE,
            "eventType": self.event_type,
            "eventId": self.event.event_id,
            "planId": plan.id if plan else None,
            "planCategory": plan.category if plan else None,
        }
        metadata.update(extra)
        return {key: value for key, value in metadata.items() if value is not None}


def _credit_amount(declared: Optional[int], plan: Optional[PlanDefinition]) -> Optional[int]:
    if declared:
        return declared
    if plan and plan.credits > 0:
        return plan.credits
    return None


def _subscription_payment_key(subscription_id: str, period_start: Optional[datetime]) -> str:
    """결제 ID가 없는 구독 결제의 결정적 키"""
    period = period_start.strftime("%Y%m%d") if period_start else "initial"
    return f"sub_{subscription_id}_{period}"


async def _resolve_user(ctx: CreemHandlerContext, email: Optional[str], **unmatched_context: Any) -> Optional[str]:
    user_id = await ctx.services.identity.resolve_user_by_email(
        email,
        event_type=ctx.event_type,
        webhook_data=ctx.event.raw,
        unmatched_context=unmatched_context,
    )
    if not user_id:
        ctx.results["identity"] = {
            "success": False,
            "kind": ErrorKind.IDENTITY_UNRESOLVED.value,
            "email": email,
            "parked": True,
        }
    else:
        ctx.results["identity"] = {"success": True, "user_id": user_id}
    return user_id


def _missing(ctx: CreemHandlerContext, what: str) -> HandlerResult:
    logger.warning("[CREEM] %s event without %s, acknowledged", ctx.event_type, what)
    ctx.results["info"] = {
        "kind": ErrorKind.MISSING_REFERENCED_ENTITY.value,
        "missing": what,
    }
    return "ignored", ctx.results


async def _grant_subscription_credits(
    ctx: CreemHandlerContext,
    user_id: str,
    subscription_id: str,
    plan: Optional[PlanDefinition],
    declared_credits: Optional[int],
    reason: str,
    payment_id: Optional[str] = None,
) -> bool:
    """구독 최초 지급. 이번 호출에서 새로 적용됐으면 True"""
    services = ctx.services
    credits = _credit_amount(declared_credits, plan)
    if not credits:
        logger.warning("[CREEM] no credit amount for subscription %s (plan=%s)", subscription_id, plan.id if plan else None)
        ctx.results["credits"] = {"success": False, "reason": "no_credit_amount"}
        return False

    if await ctx.step("dedup", services.duplicates.subscription_applied, user_id, reason, subscription_id, critical=True):
        ctx.results["credits"] = {"success": True, "duplicate": True, "kind": ErrorKind.DUPLICATE_EVENT.value}
        return False

    snapshot = await ctx.step(
        "credits",
        services.ledger.credit,
        user_id,
        credits,
        reason,
        ctx.base_metadata(plan, subscriptionId=subscription_id, paymentId=payment_id),
        bucket=SUBSCRIPTION_BUCKET,
        dedup_key=ledger_dedup_key(reason, subscription_id),
        critical=True,
    )
    ctx.results["credits"] = {
        "success": True,
        "reason": reason,
        "amount": credits,
        "duplicate": snapshot.already_applied,
        "balance": snapshot.balance,
    }
    return not snapshot.already_applied


async def _activate_subscription(
    ctx: CreemHandlerContext,
    subscription: SubscriptionPayload,
    user_id: str,
    status: str,
    grant_reason: Optional[str],
    plan_reference: Optional[str] = None,
    payment_id: Optional[str] = None,
) -> Tuple[Optional[PlanDefinition], Dict[str, Any], bool]:
    plan = ctx.services.catalog.resolve(plan_reference or subscription.plan_reference, subscription.product_id)
    if plan is None:
        logger.warning("[CREEM] unknown plan for subscription %s (%s)", subscription.id, plan_reference or subscription.plan_reference)

    synced = await ctx.step(
        "subscription",
        ctx.services.subscriptions.upsert,
        user_id,
        subscription.id,
        status,
        plan,
        subscription.period_start,
        subscription.period_end,
        critical=True,
    )
    ctx.results["subscription"] = {
        "success": True,
        "action": synced.get("action"),
        "status": synced.get("status"),
        "user_synced": synced.get("user_synced"),
    }

    granted = False
    if grant_reason:
        granted = await _grant_subscription_credits(
            ctx, user_id, subscription.id, plan, subscription.declared_credits, grant_reason, payment_id,
        )
    return plan, synced.get("subscription") or {}, granted


async def _reset_period_credits(
    ctx: CreemHandlerContext,
    user_id: str,
    payment_id: str,
    plan: PlanDefinition,
    subscription_id: str,
    extra_metadata: Dict[str, Any],
) -> None:
    """subscription 버킷을 플랜 기간 지급량으로 교체 (증분 아님)"""
    services = ctx.services
    if await ctx.step(
        "dedup",
        services.duplicates.any_applied,
        user_id,
        (REASON_PERIOD_RESET, REASON_SUBSCRIPTION_CREATED),
        "paymentId",
        payment_id,
        critical=True,
    ):
        ctx.results["credits"] = {"success": True, "duplicate": True, "kind": ErrorKind.DUPLICATE_EVENT.value}
        return

    previous = await ctx.step("previous_balance", services.ledger.snapshot, user_id)
    metadata = ctx.base_metadata(
        plan,
        subscriptionId=subscription_id,
        paymentId=payment_id,
        previousCredits=previous.subscription_balance if previous is not _FAILED else None,
        **extra_metadata,
    )
    snapshot = await ctx.step(
        "credits",
        services.ledger.reset_subscription_period,
        user_id,
        plan.credits,
        REASON_PERIOD_RESET,
        metadata,
        dedup_key=ledger_dedup_key(REASON_PERIOD_RESET, payment_id),
        critical=True,
    )
    ctx.results["credits"] = {
        "success": True,
        "reason": REASON_PERIOD_RESET,
        "period_credits": plan.credits,
        "duplicate": snapshot.already_applied,
        "balance": snapshot.balance,
    }


async def _grant_flex_credits(
    ctx: CreemHandlerContext,
    user_id: str,
    payment_id: str,
    credits: int,
    plan: Optional[PlanDefinition],
    subscription_id: Optional[str],
    extra_metadata: Dict[str, Any],
) -> None:
    services = ctx.services
    if await ctx.step(
        "dedup", services.duplicates.flex_payment_applied, user_id, REASON_PAYMENT, payment_id, critical=True,
    ):
        ctx.results["credits"] = {"success": True, "duplicate": True, "kind": ErrorKind.DUPLICATE_EVENT.value}
        return

    snapshot = await ctx.step(
        "credits",
        services.ledger.credit,
        user_id,
        credits,
        REASON_PAYMENT,
        ctx.base_metadata(plan, paymentId=payment_id, subscriptionId=subscription_id, **extra_metadata),
        bucket=FLEX_BUCKET,
        dedup_key=ledger_dedup_key(REASON_PAYMENT, payment_id),
        critical=True,
    )
    ctx.results["credits"] = {
        "success": True,
        "reason": REASON_PAYMENT,
        "amount": credits,
        "duplicate": snapshot.already_applied,
        "balance": snapshot.balance,
    }


async def _apply_payment_succeeded(
    ctx: CreemHandlerContext,
    user_id: str,
    payment_id: Optional[str],
    plan: Optional[PlanDefinition],
    declared_credits: Optional[int] = None,
    subscription_id: Optional[str] = None,
    subscription_row_id: Any = None,
    amount: Optional[int] = None,
    currency: str = "USD",
    payment_method: Optional[str] = None,
    extra_metadata: Optional[Dict[str, Any]] = None,
    grant_credits: bool = True,
) -> None:
    """구독 기간 리셋 또는 flex 지급 후 결제 레코드 upsert"""
    if not payment_id:
        # 중복 판단 키 없이 지급하지 않음
        logger.error("[CREEM] %s for %s has no payment id; credits and payment record skipped", ctx.event_type, user_id)
        ctx.results["credits"] = {"success": False, "reason": "missing_payment_id"}
        ctx.results["payment"] = {"success": False, "reason": "missing_payment_id"}
        return

    extra_metadata = extra_metadata or {}
    if grant_credits:
        if subscription_id and plan and plan.credits > 0:
            await _reset_period_credits(ctx, user_id, payment_id, plan, subscription_id, extra_metadata)
        else:
            credits = _credit_amount(declared_credits, plan)
            if credits:
                await _grant_flex_credits(ctx, user_id, payment_id, credits, plan, subscription_id, extra_metadata)
            else:
                ctx.results["credits"] = {"success": False, "reason": "no_credit_amount"}

    if amount is None:
        amount = plan.price_cents if plan else 0
    recorded = await ctx.step(
        "payment",
        ctx.services.payments.record_payment,
        payment_id,
        user_id,
        SUCCEEDED,
        amount,
        currency,
        subscription_row_id,
        payment_method,
        critical=True,
    )
    ctx.results["payment"] = {"success": True, "action": recorded["action"], "payment_id": payment_id}


async def _handle_subscription_active(ctx: CreemHandlerContext) -> HandlerResult:
    """동기화 전용: 크레딧 지급 없음"""
    subscription: SubscriptionPayload = ctx.event.view
    if not subscription.id:
        return _missing(ctx, "subscription id")

    user_id = await _resolve_user(ctx, subscription.customer_email, subscription_id=subscription.id)
    if not user_id:
        return "parked", ctx.results

    status = normalize_status(subscription.status) or ACTIVE
    await _activate_subscription(ctx, subscription, user_id, status, grant_reason=None)
    return "subscription", ctx.results


async def _handle_subscription_trialing(ctx: CreemHandlerContext) -> HandlerResult:
    subscription: SubscriptionPayload = ctx.event.view
    if not subscription.id:
        return _missing(ctx, "subscription id")

    user_id = await _resolve_user(ctx, subscription.customer_email, subscription_id=subscription.id)
    if not user_id:
        return "parked", ctx.results

    await _activate_subscription(ctx, subscription, user_id, TRIALING, grant_reason=REASON_SUBSCRIPTION_TRIAL)
    return "subscription", ctx.results


async def _handle_subscription_paid(ctx: CreemHandlerContext) -> HandlerResult:
    """구독 활성화 + 최초 지급 + 결제 기록(기간 리셋 포함)"""
    subscription: SubscriptionPayload = ctx.event.view
    if not subscription.id:
        return _missing(ctx, "subscription id")

    payment_id = subscription.payment_reference or _subscription_payment_key(subscription.id, subscription.period_start)
    user_id = await _resolve_user(
        ctx,
        subscription.customer_email,
        subscription_id=subscription.id,
        payment_id=payment_id,
        amount=subscription.amount,
        currency=subscription.currency,
    )
    if not user_id:
        return "parked", ctx.results

    plan, row, granted = await _activate_subscription(
        ctx, subscription, user_id, ACTIVE, grant_reason=REASON_SUBSCRIPTION_CREATED, payment_id=payment_id,
    )
    # 최초 지급이 아니면 갱신 결제로 보고 기간 리셋
    await _apply_payment_succeeded(
        ctx,
        user_id,
        payment_id,
        plan,
        declared_credits=subscription.declared_credits,
        subscription_id=subscription.id,
        subscription_row_id=row.get("id"),
        amount=subscription.amount,
        currency=subscription.currency,
        extra_metadata={"productId": subscription.product_id},
        grant_credits=not granted,
    )
    return "subscription_payment", ctx.results


async def _transition_subscription(ctx: CreemHandlerContext, status: Optional[str]) -> HandlerResult:
    subscription: SubscriptionPayload = ctx.event.view
    if not subscription.id:
        return _missing(ctx, "subscription id")

    result = await ctx.step(
        "subscription",
        ctx.services.subscriptions.transition,
        subscription.id,
        status,
        subscription.period_start,
        subscription.period_end,
        critical=True,
    )
    if result is None:
        ctx.results["subscription"] = {
            "success": False,
            "kind": ErrorKind.MISSING_REFERENCED_ENTITY.value,
            "subscription_id": subscription.id,
        }
        return "subscription", ctx.results

    ctx.results["subscription"] = {
        "success": True,
        "action": result.get("action"),
        "status": result.get("status"),
        "user_synced": result.get("user_synced"),
    }
    return "subscription", ctx.results


async def _handle_subscription_update(ctx: CreemHandlerContext) -> HandlerResult:
    subscription: SubscriptionPayload = ctx.event.view
    return await _transition_subscription(ctx, normalize_status(subscription.status))


async def _handle_subscription_paused(ctx: CreemHandlerContext) -> HandlerResult:
    return await _transition_subscription(ctx, PAUSED)


async def _handle_subscription_canceled(ctx: CreemHandlerContext) -> HandlerResult:
    return await _transition_subscription(ctx, CANCELED)


async def _handle_subscription_expired(ctx: CreemHandlerContext) -> HandlerResult:
    return await _transition_subscription(ctx, EXPIRED)


async def _handle_checkout_completed(ctx: CreemHandlerContext) -> HandlerResult:
    checkout: CheckoutPayload = ctx.event.view
    catalog = ctx.services.catalog

    if checkout.is_recurring:
        subscription = checkout.subscription
        if not subscription.id:
            return _missing(ctx, "subscription id")
        if not subscription.customer and checkout.customer:
            subscription.customer = checkout.customer

        user_id = await _resolve_user(ctx, checkout.customer_email, subscription_id=subscription.id)
        if not user_id:
            return "parked", ctx.results

        await _activate_subscription(
            ctx,
            subscription,
            user_id,
            ACTIVE,
            grant_reason=REASON_SUBSCRIPTION_CREATED,
            plan_reference=checkout.plan_reference or checkout.product_id,
            # subscription.paid 의 기간 리셋이 같은 결제를 알아보도록 paymentId 기록
            payment_id=checkout.payment_reference or _subscription_payment_key(subscription.id, subscription.period_start),
        )
        return "subscription", ctx.results

    if not checkout.order:
        return _missing(ctx, "order")

    payment_id = checkout.payment_reference or checkout.id
    user_id = await _resolve_user(
        ctx,
        checkout.customer_email,
        payment_id=payment_id,
        amount=checkout.amount,
        currency=checkout.currency,
    )
    if not user_id:
        return "parked", ctx.results

    found_via_metadata = False
    plan = catalog.get_by_product(checkout.product_id)
    if plan is None and checkout.plan_reference:
        plan = catalog.get(checkout.plan_reference)
        found_via_metadata = plan is not None
    if plan is None:
        plan = catalog.match_product_name(checkout.product_name)
    if plan is None:
        logger.warning("[CREEM] checkout %s: no catalog plan for product %s", checkout.id, checkout.product_id)

    await _apply_payment_succeeded(
        ctx,
        user_id,
        payment_id,
        plan,
        declared_credits=checkout.declared_credits,
        amount=checkout.amount,
        currency=checkout.currency,
        payment_method="creem",
        extra_metadata={
            "productId": checkout.product_id,
            "productName": checkout.product_name,
            "foundViaMetadata": found_via_metadata,
        },
    )
    return "payment", ctx.results


async def _handle_payment_succeeded(ctx: CreemHandlerContext) -> HandlerResult:
    """legacy payment.succeeded: 구독 -> 직접 ID -> 이메일 순으로 사용자 확인"""
    payment: PaymentPayload = ctx.event.view
    services = ctx.services

    subscription_row: Optional[Dict[str, Any]] = None
    if payment.subscription_id:
        found = await ctx.step("subscription_lookup", services.subscriptions.find, payment.subscription_id)
        subscription_row = found if found is not _FAILED else None

    user_id = subscription_row.get("user_id") if subscription_row else None

    if not user_id and payment.customer_reference:
        user = await ctx.step("customer_lookup", services.ledger.db_helper.get_user, payment.customer_reference)
        if user is not _FAILED and user:
            user_id = user.get("id")

    payment_id = payment.payment_id or ctx.event.event_id
    if user_id:
        ctx.results["identity"] = {"success": True, "user_id": user_id}
    else:
        user_id = await _resolve_user(
            ctx,
            payment.email,
            payment_id=payment_id,
            subscription_id=payment.subscription_id,
            amount=payment.amount_minor,
            currency=payment.currency_code,
        )
        if not user_id:
            return "parked", ctx.results

    plan = services.catalog.resolve(payment.plan_reference, payment.product_reference)
    await _apply_payment_succeeded(
        ctx,
        user_id,
        payment_id,
        plan,
        declared_credits=payment.declared_credits,
        subscription_id=payment.subscription_id,
        subscription_row_id=subscription_row.get("id") if subscription_row else None,
        amount=payment.amount_minor,
        currency=payment.currency_code,
        payment_method=payment.payment_method,
        extra_metadata={"productId": payment.product_reference},
    )
    return "payment", ctx.results


async def _handle_payment_failed(ctx: CreemHandlerContext) -> HandlerResult:
    payment: PaymentPayload = ctx.event.view
    if not payment.subscription_id:
        return _missing(ctx, "subscription id")

    subscription_row = await ctx.step(
        "subscription_lookup", ctx.services.subscriptions.find, payment.subscription_id, critical=True,
    )
    if not subscription_row:
        return _missing(ctx, "subscription record")

    payment_id = payment.payment_id or ctx.event.event_id
    if not payment_id:
        return _missing(ctx, "payment id")

    recorded = await ctx.step(
        "payment",
        ctx.services.payments.record_payment,
        payment_id,
        subscription_row.get("user_id"),
        FAILED,
        payment.amount_minor,
        payment.currency_code,
        subscription_row.get("id"),
        payment.payment_method,
        critical=True,
    )
    ctx.results["payment"] = {"success": True, "action": recorded["action"], "payment_id": payment_id}
    return "payment_failed", ctx.results


async def _handle_refund_created(ctx: CreemHandlerContext) -> HandlerResult:
    refund: RefundPayload = ctx.event.view
    if not refund.payment_id:
        return _missing(ctx, "payment id")

    result = await ctx.step(
        "refund",
        ctx.services.payments.apply_refund,
        refund.payment_id,
        refund.is_partial,
        refund.amount_minor,
        critical=True,
    )
    if result is None:
        ctx.results["refund"] = {
            "success": False,
            "kind": ErrorKind.MISSING_REFERENCED_ENTITY.value,
            "payment_id": refund.payment_id,
        }
    else:
        ctx.results["refund"] = {
            "success": True,
            "action": result["action"],
            "status": result["payment"].get("status"),
        }
    return "refund", ctx.results


async def _handle_dispute_created(ctx: CreemHandlerContext) -> HandlerResult:
    dispute: DisputePayload = ctx.event.view
    if not dispute.payment_id:
        return _missing(ctx, "payment id")

    result = await ctx.step(
        "dispute",
        ctx.services.payments.record_dispute,
        dispute.id,
        dispute.payment_id,
        dispute.amount_minor,
        dispute.reason,
        dispute.status,
        critical=True,
    )
    ctx.results["dispute"] = {"success": True, "action": result["action"], "dispute_id": dispute.id}
    return "dispute", ctx.results


async def _handle_unhandled_event(_: CreemHandlerContext) -> HandlerResult:
    return None, {}


HANDLER_MAP: Dict[str, HandlerFunc] = {
    "subscription.active": _handle_subscription_active,
    "subscription.paid": _handle_subscription_paid,
    "subscription.update": _handle_subscription_update,
    "subscription.canceled": _handle_subscription_canceled,
    "subscription.cancelled": _handle_subscription_canceled,
    "subscription.expired": _handle_subscription_expired,
    "subscription.trialing": _handle_subscription_trialing,
    "subscription.paused": _handle_subscription_paused,
    "checkout.completed": _handle_checkout_completed,
    "payment.succeeded": _handle_payment_succeeded,
    "payment.failed": _handle_payment_failed,
    "refund.created": _handle_refund_created,
    "dispute.created": _handle_dispute_created,
}


def resolve_handler(event_type: str) -> HandlerFunc:
    return HANDLER_MAP.get((event_type or "").strip(), _handle_unhandled_event)


def is_unhandled(handler: HandlerFunc) -> bool:
    return handler is _handle_unhandled_event
