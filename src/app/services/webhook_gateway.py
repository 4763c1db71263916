"""
Creem webhook gateway

검증 -> 파싱/정규화 -> 핸들러 디스패치 -> 감사 기록 순서로 처리하고
HTTP 응답(상태 코드 + 본문)을 결정한다.
"""
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from core.errors import ErrorKind, MalformedEventError, WebhookError, policy_for
from core.interfaces import IDatabaseHelper
from schemas.creem import WebhookEvent, normalize_envelope
from services.webhook_handlers import CreemHandlerContext, WebhookServices, is_unhandled, resolve_handler

logger = logging.getLogger(__name__)

STATUS_PROCESSED = "processed"
STATUS_REPLAYED = "replayed"
STATUS_IGNORED = "ignored"
STATUS_FAILED = "failed"


@dataclass
class WebhookOutcome:
    status_code: int
    body: Dict[str, Any]
    event_type: Optional[str] = None
    event_id: Optional[str] = None
    status: Optional[str] = None
    results: Dict[str, Any] = field(default_factory=dict)


def compute_signature(secret: str, raw: bytes, timestamp: Optional[str] = None) -> str:
    """hex(HMAC_SHA256(secret, body)), 타임스탬프가 있으면 "{ts}.{body}" 기준"""
    message = raw
    if timestamp:
        message = f"{timestamp}.".encode("utf-8") + raw
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class WebhookGateway:
    def __init__(self, services: WebhookServices, secret: Optional[str], db_helper: IDatabaseHelper):
        self.services = services
        self.secret = (secret or "").strip()
        self.db_helper = db_helper

    def verify_signature(self, raw: bytes, signature: Optional[str], timestamp: Optional[str] = None) -> bool:
        """서명 검증. 시크릿이나 서명이 없으면 실패"""
        if not self.secret:
            logger.warning("[CREEM] webhook secret not configured, rejecting")
            return False
        if not signature:
            logger.warning("[CREEM] missing webhook signature header")
            return False

        expected = compute_signature(self.secret, raw, timestamp)
        return hmac.compare_digest(expected, signature.strip().lower())

    @staticmethod
    def parse(raw: bytes) -> WebhookEvent:
        try:
            body = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedEventError(f"webhook body is not valid JSON: {e}") from e
        return normalize_envelope(body)

    async def handle(
        self,
        raw: bytes,
        signature: Optional[str],
        timestamp: Optional[str] = None,
    ) -> WebhookOutcome:
        logger.info("[CREEM] webhook received: len=%s, has_signature=%s", len(raw), bool(signature))

        if not self.verify_signature(raw, signature, timestamp):
            logger.warning("[CREEM] invalid webhook signature")
            return WebhookOutcome(
                policy_for(ErrorKind.SIGNATURE_INVALID).status_code,
                {"error": "Invalid webhook signature"},
                status=STATUS_FAILED,
            )

        try:
            event = self.parse(raw)
        except MalformedEventError as e:
            logger.error("[CREEM] malformed webhook payload: %s", e)
            return WebhookOutcome(e.policy.status_code, {"error": "Malformed webhook payload"}, status=STATUS_FAILED)

        return await self.dispatch(event)

    async def dispatch(self, event: WebhookEvent, replay_reason: Optional[str] = None) -> WebhookOutcome:
        """정규화된 이벤트를 핸들러 하나로 전달"""
        handler = resolve_handler(event.event_type)
        if is_unhandled(handler):
            logger.info("[CREEM] unhandled event type %s (id=%s), acknowledged", event.event_type, event.event_id)
            await self._audit(event, STATUS_IGNORED, None, {}, replay_reason)
            return WebhookOutcome(
                200, {"received": True},
                event_type=event.event_type, event_id=event.event_id, status=STATUS_IGNORED,
            )

        ctx = CreemHandlerContext(event=event, services=self.services)
        logger.info("[CREEM] processing %s (id=%s)", event.event_type, event.event_id)
        try:
            category, results = await handler(ctx)
        except Exception as e:
            kind = e.kind if isinstance(e, WebhookError) else ErrorKind.UNEXPECTED_STORE_ERROR
            logger.exception("[CREEM] %s processing failed (%s): %s", event.event_type, kind.value, e)
            ctx.results["error"] = {"kind": kind.value, "message": str(e)}
            await self._audit(event, STATUS_FAILED, None, ctx.results, replay_reason)
            return WebhookOutcome(
                500, {"error": "Webhook processing failed"},
                event_type=event.event_type, event_id=event.event_id,
                status=STATUS_FAILED, results=ctx.results,
            )

        status = STATUS_REPLAYED if replay_reason else STATUS_PROCESSED
        await self._audit(event, status, category, results, replay_reason)
        logger.info("[CREEM] %s handled as %s", event.event_type, category)
        return WebhookOutcome(
            200, {"received": True},
            event_type=event.event_type, event_id=event.event_id, status=status, results=results,
        )

    async def replay(self, event_id: str, reason: Optional[str] = None) -> Optional[WebhookOutcome]:
        """감사 기록의 원본 엔벨로프를 서명 검증 없이 재처리. 기록이 없으면 None"""
        record = await self.db_helper.get_webhook_event(event_id)
        if not record:
            return None

        event_data = record.get("event_data") or {}
        payload = event_data.get("payload") or {}
        envelope = payload.get("raw_envelope")
        if not isinstance(envelope, dict):
            raise MalformedEventError(f"no raw envelope stored for webhook event {event_id}")

        event = normalize_envelope(envelope)
        logger.info("[CREEM] replaying %s (%s): %s", event_id, event.event_type, reason)
        return await self.dispatch(event, replay_reason=reason or "manual replay")

    async def _audit(
        self,
        event: WebhookEvent,
        status: str,
        category: Optional[str],
        results: Dict[str, Any],
        replay_reason: Optional[str],
    ) -> bool:
        if not event.event_id:
            logger.warning("[CREEM] %s has no event id; audit skipped", event.event_type)
            return False

        payload: Dict[str, Any] = {
            "event_type": event.event_type,
            "event_category": category,
            "results": results,
            "raw_envelope": event.raw,
        }
        if replay_reason:
            payload["replay_reason"] = replay_reason
        try:
            return await self.db_helper.record_webhook_event(event.event_id, status, payload)
        except Exception as e:
            logger.error(f"[CREEM] webhook audit failed for {event.event_id}: {e}")
            return False
