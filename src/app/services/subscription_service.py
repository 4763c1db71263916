"""
구독 상태 머신

Creem 이벤트로만 상태가 바뀌며(로컬 추론 없음), 구독 행은 삭제하지 않는다.
canceled / expired 는 종료 상태로 이력을 위해 유지한다.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from core.base_service import BaseService
from core.interfaces import IDatabaseHelper
from core.plan_catalog import PlanDefinition
from services.schema_probe import SchemaProbe

TRIALING = "trialing"
ACTIVE = "active"
PAUSED = "paused"
CANCELED = "canceled"
EXPIRED = "expired"

SUBSCRIPTION_STATES = (TRIALING, ACTIVE, PAUSED, CANCELED, EXPIRED)
TERMINAL_STATES = frozenset({CANCELED, EXPIRED})

# 현재 상태 -> 허용되는 다음 상태
ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    TRIALING: frozenset({TRIALING, ACTIVE, PAUSED, CANCELED, EXPIRED}),
    ACTIVE: frozenset({ACTIVE, PAUSED, CANCELED, EXPIRED}),
    PAUSED: frozenset({PAUSED, ACTIVE, CANCELED, EXPIRED}),
    CANCELED: frozenset({CANCELED, EXPIRED}),
    EXPIRED: frozenset({EXPIRED}),
}

DEFAULT_PLAN_TYPE = "basic"


def normalize_status(status: Optional[str]) -> Optional[str]:
    if not status:
        return None
    value = str(status).strip().lower()
    return CANCELED if value == "cancelled" else value


def can_transition(current: Optional[str], target: str) -> bool:
    current = normalize_status(current)
    if not current:
        return True
    allowed = ALLOWED_TRANSITIONS.get(current)
    if allowed is None:
        # past_due 등 정의 밖 상태에서는 종료 상태가 아닌 한 허용
        return True
    if target not in SUBSCRIPTION_STATES:
        return current not in TERMINAL_STATES
    return target in allowed


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class SubscriptionStateMachine(BaseService):
    def __init__(self, db_helper: IDatabaseHelper, schema_probe: SchemaProbe):
        super().__init__(db_helper)
        self.schema_probe = schema_probe

    async def find(self, subscription_id: str) -> Optional[Dict[str, Any]]:
        column = await self.schema_probe.resolve_column()
        return await self.db_helper.find_subscription(column, subscription_id)

    async def upsert(
        self,
        user_id: str,
        subscription_id: str,
        status: str,
        plan: Optional[PlanDefinition] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """구독 생성/갱신 + 사용자 표시 필드 동기화"""
        status = normalize_status(status) or ACTIVE
        column = await self.schema_probe.resolve_column()
        existing = await self.db_helper.find_subscription(column, subscription_id)

        fields: Dict[str, Any] = {"user_id": user_id}
        if period_start:
            fields["current_period_start"] = _iso(period_start)
        if period_end:
            fields["current_period_end"] = _iso(period_end)
        if plan:
            fields["plan_type"] = plan.group_id or plan.id

        if existing:
            current_status = existing.get("plan_status")
            if can_transition(current_status, status):
                fields["plan_status"] = status
                applied_status = status
            else:
                self.logger.warning(
                    "[SUBSCRIPTION] ignoring %s -> %s for %s",
                    current_status, status, subscription_id,
                )
                applied_status = normalize_status(current_status)
            row = await self.db_helper.update_subscription(existing["id"], fields) or {**existing, **fields}
            action = "updated"
        else:
            fields.setdefault("plan_type", DEFAULT_PLAN_TYPE)
            fields["plan_status"] = status
            fields[column] = subscription_id
            row = await self.db_helper.insert_subscription(fields)
            applied_status = status
            action = "created"

        self.logger.info("[SUBSCRIPTION] %s %s for user %s status=%s", action, subscription_id, user_id, applied_status)

        user_fields: Dict[str, Any] = {"subscription_status": applied_status}
        if plan:
            user_fields["subscription_plan"] = plan.group_id or plan.id
        elif action == "created":
            user_fields["subscription_plan"] = DEFAULT_PLAN_TYPE
        end_date = period_end or self._parse_stored(row.get("current_period_end"))
        if end_date:
            user_fields["subscription_end_date"] = _iso(end_date)
        user_synced = await self._sync_user(user_id, user_fields)

        return {
            "action": action,
            "status": applied_status,
            "subscription": row,
            "user_synced": user_synced,
        }

    async def transition(
        self,
        subscription_id: str,
        status: Optional[str],
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> Optional[Dict[str, Any]]:
        """기존 구독 상태 변경. 구독 행이 없으면 None (no-op), status 가 없으면 기간만 갱신"""
        status = normalize_status(status)

        existing = await self.find(subscription_id)
        if not existing:
            self.logger.warning("[SUBSCRIPTION] %s not found for %s event, skipping", subscription_id, status)
            return None

        current_status = normalize_status(existing.get("plan_status"))
        if status and not can_transition(current_status, status):
            self.logger.warning(
                "[SUBSCRIPTION] ignoring %s -> %s for %s",
                current_status, status, subscription_id,
            )
            return {"action": "ignored", "status": current_status, "subscription": existing}

        fields: Dict[str, Any] = {}
        if status:
            fields["plan_status"] = status
        if period_start:
            fields["current_period_start"] = _iso(period_start)
        if period_end:
            fields["current_period_end"] = _iso(period_end)
        if not fields:
            return {"action": "unchanged", "status": current_status, "subscription": existing}
        row = await self.db_helper.update_subscription(existing["id"], fields) or {**existing, **fields}

        status = status or current_status
        user_fields: Dict[str, Any] = {"subscription_status": status}
        if status in TERMINAL_STATES:
            # 마지막으로 알려진 기간 종료일, 없으면 현재 시각
            last_period_end = self._parse_stored(row.get("current_period_end")) or datetime.now(timezone.utc)
            user_fields["subscription_end_date"] = _iso(last_period_end)
        elif period_end:
            user_fields["subscription_end_date"] = _iso(period_end)

        user_id = existing.get("user_id")
        user_synced = await self._sync_user(user_id, user_fields) if user_id else False
        self.logger.info("[SUBSCRIPTION] %s -> %s (%s)", subscription_id, status, user_id)

        return {
            "action": "updated",
            "status": status,
            "subscription": row,
            "user_synced": user_synced,
        }

    async def _sync_user(self, user_id: str, fields: Dict[str, Any]) -> bool:
        """사용자 표시용 구독 필드 갱신 (부가 작업, 실패해도 계속)"""
        try:
            await self.db_helper.update_user(user_id, fields)
            return True
        except Exception as e:
            self.logger.error(f"[SUBSCRIPTION] user field sync failed for {user_id}: {e}")
            return False

    @staticmethod
    def _parse_stored(value: Any) -> Optional[datetime]:
        if isinstance(value, datetime):
            return value
        if isinstance(value, str) and value:
            try:
                return datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                return None
        return None
