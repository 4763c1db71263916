"""
credit_transactions 기반 중복 지급 확인
"""
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence

from core.base_service import BaseService
from core.interfaces import IDatabaseHelper


def ledger_dedup_key(reason: str, key_value: str) -> str:
    """원장 유니크 키 (user_id, reason, dedupKey) 구성"""
    return f"{reason}:{key_value}"


class DuplicateDetector(BaseService):
    """이미 적용된 경제적 효과인지 확인 (check-then-act, 원장 유니크 제약이 최종 방어선)"""

    def __init__(
        self,
        db_helper: IDatabaseHelper,
        flex_window: timedelta = timedelta(hours=24),
        clock: Optional[Callable[[], datetime]] = None,
    ):
        super().__init__(db_helper)
        self.flex_window = flex_window
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def already_applied(
        self,
        user_id: str,
        reason: str,
        key_field: str,
        key_value: Optional[str],
        within: Optional[timedelta] = None,
    ) -> bool:
        """metadata[key_field] == key_value 인 거래 존재 여부. within 이 없으면 기간 제한 없음"""
        if not key_value:
            return False

        since = self._clock() - within if within else None
        existing = await self.db_helper.find_credit_transaction(
            user_id,
            reason,
            {key_field: key_value},
            since=since,
        )
        if existing:
            self.logger.info(
                "[DEDUP] duplicate detected: user=%s reason=%s %s=%s tx=%s",
                user_id, reason, key_field, key_value, existing.get("id"),
            )
            return True
        return False

    async def any_applied(
        self,
        user_id: str,
        reasons: Sequence[str],
        key_field: str,
        key_value: Optional[str],
    ) -> bool:
        """여러 reason 중 하나라도 같은 키로 적용됐는지 (기간 제한 없음)"""
        for reason in reasons:
            if await self.already_applied(user_id, reason, key_field, key_value):
                return True
        return False

    async def flex_payment_applied(self, user_id: str, reason: str, payment_id: Optional[str]) -> bool:
        """단건 구매 크레딧: paymentId 기준, 설정된 기간 내에서만 확인"""
        return await self.already_applied(user_id, reason, "paymentId", payment_id, within=self.flex_window)

    async def subscription_applied(self, user_id: str, reason: str, subscription_id: Optional[str]) -> bool:
        """구독 크레딧: 구독 ID는 수명 내내 재사용되므로 기간 제한 없음"""
        return await self.already_applied(user_id, reason, "subscriptionId", subscription_id)
