"""
결제/환불/분쟁 레코드 관리

payments.creem_payment_id 는 유니크 제약으로 보호되며, 상태는 앞으로만 이동한다.
failed < succeeded < partially_refunded < refunded
"""
from typing import Any, Dict, Optional

from core.base_service import BaseService
from core.errors import StoreError, is_unique_violation
from core.interfaces import IDatabaseHelper

FAILED = "failed"
SUCCEEDED = "succeeded"
PARTIALLY_REFUNDED = "partially_refunded"
REFUNDED = "refunded"

PAYMENT_STATUS_RANK: Dict[str, int] = {
    FAILED: 0,
    SUCCEEDED: 1,
    PARTIALLY_REFUNDED: 2,
    REFUNDED: 3,
}


def _rank(status: Optional[str]) -> int:
    return PAYMENT_STATUS_RANK.get((status or "").lower(), -1)


class PaymentService(BaseService):
    def __init__(self, db_helper: IDatabaseHelper):
        super().__init__(db_helper)

    async def record_payment(
        self,
        external_payment_id: str,
        user_id: Optional[str],
        status: str,
        amount: Optional[int] = None,
        currency: str = "USD",
        subscription_row_id: Any = None,
        payment_method: Optional[str] = None,
    ) -> Dict[str, Any]:
        """외부 결제 ID 기준 upsert"""
        if not external_payment_id:
            raise ValueError("external payment id is required")

        existing = await self.db_helper.get_payment(external_payment_id)
        if existing is None:
            row = {
                "creem_payment_id": external_payment_id,
                "user_id": user_id,
                "subscription_id": subscription_row_id,
                "amount": amount if amount is not None else 0,
                "currency": (currency or "USD").upper(),
                "status": status,
                "payment_method": payment_method,
            }
            try:
                created = await self.db_helper.insert_payment(row)
                self.logger.info("[PAYMENT] recorded %s payment %s for %s", status, external_payment_id, user_id)
                return {"action": "created", "payment": created}
            except StoreError as e:
                if not is_unique_violation(e):
                    raise
                # 동시 재전송으로 이미 생성됨
                existing = await self.db_helper.get_payment(external_payment_id)
                if existing is None:
                    raise

        return await self._advance(existing, status, {
            "user_id": existing.get("user_id") or user_id,
            "subscription_id": existing.get("subscription_id") or subscription_row_id,
        })

    async def apply_refund(
        self,
        external_payment_id: str,
        partial: bool,
        refund_amount: Optional[int] = None,
    ) -> Optional[Dict[str, Any]]:
        """결제를 환불 상태로 변경. 결제 레코드가 없으면 None"""
        existing = await self.db_helper.get_payment(external_payment_id)
        if existing is None:
            self.logger.warning("[PAYMENT] refund for unknown payment %s", external_payment_id)
            return None

        status = PARTIALLY_REFUNDED if partial else REFUNDED
        extra: Dict[str, Any] = {}
        if refund_amount is not None:
            extra["refund_amount"] = refund_amount
        return await self._advance(existing, status, extra)

    async def _advance(self, existing: Dict[str, Any], status: str, extra: Dict[str, Any]) -> Dict[str, Any]:
        external_payment_id = existing.get("creem_payment_id")
        current = existing.get("status")
        if _rank(status) < _rank(current):
            self.logger.info(
                "[PAYMENT] keeping %s for %s (incoming %s)", current, external_payment_id, status,
            )
            return {"action": "unchanged", "payment": existing}

        fields = {key: value for key, value in extra.items() if value is not None and existing.get(key) != value}
        if status != current:
            fields["status"] = status
        if not fields:
            return {"action": "unchanged", "payment": existing}

        updated = await self.db_helper.update_payment(external_payment_id, fields) or {**existing, **fields}
        self.logger.info("[PAYMENT] %s: %s -> %s", external_payment_id, current, updated.get("status"))
        return {"action": "updated", "payment": updated}

    async def record_dispute(
        self,
        external_dispute_id: Optional[str],
        external_payment_id: str,
        amount: Optional[int],
        reason: Optional[str],
        status: Optional[str],
    ) -> Dict[str, Any]:
        """분쟁 로그 적재 (분쟁 ID당 1건)"""
        if external_dispute_id:
            existing = await self.db_helper.get_dispute(external_dispute_id)
            if existing:
                return {"action": "existing", "dispute": existing}

        row = {
            "creem_dispute_id": external_dispute_id,
            "creem_payment_id": external_payment_id,
            "amount": amount,
            "reason": reason,
            "status": status,
        }
        created = await self.db_helper.insert_dispute(row)
        self.logger.warning("[PAYMENT] dispute %s logged for payment %s", external_dispute_id, external_payment_id)
        return {"action": "created", "dispute": created}
