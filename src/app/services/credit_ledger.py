"""
크레딧 원장 서비스

모든 잔액 변경은 Supabase의 트랜잭션 함수(RPC)로 처리하고, 각 호출은
credit_transactions 에 불변 로그를 남긴다. 반환값은 변경 직후의 잔액 스냅샷.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from core.base_service import BaseService
from core.errors import (
    InsufficientBalanceError,
    StoreError,
    is_insufficient_balance,
    is_undefined_function,
    is_unique_violation,
)
from core.interfaces import IDatabaseHelper

CREDIT_FUNCTION = "credit_user_credits_transaction"
DEBIT_FUNCTION = "debit_user_credits_transaction"
REFUND_FUNCTION = "refund_user_credits"
RESET_FUNCTION = "reset_subscription_credits_for_period"

SUBSCRIPTION_BUCKET = "subscription"
FLEX_BUCKET = "flex"
BUCKETS = (SUBSCRIPTION_BUCKET, FLEX_BUCKET)


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class CreditSnapshot:
    balance: int
    total: int
    spent: int
    subscription_balance: Optional[int] = None
    flex_balance: Optional[int] = None
    # 동일 dedupKey 거래가 이미 존재해 이번 호출은 적용되지 않음
    already_applied: bool = False

    @classmethod
    def from_row(cls, row: Optional[Dict[str, Any]], already_applied: bool = False) -> "CreditSnapshot":
        row = row or {}
        subscription_balance = row.get("subscription_credits_balance")
        flex_balance = row.get("flex_credits_balance")
        return cls(
            balance=_as_int(row.get("credits_balance")),
            total=_as_int(row.get("credits_total")),
            spent=_as_int(row.get("credits_spent")),
            subscription_balance=_as_int(subscription_balance) if subscription_balance is not None else None,
            flex_balance=_as_int(flex_balance) if flex_balance is not None else None,
            already_applied=already_applied,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "balance": self.balance,
            "total": self.total,
            "spent": self.spent,
            "subscription_balance": self.subscription_balance,
            "flex_balance": self.flex_balance,
            "already_applied": self.already_applied,
        }


def _require_positive(amount: int) -> int:
    try:
        value = int(amount)
    except (TypeError, ValueError):
        raise ValueError(f"credit amount must be an integer, got {amount!r}")
    if value <= 0:
        raise ValueError(f"credit amount must be positive, got {value}")
    return value


class CreditLedger(BaseService):
    """credit / debit / refund / 구독 기간 리셋"""

    def __init__(self, db_helper: IDatabaseHelper):
        super().__init__(db_helper)

    async def snapshot(self, user_id: str) -> CreditSnapshot:
        user = await self.db_helper.get_user(user_id)
        return CreditSnapshot.from_row(user)

    async def _result_snapshot(self, user_id: str, data: Any) -> CreditSnapshot:
        row = data[0] if isinstance(data, list) and data else data
        if isinstance(row, dict) and "credits_balance" in row:
            return CreditSnapshot.from_row(row)
        return await self.snapshot(user_id)

    async def _already_applied(self, user_id: str, operation: str, dedup_key: Optional[str]) -> CreditSnapshot:
        self.logger.info("[LEDGER] %s for %s already applied (dedupKey=%s)", operation, user_id, dedup_key)
        current = await self.snapshot(user_id)
        return CreditSnapshot(
            balance=current.balance,
            total=current.total,
            spent=current.spent,
            subscription_balance=current.subscription_balance,
            flex_balance=current.flex_balance,
            already_applied=True,
        )

    async def credit(
        self,
        user_id: str,
        amount: int,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
        bucket: str = FLEX_BUCKET,
        dedup_key: Optional[str] = None,
    ) -> CreditSnapshot:
        """잔액/누적 지급량 증가 + 거래 로그"""
        amount = _require_positive(amount)
        if bucket not in BUCKETS:
            raise ValueError(f"unknown credit bucket: {bucket}")

        tx_metadata = dict(metadata or {})
        if dedup_key:
            tx_metadata["dedupKey"] = dedup_key

        params = {
            "p_user_id": user_id,
            "p_amount": amount,
            "p_reason": reason,
            "p_metadata": tx_metadata,
            "p_bucket": bucket,
        }
        try:
            try:
                data = await self.db_helper.rpc(CREDIT_FUNCTION, params)
            except StoreError as e:
                if not is_undefined_function(e):
                    raise
                # 버킷 파라미터가 없는 구버전 함수
                self.logger.warning("[LEDGER] %s without p_bucket, retrying legacy signature", CREDIT_FUNCTION)
                legacy_params = {key: value for key, value in params.items() if key != "p_bucket"}
                legacy_params["p_metadata"] = {**tx_metadata, "bucket": bucket}
                data = await self.db_helper.rpc(CREDIT_FUNCTION, legacy_params)
        except StoreError as e:
            if is_unique_violation(e):
                return await self._already_applied(user_id, reason, dedup_key)
            raise

        snapshot = await self._result_snapshot(user_id, data)
        self.logger.info(
            "[LEDGER] credited %s to %s (%s/%s) balance=%s",
            amount, user_id, reason, bucket, snapshot.balance,
        )
        return snapshot

    async def debit(
        self,
        user_id: str,
        amount: int,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CreditSnapshot:
        """잔액 감소/사용량 증가. 잔액 부족 시 InsufficientBalanceError"""
        amount = _require_positive(amount)
        params = {
            "p_user_id": user_id,
            "p_amount": amount,
            "p_reason": reason,
            "p_metadata": dict(metadata or {}),
        }
        try:
            data = await self.db_helper.rpc(DEBIT_FUNCTION, params)
        except StoreError as e:
            if is_insufficient_balance(e):
                balance = None
                try:
                    balance = (await self.snapshot(user_id)).balance
                except StoreError as lookup_error:
                    self.logger.warning(f"[LEDGER] balance lookup after insufficient debit failed: {lookup_error}")
                raise InsufficientBalanceError(user_id, amount, balance) from e
            raise

        snapshot = await self._result_snapshot(user_id, data)
        self.logger.info("[LEDGER] debited %s from %s (%s) balance=%s", amount, user_id, reason, snapshot.balance)
        return snapshot

    async def refund(
        self,
        user_id: str,
        amount: int,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CreditSnapshot:
        """이전 차감 되돌리기 (누적 지급량은 변하지 않음)"""
        amount = _require_positive(amount)
        params = {
            "p_user_id": user_id,
            "p_amount": amount,
            "p_reason": reason,
            "p_metadata": dict(metadata or {}),
        }
        data = await self.db_helper.rpc(REFUND_FUNCTION, params)
        snapshot = await self._result_snapshot(user_id, data)
        self.logger.info("[LEDGER] refunded %s to %s (%s) balance=%s", amount, user_id, reason, snapshot.balance)
        return snapshot

    async def reset_subscription_period(
        self,
        user_id: str,
        period_credits: int,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
        dedup_key: Optional[str] = None,
    ) -> CreditSnapshot:
        """subscription 버킷을 기간 지급량으로 교체 (flex 버킷은 유지)"""
        period_credits = _require_positive(period_credits)
        tx_metadata = dict(metadata or {})
        if dedup_key:
            tx_metadata["dedupKey"] = dedup_key

        params = {
            "p_user_id": user_id,
            "p_period_credits": period_credits,
            "p_reason": reason,
            "p_metadata": tx_metadata,
        }
        try:
            data = await self.db_helper.rpc(RESET_FUNCTION, params)
        except StoreError as e:
            if is_unique_violation(e):
                return await self._already_applied(user_id, reason, dedup_key)
            raise

        snapshot = await self._result_snapshot(user_id, data)
        self.logger.info(
            "[LEDGER] reset subscription bucket of %s to %s (%s) balance=%s",
            user_id, period_credits, reason, snapshot.balance,
        )
        return snapshot
