"""
관리자 정산 서비스

미매칭 결제 이메일 처리, 이메일 별칭 관리, 매칭 로그 조회,
결제 상태 확인, 수동 크레딧 조정을 담당한다.
"""
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from core.base_service import BaseService
from core.interfaces import IDatabaseHelper
from core.responses import ConflictException, NotFoundException, ValidationException
from services.credit_ledger import FLEX_BUCKET, CreditLedger, CreditSnapshot
from services.identity_resolver import normalize_email

REASON_ADMIN_ADJUSTMENT = "admin_adjustment"
REASON_ADMIN_REFUND = "admin_refund"
ADMIN_SOURCE = "admin"

UNMATCHED_RESOLVED = "resolved"
UNMATCHED_IGNORED = "ignored"
ALIAS_ACTIVE = "active"
ALIAS_INACTIVE = "inactive"

MATCHING_STATS_WINDOW = timedelta(days=7)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationService(BaseService):
    def __init__(self, db_helper: IDatabaseHelper, ledger: CreditLedger):
        super().__init__(db_helper)
        self.ledger = ledger

    async def _require_user(self, user_id: str) -> Dict[str, Any]:
        user = await self.db_helper.get_user(user_id)
        if not user:
            raise NotFoundException(f"사용자를 찾을 수 없습니다: {user_id}")
        return user

    # 미매칭 이메일 큐
    async def list_unmatched(self, status: Optional[str] = "pending", limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        return await self.db_helper.list_unmatched_emails(status=status, limit=limit, offset=offset)

    async def resolve_unmatched(
        self,
        entry_id: str,
        action: str,
        user_id: Optional[str] = None,
        notes: Optional[str] = None,
        create_alias: bool = False,
        actor_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """미매칭 항목을 resolved / ignored 로 표시 (resolve 시 별칭 생성 가능)"""
        entry = await self.db_helper.get_unmatched_email(entry_id)
        if not entry:
            raise NotFoundException("미매칭 항목을 찾을 수 없습니다")

        fields: Dict[str, Any] = {"resolved_at": _utcnow().isoformat()}
        if notes:
            fields["notes"] = notes

        alias = None
        if action == "resolve":
            if not user_id:
                raise ValidationException("resolve 처리에는 user_id 가 필요합니다")
            await self._require_user(user_id)
            fields["status"] = UNMATCHED_RESOLVED
            fields["resolved_user_id"] = user_id
            if create_alias and entry.get("email"):
                existing = await self.db_helper.find_alias(normalize_email(entry["email"]))
                if existing:
                    alias = existing
                else:
                    alias = await self.create_alias(user_id, entry["email"], notes=notes, created_by=actor_id)
        elif action == "ignore":
            fields["status"] = UNMATCHED_IGNORED
        else:
            raise ValidationException(f"지원하지 않는 action 입니다: {action}")

        updated = await self.db_helper.update_unmatched_email(entry_id, fields) or {**entry, **fields}
        self.logger.info("[RECONCILE] unmatched %s marked %s (user=%s)", entry_id, fields["status"], user_id)
        await self.record_event("admin_unmatched_resolved", {
            "entry_id": entry_id,
            "action": action,
            "actor_id": actor_id,
            "alias_id": alias.get("id") if alias else None,
        }, user_id=user_id)
        return {"entry": updated, "alias": alias}

    # 이메일 별칭
    async def list_aliases(self, user_id: Optional[str] = None, status: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self.db_helper.list_email_aliases(user_id=user_id, status=status)

    async def create_alias(
        self,
        user_id: str,
        alias_email: str,
        notes: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        normalized = normalize_email(alias_email)
        if not normalized:
            raise ValidationException("별칭 이메일이 비어 있습니다")

        await self._require_user(user_id)
        if await self.db_helper.find_alias(normalized):
            raise ConflictException(f"이미 등록된 별칭입니다: {normalized}", "ALIAS_EXISTS")

        row = {
            "user_id": user_id,
            "alias_email": normalized,
            "status": ALIAS_ACTIVE,
            "notes": notes,
            "created_by": created_by,
        }
        created = await self.db_helper.insert_email_alias({k: v for k, v in row.items() if v is not None})
        self.logger.info("[RECONCILE] alias %s -> %s created", normalized, user_id)
        return created

    async def update_alias(self, alias_id: str, status: Optional[str] = None, notes: Optional[str] = None) -> Dict[str, Any]:
        alias = await self.db_helper.get_email_alias(alias_id)
        if not alias:
            raise NotFoundException("별칭을 찾을 수 없습니다")

        fields: Dict[str, Any] = {}
        if status:
            if status not in (ALIAS_ACTIVE, ALIAS_INACTIVE):
                raise ValidationException(f"지원하지 않는 상태입니다: {status}")
            fields["status"] = status
        if notes is not None:
            fields["notes"] = notes
        if not fields:
            return alias
        return await self.db_helper.update_email_alias(alias_id, fields) or {**alias, **fields}

    async def deactivate_alias(self, alias_id: str) -> Dict[str, Any]:
        """소프트 삭제"""
        return await self.update_alias(alias_id, status=ALIAS_INACTIVE)

    # 매칭 로그
    async def matching_logs(
        self,
        email: Optional[str] = None,
        match_type: Optional[str] = None,
        limit: int = 50,
    ) -> Dict[str, Any]:
        logs = await self.db_helper.list_email_matching_logs(email=email, match_type=match_type, limit=limit)
        recent = await self.db_helper.list_email_matching_logs(since=_utcnow() - MATCHING_STATS_WINDOW, limit=1000)
        stats = Counter(log.get("match_type") or "unknown" for log in recent)
        return {"logs": logs, "stats": dict(stats)}

    # 결제 상태
    async def payment_status(self, payment_id: str) -> Dict[str, Any]:
        payment = await self.db_helper.get_payment(payment_id)
        transactions = await self.db_helper.list_credit_transactions({"paymentId": payment_id})
        if not payment and not transactions:
            raise NotFoundException(f"결제 기록을 찾을 수 없습니다: {payment_id}")
        return {
            "payment": payment,
            "credit_transactions": transactions,
            "credited": bool(transactions),
        }

    # 수동 크레딧 조정
    async def adjust_credits(
        self,
        user_id: str,
        direction: str,
        amount: int,
        note: Optional[str] = None,
        bucket: str = FLEX_BUCKET,
        actor_id: Optional[str] = None,
    ) -> CreditSnapshot:
        await self._require_user(user_id)
        metadata = {"source": ADMIN_SOURCE, "note": note, "actorId": actor_id}
        metadata = {key: value for key, value in metadata.items() if value is not None}

        if direction == "grant":
            snapshot = await self.ledger.credit(user_id, amount, REASON_ADMIN_ADJUSTMENT, metadata, bucket=bucket)
        elif direction == "deduct":
            snapshot = await self.ledger.debit(user_id, amount, REASON_ADMIN_ADJUSTMENT, metadata)
        elif direction == "refund":
            snapshot = await self.ledger.refund(user_id, amount, REASON_ADMIN_REFUND, metadata)
        else:
            raise ValidationException(f"지원하지 않는 조정 유형입니다: {direction}")

        await self.record_event("admin_credit_adjustment", {
            "direction": direction,
            "amount": amount,
            "note": note,
            "actor_id": actor_id,
            "balance": snapshot.balance,
        }, user_id=user_id)
        return snapshot
