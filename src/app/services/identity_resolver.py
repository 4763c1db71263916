"""
결제 이메일 -> 내부 사용자 ID 해석

순서대로 시도하고 처음 일치하는 단계에서 종료한다.
1. 정확히 일치 (대소문자 구분)
2. 대소문자 무시 일치
3. user_email_aliases 별칭 테이블
4. 설정(EMAIL_REMAP)으로 주입되는 수동 매핑

모두 실패하면 unmatched_payment_emails 에 원본 이벤트와 함께 적재한다.
각 단계의 결과와 오류는 email_matching_logs 에 기록하며, 어떤 저장소 오류도 호출자에게 전파하지 않는다.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from core.base_service import BaseService
from core.interfaces import IDatabaseHelper


class MatchType(str, Enum):
    ERROR = "error"
    EXACT = "exact"
    CASE_INSENSITIVE_ERROR = "case_insensitive_error"
    CASE_INSENSITIVE = "case_insensitive"
    ALIAS_ERROR = "alias_error"
    ALIAS = "alias"
    STATIC_REMAP_ERROR = "static_remap_error"
    STATIC_REMAP = "static_remap"
    NONE = "none"


@dataclass(frozen=True)
class IdentityMatch:
    user_id: Optional[str]
    match_type: MatchType
    matched_email: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.user_id is not None


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


class IdentityResolver(BaseService):
    def __init__(self, db_helper: IDatabaseHelper, email_remap: Optional[Mapping[str, str]] = None):
        super().__init__(db_helper)
        self.email_remap: Dict[str, str] = {
            normalize_email(source): normalize_email(target)
            for source, target in (email_remap or {}).items()
            if source and target
        }

    async def resolve_user_by_email(
        self,
        email: Optional[str],
        event_type: Optional[str] = None,
        webhook_data: Any = None,
        unmatched_context: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """사용자 ID 반환. 실패 시 미매칭 큐에 적재하고 None"""
        match = await self.match_email(email, event_type=event_type, webhook_data=webhook_data)
        if match.matched:
            return match.user_id

        await self.park_unmatched(email, event_type, webhook_data, unmatched_context)
        return None

    async def match_email(
        self,
        email: Optional[str],
        event_type: Optional[str] = None,
        webhook_data: Any = None,
    ) -> IdentityMatch:
        """별칭/매핑 포함 전체 단계 매칭 (미매칭 큐 적재 없음)"""
        raw_email = (email or "").strip()
        normalized = normalize_email(email)

        async def log(match_type: MatchType, user_id: Optional[str] = None, matched_email: Optional[str] = None):
            # 로그 기록 실패가 매칭 결과를 바꾸지 않음
            try:
                await self.db_helper.log_email_matching({
                    "searched_email": raw_email,
                    "match_type": match_type.value,
                    "matched_user_id": user_id,
                    "matched_email": matched_email,
                    "webhook_event_type": event_type,
                    "webhook_data": webhook_data,
                })
            except Exception as e:
                self.logger.warning(f"[IDENTITY] match log write failed for {raw_email} ({match_type.value}): {e}")

        if not raw_email:
            self.logger.warning("[IDENTITY] no email in %s payload", event_type)
            await log(MatchType.NONE)
            return IdentityMatch(None, MatchType.NONE)

        # 1. 정확히 일치
        try:
            user = await self.db_helper.find_user_by_email(raw_email)
            if user:
                self.logger.info("[IDENTITY] exact match for %s -> %s", raw_email, user.get("id"))
                await log(MatchType.EXACT, user.get("id"), user.get("email"))
                return IdentityMatch(user.get("id"), MatchType.EXACT, user.get("email"))
        except Exception as e:
            self.logger.error(f"[IDENTITY] exact lookup failed for {raw_email}: {e}")
            await log(MatchType.ERROR)

        # 2. 대소문자 무시
        try:
            user = await self.db_helper.find_user_by_email_insensitive(normalized)
            if user:
                self.logger.info("[IDENTITY] case-insensitive match for %s -> %s", raw_email, user.get("id"))
                await log(MatchType.CASE_INSENSITIVE, user.get("id"), user.get("email"))
                return IdentityMatch(user.get("id"), MatchType.CASE_INSENSITIVE, user.get("email"))
        except Exception as e:
            self.logger.error(f"[IDENTITY] case-insensitive lookup failed for {raw_email}: {e}")
            await log(MatchType.CASE_INSENSITIVE_ERROR)

        # 3. 별칭
        try:
            alias = await self.db_helper.find_alias(normalized)
            if alias and alias.get("user_id"):
                user_id = alias["user_id"]
                self.logger.info("[IDENTITY] alias match for %s -> %s", raw_email, user_id)
                await log(MatchType.ALIAS, user_id, alias.get("alias_email"))
                return IdentityMatch(user_id, MatchType.ALIAS, alias.get("alias_email"))
        except Exception as e:
            self.logger.error(f"[IDENTITY] alias lookup failed for {raw_email}: {e}")
            await log(MatchType.ALIAS_ERROR)

        # 4. 수동 매핑
        target = self.email_remap.get(normalized)
        if target:
            try:
                user = await self.db_helper.find_user_by_email_insensitive(target)
                if user:
                    self.logger.info("[IDENTITY] static remap %s -> %s (%s)", raw_email, target, user.get("id"))
                    await log(MatchType.STATIC_REMAP, user.get("id"), user.get("email"))
                    return IdentityMatch(user.get("id"), MatchType.STATIC_REMAP, user.get("email"))
            except Exception as e:
                self.logger.error(f"[IDENTITY] static remap lookup failed for {raw_email}: {e}")
                await log(MatchType.STATIC_REMAP_ERROR)

        self.logger.warning("[IDENTITY] no user found for %s", raw_email)
        await log(MatchType.NONE)
        return IdentityMatch(None, MatchType.NONE)

    async def park_unmatched(
        self,
        email: Optional[str],
        event_type: Optional[str],
        webhook_data: Any,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """수동 처리 대기열 적재"""
        row: Dict[str, Any] = {
            "email": normalize_email(email) or None,
            "webhook_data": webhook_data,
            "event_type": event_type,
            "status": "pending",
        }
        for key, value in (context or {}).items():
            if value is not None:
                row[key] = value
        try:
            await self.db_helper.insert_unmatched_email(row)
            self.logger.warning("[IDENTITY] parked unmatched email %s (%s)", row["email"], event_type)
            return True
        except Exception as e:
            self.logger.error(f"[IDENTITY] failed to park unmatched email {row['email']}: {e}")
            return False
