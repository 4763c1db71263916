"""
구독 ID 컬럼 스키마 어댑터

배포 사이에 user_subscriptions 의 외부 구독 ID 컬럼명이 바뀌는 경우를 위해
설정값으로 고정하거나, 후보 컬럼을 한 번만 탐색해 인스턴스에 보관한다.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

from core.errors import SchemaConfigurationError, StoreError, is_missing_column_error
from core.interfaces import IDatabaseHelper

logger = logging.getLogger(__name__)

SUBSCRIPTIONS_TABLE = "user_subscriptions"
DEFAULT_SUBSCRIPTION_ID_CANDIDATES: Tuple[str, ...] = ("subscription_id", "creem_subscription_id")


@dataclass(frozen=True)
class SubscriptionSchema:
    """확정된 구독 테이블 형태"""
    table: str
    id_column: str


class SchemaProbe:
    def __init__(
        self,
        db_helper: IDatabaseHelper,
        table: str = SUBSCRIPTIONS_TABLE,
        candidates: Sequence[str] = DEFAULT_SUBSCRIPTION_ID_CANDIDATES,
        pinned_column: Optional[str] = None,
    ):
        if not candidates and not pinned_column:
            raise SchemaConfigurationError("no subscription id column candidates configured")
        self.db_helper = db_helper
        self.table = table
        self.candidates: Tuple[str, ...] = tuple(candidates)
        self._resolved: Dict[Tuple[str, ...], str] = {}
        self._lock = asyncio.Lock()
        if pinned_column:
            self._resolved[self.candidates] = pinned_column

    @property
    def resolved_column(self) -> Optional[str]:
        return self._resolved.get(self.candidates)

    async def resolve_column(self, candidates: Optional[Sequence[str]] = None) -> str:
        """첫 번째로 존재하는 후보 컬럼명 반환 (성공 후 재탐색하지 않음)"""
        key = tuple(candidates) if candidates else self.candidates
        cached = self._resolved.get(key)
        if cached:
            return cached

        async with self._lock:
            cached = self._resolved.get(key)
            if cached:
                return cached

            for column in key:
                try:
                    await self.db_helper.probe_column(self.table, column)
                except StoreError as e:
                    if is_missing_column_error(e):
                        logger.info("[SCHEMA] %s.%s not available, trying next candidate", self.table, column)
                        continue
                    raise
                logger.info("[SCHEMA] resolved %s subscription id column: %s", self.table, column)
                self._resolved[key] = column
                return column

        raise SchemaConfigurationError(
            f"none of the candidate columns exist on {self.table}: {', '.join(key)}"
        )

    async def subscription_schema(self) -> SubscriptionSchema:
        return SubscriptionSchema(table=self.table, id_column=await self.resolve_column())
