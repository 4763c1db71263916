"""
저장소 인터페이스 정의

조회 메서드는 결과가 없으면 None/빈 리스트를 반환하고,
저장소 오류는 StoreError로 전파한다. 감사 로그 계열(log_*, record_*)만 실패를 삼키고 False를 반환한다.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional


class IDatabaseHelper(ABC):
    """웹훅/원장 처리에 필요한 레코드 저장소"""

    # 스키마
    @abstractmethod
    async def probe_column(self, table: str, column: str) -> None:
        """컬럼 존재 확인용 가벼운 조회 (없으면 StoreError)"""

    # 사용자
    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def find_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        """대소문자 구분 일치"""

    @abstractmethod
    async def find_user_by_email_insensitive(self, email: str) -> Optional[Dict[str, Any]]:
        """대소문자 무시 일치"""

    @abstractmethod
    async def update_user(self, user_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        pass

    # 이메일 별칭
    @abstractmethod
    async def find_alias(self, alias_email: str) -> Optional[Dict[str, Any]]:
        """활성 별칭 조회"""

    @abstractmethod
    async def list_email_aliases(self, user_id: Optional[str] = None, status: Optional[str] = None) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def get_email_alias(self, alias_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def insert_email_alias(self, row: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def update_email_alias(self, alias_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        pass

    # 이메일 매칭 로그
    @abstractmethod
    async def log_email_matching(self, entry: Dict[str, Any]) -> bool:
        pass

    @abstractmethod
    async def list_email_matching_logs(
        self,
        email: Optional[str] = None,
        match_type: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        pass

    # 미매칭 이메일 큐
    @abstractmethod
    async def insert_unmatched_email(self, row: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def list_unmatched_emails(self, status: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def get_unmatched_email(self, entry_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def update_unmatched_email(self, entry_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        pass

    # 구독
    @abstractmethod
    async def find_subscription(self, column: str, external_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def insert_subscription(self, row: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def update_subscription(self, row_id: Any, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        pass

    # 크레딧 거래 로그
    @abstractmethod
    async def find_credit_transaction(
        self,
        user_id: str,
        reason: str,
        metadata_filter: Dict[str, Any],
        since: Optional[datetime] = None,
    ) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def list_credit_transactions(
        self,
        metadata_filter: Dict[str, Any],
        reason: Optional[str] = None,
        limit: int = 20,
    ) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def rpc(self, function: str, params: Dict[str, Any]) -> Any:
        """서버 측 트랜잭션 함수 호출"""

    # 결제/분쟁
    @abstractmethod
    async def get_payment(self, external_payment_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def insert_payment(self, row: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def update_payment(self, external_payment_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def get_dispute(self, external_dispute_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def insert_dispute(self, row: Dict[str, Any]) -> Dict[str, Any]:
        pass

    # 시스템 로그
    @abstractmethod
    async def log_system_event(self, user_id: str = None, event_type: str = 'info', event_data: Dict = None) -> bool:
        pass

    @abstractmethod
    async def record_webhook_event(self, event_id: str, status: str, payload: Dict[str, Any] = None) -> bool:
        pass

    @abstractmethod
    async def get_webhook_event(self, event_id: str) -> Optional[Dict[str, Any]]:
        pass
