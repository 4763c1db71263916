"""
Supabase 레코드 저장소 헬퍼

웹훅 처리에서 사용하는 users / user_subscriptions / payments / credit_transactions /
payment_disputes / unmatched_payment_emails / user_email_aliases / email_matching_logs /
system_logs 테이블 접근을 담당한다.
"""

from typing import Dict, List, Optional, Any
from datetime import datetime, timezone
from supabase import Client
import logging

from core.errors import StoreError
from core.interfaces import IDatabaseHelper

logger = logging.getLogger(__name__)

WEBHOOK_EVENT_TYPE = 'creem_webhook'


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _escape_like(value: str) -> str:
    """ilike 패턴 와일드카드 이스케이프"""
    return value.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')


class DatabaseHelper(IDatabaseHelper):
    def __init__(self, admin_client: Client):
        self.admin_client = admin_client

    def _get_client(self) -> Client:
        """웹훅 처리는 RLS 우회를 위해 항상 service role 클라이언트 사용"""
        return self.admin_client

    @staticmethod
    def _execute(operation: str, query) -> Any:
        """쿼리 실행 후 PostgREST 오류를 StoreError로 변환"""
        try:
            return query.execute()
        except Exception as e:
            error = StoreError.wrap(e, operation)
            logger.error(f"[DB] {operation} 실패: {error}")
            raise error from e

    @staticmethod
    def _first(result) -> Optional[Dict[str, Any]]:
        data = getattr(result, 'data', None)
        if isinstance(data, list):
            return data[0] if data else None
        return data or None

    # 스키마 점검
    async def probe_column(self, table: str, column: str) -> None:
        client = self._get_client()
        self._execute(f"probe {table}.{column}", client.table(table).select(column).limit(1))

    # 사용자
    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        """사용자 조회"""
        client = self._get_client()
        result = self._execute('get_user', client.table('users').select('*').eq('id', user_id).limit(1))
        return self._first(result)

    async def find_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        client = self._get_client()
        result = self._execute(
            'find_user_by_email',
            client.table('users').select('id, email').eq('email', email).limit(1),
        )
        return self._first(result)

    async def find_user_by_email_insensitive(self, email: str) -> Optional[Dict[str, Any]]:
        client = self._get_client()
        result = self._execute(
            'find_user_by_email_insensitive',
            client.table('users').select('id, email').ilike('email', _escape_like(email)).limit(1),
        )
        return self._first(result)

    async def update_user(self, user_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """사용자 구독 표시 필드 갱신"""
        client = self._get_client()
        result = self._execute('update_user', client.table('users').update(fields).eq('id', user_id))
        return self._first(result)

    # 이메일 별칭
    async def find_alias(self, alias_email: str) -> Optional[Dict[str, Any]]:
        client = self._get_client()
        result = self._execute(
            'find_alias',
            client.table('user_email_aliases')
            .select('id, user_id, alias_email, status')
            .eq('alias_email', alias_email.strip().lower())
            .eq('status', 'active')
            .limit(1),
        )
        return self._first(result)

    async def list_email_aliases(self, user_id: Optional[str] = None, status: Optional[str] = None) -> List[Dict[str, Any]]:
        client = self._get_client()
        query = client.table('user_email_aliases').select('*')
        if user_id:
            query = query.eq('user_id', user_id)
        if status:
            query = query.eq('status', status)
        result = self._execute('list_email_aliases', query.order('created_at', desc=True))
        return result.data or []

    async def get_email_alias(self, alias_id: str) -> Optional[Dict[str, Any]]:
        client = self._get_client()
        result = self._execute(
            'get_email_alias',
            client.table('user_email_aliases').select('*').eq('id', alias_id).limit(1),
        )
        return self._first(result)

    async def insert_email_alias(self, row: Dict[str, Any]) -> Dict[str, Any]:
        client = self._get_client()
        payload = {'created_at': _utcnow_iso(), 'status': 'active', **row}
        result = self._execute('insert_email_alias', client.table('user_email_aliases').insert(payload))
        return self._first(result) or payload

    async def update_email_alias(self, alias_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        client = self._get_client()
        payload = {**fields, 'updated_at': _utcnow_iso()}
        result = self._execute(
            'update_email_alias',
            client.table('user_email_aliases').update(payload).eq('id', alias_id),
        )
        return self._first(result)

    # 이메일 매칭 로그
    async def log_email_matching(self, entry: Dict[str, Any]) -> bool:
        """매칭 시도 기록 (실패해도 처리 흐름에 영향 없음)"""
        try:
            client = self._get_client()
            client.rpc('log_email_matching', {
                'p_searched_email': entry.get('searched_email'),
                'p_match_type': entry.get('match_type'),
                'p_matched_user_id': entry.get('matched_user_id'),
                'p_matched_email': entry.get('matched_email'),
                'p_webhook_event_type': entry.get('webhook_event_type'),
                'p_webhook_data': entry.get('webhook_data'),
            }).execute()
            return True
        except Exception as e:
            logger.warning(f"[IDENTITY] 이메일 매칭 로그 기록 실패: {e}")
            return False

    async def list_email_matching_logs(
        self,
        email: Optional[str] = None,
        match_type: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        client = self._get_client()
        query = client.table('email_matching_logs').select('*')
        if email:
            query = query.ilike('searched_email', f"%{_escape_like(email)}%")
        if match_type:
            query = query.eq('match_type', match_type)
        if since:
            query = query.gte('created_at', since.isoformat())
        result = self._execute(
            'list_email_matching_logs',
            query.order('created_at', desc=True).limit(limit),
        )
        return result.data or []

    # 미매칭 이메일 큐
    async def insert_unmatched_email(self, row: Dict[str, Any]) -> Dict[str, Any]:
        client = self._get_client()
        payload = {'created_at': _utcnow_iso(), 'status': 'pending', **row}
        result = self._execute('insert_unmatched_email', client.table('unmatched_payment_emails').insert(payload))
        return self._first(result) or payload

    async def list_unmatched_emails(self, status: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        client = self._get_client()
        query = client.table('unmatched_payment_emails').select('*')
        if status and status != 'all':
            query = query.eq('status', status)
        result = self._execute(
            'list_unmatched_emails',
            query.order('created_at', desc=True).range(offset, offset + limit - 1),
        )
        return result.data or []

    async def get_unmatched_email(self, entry_id: str) -> Optional[Dict[str, Any]]:
        client = self._get_client()
        result = self._execute(
            'get_unmatched_email',
            client.table('unmatched_payment_emails').select('*').eq('id', entry_id).limit(1),
        )
        return self._first(result)

    async def update_unmatched_email(self, entry_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        client = self._get_client()
        result = self._execute(
            'update_unmatched_email',
            client.table('unmatched_payment_emails').update(fields).eq('id', entry_id),
        )
        return self._first(result)

    # 구독
    async def find_subscription(self, column: str, external_id: str) -> Optional[Dict[str, Any]]:
        """외부 구독 ID로 구독 행 조회 (가장 최근 행 우선)"""
        client = self._get_client()
        result = self._execute(
            'find_subscription',
            client.table('user_subscriptions')
            .select('*')
            .eq(column, external_id)
            .order('created_at', desc=True)
            .limit(1),
        )
        return self._first(result)

    async def insert_subscription(self, row: Dict[str, Any]) -> Dict[str, Any]:
        client = self._get_client()
        now = _utcnow_iso()
        payload = {'created_at': now, 'updated_at': now, **row}
        result = self._execute('insert_subscription', client.table('user_subscriptions').insert(payload))
        return self._first(result) or payload

    async def update_subscription(self, row_id: Any, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        client = self._get_client()
        payload = {**fields, 'updated_at': _utcnow_iso()}
        result = self._execute(
            'update_subscription',
            client.table('user_subscriptions').update(payload).eq('id', row_id),
        )
        return self._first(result)

    # 크레딧 거래 로그
    async def find_credit_transaction(
        self,
        user_id: str,
        reason: str,
        metadata_filter: Dict[str, Any],
        since: Optional[datetime] = None,
    ) -> Optional[Dict[str, Any]]:
        client = self._get_client()
        query = (
            client.table('credit_transactions')
            .select('id, amount, metadata, created_at')
            .eq('user_id', user_id)
            .eq('reason', reason)
            .contains('metadata', metadata_filter)
        )
        if since:
            query = query.gte('created_at', since.isoformat())
        result = self._execute('find_credit_transaction', query.limit(1))
        return self._first(result)

    async def list_credit_transactions(
        self,
        metadata_filter: Dict[str, Any],
        reason: Optional[str] = None,
        limit: int = 20,
    ) -> List[Dict[str, Any]]:
        client = self._get_client()
        query = client.table('credit_transactions').select('*').contains('metadata', metadata_filter)
        if reason:
            query = query.eq('reason', reason)
        result = self._execute(
            'list_credit_transactions',
            query.order('created_at', desc=True).limit(limit),
        )
        return result.data or []

    async def rpc(self, function: str, params: Dict[str, Any]) -> Any:
        client = self._get_client()
        result = self._execute(f"rpc {function}", client.rpc(function, params))
        return getattr(result, 'data', None)

    # 결제
    async def get_payment(self, external_payment_id: str) -> Optional[Dict[str, Any]]:
        client = self._get_client()
        result = self._execute(
            'get_payment',
            client.table('payments').select('*').eq('creem_payment_id', external_payment_id).limit(1),
        )
        return self._first(result)

    async def insert_payment(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """creem_payment_id 유니크 제약 위반 시 StoreError(23505)"""
        client = self._get_client()
        now = _utcnow_iso()
        payload = {'created_at': now, 'updated_at': now, **row}
        result = self._execute('insert_payment', client.table('payments').insert(payload))
        return self._first(result) or payload

    async def update_payment(self, external_payment_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        client = self._get_client()
        payload = {**fields, 'updated_at': _utcnow_iso()}
        result = self._execute(
            'update_payment',
            client.table('payments').update(payload).eq('creem_payment_id', external_payment_id),
        )
        return self._first(result)

    # 분쟁
    async def get_dispute(self, external_dispute_id: str) -> Optional[Dict[str, Any]]:
        client = self._get_client()
        result = self._execute(
            'get_dispute',
            client.table('payment_disputes').select('*').eq('creem_dispute_id', external_dispute_id).limit(1),
        )
        return self._first(result)

    async def insert_dispute(self, row: Dict[str, Any]) -> Dict[str, Any]:
        client = self._get_client()
        payload = {'created_at': _utcnow_iso(), **row}
        result = self._execute('insert_dispute', client.table('payment_disputes').insert(payload))
        return self._first(result) or payload

    # 시스템 로그
    async def log_system_event(self, user_id: str = None, event_type: str = 'info',
                             event_data: Dict = None) -> bool:
        """시스템 이벤트 로그 기록"""
        try:
            log_data = {
                'user_id': user_id,
                'event_type': event_type,
                'event_data': event_data or {},
            }

            result = self._get_client().table('system_logs').insert(log_data).execute()
            return len(result.data) > 0
        except Exception as e:
            logger.error(f"시스템 로그 기록 실패: {e}")
            return False

    async def record_webhook_event(self, event_id: str, status: str, payload: Dict[str, Any] = None) -> bool:
        """웹훅 이벤트 처리 기록"""
        try:
            if not event_id:
                return False

            event_payload = {
                'event_id': event_id,
                'status': status,
            }
            if payload:
                event_payload['payload'] = payload

            return await self.log_system_event(event_type=WEBHOOK_EVENT_TYPE, event_data=event_payload)
        except Exception as e:
            logger.error(f"웹훅 이벤트 기록 실패: {e}")
            return False

    async def get_webhook_event(self, event_id: str) -> Optional[Dict[str, Any]]:
        """가장 최근의 웹훅 처리 기록 조회"""
        client = self._get_client()
        result = self._execute(
            'get_webhook_event',
            client.table('system_logs')
            .select('*')
            .eq('event_type', WEBHOOK_EVENT_TYPE)
            .contains('event_data', {'event_id': event_id})
            .order('created_at', desc=True)
            .limit(1),
        )
        return self._first(result)
