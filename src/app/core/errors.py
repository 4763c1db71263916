"""
웹훅/원장 처리 오류 종류와 처리 정책
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """웹훅 처리 중 발생하는 오류 분류"""
    SIGNATURE_INVALID = "signature_invalid"
    MALFORMED_EVENT = "malformed_event"
    IDENTITY_UNRESOLVED = "identity_unresolved"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    DUPLICATE_EVENT = "duplicate_event"
    MISSING_REFERENCED_ENTITY = "missing_referenced_entity"
    TRANSIENT_STORE_ERROR = "transient_store_error"
    UNEXPECTED_STORE_ERROR = "unexpected_store_error"
    SCHEMA_CONFIGURATION = "schema_configuration"


class Disposition(str, Enum):
    """오류 종류별 처리 방식"""
    ACKNOWLEDGE = "acknowledge"
    PARK = "park"
    RETRY_NEXT_CANDIDATE = "retry_next_candidate"
    REJECT = "reject"
    ESCALATE = "escalate"


@dataclass(frozen=True)
class ErrorPolicy:
    disposition: Disposition
    status_code: int


# 종류별 정책 테이블 (핸들러/게이트웨이가 한 곳에서 조회)
ERROR_POLICY: Dict[ErrorKind, ErrorPolicy] = {
    ErrorKind.SIGNATURE_INVALID: ErrorPolicy(Disposition.REJECT, 401),
    ErrorKind.MALFORMED_EVENT: ErrorPolicy(Disposition.ESCALATE, 500),
    ErrorKind.IDENTITY_UNRESOLVED: ErrorPolicy(Disposition.PARK, 200),
    ErrorKind.INSUFFICIENT_BALANCE: ErrorPolicy(Disposition.REJECT, 409),
    ErrorKind.DUPLICATE_EVENT: ErrorPolicy(Disposition.ACKNOWLEDGE, 200),
    ErrorKind.MISSING_REFERENCED_ENTITY: ErrorPolicy(Disposition.ACKNOWLEDGE, 200),
    ErrorKind.TRANSIENT_STORE_ERROR: ErrorPolicy(Disposition.RETRY_NEXT_CANDIDATE, 500),
    ErrorKind.UNEXPECTED_STORE_ERROR: ErrorPolicy(Disposition.ESCALATE, 500),
    ErrorKind.SCHEMA_CONFIGURATION: ErrorPolicy(Disposition.ESCALATE, 500),
}


def policy_for(kind: ErrorKind) -> ErrorPolicy:
    return ERROR_POLICY.get(kind, ERROR_POLICY[ErrorKind.UNEXPECTED_STORE_ERROR])


class WebhookError(Exception):
    """웹훅 처리 예외 기본 클래스"""
    kind: ErrorKind = ErrorKind.UNEXPECTED_STORE_ERROR

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    @property
    def policy(self) -> ErrorPolicy:
        return policy_for(self.kind)


class SignatureInvalidError(WebhookError):
    kind = ErrorKind.SIGNATURE_INVALID


class MalformedEventError(WebhookError):
    kind = ErrorKind.MALFORMED_EVENT


class SchemaConfigurationError(WebhookError):
    """후보 컬럼이 모두 존재하지 않는 경우"""
    kind = ErrorKind.SCHEMA_CONFIGURATION


class InsufficientBalanceError(WebhookError):
    kind = ErrorKind.INSUFFICIENT_BALANCE

    def __init__(self, user_id: str, requested: int, balance: Optional[int] = None):
        super().__init__(f"insufficient balance for user {user_id}: requested={requested} balance={balance}")
        self.user_id = user_id
        self.requested = requested
        self.balance = balance


class StoreError(WebhookError):
    """Supabase(PostgREST) 호출 실패 래퍼"""
    kind = ErrorKind.UNEXPECTED_STORE_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Any = None,
        operation: Optional[str] = None,
    ):
        super().__init__(message)
        self.code = code
        self.details = details
        self.operation = operation

    @classmethod
    def wrap(cls, exc: Exception, operation: str) -> "StoreError":
        if isinstance(exc, StoreError):
            return exc
        code = getattr(exc, "code", None)
        message = getattr(exc, "message", None) or str(exc)
        details = getattr(exc, "details", None)
        return cls(message, code=str(code) if code is not None else None, details=details, operation=operation)

    def __str__(self) -> str:
        prefix = f"{self.operation}: " if self.operation else ""
        code = f" (code={self.code})" if self.code else ""
        return f"{prefix}{self.message}{code}"


# PostgREST/Postgres 오류 코드
UNIQUE_VIOLATION_CODE = "23505"
UNDEFINED_FUNCTION_CODES = frozenset({"42883", "PGRST202"})
MISSING_COLUMN_CODES = frozenset({"42703", "PGRST102", "PGRST201"})
INSUFFICIENT_BALANCE_CODES = frozenset({"P0008"})


def is_missing_column_error(error: Exception) -> bool:
    code = getattr(error, "code", None)
    if code and str(code) in MISSING_COLUMN_CODES:
        return True
    message = (getattr(error, "message", None) or str(error)).lower()
    return "column" in message and "does not exist" in message


def is_unique_violation(error: Exception) -> bool:
    code = getattr(error, "code", None)
    if code and str(code) == UNIQUE_VIOLATION_CODE:
        return True
    message = (getattr(error, "message", None) or str(error)).lower()
    return "duplicate key value" in message


def is_undefined_function(error: Exception) -> bool:
    code = getattr(error, "code", None)
    if code and str(code) in UNDEFINED_FUNCTION_CODES:
        return True
    message = (getattr(error, "message", None) or str(error)).lower()
    return "function" in message and ("does not exist" in message or "could not find" in message)


def is_insufficient_balance(error: Exception) -> bool:
    code = getattr(error, "code", None)
    if code and str(code) in INSUFFICIENT_BALANCE_CODES:
        return True
    message = (getattr(error, "message", None) or str(error)).upper()
    return "INSUFFICIENT_BALANCE" in message or "INSUFFICIENT_CREDITS" in message
