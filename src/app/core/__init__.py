"""Core 패키지 초기화 (경량화)

설정(settings)은 환경변수가 필요하므로 여기서 불러오지 않습니다.
필요한 곳에서 core.config 를 직접 import 하세요.
"""
from .responses import (
    APIResponse, success_response, error_response,
    BusinessException, AuthenticationException,
    AuthorizationException, NotFoundException,
)

__all__ = [
    'APIResponse',
    'success_response',
    'error_response',
    'BusinessException',
    'AuthenticationException',
    'AuthorizationException',
    'NotFoundException',
]
