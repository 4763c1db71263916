"""
전역 예외 처리 미들웨어
"""
from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
import logging

from core.errors import InsufficientBalanceError, StoreError
from core.responses import error_response, BusinessException

logger = logging.getLogger(__name__)

async def business_exception_handler(request: Request, exc: BusinessException):
    """비즈니스 예외 처리기"""
    logger.warning("Business exception on %s: %s", request.url.path, exc.message)

    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(
            message=exc.message,
            error_code=exc.error_code
        ).model_dump()
    )

async def http_exception_handler_custom(request: Request, exc: HTTPException):
    """HTTP 예외 처리기"""
    logger.warning("HTTP exception on %s: %s", request.url.path, exc.detail)

    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(
            message=str(exc.detail),
            error_code="HTTP_ERROR"
        ).model_dump(),
        headers=getattr(exc, "headers", None),
    )

async def insufficient_balance_handler(request: Request, exc: InsufficientBalanceError):
    """잔액 부족 예외 처리기"""
    logger.info("[LEDGER] insufficient balance: user=%s requested=%s", exc.user_id, exc.requested)

    return JSONResponse(
        status_code=exc.policy.status_code,
        content=error_response(
            message="크레딧 잔액이 부족합니다",
            error_code="INSUFFICIENT_BALANCE",
            data={"balance": exc.balance, "requested": exc.requested},
        ).model_dump()
    )

async def store_exception_handler(request: Request, exc: StoreError):
    """Supabase 저장소 예외 처리기"""
    logger.error("Store error on %s: %s", request.url.path, exc)

    return JSONResponse(
        status_code=500,
        content=error_response(
            message="데이터 저장소 처리 중 오류가 발생했습니다",
            error_code=f"STORE_{exc.code}" if exc.code else "STORE_ERROR",
        ).model_dump()
    )

async def general_exception_handler(request: Request, exc: Exception):
    """일반 예외 처리기"""
    logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content=error_response(
            message="내부 서버 오류가 발생했습니다",
            error_code="INTERNAL_SERVER_ERROR"
        ).model_dump()
    )

def setup_exception_handlers(app):
    """예외 처리기 설정"""
    app.add_exception_handler(BusinessException, business_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler_custom)
    app.add_exception_handler(InsufficientBalanceError, insufficient_balance_handler)
    app.add_exception_handler(StoreError, store_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
