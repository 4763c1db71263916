"""
관리자 전용 정산 API 라우터
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status, Query, Path
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from core.responses import NotFoundException, success_response
from schemas.admin import (
    CreditAdjustRequest,
    EmailAliasCreateRequest,
    EmailAliasUpdateRequest,
    EventReplayRequest,
    UnmatchedResolveRequest,
)

# 의존성 주입 대상 서비스들
auth_service = None  # type: ignore
reconciliation_service = None  # type: ignore
webhook_gateway = None  # type: ignore

# HTTP Bearer 인증 스키마
security = HTTPBearer(auto_error=False)


def set_dependencies(auth_svc, reconciliation_svc=None, gateway=None) -> None:
    """main.py에서 호출하여 서비스 인스턴스를 주입한다."""
    global auth_service, reconciliation_service, webhook_gateway
    auth_service = auth_svc
    reconciliation_service = reconciliation_svc
    webhook_gateway = gateway


async def authorize_admin(
    credentials: HTTPAuthorizationCredentials = Depends(security),
):
    """Supabase JWT의 app_metadata를 확인해 관리자 권한을 검증한다."""
    if auth_service is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="관리자 인증 서비스가 초기화되지 않았습니다.",
        )

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="인증 토큰이 필요합니다.",
        )

    user = await auth_service.verify_auth(credentials)
    if not auth_service.is_admin(user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="관리자 권한이 필요합니다.",
        )

    return user


async def require_services():
    if reconciliation_service is None or webhook_gateway is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="관리자 서비스 의존성이 초기화되지 않았습니다.",
        )


async def get_current_admin(user=Depends(authorize_admin)):
    """엔드포인트에서 관리자 정보를 활용할 수 있도록 반환."""
    await require_services()
    return user


router = APIRouter(
    prefix="/api/v1/admin",
    tags=["admin"],
)


@router.get("/health")
async def admin_health_check(admin=Depends(get_current_admin)):
    """관리자 라우터용 헬스 체크 엔드포인트."""
    return success_response(data={"status": "ok"})


@router.get("/unmatched-emails")
async def list_unmatched_emails(
    status_filter: str = Query("pending", alias="status", description="pending / resolved / ignored / all"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin=Depends(get_current_admin),
):
    entries = await reconciliation_service.list_unmatched(status=status_filter, limit=limit, offset=offset)
    return success_response(data={"items": entries, "limit": limit, "offset": offset})


@router.post("/unmatched-emails/{entry_id}/resolve")
async def resolve_unmatched_email(
    entry_id: str,
    request: UnmatchedResolveRequest,
    admin=Depends(get_current_admin),
):
    result = await reconciliation_service.resolve_unmatched(
        entry_id,
        request.action,
        user_id=request.user_id,
        notes=request.notes,
        create_alias=request.create_alias,
        actor_id=getattr(admin, "id", None),
    )
    return success_response(data=result, message="미매칭 항목을 처리했습니다.")


@router.get("/email-aliases")
async def list_email_aliases(
    user_id: Optional[str] = Query(None, description="사용자 ID 필터"),
    status_filter: Optional[str] = Query(None, alias="status"),
    admin=Depends(get_current_admin),
):
    aliases = await reconciliation_service.list_aliases(user_id=user_id, status=status_filter)
    return success_response(data={"items": aliases})


@router.post("/email-aliases", status_code=status.HTTP_201_CREATED)
async def create_email_alias(
    request: EmailAliasCreateRequest,
    admin=Depends(get_current_admin),
):
    alias = await reconciliation_service.create_alias(
        request.user_id,
        request.alias_email,
        notes=request.notes,
        created_by=getattr(admin, "id", None),
    )
    return success_response(data={"alias": alias}, message="별칭을 등록했습니다.")


@router.patch("/email-aliases/{alias_id}")
async def update_email_alias(
    alias_id: str,
    request: EmailAliasUpdateRequest,
    admin=Depends(get_current_admin),
):
    alias = await reconciliation_service.update_alias(alias_id, status=request.status, notes=request.notes)
    return success_response(data={"alias": alias})


@router.delete("/email-aliases/{alias_id}")
async def delete_email_alias(
    alias_id: str = Path(..., description="비활성화할 별칭 ID"),
    admin=Depends(get_current_admin),
):
    alias = await reconciliation_service.deactivate_alias(alias_id)
    return success_response(data={"alias": alias}, message="별칭을 비활성화했습니다.")


@router.get("/email-matching-logs")
async def list_email_matching_logs(
    email: Optional[str] = Query(None),
    match_type: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    admin=Depends(get_current_admin),
):
    data = await reconciliation_service.matching_logs(email=email, match_type=match_type, limit=limit)
    return success_response(data=data)


@router.get("/payments/status")
async def get_payment_status(
    payment_id: str = Query(..., min_length=1, description="Creem 결제 ID"),
    admin=Depends(get_current_admin),
):
    data = await reconciliation_service.payment_status(payment_id)
    return success_response(data=data)


async def _adjust(user_id: str, direction: str, request: CreditAdjustRequest, admin):
    snapshot = await reconciliation_service.adjust_credits(
        user_id,
        direction,
        request.amount,
        note=request.reason,
        bucket=request.bucket,
        actor_id=getattr(admin, "id", None),
    )
    return success_response(data={"credits": snapshot.to_dict()})


@router.post("/users/{user_id}/credits/grant")
async def grant_credits(user_id: str, request: CreditAdjustRequest, admin=Depends(get_current_admin)):
    return await _adjust(user_id, "grant", request, admin)


@router.post("/users/{user_id}/credits/deduct")
async def deduct_credits(user_id: str, request: CreditAdjustRequest, admin=Depends(get_current_admin)):
    return await _adjust(user_id, "deduct", request, admin)


@router.post("/users/{user_id}/credits/refund")
async def refund_credits(user_id: str, request: CreditAdjustRequest, admin=Depends(get_current_admin)):
    return await _adjust(user_id, "refund", request, admin)


@router.post("/webhooks/{event_id}/replay")
async def replay_webhook(
    event_id: str,
    request: EventReplayRequest,
    admin=Depends(get_current_admin),
):
    outcome = await webhook_gateway.replay(event_id, reason=request.reason)
    if outcome is None:
        raise NotFoundException("웹훅 이벤트 기록을 찾을 수 없습니다.")

    return success_response(
        data={
            "event_id": outcome.event_id,
            "event_type": outcome.event_type,
            "status": outcome.status,
            "status_code": outcome.status_code,
            "results": outcome.results,
        },
        message="이벤트를 재처리했습니다.",
    )


__all__ = ["router", "set_dependencies", "authorize_admin"]
