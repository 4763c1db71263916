from __future__ import annotations

from pydantic import BaseModel, Field
from typing import Literal, Optional


class UnmatchedResolveRequest(BaseModel):
    action: Literal["resolve", "ignore"] = Field(..., description="처리 방식")
    user_id: Optional[str] = Field(None, description="연결할 사용자 ID (resolve 시 필수)")
    notes: Optional[str] = Field(None, description="처리 메모")
    create_alias: bool = Field(False, description="결제 이메일을 사용자 별칭으로 등록")


class EmailAliasCreateRequest(BaseModel):
    user_id: str = Field(..., description="대상 사용자 ID")
    alias_email: str = Field(..., min_length=3, description="결제에 사용되는 이메일")
    notes: Optional[str] = Field(None, description="메모")


class EmailAliasUpdateRequest(BaseModel):
    status: Optional[Literal["active", "inactive"]] = Field(None, description="별칭 상태")
    notes: Optional[str] = Field(None, description="메모")


class CreditAdjustRequest(BaseModel):
    amount: int = Field(..., gt=0, description="조정할 크레딧 수량")
    reason: Optional[str] = Field(None, description="조정 사유")
    bucket: Literal["subscription", "flex"] = Field("flex", description="지급 대상 버킷 (grant 전용)")


class EventReplayRequest(BaseModel):
    reason: Optional[str] = Field(None, description="재처리 사유")
