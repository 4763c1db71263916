"""
애플리케이션 설정 관리
"""
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import validator
from pydantic_settings import BaseSettings


_FILE_PATH = Path(__file__).resolve()


def _collect_env_files(file_path: Path) -> tuple[Path, ...]:
    """환경 파일 후보를 가까운 디렉터리부터 수집"""

    collected: list[Path] = []
    seen: set[Path] = set()

    for directory in file_path.parents:
        for name in (".env", ".env.local"):
            candidate = directory / name
            if candidate.exists() and candidate not in seen:
                collected.append(candidate)
                seen.add(candidate)

    return tuple(collected)


_ENV_FILES = _collect_env_files(_FILE_PATH)


def _load_dotenv_files() -> None:
    """프로젝트 전체에서 활용할 .env 파일들을 순차적으로 로드"""

    for dotenv_path in _ENV_FILES:
        load_dotenv(dotenv_path, override=False)


_load_dotenv_files()

class Settings(BaseSettings):
    """애플리케이션 설정"""

    # 서버 설정
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = False

    # Supabase 설정 (웹훅 처리는 service role 키로만 동작)
    SUPABASE_URL: str
    SUPABASE_SERVICE_ROLE_KEY: str
    SUPABASE_ANON_KEY: Optional[str] = None

    # 로깅 설정
    LOG_LEVEL: str = "INFO"

    # Creem 웹훅 설정
    CREEM_WEBHOOK_SECRET: Optional[str] = None
    # 구독 ID 컬럼 고정값. 비어 있으면 후보 목록을 1회 탐색
    CREEM_SUBSCRIPTION_ID_COLUMN: Optional[str] = None
    CREEM_SUBSCRIPTION_ID_CANDIDATES: List[str] = ["subscription_id", "creem_subscription_id"]
    # 단건(flex) 크레딧 중복 확인 기간(시간)
    FLEX_CREDIT_DEDUP_WINDOW_HOURS: int = 24
    # 결제 이메일 -> 가입 이메일 수동 매핑 (JSON)
    EMAIL_REMAP: Dict[str, str] = {}

    # Creem 상품 ID (플랜 카탈로그)
    CREEM_PLAN_BASIC_MONTHLY_ID: Optional[str] = None
    CREEM_PLAN_BASIC_YEARLY_ID: Optional[str] = None
    CREEM_PLAN_CREATOR_MONTHLY_ID: Optional[str] = None
    CREEM_PLAN_CREATOR_YEARLY_ID: Optional[str] = None
    CREEM_PLAN_PRO_MONTHLY_ID: Optional[str] = None
    CREEM_PLAN_PRO_YEARLY_ID: Optional[str] = None
    CREEM_PACK_STARTER_ID: Optional[str] = None
    CREEM_PACK_CREATOR_ID: Optional[str] = None
    CREEM_PACK_DEV_ID: Optional[str] = None

    # 관리자 API 허용 역할
    ADMIN_ROLES: List[str] = ["admin", "super_admin", "owner"]

    @validator('SUPABASE_URL')
    def validate_supabase_url(cls, v):
        if not v:
            raise ValueError('SUPABASE_URL은 필수입니다')
        return v

    @validator('SUPABASE_SERVICE_ROLE_KEY')
    def validate_service_role_key(cls, v):
        if not v:
            raise ValueError('SUPABASE_SERVICE_ROLE_KEY는 필수입니다')
        return v

    @validator('FLEX_CREDIT_DEDUP_WINDOW_HOURS')
    def validate_dedup_window(cls, v):
        if v <= 0:
            raise ValueError('FLEX_CREDIT_DEDUP_WINDOW_HOURS는 1 이상이어야 합니다')
        return v

    @validator('EMAIL_REMAP')
    def normalize_email_remap(cls, v):
        return {
            str(source).strip().lower(): str(target).strip().lower()
            for source, target in (v or {}).items()
            if source and target
        }

    class Config:
        env_file = tuple(str(path) for path in _ENV_FILES) if _ENV_FILES else None
        case_sensitive = True
        extra = "allow"  # 추가 환경변수 허용

# 전역 설정 인스턴스
settings = Settings()
