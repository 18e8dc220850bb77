"""
システム情報 API エンドポイント

提供エンドポイント:
  GET /api/system/info        - OS・カーネル・Squid/SquidGuard バージョン・メモリ
  GET /api/system/test-config - squid -k parse による設定検証
"""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ...core import require_permission, squid_service
from ...core.audit_log import audit_log
from ...core.auth import TokenData
from ...core.squid_service import CONFIG_OK, SystemInfo

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/system", tags=["system"])


class ConfigTestResponse(BaseModel):
    """設定検証レスポンス"""

    status: str = "success"
    valid: bool
    result: str


@router.get("/info", response_model=SystemInfo, summary="システム情報取得")
async def get_system_info(
    current_user: TokenData = Depends(require_permission("read:system")),
) -> SystemInfo:
    info = await squid_service.get_system_info()

    audit_log.record(
        user_id=current_user.user_id,
        operation="system_info",
        target="system",
        status="success",
    )
    return info


@router.get("/test-config", response_model=ConfigTestResponse, summary="Squid 設定検証")
async def test_config(
    current_user: TokenData = Depends(require_permission("read:squid")),
) -> ConfigTestResponse:
    """検証結果は "OK" またはエラー出力"""
    result = await squid_service.test_config()
    valid = result == CONFIG_OK

    audit_log.record(
        user_id=current_user.user_id,
        operation="squid_test_config",
        target="squid.conf",
        status="success" if valid else "failure",
    )
    return ConfigTestResponse(valid=valid, result=result)
