"""
Squid 管理 API エンドポイント

提供エンドポイント:
  GET  /api/squid/status       - Squid サービス状態
  POST /api/squid/start        - 起動
  POST /api/squid/stop         - 停止
  POST /api/squid/restart      - 再起動
  POST /api/squid/reload       - 設定検証後にリロード
  GET  /api/squid/config       - ディレクティブ一覧
  PUT  /api/squid/config       - ディレクティブ一覧で設定を書き換え
  GET  /api/squid/logs/access  - アクセスログ (lines=1〜1000)
  GET  /api/squid/logs/cache   - キャッシュログ (lines=1〜1000)

セキュリティ:
  - 読み取りは read:squid、サービス制御は execute:squid_service、
    設定書き込みは write:squid_config 権限を要求
  - 全操作を audit_log に記録
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ...core import require_permission, squid_service
from ...core.audit_log import audit_log
from ...core.auth import TokenData
from ...core.directives import Directive
from ...core.exceptions import ConfigValidationError
from ...core.squid_service import SquidStatus
from ._utils import MAX_LOG_LINES, MessageResponse, operation_result

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/squid", tags=["squid"])


# ===================================================================
# 状態
# ===================================================================


@router.get(
    "/status",
    response_model=SquidStatus,
    summary="Squid サービス状態取得",
)
async def get_squid_status(
    current_user: TokenData = Depends(require_permission("read:squid")),
) -> SquidStatus:
    """稼働状態・バージョン・メモリ使用量・稼働時間・接続数を返す"""
    result = await squid_service.get_status()

    audit_log.record(
        user_id=current_user.user_id,
        operation="squid_status",
        target="squid",
        status="success",
    )
    return result


# ===================================================================
# サービス制御
# ===================================================================


async def _control(action: str, current_user: TokenData) -> MessageResponse:
    handler = getattr(squid_service, action)
    ok = await handler()

    audit_log.record(
        user_id=current_user.user_id,
        operation=f"squid_{action}",
        target="squid",
        status="success" if ok else "failure",
    )
    if not ok:
        logger.error(f"Squid {action} failed")

    past = {"start": "started", "stop": "stopped", "restart": "restarted"}
    if action == "reload":
        return operation_result(
            ok, "Configuration reloaded successfully", "Failed to reload configuration"
        )
    return operation_result(
        ok, f"Squid {past[action]} successfully", f"Failed to {action} Squid"
    )


@router.post("/start", response_model=MessageResponse, summary="Squid 起動")
async def start_squid(
    current_user: TokenData = Depends(require_permission("execute:squid_service")),
) -> MessageResponse:
    return await _control("start", current_user)


@router.post("/stop", response_model=MessageResponse, summary="Squid 停止")
async def stop_squid(
    current_user: TokenData = Depends(require_permission("execute:squid_service")),
) -> MessageResponse:
    return await _control("stop", current_user)


@router.post("/restart", response_model=MessageResponse, summary="Squid 再起動")
async def restart_squid(
    current_user: TokenData = Depends(require_permission("execute:squid_service")),
) -> MessageResponse:
    return await _control("restart", current_user)


@router.post("/reload", response_model=MessageResponse, summary="Squid 設定リロード")
async def reload_squid(
    current_user: TokenData = Depends(require_permission("execute:squid_service")),
) -> MessageResponse:
    """squid -k parse で検証に成功した場合のみリロードする"""
    return await _control("reload", current_user)


# ===================================================================
# 設定
# ===================================================================


@router.get("/config", response_model=List[Directive], summary="Squid 設定取得")
async def get_squid_config(
    current_user: TokenData = Depends(require_permission("read:squid")),
) -> List[Directive]:
    """squid.conf と conf.d/*.conf のディレクティブ（ファイル順・行順）"""
    directives = await squid_service.get_config()

    audit_log.record(
        user_id=current_user.user_id,
        operation="squid_config_read",
        target="squid.conf",
        status="success",
        details={"count": len(directives)},
    )
    return directives


@router.put("/config", response_model=MessageResponse, summary="Squid 設定更新")
async def update_squid_config(
    directives: List[Directive],
    sort: bool = Query(True, description="名前順に並べ替えてセクション見出しを付ける"),
    current_user: TokenData = Depends(require_permission("write:squid_config")),
) -> MessageResponse:
    """
    ディレクティブ一覧で設定ファイルを書き換える

    squid -k parse で拒否された場合は元のファイルに戻して 400 を返す。
    """
    try:
        await squid_service.update_config(directives, sort=sort)
    except ConfigValidationError as e:
        audit_log.record(
            user_id=current_user.user_id,
            operation="squid_config_update",
            target="squid.conf",
            status="failure",
            details={"output": e.output, "restored": e.restored},
        )
        logger.error(f"Squid config update rejected: {e.output}")
        message = "Failed to update configuration"
        if e.output:
            message = f"{message}: {e.output}"
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)

    audit_log.record(
        user_id=current_user.user_id,
        operation="squid_config_update",
        target="squid.conf",
        status="success",
        details={"count": len(directives)},
    )
    return MessageResponse(message="Configuration updated successfully")


# ===================================================================
# ログ
# ===================================================================


@router.get("/logs/access", response_model=List[str], summary="アクセスログ取得")
async def get_access_logs(
    lines: int = Query(100, ge=1, le=MAX_LOG_LINES, description="取得行数"),
    current_user: TokenData = Depends(require_permission("read:squid")),
) -> List[str]:
    logs = await squid_service.get_access_logs(lines)

    audit_log.record(
        user_id=current_user.user_id,
        operation="squid_logs_access",
        target="access.log",
        status="success",
        details={"lines": lines},
    )
    return logs


@router.get("/logs/cache", response_model=List[str], summary="キャッシュログ取得")
async def get_cache_logs(
    lines: int = Query(100, ge=1, le=MAX_LOG_LINES, description="取得行数"),
    current_user: TokenData = Depends(require_permission("read:squid")),
) -> List[str]:
    logs = await squid_service.get_cache_logs(lines)

    audit_log.record(
        user_id=current_user.user_id,
        operation="squid_logs_cache",
        target="cache.log",
        status="success",
        details={"lines": lines},
    )
    return logs
