"""
SquidGuard 管理 API エンドポイント

提供エンドポイント:
  GET    /api/squidguard/blacklists                    - ブラックリスト一覧
  PUT    /api/squidguard/blacklists                    - カテゴリのリストを書き換え
  DELETE /api/squidguard/blacklists/{category}/{domain} - ドメインを削除
  POST   /api/squidguard/update                        - ブラックリストを再コンパイル
  POST   /api/squidguard/reload                        - 再コンパイル + Squid リロード
  GET    /api/squidguard/stats                         - 統計
  GET    /api/squidguard/logs                          - ログ (lines=1〜1000)
  GET    /api/squidguard/config                        - squidGuard.conf の要約
  PATCH  /api/squidguard/config                        - dbhome / logdir の更新
  GET    /api/squidguard/rules                         - アクセスルール一覧
  POST   /api/squidguard/rules                         - ルール追加
  GET    /api/squidguard/rules/{id}                    - ルール取得
  PUT    /api/squidguard/rules/{id}                    - ルール置き換え
  DELETE /api/squidguard/rules/{id}                    - ルール削除

ルール id はファイル内の位置（1 始まり）。更新・削除で expected_name を指定すると、
読み取り後にルールが入れ替わっていた場合に 409 を返す。
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from pydantic import BaseModel

from ...core import require_permission, squidguard_service
from ...core.access_rules import AccessRule
from ...core.audit_log import audit_log
from ...core.auth import TokenData
from ...core.exceptions import BlacklistError, RuleConflictError, RuleNotFoundError
from ...core.squidguard_service import Blacklist, SquidGuardConfig, SquidGuardStats
from ...core.validation import ValidationError
from ._utils import MAX_LOG_LINES, MessageResponse, operation_result

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/squidguard", tags=["squidguard"])


# ===================================================================
# リクエストモデル
# ===================================================================


class BlacklistUpdateRequest(BaseModel):
    """ブラックリスト更新リクエスト（省略したリストは変更しない）"""

    category: str
    domains: Optional[List[str]] = None
    urls: Optional[List[str]] = None
    expressions: Optional[List[str]] = None


class SquidGuardConfigUpdateRequest(BaseModel):
    """squidGuard.conf 部分更新リクエスト"""

    dbhome: Optional[str] = None
    logdir: Optional[str] = None


def _audit(current_user: TokenData, operation: str, target: str, ok: bool, details=None) -> None:
    audit_log.record(
        user_id=current_user.user_id,
        operation=operation,
        target=target,
        status="success" if ok else "failure",
        details=details,
    )


def _unprocessable(e: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


# ===================================================================
# ブラックリスト
# ===================================================================


@router.get("/blacklists", response_model=List[Blacklist], summary="ブラックリスト一覧")
async def get_blacklists(
    current_user: TokenData = Depends(require_permission("read:squidguard")),
) -> List[Blacklist]:
    blacklists = await squidguard_service.get_blacklists()
    _audit(current_user, "squidguard_blacklists_read", "blacklists", True)
    return blacklists


@router.put("/blacklists", response_model=MessageResponse, summary="ブラックリスト更新")
async def update_blacklist(
    request: BlacklistUpdateRequest,
    current_user: TokenData = Depends(require_permission("write:squidguard")),
) -> MessageResponse:
    """指定したリストだけを書き換え、ブラックリストを再コンパイルする"""
    try:
        ok = await squidguard_service.update_blacklist(
            request.category,
            domains=request.domains,
            urls=request.urls,
            expressions=request.expressions,
        )
    except ValidationError as e:
        _audit(current_user, "squidguard_blacklist_update", request.category, False)
        raise _unprocessable(e)
    except BlacklistError as e:
        logger.error(f"Blacklist update error: {e}")
        _audit(current_user, "squidguard_blacklist_update", request.category, False)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    _audit(current_user, "squidguard_blacklist_update", request.category, ok)
    return operation_result(ok, "Blacklist updated successfully", "Failed to update blacklist")


@router.delete(
    "/blacklists/{category}/{domain}",
    response_model=MessageResponse,
    summary="ブラックリストからドメイン削除",
)
async def remove_from_blacklist(
    category: str,
    domain: str,
    current_user: TokenData = Depends(require_permission("write:squidguard")),
) -> MessageResponse:
    try:
        ok = await squidguard_service.remove_from_blacklist(category, domain)
    except ValidationError as e:
        raise _unprocessable(e)

    _audit(current_user, "squidguard_blacklist_remove", f"{category}/{domain}", ok)
    return operation_result(
        ok,
        "Domain removed from blacklist successfully",
        "Failed to remove domain from blacklist",
    )


@router.post("/update", response_model=MessageResponse, summary="ブラックリスト再コンパイル")
async def compile_blacklists(
    current_user: TokenData = Depends(require_permission("write:squidguard")),
) -> MessageResponse:
    ok = await squidguard_service.compile_blacklists()
    _audit(current_user, "squidguard_compile", "blacklists", ok)
    return operation_result(
        ok, "Blacklists updated successfully", "Failed to update blacklists"
    )


@router.post("/reload", response_model=MessageResponse, summary="SquidGuard リロード")
async def reload_squidguard(
    current_user: TokenData = Depends(require_permission("write:squidguard")),
) -> MessageResponse:
    ok = await squidguard_service.reload()
    _audit(current_user, "squidguard_reload", "squidguard", ok)
    return operation_result(ok, "SquidGuard reloaded successfully", "Failed to reload SquidGuard")


# ===================================================================
# 統計・ログ・設定
# ===================================================================


@router.get("/stats", response_model=SquidGuardStats, summary="SquidGuard 統計")
async def get_stats(
    current_user: TokenData = Depends(require_permission("read:squidguard")),
) -> SquidGuardStats:
    return await squidguard_service.get_stats()


@router.get("/logs", response_model=List[str], summary="SquidGuard ログ取得")
async def get_logs(
    lines: int = Query(100, ge=1, le=MAX_LOG_LINES, description="取得行数"),
    current_user: TokenData = Depends(require_permission("read:squidguard")),
) -> List[str]:
    logs = await squidguard_service.get_logs(lines)
    _audit(current_user, "squidguard_logs", "squidGuard.log", True, {"lines": lines})
    return logs


@router.get("/config", response_model=SquidGuardConfig, summary="squidGuard.conf 取得")
async def get_config(
    current_user: TokenData = Depends(require_permission("read:squidguard")),
) -> SquidGuardConfig:
    return await squidguard_service.get_config()


@router.patch("/config", response_model=MessageResponse, summary="squidGuard.conf 部分更新")
async def update_config(
    request: SquidGuardConfigUpdateRequest,
    current_user: TokenData = Depends(require_permission("write:squidguard")),
) -> MessageResponse:
    updates = request.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No settings to update")

    try:
        ok = await squidguard_service.update_config_partial(updates)
    except ValueError as e:
        raise _unprocessable(e)

    _audit(current_user, "squidguard_config_update", "squidGuard.conf", ok, updates)
    return operation_result(
        ok, "SquidGuard configuration updated successfully", "Failed to reload SquidGuard"
    )


# ===================================================================
# アクセスルール
# ===================================================================


@router.get("/rules", response_model=List[AccessRule], summary="アクセスルール一覧")
async def get_rules(
    current_user: TokenData = Depends(require_permission("read:squidguard")),
) -> List[AccessRule]:
    return await squidguard_service.get_rules()


@router.post("/rules", response_model=AccessRule, summary="アクセスルール追加")
async def add_rule(
    rule: AccessRule,
    current_user: TokenData = Depends(require_permission("write:squidguard")),
) -> AccessRule:
    created = await squidguard_service.add_rule(rule)
    _audit(current_user, "squidguard_rule_add", created.name, True, {"id": created.id})
    return created


@router.get("/rules/{rule_id}", response_model=AccessRule, summary="アクセスルール取得")
async def get_rule(
    rule_id: int = Path(..., ge=1),
    current_user: TokenData = Depends(require_permission("read:squidguard")),
) -> AccessRule:
    try:
        return await squidguard_service.get_rule(rule_id)
    except RuleNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.put("/rules/{rule_id}", response_model=AccessRule, summary="アクセスルール更新")
async def update_rule(
    rule: AccessRule,
    rule_id: int = Path(..., ge=1),
    expected_name: Optional[str] = Query(None, description="更新対象の現在のルール名"),
    current_user: TokenData = Depends(require_permission("write:squidguard")),
) -> AccessRule:
    try:
        updated = await squidguard_service.update_rule(rule_id, rule, expected_name=expected_name)
    except RuleNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except RuleConflictError as e:
        _audit(current_user, "squidguard_rule_update", str(rule_id), False, {"reason": str(e)})
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    _audit(current_user, "squidguard_rule_update", updated.name, True, {"id": rule_id})
    return updated


@router.delete("/rules/{rule_id}", response_model=MessageResponse, summary="アクセスルール削除")
async def remove_rule(
    rule_id: int = Path(..., ge=1),
    expected_name: Optional[str] = Query(None, description="削除対象の現在のルール名"),
    current_user: TokenData = Depends(require_permission("write:squidguard")),
) -> MessageResponse:
    try:
        await squidguard_service.remove_rule(rule_id, expected_name=expected_name)
    except RuleNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except RuleConflictError as e:
        _audit(current_user, "squidguard_rule_remove", str(rule_id), False, {"reason": str(e)})
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    _audit(current_user, "squidguard_rule_remove", str(rule_id), True)
    return MessageResponse(message="Access rule removed successfully")
