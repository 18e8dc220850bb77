"""
監査ログ API エンドポイント

提供エンドポイント:
  GET /api/audit/logs - 監査ログ一覧（新しい順）

アクセス制限:
  - Viewer: アクセス不可（403）
  - Operator: 自分のログのみ閲覧可
  - Admin: 全ログ閲覧可
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ...core import require_permission
from ...core.audit_log import audit_log
from ...core.auth import TokenData

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/audit", tags=["audit"])


class AuditLogEntry(BaseModel):
    """監査ログエントリ"""

    timestamp: str = ""
    user_id: str = ""
    operation: str = ""
    target: str = ""
    status: str = ""
    details: dict = Field(default_factory=dict)


@router.get("/logs", response_model=List[AuditLogEntry], summary="監査ログ一覧")
async def list_audit_logs(
    limit: int = Query(100, ge=1, le=1000, description="最大件数"),
    user_id_filter: Optional[str] = Query(None, alias="user_id", description="ユーザーIDフィルタ"),
    operation_filter: Optional[str] = Query(None, alias="operation", description="操作種別フィルタ"),
    status_filter: Optional[str] = Query(None, alias="status", description="結果フィルタ"),
    current_user: TokenData = Depends(require_permission("read:audit")),
) -> List[AuditLogEntry]:
    """Admin 以外は user_id フィルタが自分自身に固定される"""
    if current_user.role != "Admin":
        user_id_filter = current_user.user_id

    entries = audit_log.query(
        user_id=user_id_filter,
        operation=operation_filter,
        status=status_filter,
        limit=limit,
    )
    return [AuditLogEntry.model_validate(entry) for entry in entries]
