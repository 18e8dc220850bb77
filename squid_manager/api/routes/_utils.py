"""ルートハンドラー共通ユーティリティ"""

from fastapi import HTTPException, status
from pydantic import BaseModel

# tail で取得できる最大行数
MAX_LOG_LINES = 1000


class MessageResponse(BaseModel):
    """更新系エンドポイントの共通レスポンス"""

    status: str = "success"
    message: str


def operation_result(ok: bool, success_message: str, failure_message: str) -> MessageResponse:
    """
    サービス層の bool 結果をレスポンスに変換する

    Raises:
        HTTPException: ok が False の場合（400）
    """
    if not ok:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=failure_message)
    return MessageResponse(message=success_message)
