"""
認証 API エンドポイント

提供エンドポイント:
  POST /api/auth/login - ログイン（JWT 発行）
  GET  /api/auth/me    - 現在のユーザー情報
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from ...core.audit_log import audit_log
from ...core.auth import TokenData, authenticate_user, create_access_token, get_current_user, permissions_for

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


class LoginRequest(BaseModel):
    """ログインリクエスト"""

    email: str
    password: str


class LoginResponse(BaseModel):
    """ログインレスポンス"""

    access_token: str
    token_type: str = "bearer"
    user_id: str
    username: str
    role: str


class UserInfoResponse(BaseModel):
    """ユーザー情報レスポンス"""

    user_id: str
    username: str
    email: str
    role: str
    permissions: list[str]


@router.post("/login", response_model=LoginResponse)
async def login(credentials: LoginRequest) -> LoginResponse:
    """メールアドレスとパスワードで認証し、アクセストークンを返す"""
    user = authenticate_user(credentials.email, credentials.password)

    if not user:
        audit_log.record(
            user_id=credentials.email,
            operation="login",
            target="auth",
            status="failure",
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    access_token = create_access_token(user)

    audit_log.record(user_id=user.user_id, operation="login", target="auth", status="success")

    return LoginResponse(
        access_token=access_token,
        user_id=user.user_id,
        username=user.username,
        role=user.role,
    )


@router.get("/me", response_model=UserInfoResponse)
async def get_me(current_user: TokenData = Depends(get_current_user)) -> UserInfoResponse:
    """現在のユーザー情報と権限一覧"""
    return UserInfoResponse(
        user_id=current_user.user_id,
        username=current_user.username,
        email=current_user.email,
        role=current_user.role,
        permissions=permissions_for(current_user.role),
    )
