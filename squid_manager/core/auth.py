"""
認証・認可

- JWT（HS256）によるステートレス認証
- ロールは Viewer < Operator < Admin の包含関係で、権限は下位ロールに追加していく
- 開発環境はデモユーザーの平文パスワード、本番環境は
  security.user_password_hashes に登録した passlib ハッシュで照合する
"""

import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, FrozenSet, List, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel

from .audit_log import audit_log
from .config import settings

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

bearer_scheme = HTTPBearer()


# ===================================================================
# ロールと権限
# ===================================================================

_VIEWER = frozenset({"read:squid", "read:system", "read:squidguard"})
# サービス起動・停止・リロード、自分の監査ログ閲覧
_OPERATOR = _VIEWER | {"execute:squid_service", "read:audit"}
# squid.conf / conf.d とブラックリスト・アクセスルールの書き込み
_ADMIN = _OPERATOR | {"write:squid_config", "write:squidguard"}

ROLE_PERMISSIONS: Dict[str, FrozenSet[str]] = {
    "Viewer": _VIEWER,
    "Operator": _OPERATOR,
    "Admin": _ADMIN,
}


def permissions_for(role: str) -> List[str]:
    """ロールの権限一覧（未知のロールは空）"""
    return sorted(ROLE_PERMISSIONS.get(role, frozenset()))


# ===================================================================
# ユーザー
# ===================================================================


class User(BaseModel):
    """ログイン可能なユーザー"""

    user_id: str
    username: str
    email: str
    role: str
    disabled: bool = False


class TokenData(BaseModel):
    """JWT から復元したユーザー情報"""

    user_id: str
    username: str
    role: str
    email: str = ""


USERS: Dict[str, User] = {
    user.email: user
    for user in (
        User(user_id="user_001", username="viewer", email="viewer@example.com", role="Viewer"),
        User(user_id="user_002", username="operator", email="operator@example.com", role="Operator"),
        User(user_id="user_003", username="admin", email="admin@example.com", role="Admin"),
    )
}

# 開発環境専用
DEV_PASSWORDS: Dict[str, str] = {
    "viewer@example.com": "viewer123",
    "operator@example.com": "operator123",
    "admin@example.com": "admin123",
}


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """prod.json の security.user_password_hashes に登録するハッシュを生成"""
    return pwd_context.hash(password)


def _password_matches(email: str, password: str) -> bool:
    if settings.environment == "production":
        hashed = settings.security.user_password_hashes.get(email)
        return bool(hashed) and verify_password(password, hashed)

    expected = DEV_PASSWORDS.get(email)
    if expected is None:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), password.encode("utf-8"))


def authenticate_user(email: str, password: str) -> Optional[User]:
    """
    メールアドレスとパスワードでユーザーを認証

    Returns:
        認証成功時は User、失敗時は None
    """
    user = USERS.get(email)
    if user is None or user.disabled:
        logger.warning(f"Authentication failed: unknown or disabled user - {email}")
        return None

    if not _password_matches(email, password):
        logger.warning(f"Authentication failed: invalid password - {email}")
        return None

    logger.info(f"Authentication successful ({settings.environment}): {email}")
    return user


# ===================================================================
# トークン
# ===================================================================


def create_access_token(user: User, expires_delta: Optional[timedelta] = None) -> str:
    """
    ユーザーのアクセストークンを発行

    Args:
        user: 認証済みユーザー
        expires_delta: 有効期間。None の場合は jwt_expiration_minutes
    """
    lifetime = expires_delta or timedelta(minutes=settings.jwt_expiration_minutes)
    claims = {
        "sub": user.user_id,
        "username": user.username,
        "role": user.role,
        "email": user.email,
        "exp": datetime.now(timezone.utc) + lifetime,
    }
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> TokenData:
    """
    アクセストークンを検証して TokenData に変換

    Raises:
        HTTPException: 署名不正・期限切れ・必須クレーム欠落（401）
    """
    unauthorized = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        claims = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        logger.warning(f"Rejected access token: {e}")
        raise unauthorized

    if not all(claims.get(key) for key in ("sub", "username", "role")):
        raise unauthorized

    return TokenData(
        user_id=claims["sub"],
        username=claims["username"],
        role=claims["role"],
        email=claims.get("email", ""),
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> TokenData:
    return decode_token(credentials.credentials)


def require_permission(permission: str):
    """
    権限チェックの依存性ファクトリ

    権限がない場合は監査ログに denied を記録して 403 を返す。
    """

    async def check_permission(current_user: TokenData = Depends(get_current_user)) -> TokenData:
        if permission in ROLE_PERMISSIONS.get(current_user.role, frozenset()):
            return current_user

        logger.warning(
            f"Permission denied: user={current_user.username}, "
            f"role={current_user.role}, required={permission}"
        )
        audit_log.record(
            user_id=current_user.user_id,
            operation="permission_check",
            target=permission,
            status="denied",
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Permission denied: {permission} required",
        )

    return check_permission
