"""
Squid Manager - FastAPI Backend

Squid / SquidGuard の状態取得・サービス制御・設定ファイル管理を行う REST API
"""

import logging
import time
from collections import defaultdict
from logging.handlers import RotatingFileHandler
from pathlib import Path

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..core import settings
from ..core.config import parse_size
from .routes import audit, auth, squid, squidguard, system

# ログ設定
logging.basicConfig(
    level=getattr(logging, settings.logging.level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

# ===================================================================
# FastAPI アプリケーション初期化
# ===================================================================

app = FastAPI(
    title="Squid Manager API",
    description="REST management API for Squid and SquidGuard",
    version=__version__,
    docs_url="/api/docs" if settings.features.api_docs_enabled else None,
    redoc_url="/api/redoc" if settings.features.api_docs_enabled else None,
)

# ===================================================================
# CORS 設定
# ===================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ===================================================================
# ルーターの登録
# ===================================================================

app.include_router(auth.router, prefix="/api")
app.include_router(squid.router, prefix="/api")
app.include_router(system.router, prefix="/api")
app.include_router(squidguard.router, prefix="/api")
app.include_router(audit.router, prefix="/api")

# ===================================================================
# ミドルウェア
# ===================================================================

# レート制限ストレージ（インメモリ）
_rate_limit_store: dict[str, list[float]] = defaultdict(list)
_login_attempts: dict[str, list[float]] = defaultdict(list)

RATE_LIMIT_PER_MINUTE = 300  # 1分あたりのAPIリクエスト上限
LOGIN_MAX_ATTEMPTS = 5  # ログイン試行上限
LOGIN_LOCKOUT_SECONDS = 900  # ロック時間（15分）


def _clear_rate_limit_state() -> None:
    """テスト用: レート制限ストレージをクリア"""
    _rate_limit_store.clear()
    _login_attempts.clear()


@app.middleware("http")
async def security_headers(request: Request, call_next):
    """セキュリティヘッダーを付与"""
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = "default-src 'self'"
    if settings.security.require_https:
        response.headers["Strict-Transport-Security"] = (
            "max-age=31536000; includeSubDomains"
        )
    return response


@app.middleware("http")
async def rate_limiter(request: Request, call_next):
    """APIレート制限"""
    path = request.url.path
    if path == "/api/health":
        return await call_next(request)

    client_ip = request.client.host if request.client else "unknown"
    now = time.time()
    window_start = now - 60.0

    # ログインエンドポイントのブルートフォース対策
    if path == "/api/auth/login" and request.method == "POST":
        attempts = [t for t in _login_attempts[client_ip] if t > window_start]
        _login_attempts[client_ip] = attempts
        if len(attempts) >= LOGIN_MAX_ATTEMPTS and now - attempts[0] < LOGIN_LOCKOUT_SECONDS:
            logger.warning(f"Login rate limit exceeded: {client_ip}")
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "status": "error",
                    "message": "Too many login attempts. Please try again in 15 minutes.",
                },
                headers={"Retry-After": str(LOGIN_LOCKOUT_SECONDS)},
            )
        attempts.append(now)

    requests_in_window = [t for t in _rate_limit_store[client_ip] if t > window_start]
    _rate_limit_store[client_ip] = requests_in_window
    if len(requests_in_window) >= RATE_LIMIT_PER_MINUTE:
        logger.warning(f"Rate limit exceeded: {client_ip}")
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={"status": "error", "message": "Rate limit exceeded. Please slow down."},
            headers={"Retry-After": "60"},
        )
    requests_in_window.append(now)

    return await call_next(request)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """全リクエストをログ記録"""
    logger.info(f"Request: {request.method} {request.url.path}")

    response = await call_next(request)

    logger.info(f"Response: {request.method} {request.url.path} - {response.status_code}")

    return response


# ===================================================================
# エラーハンドラ
# ===================================================================


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """HTTP 例外ハンドラ"""
    logger.warning(f"HTTP Exception: {exc.status_code} - {exc.detail}")

    return JSONResponse(
        status_code=exc.status_code,
        content={"status": "error", "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """リクエスト検証エラーハンドラ"""
    errors = [
        {"loc": list(err.get("loc", [])), "msg": str(err.get("msg", ""))}
        for err in exc.errors()
    ]
    logger.warning(f"Validation error: {request.method} {request.url.path} - {errors}")

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"status": "error", "message": "Validation error", "errors": errors},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """一般例外ハンドラ"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "status": "error",
            "message": "Internal server error",
            "detail": str(exc) if settings.features.debug_mode else None,
        },
    )


# ===================================================================
# ヘルスチェック
# ===================================================================


@app.get("/api/health")
async def health_check():
    """ヘルスチェックエンドポイント"""
    return {
        "status": "healthy",
        "environment": settings.environment,
        "version": __version__,
    }


# ===================================================================
# 起動時処理
# ===================================================================


def setup_file_logging() -> None:
    """ローテーション付きファイルログを root ロガーに追加する"""
    log_file = Path(settings.logging.file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and Path(handler.baseFilename) == log_file.resolve():
            return

    handler = RotatingFileHandler(
        log_file,
        maxBytes=parse_size(settings.logging.max_size),
        backupCount=settings.logging.backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root_logger.addHandler(handler)


@app.on_event("startup")
async def startup_event():
    """アプリケーション起動時の処理"""
    setup_file_logging()

    logger.info("=" * 60)
    logger.info("Squid Manager Backend Starting...")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"HTTP Port: {settings.server.http_port}")
    logger.info(f"Squid config: {settings.paths.squid_conf}")
    logger.info(f"SquidGuard rules: {settings.paths.squidguard_rules}")
    logger.info(f"Command timeout: {settings.commands.timeout}s")
    logger.info(f"Debug Mode: {settings.features.debug_mode}")
    logger.info(f"API Docs: {settings.features.api_docs_enabled}")
    logger.info("=" * 60)

    # Production環境のセキュリティ検証
    await validate_production_config()

    # 監査ログディレクトリの作成
    audit_dir = Path(settings.logging.file).parent / "audit"
    audit_dir.mkdir(parents=True, exist_ok=True)

    logger.info("Backend started successfully")


async def validate_production_config():
    """
    Production環境のセキュリティ設定を検証

    Raises:
        RuntimeError: クリティカルなセキュリティ設定が不正な場合
    """
    if settings.environment != "production":
        return

    if settings.jwt_secret_key == "change-this-in-production":
        raise RuntimeError(
            "CRITICAL: JWT secret not configured for production! "
            "Set SESSION_SECRET environment variable."
        )

    if not settings.security.require_https:
        raise RuntimeError("CRITICAL: HTTPS must be required in production!")

    if settings.features.debug_mode:
        raise RuntimeError("CRITICAL: Debug mode must be disabled in production!")

    if settings.features.api_docs_enabled:
        logger.warning(
            "WARNING: API docs are enabled in production. Consider disabling for security."
        )

    if "*" in settings.cors_origins:
        raise RuntimeError(
            "CRITICAL: Wildcard CORS origin (*) is not allowed in production! "
            "Specify explicit domains in prod.json."
        )

    if not settings.security.user_password_hashes:
        logger.warning("WARNING: No user password hashes configured; nobody can log in.")

    logger.info("Production security configuration validated")


@app.on_event("shutdown")
async def shutdown_event():
    """アプリケーション終了時の処理"""
    logger.info("Squid Manager Backend Shutting down...")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "squid_manager.api.main:app",
        host=settings.server.host,
        port=settings.server.http_port,
        log_level=settings.logging.level.lower(),
    )
