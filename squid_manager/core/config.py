"""
設定管理モジュール

環境変数と設定ファイル（dev.json / prod.json）を統合して読み込む。
Squid / SquidGuard のファイルパス・コマンドタイムアウト・キャッシュ TTL もここで定義する。
"""

import json
import os
from pathlib import Path
from typing import Dict, List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings


class SectionSettings(BaseSettings):
    """設定グループの基底（環境変数は SQUID_MANAGER_ 接頭辞付きのみ参照）"""

    model_config = {"env_prefix": "SQUID_MANAGER_", "extra": "ignore"}


class ServerConfig(SectionSettings):
    """サーバー設定"""

    host: str = "0.0.0.0"  # nosec B104
    http_port: int = 5000


class LoggingConfig(SectionSettings):
    """ログ設定"""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    file: str = "./logs/dev/app.log"
    max_size: str = "10MB"
    backup_count: int = 5


class SecurityConfig(SectionSettings):
    """セキュリティ設定"""

    require_https: bool = False
    # 本番環境のユーザー: email -> passlib ハッシュ
    user_password_hashes: Dict[str, str] = Field(default_factory=dict)


class FeaturesConfig(SectionSettings):
    """機能設定"""

    debug_mode: bool = True
    api_docs_enabled: bool = True


class SquidPaths(SectionSettings):
    """Squid / SquidGuard のファイル・コマンド設定（Debian 既定値）"""

    service_name: str = "squid"
    squid_binary: str = "squid"
    squidguard_binary: str = "squidGuard"
    proxy_port: int = 3128

    squid_conf: str = "/etc/squid/squid.conf"
    squid_conf_dir: str = "/etc/squid/conf.d"
    access_log: str = "/var/log/squid/access.log"
    cache_log: str = "/var/log/squid/cache.log"

    squidguard_conf: str = "/etc/squidguard/squidGuard.conf"
    squidguard_rules: str = "/etc/squidguard/rules.conf"
    blacklist_dir: str = "/var/lib/squidguard/db"
    squidguard_log: str = "/var/log/squidguard/squidGuard.log"


class CommandConfig(SectionSettings):
    """外部コマンド実行設定"""

    timeout: float = 30.0
    shell: str = "/bin/bash"


class CacheConfig(SectionSettings):
    """読み取りキャッシュ TTL（秒）"""

    status_ttl: float = 60.0
    config_ttl: float = 60.0
    system_info_ttl: float = 300.0


class BackupConfig(SectionSettings):
    """バックアップ設定"""

    keep: int = 5


def parse_size(value: str) -> int:
    """ "10MB" 形式のサイズ指定をバイト数に変換する。"""
    units = {"KB": 1024, "MB": 1024**2, "GB": 1024**3}
    text = value.strip().upper()
    for suffix, multiplier in units.items():
        if text.endswith(suffix):
            return int(float(text[: -len(suffix)]) * multiplier)
    return int(text)


class Settings(BaseSettings):
    """全体設定"""

    # 環境（dev / prod）
    environment: Literal["development", "production"] = "development"

    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    features: FeaturesConfig = Field(default_factory=FeaturesConfig)
    paths: SquidPaths = Field(default_factory=SquidPaths)
    commands: CommandConfig = Field(default_factory=CommandConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    backup: BackupConfig = Field(default_factory=BackupConfig)

    # JWT 設定
    jwt_secret_key: str = "change-this-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiration_minutes: int = 60

    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    model_config = {
        "extra": "ignore",  # JSON から余分なフィールドを無視
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


def load_config(env: Literal["dev", "prod"] = "dev") -> Settings:
    """
    環境設定を読み込む。

    Args:
        env: 環境（dev / prod）

    Returns:
        Settings オブジェクト

    Raises:
        FileNotFoundError: config/<env>.json が存在しない場合
    """
    project_root = Path(__file__).parent.parent.parent
    config_file = project_root / "config" / f"{env}.json"

    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    with open(config_file, "r", encoding="utf-8") as f:
        config_data = json.load(f)

    # .env を読み込み
    from dotenv import load_dotenv

    load_dotenv(project_root / ".env")

    # JWT 秘密鍵を環境変数から取得
    config_data["jwt_secret_key"] = os.getenv("SESSION_SECRET", "change-this-in-production")

    return Settings(**config_data)


# デフォルト設定のインスタンス（遅延初期化）
_settings_cache = None


def get_settings() -> Settings:
    """設定を取得（遅延初期化）"""
    global _settings_cache

    if _settings_cache is None:
        current_env = os.getenv("ENV", "dev")
        _settings_cache = load_config(current_env)

    return _settings_cache


settings = get_settings()
