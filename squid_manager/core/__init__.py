"""
Core モジュール

設定・認証・コマンド実行・サービスのシングルトンを提供する
"""

from .auth import get_current_user, require_permission
from .cache import TTLCache
from .command_executor import CommandExecutor
from .config import settings
from .file_store import FileStore
from .squid_service import SquidService
from .squidguard_service import SquidGuardService

command_executor = CommandExecutor(
    timeout=settings.commands.timeout, shell=settings.commands.shell
)
file_store = FileStore(keep=settings.backup.keep)
cache = TTLCache()

squid_service = SquidService(
    executor=command_executor,
    paths=settings.paths,
    file_store=file_store,
    cache=cache,
    cache_config=settings.cache,
)
squidguard_service = SquidGuardService(
    executor=command_executor,
    paths=settings.paths,
    file_store=file_store,
    cache=cache,
    cache_config=settings.cache,
)

__all__ = [
    "settings",
    "get_current_user",
    "require_permission",
    "command_executor",
    "file_store",
    "cache",
    "squid_service",
    "squidguard_service",
]
