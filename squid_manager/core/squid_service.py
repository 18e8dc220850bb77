"""
Squid サービス操作

状態取得・起動/停止/再起動/リロード・設定の読み書き・ログ取得・システム情報。
外部コマンドは CommandExecutor 経由で実行し、出力は extractors で解析する。
"""

import logging
import shlex
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import psutil
from pydantic import BaseModel

from .cache import TTLCache
from .command_executor import CommandExecutor, CommandResult
from .config import CacheConfig, SquidPaths
from .directives import Directive, parse_directive_files, serialize_directives
from .exceptions import ConfigValidationError
from .extractors import (
    UNKNOWN,
    extract_int,
    extract_os_pretty_name,
    extract_systemd_memory,
    extract_version,
    first_line_of,
    parse_timestamp,
)
from .file_store import FileStore

logger = logging.getLogger(__name__)

CONFIG_OK = "OK"


# ===================================================================
# モデル
# ===================================================================


class SquidStatus(BaseModel):
    """Squid サービス状態"""

    is_running: bool = False
    service_status: str = "unknown"
    version: str = UNKNOWN
    memory_usage: int = 0
    started_at: Optional[datetime] = None
    uptime_seconds: int = 0
    active_connections: int = 0


class SystemInfo(BaseModel):
    """システム情報"""

    os_version: str = UNKNOWN
    kernel_version: str = UNKNOWN
    squid_version: str = UNKNOWN
    squidguard_version: str = "Not installed"
    server_time: datetime
    memory_total: int = 0
    memory_available: int = 0


# ===================================================================
# サービス
# ===================================================================


class SquidService:
    """Squid 管理サービス"""

    def __init__(
        self,
        executor: CommandExecutor,
        paths: SquidPaths,
        file_store: FileStore,
        cache: TTLCache,
        cache_config: CacheConfig,
    ):
        self.executor = executor
        self.paths = paths
        self.file_store = file_store
        self.cache = cache
        self.cache_config = cache_config

    @property
    def _service(self) -> str:
        return shlex.quote(self.paths.service_name)

    # ------------------------------------------------------------------
    # 状態
    # ------------------------------------------------------------------

    async def get_status(self) -> SquidStatus:
        """Squid の状態を取得（キャッシュ付き）"""
        return await self.cache.get_or_set(
            "squid_status", self.cache_config.status_ttl, self._load_status
        )

    async def _load_status(self) -> SquidStatus:
        port = int(self.paths.proxy_port)
        is_active, status_out, version_out, started_out, conns_out = await self.executor.execute_many(
            [
                f"systemctl is-active {self._service}",
                f"systemctl status {self._service} --no-pager",
                f"{shlex.quote(self.paths.squid_binary)} -v",
                f"systemctl show {self._service} --property=ActiveEnterTimestamp",
                f"ss -Htn state established '( sport = :{port} )' | wc -l",
            ]
        )

        status = SquidStatus()
        status.service_status = is_active.output or "unknown"
        status.is_running = status.service_status == "active"
        status.memory_usage = extract_systemd_memory(status_out.stdout)

        if version_out.success:
            status.version = extract_version(version_out.stdout)

        if started_out.success:
            status.started_at = parse_timestamp(started_out.output)
            if status.started_at is not None:
                delta = datetime.now(status.started_at.tzinfo) - status.started_at
                status.uptime_seconds = max(int(delta.total_seconds()), 0)

        if conns_out.success:
            status.active_connections = extract_int(conns_out.output)

        return status

    # ------------------------------------------------------------------
    # サービス制御
    # ------------------------------------------------------------------

    async def _systemctl(self, verb: str) -> bool:
        result = await self.executor.execute(f"systemctl {verb} {self._service}")
        if not result.success:
            logger.error(f"Failed to {verb} Squid: {result.stderr.strip()}")
        self.cache.invalidate("squid_status")
        return result.success

    async def start(self) -> bool:
        return await self._systemctl("start")

    async def stop(self) -> bool:
        return await self._systemctl("stop")

    async def restart(self) -> bool:
        return await self._systemctl("restart")

    async def reload(self) -> bool:
        """
        設定を検証してからリロードする

        Returns:
            検証に失敗した場合はリロードせず False
        """
        test_result = await self.test_config()
        if test_result != CONFIG_OK:
            logger.error(f"Configuration test failed: {test_result}")
            return False
        return await self._systemctl("reload")

    async def _parse_config(self) -> CommandResult:
        return await self.executor.execute(
            f"{shlex.quote(self.paths.squid_binary)} -k parse -f {shlex.quote(self.paths.squid_conf)}"
        )

    async def test_config(self) -> str:
        """
        squid -k parse で設定を検証

        Returns:
            成功時 "OK"、失敗時はエラー出力
        """
        result = await self._parse_config()
        if result.success:
            return CONFIG_OK
        return result.stderr.strip() or "Configuration test failed"

    # ------------------------------------------------------------------
    # 設定ファイル
    # ------------------------------------------------------------------

    async def get_config(self) -> List[Directive]:
        """メイン設定 + conf.d/*.conf のディレクティブ（キャッシュ付き）"""
        return await self.cache.get_or_set(
            "squid_config", self.cache_config.config_ttl, self._load_config
        )

    async def _load_config(self) -> List[Directive]:
        return parse_directive_files(
            Path(self.paths.squid_conf), Path(self.paths.squid_conf_dir)
        )

    def _existing_fragments(self) -> List[Path]:
        fragment_dir = Path(self.paths.squid_conf_dir)
        if not fragment_dir.is_dir():
            return []
        return [p.resolve() for p in sorted(fragment_dir.glob("*.conf")) if p.is_file()]

    def _target_file(self, directive: Directive) -> Path:
        """ディレクティブの書き込み先（conf.d 内の *.conf 以外はメイン設定）"""
        primary = Path(self.paths.squid_conf)
        if not directive.source_file:
            return primary
        source = Path(directive.source_file)
        fragment_dir = Path(self.paths.squid_conf_dir).resolve()
        if source.suffix == ".conf" and source.resolve().parent == fragment_dir:
            return source.resolve()
        return primary

    async def update_config(self, directives: Sequence[Directive], sort: bool = True) -> None:
        """
        ディレクティブ列で設定ファイルを書き換える

        手順: バックアップ -> シリアライズ -> 原子的置換 -> squid -k parse
        検証に失敗した場合は書き換えた全ファイルをバックアップから復元し
        ConfigValidationError を送出する。成功時は Squid をリロードする。

        Args:
            directives: 新しいディレクティブ列（ファイルごとにまとめて書き込む）。
                既存の conf.d/*.conf で対象ディレクティブがなくなったものは空にする
            sort: 名前順に並べ替えてセクション見出しを付けるか

        Raises:
            ConfigValidationError: 検証失敗時（復元済み）
        """
        groups: Dict[Path, List[Directive]] = {Path(self.paths.squid_conf): []}
        for fragment in self._existing_fragments():
            groups[fragment] = []
        for directive in directives:
            groups.setdefault(self._target_file(directive), []).append(directive)

        primary_lock = self.file_store.lock_for(self.paths.squid_conf)
        async with primary_lock:
            # (path, backup, existed)
            touched = []
            for path, items in groups.items():
                existed = path.is_file()
                backup = self.file_store.create_backup(path) if existed else None
                touched.append((path, backup, existed))
                self.file_store.atomic_write(path, serialize_directives(items, sort=sort))

            self.cache.invalidate("squid_config")

            result = await self._parse_config()
            if not result.success:
                output = result.stderr.strip() or result.stdout.strip()
                logger.error(f"Squid rejected new configuration, restoring backups: {output}")
                restored = self._rollback(touched)
                raise ConfigValidationError(
                    "Configuration validation failed; previous configuration restored",
                    output=output,
                    restored=restored,
                )

        if not await self._systemctl("reload"):
            logger.warning("Configuration written but Squid reload failed")

    def _rollback(self, touched) -> bool:
        restored = True
        for path, backup, existed in touched:
            try:
                if backup is not None:
                    self.file_store.restore_backup(path, backup)
                elif not existed and path.exists():
                    path.unlink()
                elif existed:
                    # バックアップ作成に失敗していた
                    restored = False
            except OSError as e:
                logger.error(f"Failed to restore {path}: {e}")
                restored = False
        self.cache.invalidate("squid_config")
        return restored

    # ------------------------------------------------------------------
    # ログ
    # ------------------------------------------------------------------

    async def _tail(self, log_path: str, lines: int) -> List[str]:
        if not Path(log_path).is_file():
            return [f"Log file not found: {log_path}"]

        result = await self.executor.execute(f"tail -n {int(lines)} {shlex.quote(log_path)}")
        if not result.success:
            logger.error(f"Error reading log file {log_path}: {result.stderr.strip()}")
            return ["Error reading log file"]
        return [line for line in result.stdout.split("\n") if line]

    async def get_access_logs(self, lines: int = 100) -> List[str]:
        return await self._tail(self.paths.access_log, lines)

    async def get_cache_logs(self, lines: int = 100) -> List[str]:
        return await self._tail(self.paths.cache_log, lines)

    # ------------------------------------------------------------------
    # システム情報
    # ------------------------------------------------------------------

    async def get_system_info(self) -> SystemInfo:
        """OS・カーネル・Squid/SquidGuard バージョン（キャッシュ付き）"""
        return await self.cache.get_or_set(
            "system_info", self.cache_config.system_info_ttl, self._load_system_info
        )

    async def _load_system_info(self) -> SystemInfo:
        os_out, kernel_out, squid_out, sg_out = await self.executor.execute_many(
            [
                "cat /etc/os-release",
                "uname -r",
                f"{shlex.quote(self.paths.squid_binary)} -v",
                f"{shlex.quote(self.paths.squidguard_binary)} -v 2>&1 | head -1",
            ]
        )

        info = SystemInfo(server_time=datetime.now())
        if os_out.success:
            info.os_version = extract_os_pretty_name(os_out.stdout) or UNKNOWN
        if kernel_out.success:
            info.kernel_version = kernel_out.output or UNKNOWN
        if squid_out.success:
            info.squid_version = first_line_of(squid_out.stdout) or UNKNOWN
        sg_line = first_line_of(sg_out.stdout)
        if sg_out.success and sg_line and "not found" not in sg_line:
            info.squidguard_version = sg_line

        memory = psutil.virtual_memory()
        info.memory_total = int(memory.total)
        info.memory_available = int(memory.available)
        return info
