"""
設定ファイルの書き込み・バックアップ・復元

- 書き込みは同一ディレクトリの一時ファイル + os.replace による原子的置換
- 上書き前に "<file>.backup_<timestamp>" を作成し、新しいものから keep 件だけ残す
- 復元はバックアップをバイト単位でそのまま書き戻す
- ファイルごとの asyncio.Lock で同一リソースへの書き込みを直列化する
"""

import asyncio
import logging
import os
import shutil
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".backup_"
BACKUP_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S%f"

PathLike = Union[str, Path]


class FileStore:
    """設定ファイル書き込みクラス"""

    def __init__(self, keep: int = 5):
        """
        初期化

        Args:
            keep: 保持するバックアップ数
        """
        self.keep = keep
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock_for(self, path: PathLike) -> asyncio.Lock:
        """ファイルごとの書き込みロックを返す"""
        key = str(Path(path).resolve())
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def read_text(self, path: PathLike, default: str = "") -> str:
        """ファイルを読む。存在しなければ default"""
        p = Path(path)
        if not p.is_file():
            return default
        return p.read_text(encoding="utf-8", errors="replace")

    def atomic_write(self, path: PathLike, content: Union[str, bytes]) -> None:
        """
        一時ファイルに書いてから置換する

        Args:
            path: 書き込み先
            content: 内容（str は UTF-8 で書き込む）
        """
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        data = content.encode("utf-8") if isinstance(content, str) else content

        fd, tmp_path = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            if target.exists():
                shutil.copymode(target, tmp_path)
            os.replace(tmp_path, target)
        finally:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)

        logger.info(f"File written: {target}")

    def create_backup(self, path: PathLike) -> Optional[Path]:
        """
        タイムスタンプ付きバックアップを作成する

        Returns:
            作成したバックアップのパス。元ファイルがない・コピー失敗時は None
        """
        source = Path(path)
        if not source.is_file():
            logger.info(f"No file to back up: {source}")
            return None

        stamp = datetime.now().strftime(BACKUP_TIMESTAMP_FORMAT)
        backup = source.with_name(f"{source.name}{BACKUP_SUFFIX}{stamp}")
        try:
            shutil.copy2(source, backup)
        except OSError as e:
            logger.error(f"Failed to create backup of {source}: {e}")
            return None

        logger.info(f"Backup created: {backup}")
        self.prune_backups(source)
        return backup

    def list_backups(self, path: PathLike) -> List[Path]:
        """バックアップ一覧（新しい順）"""
        source = Path(path)
        if not source.parent.is_dir():
            return []
        prefix = f"{source.name}{BACKUP_SUFFIX}"
        backups = [p for p in source.parent.iterdir() if p.name.startswith(prefix)]
        return sorted(backups, key=lambda p: p.name, reverse=True)

    def prune_backups(self, path: PathLike) -> None:
        """古いバックアップを削除し keep 件に揃える"""
        for old in self.list_backups(path)[self.keep:]:
            try:
                old.unlink()
                logger.debug(f"Pruned backup: {old}")
            except OSError as e:
                logger.warning(f"Failed to prune backup {old}: {e}")

    def restore_backup(self, path: PathLike, backup: Optional[PathLike] = None) -> bool:
        """
        バックアップから復元する

        Args:
            path: 復元先
            backup: 使用するバックアップ。None なら最新

        Returns:
            復元できた場合 True
        """
        if backup is None:
            backups = self.list_backups(path)
            if not backups:
                logger.error(f"No backup available to restore {path}")
                return False
            backup = backups[0]

        self.atomic_write(path, Path(backup).read_bytes())
        logger.warning(f"Restored {path} from backup {backup}")
        return True
