"""
監査ログ

操作ごとに 1 行の JSON を追記する（audit_YYYYMMDD.jsonl）。
書き込みに失敗しても API 操作自体は失敗させない。
"""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AuditLog:
    """監査ログクラス"""

    def __init__(self, log_dir: Path):
        self.log_dir = Path(log_dir)
        self._lock = threading.Lock()

    def _log_file(self, day: datetime) -> Path:
        return self.log_dir / f"audit_{day.strftime('%Y%m%d')}.jsonl"

    def record(
        self,
        user_id: str,
        operation: str,
        target: str,
        status: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        監査エントリを追記

        Args:
            user_id: 操作ユーザー
            operation: 操作名（例: "squid_restart"）
            target: 操作対象
            status: success / failure / denied
            details: 追加情報
        """
        now = datetime.now()
        entry = {
            "timestamp": now.isoformat(),
            "user_id": user_id,
            "operation": operation,
            "target": target,
            "status": status,
            "details": details or {},
        }
        line = json.dumps(entry, ensure_ascii=False, default=str)

        with self._lock:
            try:
                self.log_dir.mkdir(parents=True, exist_ok=True)
                with open(self._log_file(now), "a", encoding="utf-8") as f:
                    f.write(line + "\n")
            except OSError as e:
                logger.error(f"Failed to write audit log: {e}")

        logger.info(f"AUDIT: user={user_id} operation={operation} target={target} status={status}")

    def query(
        self,
        user_id: Optional[str] = None,
        operation: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """
        監査エントリを新しい順に返す

        Args:
            user_id: 指定時はそのユーザーのみ
            operation: 指定時はその操作のみ
            status: 指定時はその結果（success / failure / denied）のみ
            limit: 最大件数
        """
        if not self.log_dir.is_dir():
            return []

        entries: List[Dict[str, Any]] = []
        for log_file in sorted(self.log_dir.glob("audit_*.jsonl"), reverse=True):
            with open(log_file, "r", encoding="utf-8") as f:
                lines = f.readlines()
            for line in reversed(lines):
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(entry, dict):
                    continue
                if user_id and entry.get("user_id") != user_id:
                    continue
                if operation and entry.get("operation") != operation:
                    continue
                if status and entry.get("status") != status:
                    continue
                entries.append(entry)
                if len(entries) >= limit:
                    return entries
        return entries


def _default_log_dir() -> Path:
    from .config import settings

    return Path(settings.logging.file).parent / "audit"


audit_log = AuditLog(_default_log_dir())
