"""
短時間 TTL の読み取りキャッシュ

キーは操作名（"squid_status" など）。書き込み操作は同じキーを明示的に無効化する。
サービス外でファイルが直接編集された場合は TTL が切れるまで古い値が返る。
"""

import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class TTLCache:
    """キー単位で有効期限を持つメモ化キャッシュ"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}

    def get(self, key: str) -> Optional[Any]:
        """有効な値を返す。期限切れ・未登録なら None"""
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        self._entries[key] = (self._clock() + ttl, value)

    async def get_or_set(
        self, key: str, ttl: float, loader: Callable[[], Awaitable[Any]]
    ) -> Any:
        """
        キャッシュを参照し、なければ loader を実行して保存する

        Args:
            key: キャッシュキー
            ttl: 有効期間（秒）
            loader: 値を生成するコルーチン関数
        """
        value = self.get(key)
        if value is not None:
            logger.debug(f"Cache hit: {key}")
            return value
        value = await loader()
        self.set(key, value, ttl)
        return value

    def invalidate(self, *keys: str) -> None:
        for key in keys:
            self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()
