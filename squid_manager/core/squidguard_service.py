"""
SquidGuard サービス操作

- ブラックリスト（カテゴリディレクトリ配下の domains / urls / expressions）
- ブラックリストのコンパイル（squidGuard -C all）と Squid のリロード
- アクセスルールファイルの読み書き（read-modify-write をファイルロック下で実行）
- squidGuard.conf の参照・部分更新、ログ、統計
"""

import logging
import re
import shlex
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel

from .access_rules import AccessRule, parse_rules, serialize_rules
from .cache import TTLCache
from .command_executor import CommandExecutor
from .config import CacheConfig, SquidPaths
from .exceptions import BlacklistError, RuleConflictError, RuleNotFoundError
from .file_store import FileStore
from .validation import validate_category, validate_domain, validate_single_line

logger = logging.getLogger(__name__)

LIST_FILES = ("domains", "urls", "expressions")

# squidGuard.conf の部分更新で書き換え可能なトップレベルキー
EDITABLE_CONFIG_KEYS = ("dbhome", "logdir")

_BLOCK_RE = re.compile(r"^\s*(time|src|dest|source|destination)\s+(\S+)(?:\s+\S+\s+\S+)?\s*\{", re.MULTILINE)
_KEY_RE = r"^(\s*{key}\s+)(\S.*)$"


# ===================================================================
# モデル
# ===================================================================


class Blacklist(BaseModel):
    """ブラックリストカテゴリ"""

    category: str
    domains: List[str] = []
    urls: List[str] = []
    expressions: List[str] = []
    last_updated: Optional[datetime] = None


class SquidGuardConfig(BaseModel):
    """squidGuard.conf の要約"""

    raw_config: str = ""
    file_path: str = ""
    last_modified: Optional[datetime] = None
    db_home: str = ""
    log_dir: str = ""
    time_settings: List[str] = []
    sources: List[str] = []
    destinations: List[str] = []
    acl_rules: List[str] = []


class SquidGuardStats(BaseModel):
    """SquidGuard の状態"""

    config_exists: bool = False
    rules_exist: bool = False
    blacklists_exist: bool = False
    log_file_exists: bool = False
    squid_service_active: bool = False
    categories_count: int = 0
    total_database_size: int = 0


def _read_list(path: Path) -> List[str]:
    if not path.is_file():
        return []
    lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    return [line.strip() for line in lines if line.strip()]


def parse_squidguard_config(text: str) -> Dict[str, object]:
    """
    squidGuard.conf から dbhome / logdir / ブロック名 / acl 内のルール名を取り出す
    """
    db_home = re.search(_KEY_RE.format(key="dbhome"), text, re.MULTILINE)
    log_dir = re.search(_KEY_RE.format(key="logdir"), text, re.MULTILINE)

    time_settings: List[str] = []
    sources: List[str] = []
    destinations: List[str] = []
    for kind, name in _BLOCK_RE.findall(text):
        if kind == "time":
            time_settings.append(name)
        elif kind in ("src", "source"):
            sources.append(name)
        else:
            destinations.append(name)

    acl_rules: List[str] = []
    depth = 0
    in_acl = False
    for line in text.splitlines():
        stripped = line.split("#", 1)[0].strip()
        if not stripped:
            continue
        if not in_acl:
            if re.match(r"^acl\s*\{$", stripped):
                in_acl = True
                depth = 1
            continue
        if stripped.endswith("{"):
            if depth == 1:
                acl_rules.append(stripped[:-1].strip())
            depth += 1
        elif stripped == "}":
            depth -= 1
            if depth == 0:
                in_acl = False

    return {
        "db_home": db_home.group(2).strip() if db_home else "",
        "log_dir": log_dir.group(2).strip() if log_dir else "",
        "time_settings": time_settings,
        "sources": sources,
        "destinations": destinations,
        "acl_rules": acl_rules,
    }


# ===================================================================
# サービス
# ===================================================================


class SquidGuardService:
    """SquidGuard 管理サービス"""

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
    def blacklist_root(self) -> Path:
        return Path(self.paths.blacklist_dir)

    # ------------------------------------------------------------------
    # コンパイル・リロード
    # ------------------------------------------------------------------

    async def compile_blacklists(self) -> bool:
        """squidGuard -C all でデータベースを再構築する"""
        result = await self.executor.execute(
            f"{shlex.quote(self.paths.squidguard_binary)} -C all"
        )
        if not result.success:
            logger.error(f"SquidGuard compilation failed: {result.stderr.strip()}")
        self.cache.invalidate("squidguard_stats")
        return result.success

    async def reload(self) -> bool:
        """ブラックリストを再コンパイルして Squid をリロードする"""
        compiled = await self.compile_blacklists()
        if not compiled:
            logger.warning("Reloading Squid with previously compiled blacklists")
        result = await self.executor.execute(
            f"systemctl reload {shlex.quote(self.paths.service_name)}"
        )
        if not result.success:
            logger.error(f"Failed to reload Squid: {result.stderr.strip()}")
        return compiled and result.success

    # ------------------------------------------------------------------
    # ブラックリスト
    # ------------------------------------------------------------------

    async def get_blacklists(self) -> List[Blacklist]:
        """全カテゴリのブラックリスト（キャッシュ付き）"""
        return await self.cache.get_or_set(
            "squidguard_blacklists", self.cache_config.config_ttl, self._load_blacklists
        )

    async def _load_blacklists(self) -> List[Blacklist]:
        root = self.blacklist_root
        if not root.is_dir():
            return []

        blacklists = []
        for category_dir in sorted(p for p in root.iterdir() if p.is_dir()):
            blacklists.append(
                Blacklist(
                    category=category_dir.name,
                    domains=_read_list(category_dir / "domains"),
                    urls=_read_list(category_dir / "urls"),
                    expressions=_read_list(category_dir / "expressions"),
                    last_updated=datetime.fromtimestamp(category_dir.stat().st_mtime),
                )
            )
        return blacklists

    async def update_blacklist(
        self,
        category: str,
        domains: Optional[List[str]] = None,
        urls: Optional[List[str]] = None,
        expressions: Optional[List[str]] = None,
    ) -> bool:
        """
        カテゴリのリストを書き換えてコンパイルする

        None のリストは変更しない。空リストは空ファイルとして書き込む。

        Raises:
            ValidationError: カテゴリ名・ドメインが不正、またはエントリが改行を含む場合
        """
        validate_category(category)
        for domain in domains or []:
            validate_domain(domain)
        for file_name, entries in (("urls", urls), ("expressions", expressions)):
            for entry in entries or []:
                validate_single_line(entry, file_name)

        category_dir = self.blacklist_root / category
        lists = {"domains": domains, "urls": urls, "expressions": expressions}

        async with self.file_store.lock_for(category_dir):
            try:
                category_dir.mkdir(parents=True, exist_ok=True)
                for file_name, entries in lists.items():
                    if entries is None:
                        continue
                    cleaned = [e.strip() for e in entries if e.strip()]
                    content = "\n".join(cleaned) + ("\n" if cleaned else "")
                    self.file_store.atomic_write(category_dir / file_name, content)
            except OSError as e:
                raise BlacklistError(f"Failed to write blacklist {category}: {e}") from e

        self.cache.invalidate("squidguard_blacklists", "squidguard_stats")
        logger.info(f"Blacklist updated: {category}")
        return await self.compile_blacklists()

    async def remove_from_blacklist(self, category: str, domain: str) -> bool:
        """
        domains ファイルからドメインを削除する（大文字小文字を区別しない）

        Returns:
            domains ファイルが存在しない場合 False
        """
        validate_category(category)
        domains_file = self.blacklist_root / category / "domains"

        async with self.file_store.lock_for(domains_file.parent):
            if not domains_file.is_file():
                return False
            domains = _read_list(domains_file)
            remaining = [d for d in domains if d.lower() != domain.lower()]
            if len(remaining) == len(domains):
                logger.info(f"Domain not present in {category}: {domain}")
            content = "\n".join(remaining) + ("\n" if remaining else "")
            self.file_store.atomic_write(domains_file, content)

        self.cache.invalidate("squidguard_blacklists", "squidguard_stats")
        return await self.compile_blacklists()

    # ------------------------------------------------------------------
    # アクセスルール
    # ------------------------------------------------------------------

    def _read_rules(self) -> List[AccessRule]:
        return parse_rules(self.file_store.read_text(self.paths.squidguard_rules))

    async def get_rules(self) -> List[AccessRule]:
        """ルール一覧（キャッシュ付き、id はファイル内の位置）"""

        async def load() -> List[AccessRule]:
            return self._read_rules()

        return await self.cache.get_or_set(
            "squidguard_rules", self.cache_config.config_ttl, load
        )

    async def get_rule(self, rule_id: int) -> AccessRule:
        for rule in self._read_rules():
            if rule.id == rule_id:
                return rule
        raise RuleNotFoundError(f"Access rule not found: {rule_id}")

    async def _write_rules(self, rules: List[AccessRule]) -> bool:
        path = self.paths.squidguard_rules
        if self.file_store.create_backup(path) is None and Path(path).is_file():
            logger.warning(f"Continuing without backup of {path}")
        self.file_store.atomic_write(path, serialize_rules(rules))
        self.cache.invalidate("squidguard_rules")
        return await self.reload()

    @staticmethod
    def _locate(rules: List[AccessRule], rule_id: int, expected_name: Optional[str]) -> int:
        index = rule_id - 1
        if index < 0 or index >= len(rules):
            raise RuleNotFoundError(f"Access rule not found: {rule_id}")
        if expected_name is not None and rules[index].name != expected_name:
            raise RuleConflictError(
                f"Rule {rule_id} is now '{rules[index].name}', expected '{expected_name}'"
            )
        return index

    async def add_rule(self, rule: AccessRule) -> AccessRule:
        """ルールを末尾に追加する"""
        async with self.file_store.lock_for(self.paths.squidguard_rules):
            rules = self._read_rules()
            new_rule = rule.model_copy(update={"id": len(rules) + 1})
            rules.append(new_rule)
            reloaded = await self._write_rules(rules)
        if not reloaded:
            logger.warning("Access rule added but SquidGuard reload failed")
        return new_rule

    async def update_rule(
        self, rule_id: int, rule: AccessRule, expected_name: Optional[str] = None
    ) -> AccessRule:
        """
        id の位置のルールを置き換える

        Raises:
            RuleNotFoundError: id が範囲外
            RuleConflictError: expected_name と現在のルール名が異なる
        """
        async with self.file_store.lock_for(self.paths.squidguard_rules):
            rules = self._read_rules()
            index = self._locate(rules, rule_id, expected_name)
            rules[index] = rule.model_copy(update={"id": rule_id})
            reloaded = await self._write_rules(rules)
        if not reloaded:
            logger.warning("Access rule updated but SquidGuard reload failed")
        return rules[index]

    async def remove_rule(self, rule_id: int, expected_name: Optional[str] = None) -> None:
        """
        id の位置のルールを削除する（以降のルールの id は詰められる）

        Raises:
            RuleNotFoundError: id が範囲外
            RuleConflictError: expected_name と現在のルール名が異なる
        """
        async with self.file_store.lock_for(self.paths.squidguard_rules):
            rules = self._read_rules()
            index = self._locate(rules, rule_id, expected_name)
            removed = rules.pop(index)
            for position, rule in enumerate(rules, start=1):
                rule.id = position
            reloaded = await self._write_rules(rules)
        logger.info(f"Access rule removed: {removed.name}")
        if not reloaded:
            logger.warning("Access rule removed but SquidGuard reload failed")

    # ------------------------------------------------------------------
    # squidGuard.conf
    # ------------------------------------------------------------------

    async def get_config(self) -> SquidGuardConfig:
        path = Path(self.paths.squidguard_conf)
        if not path.is_file():
            return SquidGuardConfig(file_path=str(path))

        text = self.file_store.read_text(path)
        return SquidGuardConfig(
            raw_config=text,
            file_path=str(path),
            last_modified=datetime.fromtimestamp(path.stat().st_mtime),
            **parse_squidguard_config(text),
        )

    async def update_config_partial(self, updates: Dict[str, str]) -> bool:
        """
        dbhome / logdir の行を書き換える（存在しなければ先頭に追加）

        Raises:
            ValueError: 編集対象外のキー・不正な値
        """
        for key, value in updates.items():
            if key not in EDITABLE_CONFIG_KEYS:
                raise ValueError(f"Unsupported squidGuard setting: {key}")
            if not value or any(c.isspace() for c in value) or "#" in value:
                raise ValueError(f"Invalid value for {key}")

        path = self.paths.squidguard_conf
        async with self.file_store.lock_for(path):
            text = self.file_store.read_text(path)
            for key, value in updates.items():
                pattern = re.compile(_KEY_RE.format(key=re.escape(key)), re.MULTILINE)
                if pattern.search(text):
                    text = pattern.sub(lambda m: f"{m.group(1)}{value}", text, count=1)
                else:
                    text = f"{key} {value}\n" + text
            self.file_store.create_backup(path)
            self.file_store.atomic_write(path, text)

        self.cache.invalidate("squidguard_stats")
        return await self.reload()

    # ------------------------------------------------------------------
    # ログ・統計
    # ------------------------------------------------------------------

    async def get_logs(self, lines: int = 100) -> List[str]:
        log_path = self.paths.squidguard_log
        if not Path(log_path).is_file():
            return ["SquidGuard log file not found"]

        result = await self.executor.execute(f"tail -n {int(lines)} {shlex.quote(log_path)}")
        if not result.success:
            logger.error(f"Error reading SquidGuard logs: {result.stderr.strip()}")
            return ["Error reading log file"]
        return [line for line in result.stdout.split("\n") if line]

    async def get_stats(self) -> SquidGuardStats:
        return await self.cache.get_or_set(
            "squidguard_stats", self.cache_config.status_ttl, self._load_stats
        )

    async def _load_stats(self) -> SquidGuardStats:
        root = self.blacklist_root
        stats = SquidGuardStats(
            config_exists=Path(self.paths.squidguard_conf).is_file(),
            rules_exist=Path(self.paths.squidguard_rules).is_file(),
            blacklists_exist=root.is_dir(),
            log_file_exists=Path(self.paths.squidguard_log).is_file(),
        )
        if root.is_dir():
            stats.categories_count = sum(1 for p in root.iterdir() if p.is_dir())
            stats.total_database_size = sum(
                f.stat().st_size for f in root.rglob("*") if f.is_file()
            )

        result = await self.executor.execute(
            f"systemctl is-active {shlex.quote(self.paths.service_name)}"
        )
        stats.squid_service_active = result.output == "active"
        return stats
