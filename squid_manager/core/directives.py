"""
Squid 設定ファイル（squid.conf / conf.d/*.conf）のパーサーとシリアライザー

書式は 1 行 1 ディレクティブの "name value"。
直前のコメント行のまとまりを、そのディレクティブの説明（description）として扱う。

パース規則:
  - 空行でコメントバッファをリセット
  - "#" で始まる行は "#" を除去・trim してバッファに追加
  - それ以外の行は最初の空白で (name, value) に分割。空白がなければ読み飛ばす
  - value は行内コメントも含めてそのまま保持する
"""

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from pydantic import BaseModel, field_validator

logger = logging.getLogger(__name__)

_SPLIT_RE = re.compile(r"\s+")

GENERATED_HEADER = "Squid configuration file - generated by squid-manager"

# ディレクティブ名の接頭辞 -> セクション見出し（長い接頭辞を優先して照合）
SECTION_HEADINGS = [
    ("http_access", "Access Rules"),
    ("http_reply_access", "Access Rules"),
    ("icp_access", "Access Rules"),
    ("acl", "Access Control Lists"),
    ("auth_param", "Authentication"),
    ("http_port", "Network"),
    ("https_port", "Network"),
    ("tcp_outgoing", "Network"),
    ("visible_hostname", "Network"),
    ("cache_peer", "Cache Peers"),
    ("cache_dir", "Cache"),
    ("cache_mem", "Cache"),
    ("cache_replacement", "Cache"),
    ("maximum_object", "Cache"),
    ("minimum_object", "Cache"),
    ("memory_", "Cache"),
    ("refresh_pattern", "Refresh Patterns"),
    ("access_log", "Logging"),
    ("cache_log", "Logging"),
    ("cache_store_log", "Logging"),
    ("logfile", "Logging"),
    ("logformat", "Logging"),
    ("debug_options", "Logging"),
    ("dns_", "DNS"),
    ("url_rewrite", "URL Rewriting"),
    ("redirect_", "URL Rewriting"),
    ("ssl_bump", "SSL"),
    ("sslcrtd", "SSL"),
    ("sslproxy", "SSL"),
    ("coredump_dir", "Miscellaneous"),
    ("include", "Includes"),
]
DEFAULT_HEADING = "Other Settings"


class Directive(BaseModel):
    """Squid 設定ディレクティブ"""

    id: int = 0
    name: str
    value: str
    description: str = ""
    source_file: str = ""
    enabled: bool = True

    @field_validator("name")
    @classmethod
    def _name_is_single_token(cls, v: str) -> str:
        v = v.strip()
        if not v or _SPLIT_RE.search(v) or v.startswith("#"):
            raise ValueError("directive name must be a single non-comment token")
        return v

    @field_validator("value")
    @classmethod
    def _value_is_single_line(cls, v: str) -> str:
        if "\n" in v or "\r" in v:
            raise ValueError("directive value must not contain line breaks")
        v = v.strip()
        if not v:
            # 値のない行はパース時に読み飛ばされるため書き込めない
            raise ValueError("directive value must not be empty")
        return v


def parse_directives(text: str, source_file: str = "", start_id: int = 1) -> List[Directive]:
    """
    設定テキストをディレクティブ列に変換する

    Args:
        text: 設定ファイルの内容
        source_file: 読み込み元ファイル（各ディレクティブに記録）
        start_id: 採番の開始値

    Returns:
        出現順の Directive リスト
    """
    directives: List[Directive] = []
    comments: List[str] = []
    next_id = start_id

    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            comments = []
            continue

        if stripped.startswith("#"):
            comments.append(stripped[1:].strip())
            continue

        parts = _SPLIT_RE.split(stripped, maxsplit=1)
        if len(parts) < 2:
            logger.debug(f"Skipping directive without value: {stripped!r}")
            continue

        directives.append(
            Directive.model_construct(
                id=next_id,
                name=parts[0],
                value=parts[1],
                description="\n".join(comments),
                source_file=source_file,
                enabled=True,
            )
        )
        next_id += 1
        comments = []

    return directives


def parse_directive_files(primary: Path, fragment_dir: Optional[Path] = None) -> List[Directive]:
    """
    メイン設定ファイルと conf.d 配下の *.conf を順に読み込み連結する

    存在しないファイルは空として扱う。id はファイル順・行順に 1 から採番する。
    """
    files: List[Path] = [primary]
    if fragment_dir is not None and fragment_dir.is_dir():
        files.extend(sorted(fragment_dir.glob("*.conf")))

    result: List[Directive] = []
    for path in files:
        if not path.is_file():
            continue
        text = path.read_text(encoding="utf-8", errors="replace")
        result.extend(parse_directives(text, source_file=str(path), start_id=len(result) + 1))
    return result


def section_for(name: str) -> str:
    """ディレクティブ名からセクション見出しを決める"""
    for prefix, heading in SECTION_HEADINGS:
        if name.startswith(prefix):
            return heading
    return DEFAULT_HEADING


def _comment_lines(text: str) -> List[str]:
    lines = []
    for part in text.splitlines() or [""]:
        part = part.strip()
        lines.append(f"# {part}" if part else "#")
    return lines


def serialize_directives(
    directives: Sequence[Directive],
    sort: bool = True,
    header: bool = True,
    now: Optional[datetime] = None,
) -> str:
    """
    ディレクティブ列を設定ファイルのテキストに変換する

    Args:
        directives: 出力するディレクティブ
        sort: True なら名前で安定ソートしてからセクションごとにまとめる
        header: 生成ヘッダーを付けるか
        now: ヘッダーの更新時刻（テスト用）

    Returns:
        ファイル内容（末尾改行付き）

    説明は直前のコメント行として出力するため、再パースで (name, value, description) が復元される。
    見出しの前後には空行を入れ、見出しが説明に取り込まれないようにする。
    無効化されたディレクティブはコメント行として残し、直後に空行を置く。
    """
    items: Iterable[Directive] = directives
    if sort:
        items = sorted(directives, key=lambda d: d.name)

    lines: List[str] = []
    if header:
        stamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
        lines.extend([f"# {GENERATED_HEADER}", f"# Updated: {stamp}", ""])

    current_heading: Optional[str] = None
    for directive in items:
        heading = section_for(directive.name)
        if sort and heading != current_heading:
            if lines and lines[-1] != "":
                lines.append("")
            lines.extend([f"# {heading}", ""])
            current_heading = heading

        if directive.enabled:
            if directive.description:
                lines.extend(_comment_lines(directive.description))
            lines.append(f"{directive.name} {directive.value}")
        else:
            if lines and lines[-1] != "":
                lines.append("")
            lines.append(f"# {directive.name} {directive.value}")
            lines.append("")

    while lines and lines[-1] == "":
        lines.pop()
    return "\n".join(lines) + "\n"
