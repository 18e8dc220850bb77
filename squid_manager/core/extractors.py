"""
コマンド出力からの情報抽出

systemctl / squid -v / os-release などの自由形式テキストから、
バージョン・メモリ使用量・起動時刻・件数を取り出す。

各抽出器は「コンパイル済み正規表現 + 型変換」の組で、
一致しない場合は None を返す（呼び出し側で "Unknown" / 0 などの既定値を選ぶ）。
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"

_MEMORY_MULTIPLIERS = {
    "": 1,
    "K": 1024,
    "M": 1024**2,
    "G": 1024**3,
    "T": 1024**4,
}

# systemd の ActiveEnterTimestamp など
TIMESTAMP_FORMATS = [
    "%a %Y-%m-%d %H:%M:%S %Z",
    "%a %Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M:%S %Z",
    "%Y-%m-%d %H:%M:%S",
    "%a, %d %b %Y %H:%M:%S %Z",
    "%c",
]


def _memory_to_bytes(match: "re.Match[str]") -> int:
    number = float(match.group(1))
    unit = (match.group(2) or "").upper()
    return int(number * _MEMORY_MULTIPLIERS[unit])


@dataclass(frozen=True)
class Extractor:
    """正規表現と型変換の組"""

    name: str
    pattern: "re.Pattern[str]"
    convert: Callable[["re.Match[str]"], Any]

    def extract(self, text: Optional[str]) -> Optional[Any]:
        if not text:
            logger.debug(f"Extractor {self.name}: empty input")
            return None
        match = self.pattern.search(text)
        if not match:
            logger.debug(f"Extractor {self.name}: no match in {text[:80]!r}")
            return None
        try:
            return self.convert(match)
        except (ValueError, KeyError) as e:
            logger.debug(f"Extractor {self.name}: conversion failed: {e}")
            return None


EXTRACTORS = {
    "squid_version": Extractor(
        "squid_version",
        re.compile(r"Squid Cache: Version (\d+(?:\.\d+)+\S*)"),
        lambda m: m.group(1),
    ),
    "memory": Extractor(
        "memory",
        re.compile(r"(\d+(?:\.\d+)?)\s*(?:([KMGT])i?B|B)\b", re.IGNORECASE),
        _memory_to_bytes,
    ),
    "systemd_memory": Extractor(
        "systemd_memory",
        re.compile(r"Memory:\s*(\d+(?:\.\d+)?)([KMGT]?)B?", re.IGNORECASE),
        _memory_to_bytes,
    ),
    "property_value": Extractor(
        "property_value",
        re.compile(r"^[A-Za-z]+=(.*)$", re.MULTILINE),
        lambda m: m.group(1).strip(),
    ),
    "os_pretty_name": Extractor(
        "os_pretty_name",
        re.compile(r'^PRETTY_NAME=("?)(.*)\1\s*$', re.MULTILINE),
        lambda m: m.group(2),
    ),
    "integer": Extractor(
        "integer",
        re.compile(r"-?\d+"),
        lambda m: int(m.group(0)),
    ),
}


def extract_version(output: Optional[str]) -> str:
    """
    Squid バージョン文字列を抽出

    "Squid Cache: Version x.y" に一致しない場合は出力の 1 行目をそのまま返す。
    """
    version = EXTRACTORS["squid_version"].extract(output)
    if version:
        return version
    first_line = first_line_of(output)
    return first_line or UNKNOWN


def first_line_of(output: Optional[str]) -> str:
    """出力の 1 行目（trim 済み）。空なら空文字"""
    if not output:
        return ""
    return output.strip().split("\n", 1)[0].strip()


def parse_memory_bytes(text: Optional[str]) -> Optional[int]:
    """
    "<数値><K|M|G>B" 形式をバイト数に変換（1024 基準）

    例: "123.4MB" -> 129394933, "2GB" -> 2147483648
    """
    return EXTRACTORS["memory"].extract(text)


def extract_systemd_memory(status_output: Optional[str]) -> int:
    """systemctl status の "Memory: 12.3M" 行からバイト数を取り出す。失敗時は 0"""
    value = EXTRACTORS["systemd_memory"].extract(status_output)
    return value if value is not None else 0


def parse_timestamp(text: Optional[str]) -> Optional[datetime]:
    """
    systemd 形式などのタイムスタンプを解析

    "ActiveEnterTimestamp=Thu 2026-03-01 10:00:00 UTC" のような
    プロパティ行も受け付ける。解析できなければ None。
    """
    if not text:
        return None
    value = EXTRACTORS["property_value"].extract(text)
    candidate = (value if value is not None else text).strip()
    if not candidate:
        return None
    for fmt in TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(candidate, fmt)
        except ValueError:
            continue
    # タイムゾーン略称が %Z で解釈できない場合（JST など）は末尾を落として再試行
    head, _, _tail = candidate.rpartition(" ")
    if head:
        for fmt in ("%a %Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M:%S"):
            try:
                return datetime.strptime(head, fmt)
            except ValueError:
                continue
    logger.debug(f"Unparseable timestamp: {candidate!r}")
    return None


def extract_os_pretty_name(os_release: Optional[str]) -> Optional[str]:
    """/etc/os-release の PRETTY_NAME を取り出す"""
    return EXTRACTORS["os_pretty_name"].extract(os_release)


def extract_int(text: Optional[str], default: int = 0) -> int:
    """最初の整数を取り出す。失敗時は default"""
    value = EXTRACTORS["integer"].extract(text)
    return value if value is not None else default
