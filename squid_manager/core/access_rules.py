"""
SquidGuard アクセスルールファイルのパーサーとシリアライザー

書式:

    # 説明
    <name> {
        [!]in-addr ...
        pass|block [!]<token> ...
        redirect <url>
    }

id はファイル内のブロック順に 1 から振り直す（永続的な識別子ではない）。
"""

import logging
from typing import List, Literal, Optional, Sequence

from pydantic import BaseModel, field_validator

from .validation import validate_rule_name, validate_rule_token

logger = logging.getLogger(__name__)

IN_ADDR_FLAGS = ("in-addr", "!in-addr")
ACTIONS = ("pass", "block")


class AccessRule(BaseModel):
    """SquidGuard アクセスルール"""

    id: int = 0
    name: str
    sources: List[str] = []
    excluded_sources: List[str] = []
    action: Literal["pass", "block"] = "pass"
    redirect_url: str = ""
    in_addr: str = ""
    description: str = ""

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        v = " ".join(v.split())
        validate_rule_name(v)
        return v

    @field_validator("sources", "excluded_sources")
    @classmethod
    def _check_tokens(cls, v: List[str]) -> List[str]:
        tokens = _unique(t.strip().lstrip("!") for t in v if t.strip())
        for token in tokens:
            validate_rule_token(token)
        return tokens

    @field_validator("redirect_url")
    @classmethod
    def _check_redirect(cls, v: str) -> str:
        v = v.strip()
        if any(c in v for c in ("\n", "\r", "{", "}")):
            raise ValueError("redirect_url must be a single line without braces")
        return v

    @field_validator("in_addr")
    @classmethod
    def _check_in_addr(cls, v: str) -> str:
        v = " ".join(v.split())
        if v and v.split(" ", 1)[0] not in IN_ADDR_FLAGS:
            raise ValueError("in_addr must start with 'in-addr' or '!in-addr'")
        if any(c in v for c in ("{", "}", "#")):
            raise ValueError("in_addr must not contain braces or comments")
        return v

    @field_validator("description")
    @classmethod
    def _check_description(cls, v: str) -> str:
        return "\n".join(line.strip() for line in v.strip().splitlines())


def _unique(tokens) -> List[str]:
    seen = []
    for token in tokens:
        if token not in seen:
            seen.append(token)
    return seen


def _new_rule(name: str, description: str) -> AccessRule:
    return AccessRule.model_construct(
        id=0,
        name=name,
        sources=[],
        excluded_sources=[],
        action="pass",
        redirect_url="",
        in_addr="",
        description=description,
    )


def _apply_action_line(rule: AccessRule, tokens: List[str]) -> None:
    rule.action = tokens[0]
    for token in tokens[1:]:
        if token in IN_ADDR_FLAGS:
            rule.in_addr = token
        elif token.startswith("!"):
            if token[1:] and token[1:] not in rule.excluded_sources:
                rule.excluded_sources.append(token[1:])
        elif token not in rule.sources:
            rule.sources.append(token)


def parse_rules(text: str) -> List[AccessRule]:
    """
    ルールファイルのテキストを AccessRule のリストに変換する

    - "{" で終わる行で新しいルールを開始（開いたままのルールは強制的に閉じて追加）
    - "}" だけの行で現在のルールを閉じる（開いていなければ何もしない）
    - ルール内の認識できない行は無視
    - 末尾で閉じられていないルールも結果に含める
    """
    rules: List[AccessRule] = []
    current: Optional[AccessRule] = None
    comments: List[str] = []

    for line in text.splitlines():
        stripped = line.strip()

        if not stripped:
            comments = []
            continue

        if stripped.startswith("#"):
            if current is None:
                comments.append(stripped[1:].strip())
            continue

        if stripped.endswith("{"):
            if current is not None:
                logger.warning(f"Unterminated rule block force-closed: {current.name}")
                rules.append(current)
            current = _new_rule(stripped[:-1].strip(), "\n".join(comments))
            comments = []
            continue

        if stripped == "}":
            if current is not None:
                rules.append(current)
                current = None
            continue

        if current is None:
            comments = []
            continue

        tokens = stripped.split()
        keyword = tokens[0]
        if keyword in ACTIONS:
            _apply_action_line(current, tokens)
        elif keyword == "redirect":
            current.redirect_url = stripped[len("redirect"):].strip()
        elif keyword in IN_ADDR_FLAGS:
            current.in_addr = stripped

    if current is not None:
        logger.warning(f"Unterminated rule block at end of input: {current.name}")
        rules.append(current)

    for index, rule in enumerate(rules, start=1):
        rule.id = index
    return rules


def serialize_rules(rules: Sequence[AccessRule]) -> str:
    """
    AccessRule 列をルールファイルのテキストに変換する（id 昇順）

    アクション行は "<action> <in-addr フラグ> <!除外ソース...> <ソース...>" の順。
    in_addr がフラグ以外のトークンを含む場合はアクション行の前に単独行として出力する。
    """
    lines: List[str] = []
    for rule in sorted(rules, key=lambda r: r.id):
        if rule.description:
            for part in rule.description.splitlines():
                part = part.strip()
                lines.append(f"# {part}" if part else "#")
        lines.append(f"{rule.name} {{")

        action_tokens = [rule.action]
        if rule.in_addr in IN_ADDR_FLAGS:
            action_tokens.append(rule.in_addr)
        elif rule.in_addr:
            lines.append(f"    {rule.in_addr}")
        action_tokens.extend(f"!{token}" for token in rule.excluded_sources)
        action_tokens.extend(rule.sources)
        lines.append("    " + " ".join(action_tokens))

        if rule.redirect_url:
            lines.append(f"    redirect {rule.redirect_url}")
        lines.append("}")
        lines.append("")

    return "\n".join(lines)
