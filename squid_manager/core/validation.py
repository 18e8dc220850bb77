"""
共通入力検証モジュール

ブラックリストのカテゴリ名・ドメイン・ルール名・ルールトークンを検証する。
カテゴリ名はディレクトリ名として、各値は設定ファイルやコマンドラインに書き込まれるため、
allowlist パターンと禁止文字の両方で検証する。
"""

import re
from typing import Optional


# ===================================================================
# 禁止文字定義
# ===================================================================

FORBIDDEN_CHARS_LIST = [
    ';',   # コマンド区切り
    '|',   # パイプ
    '&',   # バックグラウンド実行
    '$',   # 変数展開
    '(',   # サブシェル
    ')',   # サブシェル
    '`',   # コマンド置換
    ' ',   # スペース（意図しない引数分割）
    '>',   # リダイレクト
    '<',   # リダイレクト
    '*',   # ワイルドカード
    '?',   # ワイルドカード
    '{',   # ブレース展開 / ルールブロック
    '}',   # ブレース展開 / ルールブロック
    '[',   # グロブ
    ']',   # グロブ
    '\\',  # エスケープ
    "'",   # シングルクォート
    '"',   # ダブルクォート
    '#',   # コメント
    '\n',  # 改行
    '\r',  # キャリッジリターン
    '\t',  # タブ
    '\0',  # NULL文字
]

CATEGORY_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$"
DOMAIN_PATTERN = r"^(?=.{1,253}$)[A-Za-z0-9*_](?:[A-Za-z0-9_-]{0,62})?(?:\.[A-Za-z0-9_](?:[A-Za-z0-9_-]{0,62})?)*\.?$"
RULE_NAME_PATTERN = r"^[A-Za-z0-9_.-]{1,64}(?: (?:within|outside) [A-Za-z0-9_.-]{1,64})?$"
RULE_TOKEN_PATTERN = r"^[A-Za-z0-9_.:/@-]{1,128}$"


class ValidationError(ValueError):
    """入力検証エラー"""

    pass


def validate_no_forbidden_chars(value: str, field_name: str = "input") -> None:
    """
    禁止文字チェック

    Args:
        value: 検証する文字列
        field_name: フィールド名（エラーメッセージ用）

    Raises:
        ValidationError: 禁止文字が含まれる場合
    """
    for char in FORBIDDEN_CHARS_LIST:
        if char in value:
            raise ValidationError(
                f"{field_name} contains forbidden character: {repr(char)}"
            )


def validate_pattern(
    value: str, pattern: str, field_name: str = "input", max_length: Optional[int] = None
) -> None:
    """
    正規表現パターン検証

    Raises:
        ValidationError: パターンに一致しない場合
    """
    if max_length and len(value) > max_length:
        raise ValidationError(
            f"{field_name} exceeds maximum length {max_length} (got {len(value)})"
        )

    if not re.match(pattern, value):
        raise ValidationError(f"{field_name} does not match required pattern")


def validate_category(category: str) -> None:
    """
    ブラックリストカテゴリ名検証（ディレクトリ名として安全であること）

    Raises:
        ValidationError: 検証失敗時
    """
    validate_pattern(category, CATEGORY_PATTERN, field_name="category", max_length=64)
    validate_no_forbidden_chars(category, "category")
    if category in (".", "..") or ".." in category:
        raise ValidationError("category must not contain '..'")


def validate_domain(domain: str) -> None:
    """
    ドメイン名検証

    Raises:
        ValidationError: 検証失敗時
    """
    validate_pattern(domain, DOMAIN_PATTERN, field_name="domain", max_length=253)


def validate_rule_name(name: str) -> None:
    """
    ルール名検証（"name" または "name within|outside timeName"）

    Raises:
        ValidationError: 検証失敗時
    """
    validate_pattern(name, RULE_NAME_PATTERN, field_name="rule name", max_length=140)


def validate_rule_token(token: str) -> None:
    """
    pass/block 行のトークン検証（src/dest 名、all、none など）

    Raises:
        ValidationError: 検証失敗時
    """
    validate_pattern(token, RULE_TOKEN_PATTERN, field_name="rule token", max_length=128)
    if token in ("in-addr",):
        raise ValidationError("in-addr must be set via in_addr, not as a source")


def validate_single_line(value: str, field_name: str = "input") -> None:
    """
    改行を含まないことの検証（1 行 1 エントリのリストファイル用）

    Raises:
        ValidationError: 改行・NULL 文字を含む場合
    """
    if any(c in value for c in ("\n", "\r", "\0")):
        raise ValidationError(f"{field_name} must be a single line")
