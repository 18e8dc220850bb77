"""サービス層の例外"""


class SquidManagerError(Exception):
    """サービス層エラーの基底クラス"""

    pass


class ConfigValidationError(SquidManagerError):
    """書き込んだ設定が squid -k parse で拒否された（復元済み）"""

    def __init__(self, message: str, output: str = "", restored: bool = True):
        super().__init__(message)
        self.output = output
        self.restored = restored


class RuleNotFoundError(SquidManagerError, LookupError):
    """指定 id のルールが存在しない"""

    pass


class RuleConflictError(SquidManagerError):
    """読み取り後にルールの並びが変わり、id が別のルールを指している"""

    pass


class BlacklistError(SquidManagerError):
    """ブラックリスト操作エラー"""

    pass
