"""
pytest フィクスチャ定義
"""

import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# プロジェクトルートをパスに追加
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# 環境変数を設定
os.environ["ENV"] = "dev"

from squid_manager.core.cache import TTLCache  # noqa: E402
from squid_manager.core.command_executor import CommandExecutor, CommandResult  # noqa: E402
from squid_manager.core.config import CacheConfig, SquidPaths  # noqa: E402
from squid_manager.core.file_store import FileStore  # noqa: E402


# ===================================================================
# API テスト用
# ===================================================================


@pytest.fixture(scope="session", autouse=True)
def isolated_audit_log(tmp_path_factory):
    """監査ログをテスト用ディレクトリに書き出す"""
    from squid_manager.core.audit_log import audit_log

    original = audit_log.log_dir
    audit_log.log_dir = tmp_path_factory.mktemp("audit")
    yield audit_log
    audit_log.log_dir = original


@pytest.fixture(scope="session")
def test_client():
    """FastAPI テストクライアント"""
    from squid_manager.api.main import app

    with TestClient(app) as client:
        yield client


@pytest.fixture(autouse=True)
def reset_shared_state():
    """レート制限とキャッシュをテストごとにクリア"""
    from squid_manager.api.main import _clear_rate_limit_state
    from squid_manager.core import cache

    _clear_rate_limit_state()
    cache.clear()
    yield
    cache.clear()


def _login(client, email: str, password: str) -> dict:
    response = client.post("/api/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


@pytest.fixture
def viewer_headers(test_client):
    """Viewer ユーザーの認証ヘッダー"""
    return _login(test_client, "viewer@example.com", "viewer123")


@pytest.fixture
def operator_headers(test_client):
    """Operator ユーザーの認証ヘッダー"""
    return _login(test_client, "operator@example.com", "operator123")


@pytest.fixture
def admin_headers(test_client):
    """Admin ユーザーの認証ヘッダー"""
    return _login(test_client, "admin@example.com", "admin123")


# ===================================================================
# サービス層テスト用
# ===================================================================


class FakeExecutor(CommandExecutor):
    """
    コマンド文字列の部分一致で結果を返す CommandExecutor

    後から登録した応答が優先される。未登録のコマンドは成功・出力なし。
    """

    def __init__(self):
        super().__init__(timeout=5.0)
        self.responses = []
        self.commands = []

    def on(self, fragment: str, stdout: str = "", stderr: str = "", success: bool = True, hook=None):
        result = CommandResult(
            success=success, stdout=stdout, stderr=stderr, exit_code=0 if success else 1
        )
        self.responses.append((fragment, result, hook))

    def ran(self, fragment: str) -> bool:
        return any(fragment in command for command in self.commands)

    async def execute(self, command, timeout=None):
        self.commands.append(command)
        for fragment, result, hook in reversed(self.responses):
            if fragment in command:
                if hook is not None:
                    hook(command)
                return result
        return CommandResult(success=True, exit_code=0)


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def squid_paths(tmp_path):
    """tmp_path 配下に配置した Squid / SquidGuard のパス"""
    etc = tmp_path / "etc"
    (etc / "squid" / "conf.d").mkdir(parents=True)
    (etc / "squidguard").mkdir(parents=True)
    logs = tmp_path / "log"
    logs.mkdir()
    return SquidPaths(
        squid_conf=str(etc / "squid" / "squid.conf"),
        squid_conf_dir=str(etc / "squid" / "conf.d"),
        access_log=str(logs / "access.log"),
        cache_log=str(logs / "cache.log"),
        squidguard_conf=str(etc / "squidguard" / "squidGuard.conf"),
        squidguard_rules=str(etc / "squidguard" / "rules.conf"),
        blacklist_dir=str(tmp_path / "db"),
        squidguard_log=str(logs / "squidGuard.log"),
    )


@pytest.fixture
def service_deps(fake_executor, squid_paths):
    """サービスのコンストラクタ引数"""
    return {
        "executor": fake_executor,
        "paths": squid_paths,
        "file_store": FileStore(keep=5),
        "cache": TTLCache(),
        "cache_config": CacheConfig(),
    }
