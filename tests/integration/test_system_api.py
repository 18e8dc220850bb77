"""
システム情報 API の統合テスト
"""

from datetime import datetime
from unittest.mock import AsyncMock, patch

from squid_manager.core.squid_service import SystemInfo

SERVICE = "squid_manager.api.routes.system.squid_service"


class TestSystemInfo:
    def test_TC_SYS_001_info(self, test_client, viewer_headers):
        info = SystemInfo(
            os_version="Debian GNU/Linux 12 (bookworm)",
            kernel_version="6.1.0-18-amd64",
            squid_version="Squid Cache: Version 5.7",
            server_time=datetime(2026, 3, 5, 12, 0, 0),
            memory_total=8 * 1024**3,
            memory_available=4 * 1024**3,
        )
        with patch(f"{SERVICE}.get_system_info", AsyncMock(return_value=info)):
            response = test_client.get("/api/system/info", headers=viewer_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["os_version"] == "Debian GNU/Linux 12 (bookworm)"
        assert data["squidguard_version"] == "Not installed"
        assert data["memory_total"] == 8 * 1024**3

    def test_TC_SYS_002_unauthenticated(self, test_client):
        response = test_client.get("/api/system/info")

        assert response.status_code in (401, 403)


class TestConfigCheck:
    def test_TC_SYS_010_config_ok(self, test_client, viewer_headers):
        with patch(f"{SERVICE}.test_config", AsyncMock(return_value="OK")):
            response = test_client.get("/api/system/test-config", headers=viewer_headers)

        assert response.status_code == 200
        assert response.json() == {"status": "success", "valid": True, "result": "OK"}

    def test_TC_SYS_011_config_error(self, test_client, viewer_headers):
        message = "FATAL: Bungled /etc/squid/squid.conf line 7: http_port"
        with patch(f"{SERVICE}.test_config", AsyncMock(return_value=message)):
            response = test_client.get("/api/system/test-config", headers=viewer_headers)

        assert response.status_code == 200
        assert response.json()["valid"] is False
        assert response.json()["result"] == message
