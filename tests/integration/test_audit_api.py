"""
監査ログ API の統合テスト
"""


class TestAuditLogs:
    def test_TC_AUD_001_admin_sees_all_users(self, test_client, admin_headers, operator_headers):
        response = test_client.get("/api/audit/logs?operation=login", headers=admin_headers)

        assert response.status_code == 200
        users = {entry["user_id"] for entry in response.json()}
        assert {"user_002", "user_003"} <= users

    def test_TC_AUD_002_operator_sees_own_entries_only(self, test_client, operator_headers, admin_headers):
        response = test_client.get("/api/audit/logs?user_id=user_003", headers=operator_headers)

        assert response.status_code == 200
        entries = response.json()
        assert entries
        assert {entry["user_id"] for entry in entries} == {"user_002"}

    def test_TC_AUD_003_viewer_forbidden(self, test_client, viewer_headers):
        response = test_client.get("/api/audit/logs", headers=viewer_headers)

        assert response.status_code == 403

    def test_TC_AUD_004_denied_operation_is_recorded(self, test_client, operator_headers):
        test_client.post("/api/squidguard/update", headers=operator_headers)

        response = test_client.get(
            "/api/audit/logs?status=denied&limit=1", headers=operator_headers
        )

        assert response.json()[0]["target"] == "write:squidguard"

    def test_TC_AUD_005_limit_bounds(self, test_client, admin_headers):
        response = test_client.get("/api/audit/logs?limit=0", headers=admin_headers)

        assert response.status_code == 422
