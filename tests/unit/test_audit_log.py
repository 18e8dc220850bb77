"""
監査ログのユニットテスト
"""

import json

from squid_manager.core.audit_log import AuditLog


class TestAuditLog:
    def test_record_writes_json_line(self, tmp_path):
        audit = AuditLog(tmp_path / "audit")

        audit.record("user_003", "squid_restart", "squid", "success", {"reason": "test"})

        files = list((tmp_path / "audit").glob("audit_*.jsonl"))
        assert len(files) == 1
        entry = json.loads(files[0].read_text(encoding="utf-8").strip())
        assert entry["operation"] == "squid_restart"
        assert entry["details"] == {"reason": "test"}

    def test_query_newest_first_with_filters(self, tmp_path):
        audit = AuditLog(tmp_path)
        audit.record("user_001", "squid_config_read", "squid.conf", "success")
        audit.record("user_003", "squid_config_update", "squid.conf", "failure")
        audit.record("user_003", "squid_reload", "squid", "success")

        assert [e["operation"] for e in audit.query(user_id="user_003")] == [
            "squid_reload",
            "squid_config_update",
        ]
        assert len(audit.query(operation="squid_config_read")) == 1
        assert len(audit.query(limit=2)) == 2
        assert [e["operation"] for e in audit.query(status="failure")] == ["squid_config_update"]

    def test_query_skips_broken_lines(self, tmp_path):
        audit = AuditLog(tmp_path)
        (tmp_path / "audit_20260101.jsonl").write_text('not json\n{"user_id": "u", "operation": "op"}\n')

        assert audit.query() == [{"user_id": "u", "operation": "op"}]

    def test_query_missing_dir(self, tmp_path):
        assert AuditLog(tmp_path / "missing").query() == []
