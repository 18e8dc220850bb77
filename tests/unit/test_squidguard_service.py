"""
SquidGuardService のユニットテスト

ブラックリスト・アクセスルール・squidGuard.conf・統計
"""

import asyncio
from pathlib import Path

import pytest

from squid_manager.core.access_rules import AccessRule, parse_rules
from squid_manager.core.exceptions import RuleConflictError, RuleNotFoundError
from squid_manager.core.squidguard_service import SquidGuardService, parse_squidguard_config
from squid_manager.core.validation import ValidationError


def run_async(coro):
    """コルーチンを同期的に実行"""
    return asyncio.run(coro)


RULES_FILE = """# staff policy
staff {
    pass !adult all
}

kids {
    !in-addr 10.0.0.0/8
    block porn gambling
    redirect http://blocked.local/
}
"""

SQUIDGUARD_CONF = """dbhome /var/lib/squidguard/db
logdir /var/log/squidguard

time workhours {
    weekly mtwhf 08:00-17:00
}

src admins {
    ip 10.0.0.0/24
}

dest adult {
    domainlist adult/domains
    urllist adult/urls
}

dest gambling {
    domainlist gambling/domains
}

acl {
    admins within workhours {
        pass all
    }
    default {
        pass !adult !gambling all
        redirect http://blocked.local/
    }
}
"""


@pytest.fixture
def service(service_deps):
    return SquidGuardService(**service_deps)


@pytest.fixture
def rules_path(squid_paths):
    path = Path(squid_paths.squidguard_rules)
    path.write_text(RULES_FILE)
    return path


# ===================================================================
# ブラックリスト
# ===================================================================


class TestBlacklists:
    def test_no_blacklist_directory(self, service):
        assert run_async(service.get_blacklists()) == []

    def test_read_categories(self, service, squid_paths):
        root = Path(squid_paths.blacklist_dir)
        (root / "adult").mkdir(parents=True)
        (root / "adult" / "domains").write_text("example.com\n\n  bad.example \n")
        (root / "adult" / "urls").write_text("example.org/path\n")
        (root / "ads").mkdir()

        blacklists = run_async(service.get_blacklists())

        assert [b.category for b in blacklists] == ["ads", "adult"]
        assert blacklists[0].domains == []
        assert blacklists[1].domains == ["example.com", "bad.example"]
        assert blacklists[1].urls == ["example.org/path"]
        assert blacklists[1].expressions == []
        assert blacklists[1].last_updated is not None

    def test_update_writes_only_given_lists(self, service, squid_paths, fake_executor):
        """None のリストは変更せず、書き込み後にコンパイルする"""
        category_dir = Path(squid_paths.blacklist_dir) / "adult"
        category_dir.mkdir(parents=True)
        (category_dir / "urls").write_text("keep.example/path\n")

        ok = run_async(service.update_blacklist("adult", domains=["a.example", "b.example"]))

        assert ok is True
        assert (category_dir / "domains").read_text() == "a.example\nb.example\n"
        assert (category_dir / "urls").read_text() == "keep.example/path\n"
        assert not (category_dir / "expressions").exists()
        assert fake_executor.ran("squidGuard -C all")

    def test_update_creates_category(self, service, squid_paths):
        run_async(service.update_blacklist("newcat", domains=[], urls=["x.example/y"]))

        category_dir = Path(squid_paths.blacklist_dir) / "newcat"
        assert (category_dir / "domains").read_text() == ""
        assert (category_dir / "urls").read_text() == "x.example/y\n"

    def test_update_invalidates_cache(self, service):
        async def scenario():
            await service.get_blacklists()
            await service.update_blacklist("ads", domains=["ads.example"])
            return await service.get_blacklists()

        result = run_async(scenario())

        assert [b.domains for b in result] == [["ads.example"]]

    @pytest.mark.parametrize("category", ["../etc", "a b", "x;rm"])
    def test_update_rejects_bad_category(self, service, squid_paths, category):
        with pytest.raises(ValidationError):
            run_async(service.update_blacklist(category, domains=["a.example"]))

    def test_update_rejects_bad_domain(self, service):
        with pytest.raises(ValidationError):
            run_async(service.update_blacklist("ads", domains=["bad domain"]))

    @pytest.mark.parametrize(
        "lists",
        [
            {"urls": ["x.example/a\nevil.example/b"]},
            {"expressions": ["(ads|track)\r\n.*"]},
        ],
    )
    def test_update_rejects_multiline_entries(self, service, squid_paths, lists):
        """改行を含むエントリは複数行に分割されず拒否される"""
        with pytest.raises(ValidationError):
            run_async(service.update_blacklist("ads", **lists))

        assert not (Path(squid_paths.blacklist_dir) / "ads").exists()

    def test_compile_failure_reported(self, service, fake_executor):
        fake_executor.on("-C all", stderr="db error", success=False)

        assert run_async(service.update_blacklist("ads", domains=["a.example"])) is False

    def test_remove_domain_case_insensitive(self, service, squid_paths):
        category_dir = Path(squid_paths.blacklist_dir) / "adult"
        category_dir.mkdir(parents=True)
        (category_dir / "domains").write_text("Example.COM\nother.example\n")

        assert run_async(service.remove_from_blacklist("adult", "example.com")) is True
        assert (category_dir / "domains").read_text() == "other.example\n"

    def test_remove_from_missing_domains_file(self, service, fake_executor):
        assert run_async(service.remove_from_blacklist("adult", "example.com")) is False
        assert not fake_executor.ran("-C all")


class TestCompileAndReload:
    def test_reload_compiles_then_reloads_squid(self, service, fake_executor):
        assert run_async(service.reload()) is True
        assert fake_executor.commands == ["squidGuard -C all", "systemctl reload squid"]

    def test_reload_reports_compile_failure(self, service, fake_executor):
        fake_executor.on("-C all", success=False)

        assert run_async(service.reload()) is False
        assert fake_executor.ran("systemctl reload squid")


# ===================================================================
# アクセスルール
# ===================================================================


class TestRules:
    def test_get_rules(self, service, rules_path):
        rules = run_async(service.get_rules())

        assert [(r.id, r.name) for r in rules] == [(1, "staff"), (2, "kids")]
        assert rules[0].description == "staff policy"
        assert rules[1].in_addr == "!in-addr 10.0.0.0/8"

    def test_missing_rules_file(self, service):
        assert run_async(service.get_rules()) == []

    def test_add_rule_appends_and_reloads(self, service, rules_path, fake_executor):
        new_rule = AccessRule(name="guests", action="block", sources=["social"])

        created = run_async(service.add_rule(new_rule))

        assert created.id == 3
        rules = parse_rules(rules_path.read_text())
        assert [r.name for r in rules] == ["staff", "kids", "guests"]
        assert rules[1].redirect_url == "http://blocked.local/"
        assert fake_executor.ran("squidGuard -C all")
        assert fake_executor.ran("systemctl reload squid")

    def test_add_rule_creates_file(self, service, squid_paths):
        run_async(service.add_rule(AccessRule(name="default", sources=["all"])))

        rules = parse_rules(Path(squid_paths.squidguard_rules).read_text())
        assert [(r.name, r.sources) for r in rules] == [("default", ["all"])]

    def test_write_creates_backup(self, service, rules_path):
        run_async(service.add_rule(AccessRule(name="guests", sources=["all"])))

        backups = service.file_store.list_backups(rules_path)
        assert len(backups) == 1
        assert backups[0].read_text() == RULES_FILE

    def test_update_rule(self, service, rules_path):
        replacement = AccessRule(name="kids", action="pass", sources=["edu"])

        updated = run_async(service.update_rule(2, replacement, expected_name="kids"))

        assert updated.id == 2
        rules = parse_rules(rules_path.read_text())
        assert (rules[1].name, rules[1].action, rules[1].sources) == ("kids", "pass", ["edu"])
        assert rules[0].excluded_sources == ["adult"]

    def test_update_rule_conflict(self, service, rules_path):
        """位置が別のルールを指している場合は RuleConflictError"""
        with pytest.raises(RuleConflictError):
            run_async(service.update_rule(1, AccessRule(name="x"), expected_name="kids"))
        assert rules_path.read_text() == RULES_FILE

    def test_update_unknown_rule(self, service, rules_path):
        with pytest.raises(RuleNotFoundError):
            run_async(service.update_rule(9, AccessRule(name="x")))

    def test_remove_rule_renumbers(self, service, rules_path):
        run_async(service.remove_rule(1))

        rules = parse_rules(rules_path.read_text())
        assert [(r.id, r.name) for r in rules] == [(1, "kids")]

    def test_remove_rule_conflict(self, service, rules_path):
        with pytest.raises(RuleConflictError):
            run_async(service.remove_rule(2, expected_name="staff"))
        assert rules_path.read_text() == RULES_FILE

    @pytest.mark.parametrize("rule_id", [0, 3, -1])
    def test_remove_unknown_rule(self, service, rules_path, rule_id):
        with pytest.raises(RuleNotFoundError):
            run_async(service.remove_rule(rule_id))

    def test_get_rule(self, service, rules_path):
        assert run_async(service.get_rule(2)).name == "kids"
        with pytest.raises(RuleNotFoundError):
            run_async(service.get_rule(5))

    def test_concurrent_adds_are_serialized(self, service, rules_path):
        """同時追加でもルールが失われない"""

        async def scenario():
            await asyncio.gather(
                *(service.add_rule(AccessRule(name=f"r{i}", sources=["all"])) for i in range(5))
            )

        run_async(scenario())

        names = [r.name for r in parse_rules(rules_path.read_text())]
        assert len(names) == 7
        assert sorted(names[2:]) == ["r0", "r1", "r2", "r3", "r4"]


# ===================================================================
# squidGuard.conf
# ===================================================================


class TestSquidGuardConfig:
    def test_parse_config(self):
        parsed = parse_squidguard_config(SQUIDGUARD_CONF)

        assert parsed["db_home"] == "/var/lib/squidguard/db"
        assert parsed["log_dir"] == "/var/log/squidguard"
        assert parsed["time_settings"] == ["workhours"]
        assert parsed["sources"] == ["admins"]
        assert parsed["destinations"] == ["adult", "gambling"]
        assert parsed["acl_rules"] == ["admins within workhours", "default"]

    def test_get_config_missing(self, service, squid_paths):
        config = run_async(service.get_config())

        assert config.raw_config == ""
        assert config.file_path == squid_paths.squidguard_conf
        assert config.last_modified is None

    def test_get_config(self, service, squid_paths):
        Path(squid_paths.squidguard_conf).write_text(SQUIDGUARD_CONF)

        config = run_async(service.get_config())

        assert config.raw_config == SQUIDGUARD_CONF
        assert config.destinations == ["adult", "gambling"]
        assert config.last_modified is not None

    def test_update_partial(self, service, squid_paths, fake_executor):
        conf = Path(squid_paths.squidguard_conf)
        conf.write_text(SQUIDGUARD_CONF)

        ok = run_async(service.update_config_partial({"dbhome": "/srv/sg/db"}))

        assert ok is True
        text = conf.read_text()
        assert text.startswith("dbhome /srv/sg/db\nlogdir /var/log/squidguard\n")
        assert text.count("dbhome") == 1
        assert fake_executor.ran("squidGuard -C all")

    def test_update_partial_adds_missing_key(self, service, squid_paths):
        conf = Path(squid_paths.squidguard_conf)
        conf.write_text("dbhome /db\n")

        run_async(service.update_config_partial({"logdir": "/logs"}))

        assert conf.read_text() == "logdir /logs\ndbhome /db\n"

    @pytest.mark.parametrize(
        "updates", [{"acl": "x"}, {"dbhome": ""}, {"dbhome": "/a b"}, {"logdir": "/x#y"}]
    )
    def test_update_partial_rejects(self, service, updates):
        with pytest.raises(ValueError):
            run_async(service.update_config_partial(updates))


# ===================================================================
# ログ・統計
# ===================================================================


class TestLogsAndStats:
    def test_logs_missing(self, service):
        assert run_async(service.get_logs()) == ["SquidGuard log file not found"]

    def test_logs(self, service, squid_paths, fake_executor):
        Path(squid_paths.squidguard_log).write_text("x\n")
        fake_executor.on("tail -n 20", stdout="2026-03-05 blocked example.com\n")

        assert run_async(service.get_logs(20)) == ["2026-03-05 blocked example.com"]

    def test_stats(self, service, squid_paths, rules_path, fake_executor):
        Path(squid_paths.squidguard_conf).write_text(SQUIDGUARD_CONF)
        root = Path(squid_paths.blacklist_dir)
        (root / "adult").mkdir(parents=True)
        (root / "adult" / "domains").write_bytes(b"a" * 100)
        (root / "ads").mkdir()
        (root / "ads" / "domains.db").write_bytes(b"b" * 50)
        fake_executor.on("systemctl is-active", stdout="active\n")

        stats = run_async(service.get_stats())

        assert stats.config_exists is True
        assert stats.rules_exist is True
        assert stats.blacklists_exist is True
        assert stats.log_file_exists is False
        assert stats.squid_service_active is True
        assert stats.categories_count == 2
        assert stats.total_database_size == 150
