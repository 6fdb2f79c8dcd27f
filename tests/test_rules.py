"""
tests/test_rules.py — Rule file loading and quota lookup
========================================================
"""
import pytest

from threatguard.detection import RuleError, load_rules
from threatguard.detection.rules import DEFAULT_RULES_PATH, Quota, parse_rules


def _doc(**overrides) -> dict:
    doc = {
        "signatures": {"sql_injection": r"\bunion\b"},
        "sensitive_file_pattern": r"\.env$",
        "automated_agent_pattern": "bot",
        "rate_limits": {
            "default": {"requests": 100, "window_seconds": 60},
            "/api": {"requests": 50, "window_seconds": 60},
            "/api/auth": {"requests": 10, "window_seconds": 60},
            "/api/auth/login": {"requests": 5, "window_seconds": 60},
        },
    }
    doc.update(overrides)
    return doc


class TestBundledRules:
    def test_bundled_file_loads(self):
        rules = load_rules()
        assert rules.source == str(DEFAULT_RULES_PATH)
        assert [name for name, _ in rules.signatures] == [
            "sql_injection", "xss", "command_injection", "path_traversal", "common_payloads",
        ]
        assert rules.default_quota == Quota(requests=100, window_seconds=60)
        assert rules.max_query_params == 20
        assert "GPTBot" in rules.ai_agents
        assert ".." in rules.traversal_markers

    def test_rules_are_immutable(self):
        rules = load_rules()
        with pytest.raises(TypeError):
            rules.quotas["/new"] = Quota(1, 1)


class TestQuotaLookup:
    def test_exact_match_then_default(self):
        rules = parse_rules(_doc())
        assert rules.quota_for("/api/auth/login").requests == 5
        assert rules.quota_for("/api/auth").requests == 10
        assert rules.quota_for("/api").requests == 50
        assert rules.quota_for("/home").requests == 100

    @pytest.mark.parametrize("endpoint", [
        "/api/auth/login-help",
        "/api/auth/login/",
        "/api/auth/logout",
        "/api/files",
    ])
    def test_unlisted_endpoints_get_default(self, endpoint):
        assert parse_rules(_doc()).quota_for(endpoint).requests == 100


class TestInvalidRules:
    def test_missing_file(self, tmp_path):
        with pytest.raises(RuleError, match="not found"):
            load_rules(tmp_path / "nope.yml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yml"
        path.write_text("signatures: [unterminated", encoding="utf-8")
        with pytest.raises(RuleError, match="not valid YAML"):
            load_rules(path)

    def test_top_level_must_be_mapping(self):
        with pytest.raises(RuleError):
            parse_rules(["a", "b"])

    def test_bad_regex(self):
        with pytest.raises(RuleError, match="invalid regex"):
            parse_rules(_doc(signatures={"broken": "(unclosed"}))

    def test_default_quota_required(self):
        with pytest.raises(RuleError, match="default"):
            parse_rules(_doc(rate_limits={"/api": {"requests": 1, "window_seconds": 1}}))

    @pytest.mark.parametrize("quota", [
        {"requests": 5},
        {"requests": "many", "window_seconds": 60},
        {"requests": -1, "window_seconds": 60},
        {"requests": 5, "window_seconds": 0},
        "5/minute",
    ])
    def test_bad_quota(self, quota):
        limits = {"default": {"requests": 1, "window_seconds": 1}, "/x": quota}
        with pytest.raises(RuleError):
            parse_rules(_doc(rate_limits=limits))

    def test_zero_request_quota_is_allowed(self):
        limits = {"default": {"requests": 1, "window_seconds": 1}, "/closed": {"requests": 0, "window_seconds": 60}}
        assert parse_rules(_doc(rate_limits=limits)).quota_for("/closed").requests == 0
