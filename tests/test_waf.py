"""
Tests for the WAF pattern rule set.
"""
import re
import time

import pytest

from cms_security.observability.metrics import MetricsRegistry
from cms_security.security.exceptions import ScanLimitExceeded
from cms_security.security.models import RuleAction, Severity
from cms_security.security.waf import (
    PatternRuleSet, ScanTarget, SecurityRule, default_rules, flatten_body,
)


def rule_names(matches):
    return [m.rule for m in matches]


@pytest.fixture
def rule_set():
    return PatternRuleSet()


class TestDefaultRules:
    """Default rule catalogue."""

    def test_rules_are_in_evaluation_order(self):
        assert [rule.name for rule in default_rules()] == [
            "sql_injection_union",
            "sql_injection_comment",
            "xss_script_tag",
            "xss_event_handler",
            "xss_javascript_protocol",
            "path_traversal",
            "command_injection",
            "scanner_user_agent",
            "suspicious_path",
        ]

    def test_only_union_traversal_and_scanner_rules_block(self):
        blocking = {rule.name for rule in default_rules() if rule.action == RuleAction.BLOCK}
        assert blocking == {"sql_injection_union", "path_traversal", "scanner_user_agent"}

    def test_rule_rejects_unknown_field(self):
        with pytest.raises(ValueError):
            SecurityRule(
                name="bad",
                pattern=re.compile("x"),
                severity=Severity.LOW,
                action=RuleAction.LOG,
                fields=("cookies",),
            )


class TestPatternRuleSet:
    """Scanning single texts."""

    def test_clean_text_has_no_matches(self, rule_set):
        assert rule_set.scan("hello world, a perfectly normal blog post") == []

    def test_union_select_blocks(self, rule_set):
        matches = rule_set.scan("1 UNION SELECT password FROM users")
        assert "sql_injection_union" in rule_names(matches)
        assert rule_set.blocking(matches)
        union = matches[0]
        assert union.severity == Severity.CRITICAL
        assert union.matched.lower().startswith("union")

    def test_select_then_union_also_matches(self, rule_set):
        assert "sql_injection_union" in rule_names(rule_set.scan("select a from b union all"))

    def test_union_inside_words_does_not_match(self, rule_set):
        assert rule_set.scan("reunion selection") == []

    def test_sql_comment_is_log_only(self, rule_set):
        matches = rule_set.scan("admin' --")
        assert rule_names(matches) == ["sql_injection_comment"]
        assert not rule_set.blocking(matches)

    def test_script_tag_is_log_only(self, rule_set):
        matches = rule_set.scan("<script src=x>")
        assert "xss_script_tag" in rule_names(matches)
        assert not rule_set.blocking(matches)

    def test_event_handler_with_quoted_value(self, rule_set):
        assert "xss_event_handler" in rule_names(rule_set.scan('<img onerror="steal">'))

    def test_javascript_protocol(self, rule_set):
        assert "xss_javascript_protocol" in rule_names(rule_set.scan("JavaScript :void"))

    def test_path_traversal_blocks(self, rule_set):
        matches = rule_set.scan("../../etc/passwd")
        assert rule_names(matches) == ["path_traversal"]
        assert rule_set.blocking(matches)

    def test_backslash_traversal_blocks(self, rule_set):
        assert "path_traversal" in rule_names(rule_set.scan("..\\..\\windows\\win.ini"))

    def test_single_parent_reference_is_allowed(self, rule_set):
        assert rule_set.scan("../images/logo.png") == []

    def test_command_injection_characters(self, rule_set):
        matches = rule_set.scan("name; rm -rf")
        assert rule_names(matches) == ["command_injection"]
        assert not rule_set.blocking(matches)

    def test_every_matching_rule_is_reported(self, rule_set):
        matches = rule_set.scan("<script>x</script> UNION SELECT 1 -- ../../")
        names = rule_names(matches)
        for expected in ("sql_injection_union", "sql_injection_comment", "xss_script_tag", "path_traversal"):
            assert expected in names
        order = [rule.name for rule in rule_set.rules]
        assert names == sorted(names, key=order.index)

    def test_matched_preview_is_truncated(self, rule_set):
        matches = rule_set.scan("<script " + "a" * 300 + ">")
        script = next(m for m in matches if m.rule == "xss_script_tag")
        assert len(script.matched) == 100

    def test_text_beyond_scan_limit_is_rejected(self):
        rule_set = PatternRuleSet(max_scan_length=1000)
        with pytest.raises(ScanLimitExceeded):
            rule_set.scan("a" * 1000 + " UNION SELECT 1")

    def test_text_at_scan_limit_is_scanned_in_full(self):
        rule_set = PatternRuleSet(max_scan_length=1000)
        payload = "a" * 985 + " UNION SELECT 1"
        assert len(payload) == 1000
        assert "sql_injection_union" in rule_names(rule_set.scan(payload))

    def test_long_field_rejects_whole_target(self):
        rule_set = PatternRuleSet(max_scan_length=1000)
        target = ScanTarget.from_request(
            "/api/posts",
            body={"pad": "a" * 1200},
            referer="http://x/?id=1 UNION SELECT password FROM users",
        )
        with pytest.raises(ScanLimitExceeded) as exc_info:
            rule_set.scan_target(target)
        assert exc_info.value.field == "body"
        assert exc_info.value.status_code == 413

    def test_limit_applies_per_field(self):
        rule_set = PatternRuleSet(max_scan_length=1000)
        target = ScanTarget.from_request(
            "/api/posts",
            body={"pad": "a" * 900},
            referer="http://x/?id=1 UNION SELECT password FROM users " + "b" * 900,
        )
        assert "sql_injection_union" in rule_names(rule_set.scan_target(target))

    def test_duplicate_rule_names_rejected(self):
        rules = default_rules()
        with pytest.raises(ValueError):
            PatternRuleSet(rules + [rules[0]])

    def test_non_positive_scan_length_rejected(self):
        with pytest.raises(ValueError):
            PatternRuleSet(max_scan_length=0)

    def test_matches_recorded_in_metrics(self):
        metrics = MetricsRegistry()
        rule_set = PatternRuleSet(metrics=metrics)
        rule_set.scan("../../etc/passwd")
        assert metrics.get_sample_value(
            "waf_rule_matches_total", {"rule": "path_traversal", "action": "block"}
        ) == 1.0

    @pytest.mark.parametrize("payload", [
        "union " * 20000,
        "select " * 20000,
        "<" * 100000,
        "<script " * 20000,
        "onx=\"" * 20000,
        "on" + "a" * 100000 + "=",
        "javascript" + " " * 100000,
        "../" * 50000,
    ])
    def test_adversarial_input_scans_quickly(self, rule_set, payload):
        started = time.perf_counter()
        rule_set.scan(payload)
        assert time.perf_counter() - started < 2.0


class TestScanTarget:
    """Building scan text from request parts."""

    def test_query_pairs_are_decoded_and_space_separated(self):
        target = ScanTarget.from_request("/api/posts", [("q", "a b"), ("page", "2")])
        assert target.query == "q=a b page=2"

    def test_plain_query_does_not_trip_shell_rule(self, rule_set):
        target = ScanTarget.from_request("/api/posts", [("q", "news"), ("page", "2")])
        assert rule_set.scan_target(target) == []

    def test_bytes_body_is_decoded(self):
        target = ScanTarget.from_request("/", body=b"caf\xc3\xa9 \xff")
        assert target.body.startswith("café")

    def test_parsed_body_is_flattened(self):
        target = ScanTarget.from_request("/", body={"title": "hi", "tags": ["a", {"k": "v"}], "n": 3})
        assert target.body == "title hi tags a k v n"

    def test_unflattenable_body_scans_as_empty(self):
        class ExplodingDict(dict):
            def items(self):
                raise RuntimeError("boom")

        target = ScanTarget.from_request("/", body=ExplodingDict(a=1))
        assert target.body == ""

    def test_scanner_rule_only_looks_at_user_agent(self, rule_set):
        in_body = ScanTarget.from_request("/", body="how to use sqlmap")
        assert "scanner_user_agent" not in rule_names(rule_set.scan_target(in_body))

        in_agent = ScanTarget.from_request("/", user_agent="sqlmap/1.7.2#stable")
        matches = rule_set.scan_target(in_agent)
        assert "scanner_user_agent" in rule_names(matches)
        assert rule_set.blocking(matches)

    def test_suspicious_path_only_looks_at_url(self, rule_set):
        assert rule_names(rule_set.scan_target(ScanTarget.from_request("/wp-admin/install"))) == [
            "suspicious_path"
        ]
        assert rule_set.scan_target(ScanTarget.from_request("/", [("next", "/wp-admin")])) == []

    def test_traversal_in_query_blocks(self, rule_set):
        target = ScanTarget.from_request("/api/files", [("f", "../../etc/passwd")])
        assert rule_set.blocking(rule_set.scan_target(target))


class TestFlattenBody:
    """Flattening parsed bodies."""

    def test_cycles_are_visited_once(self):
        data = {"a": "x"}
        data["self"] = data
        assert flatten_body(data) == "a x self"

    def test_deep_nesting_is_cut_off(self):
        data = "leaf"
        for _ in range(100):
            data = [data]
        assert flatten_body(data) == ""
