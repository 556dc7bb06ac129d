"""
Tests for input sanitization.
"""
import time

import pytest

from cms_security.security.sanitization import InputSanitizer, SanitizationConfig


@pytest.fixture
def sanitizer():
    return InputSanitizer()


def nested_script(layers: int, suffix: str = "") -> str:
    """``<scr`` fragments that only form a script tag once the inner one is removed."""
    return "<scr" * layers + "<script>" + "ipt>" * layers + suffix


def depth_of(value) -> int:
    if isinstance(value, dict):
        return 1 + max((depth_of(v) for v in value.values()), default=0)
    if isinstance(value, (list, tuple)):
        return 1 + max((depth_of(v) for v in value), default=0)
    return 0


class TestSanitizeString:
    """Single string cleaning."""

    def test_removes_script_block(self, sanitizer):
        assert sanitizer.sanitize_string("Hello <script>alert(1)</script>world") == "Hello world"

    def test_script_block_ends_at_first_close_tag(self, sanitizer):
        value = "<script>a</script>keep<script>b</script>"
        assert sanitizer.sanitize_string(value) == "keep"

    def test_case_insensitive(self, sanitizer):
        assert sanitizer.sanitize_string("<SCRIPT SRC=x>alert(1)</ScRiPt>ok") == "ok"

    def test_removes_unbalanced_tags(self, sanitizer):
        assert sanitizer.sanitize_string("<script src=//evil>") == ""
        assert sanitizer.sanitize_string("text</script>") == "text"

    def test_removes_javascript_uri(self, sanitizer):
        assert sanitizer.sanitize_string("javascript:alert(1)") == "alert(1)"
        assert sanitizer.sanitize_string("JAVASCRIPT :void(0)") == "void(0)"

    def test_removes_event_handler_assignment(self, sanitizer):
        assert sanitizer.sanitize_string("<img src=x onerror=alert(1)>") == "<img src=x alert(1)>"

    def test_trims_whitespace(self, sanitizer):
        assert sanitizer.sanitize_string("  plain text  ") == "plain text"

    def test_keeps_ordinary_markup(self, sanitizer):
        assert sanitizer.sanitize_string("<p>Hello <b>world</b></p>") == "<p>Hello <b>world</b></p>"

    def test_words_starting_with_on_survive(self, sanitizer):
        assert sanitizer.sanitize_string("online only") == "online only"

    @pytest.mark.parametrize("value", [
        "<scr<script>ipt>alert(1)</script>",
        "<<script>script>alert(1)",
        "<sc<script>ript>",
        nested_script(3),
        "jajavascript:vascript:alert(1)",
        "<script>",
    ])
    def test_no_script_fragments_survive(self, sanitizer, value):
        cleaned = sanitizer.sanitize_string(value).lower()
        assert "<script" not in cleaned
        assert "javascript:" not in cleaned
        assert "onerror=" not in cleaned

    @pytest.mark.parametrize("value", [
        "Hello <script>alert(1)</script>world",
        "<scr<script>ipt>alert(1)</script>",
        "jajavascript:vascript:x",
        "  <b onclick=go()>hi</b>  ",
        "plain",
        "",
    ])
    def test_idempotent(self, sanitizer, value):
        once = sanitizer.sanitize_string(value)
        assert sanitizer.sanitize_string(once) == once

    def test_nested_fragments_are_removed_until_stable(self, sanitizer):
        assert sanitizer.sanitize_string(nested_script(3, "ok")) == "ok"

    def test_unstable_string_becomes_empty(self, sanitizer):
        assert sanitizer.sanitize_string(nested_script(20, "ok")) == ""

    def test_max_passes_is_configurable(self):
        sanitizer = InputSanitizer(SanitizationConfig(max_passes=32))
        assert sanitizer.sanitize_string(nested_script(20, "ok")) == "ok"

    @pytest.mark.parametrize("payload", [
        "<script" * 20000,
        "<script>" * 20000,
        "</script>" * 20000,
        "on" + "a" * 100000,
        "javascript" * 20000,
    ])
    def test_adversarial_input_is_linear(self, sanitizer, payload):
        started = time.perf_counter()
        sanitizer.sanitize_string(payload)
        assert time.perf_counter() - started < 2.0


class TestSanitize:
    """Deep sanitization of parsed data."""

    def test_nested_structures(self, sanitizer):
        data = {
            "title": "<script>x</script>Hello",
            "tags": ["news", "javascript:alert(1)"],
            "meta": {"views": 10, "published": True, "rating": 4.5, "cover": None},
        }
        assert sanitizer.sanitize(data) == {
            "title": "Hello",
            "tags": ["news", "alert(1)"],
            "meta": {"views": 10, "published": True, "rating": 4.5, "cover": None},
        }

    def test_input_is_not_mutated(self, sanitizer):
        data = {"title": "<script>x</script>Hello"}
        sanitizer.sanitize(data)
        assert data == {"title": "<script>x</script>Hello"}

    def test_blocked_keys_are_dropped(self, sanitizer):
        data = {
            "__proto__": {"isAdmin": True},
            "constructor": {"prototype": {"isAdmin": True}},
            "userPrototype": 1,
            "name": "ok",
        }
        assert sanitizer.sanitize(data) == {"constructor": {}, "name": "ok"}

    def test_tuples_stay_tuples(self, sanitizer):
        assert sanitizer.sanitize(("a", "javascript:b")) == ("a", "b")

    def test_scalars_pass_through(self, sanitizer):
        assert sanitizer.sanitize(42) == 42
        assert sanitizer.sanitize(None) is None

    def test_excessive_depth_is_cut_off(self, sanitizer):
        data = {"leaf": "x"}
        for _ in range(100):
            data = {"child": data}

        result = sanitizer.sanitize(data)

        assert depth_of(result) <= sanitizer.config.max_depth

    def test_custom_depth(self):
        sanitizer = InputSanitizer(SanitizationConfig(max_depth=2))
        assert sanitizer.sanitize({"a": {"b": {"c": "d"}}, "e": "f"}) == {"a": {}, "e": "f"}

    def test_dict_cycle_is_dropped(self, sanitizer):
        data = {"name": "loop"}
        data["self"] = data
        assert sanitizer.sanitize(data) == {"name": "loop"}

    def test_list_cycle_is_dropped(self, sanitizer):
        items = ["a"]
        items.append(items)
        assert sanitizer.sanitize(items) == ["a"]

    def test_shared_references_are_kept(self, sanitizer):
        shared = {"x": "1"}
        assert sanitizer.sanitize({"a": shared, "b": shared}) == {"a": {"x": "1"}, "b": {"x": "1"}}


class TestSanitizePairs:
    """Query strings and form bodies."""

    def test_pairs_keep_order_and_duplicates(self, sanitizer):
        pairs = [("tag", "a"), ("q", "<script>x</script>news"), ("tag", "b")]
        assert sanitizer.sanitize_pairs(pairs) == [("tag", "a"), ("q", "news"), ("tag", "b")]

    def test_blocked_keys_are_dropped(self, sanitizer):
        assert sanitizer.sanitize_pairs([("__proto__[admin]", "1"), ("page", "2")]) == [("page", "2")]
