"""
Tests for the prompt and array text helpers.
"""

import re

import pytest

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from mediaflow.utils.text_parsing import (
    compile_split_pattern,
    parse_text_to_array,
    parse_var_tags,
    resolve_template,
)


class TestVarTags:
    def test_parses_multiple_tags(self):
        text = 'intro <var="animal">cat</var> and <var="place">a\nroof</var>'
        assert parse_var_tags(text) == [("animal", "cat"), ("place", "a\nroof")]

    def test_no_tags(self):
        assert parse_var_tags("plain text") == []


class TestResolveTemplate:
    def test_substitutes_and_reports_unresolved(self):
        resolved, unresolved = resolve_template(
            "A @animal on @place with @animal friends and @missing",
            {"animal": "cat", "place": "roof"},
        )
        assert resolved == "A cat on roof with cat friends and @missing"
        assert unresolved == ["missing"]


class TestParseTextToArray:
    def test_delimiter_mode_trims_and_drops_empty(self):
        assert parse_text_to_array(" a * b ** c ", delimiter="*") == ["a", "b", "c"]

    def test_keep_empty_and_untrimmed(self):
        items = parse_text_to_array("a,,b ", delimiter=",", trim_items=False, remove_empty=False)
        assert items == ["a", "", "b "]

    def test_newline_mode(self):
        assert parse_text_to_array("one\r\ntwo\nthree", split_mode="newline") == ["one", "two", "three"]

    def test_regex_mode_with_flags(self):
        items = parse_text_to_array("aXbxc", split_mode="regex", regex_pattern="/x/i")
        assert items == ["a", "b", "c"]

    def test_regex_mode_with_bare_pattern(self):
        assert parse_text_to_array("a1b22c", split_mode="regex", regex_pattern=r"\d+") == ["a", "b", "c"]

    def test_missing_delimiter_or_pattern_returns_whole_text(self):
        assert parse_text_to_array("a*b", delimiter="") == ["a*b"]
        assert parse_text_to_array("a*b", split_mode="regex", regex_pattern="") == ["a*b"]

    def test_empty_input(self):
        assert parse_text_to_array(None) == []
        assert parse_text_to_array("") == []

    def test_invalid_regex_raises(self):
        with pytest.raises(re.error):
            parse_text_to_array("abc", split_mode="regex", regex_pattern="(")

    def test_unsupported_flag(self):
        with pytest.raises(ValueError):
            compile_split_pattern("/a/q")
