"""Tests for text sanitization."""

import pytest

from sidechat.sanitize import MAX_DISPLAY_NAME_LENGTH, sanitize_display_name, sanitize_text


class TestSanitizeText:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("plain text", "plain text"),
            ("<b>bold</b> move", "bold move"),
            ("<script>alert(1)</script>hi", "hi"),
            ("<STYLE>body{}</STYLE>ok", "ok"),
            ("before<!-- hidden -->after", "beforeafter"),
            ("click <a href='javascript:alert(1)'>here</a>", "click here"),
            ("javascript:alert(1)", "alert(1)"),
            ("tail <img src=x onerror=alert(1)", "tail "),
        ],
    )
    def test_strips_markup(self, raw, expected):
        assert sanitize_text(raw) == expected

    def test_keeps_comparisons(self):
        assert sanitize_text("3 < 5 and 7 > 2") == "3 < 5 and 7 > 2"

    def test_keeps_newlines_drops_control_chars(self):
        assert sanitize_text("line1\nline2\x00\x07") == "line1\nline2"

    def test_none_and_empty(self):
        assert sanitize_text(None) == ""
        assert sanitize_text("") == ""

    def test_unicode_untouched(self):
        assert sanitize_text("goal! ⚽ ¡olé!") == "goal! ⚽ ¡olé!"


class TestSanitizeDisplayName:
    def test_collapses_whitespace(self):
        assert sanitize_display_name("  Ann \n  Lee ") == "Ann Lee"

    def test_strips_markup(self):
        assert sanitize_display_name("<i>Ann</i>") == "Ann"

    def test_length_capped(self):
        assert len(sanitize_display_name("x" * 200)) == MAX_DISPLAY_NAME_LENGTH

    def test_markup_only_is_empty(self):
        assert sanitize_display_name("<script>x</script>") == ""
