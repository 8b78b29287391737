"""Tests for secret previews."""

from fieldintel.core.redaction import preview_secret


def test_empty_value() -> None:
    assert preview_secret(None) == "<empty>"
    assert preview_secret("") == "<empty>"


def test_short_value_fully_masked() -> None:
    assert preview_secret("abc123") == "***(len=6)"
    assert preview_secret("x" * 12) == "***(len=12)"


def test_long_value_shows_prefix_and_length() -> None:
    token = "00D5g000004Abc!AQEAQ" + "z" * 80
    preview = preview_secret(token)
    assert preview == f"00D5g0...(len={len(token)})"
    assert token not in preview
