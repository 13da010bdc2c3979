"""Tests for crawled markdown cleanup."""

from docchat.cleaner import GENERIC, clean_markdown, detect_platform


def test_detects_platform_from_marker_phrases() -> None:
    assert detect_platform("# Intro\n\nBuilt with Sphinx using a theme") == "sphinx"
    assert detect_platform("Powered by GitBook") == "gitbook"
    assert detect_platform("Edit this page\n\nLast updated on Jan 1") == "docusaurus"
    assert detect_platform("# Plain page\n\nNothing special here.") == GENERIC


def test_removes_universal_boilerplate() -> None:
    raw = (
        "Skip to main content\n"
        "# Install\n\n"
        "Run the installer.\n\n"
        "We use cookies to improve your experience.\n"
        "Back to top\n"
        "© 2024 Example Inc. All rights reserved.\n"
    )
    cleaned = clean_markdown(raw)
    assert "# Install" in cleaned
    assert "Run the installer." in cleaned
    assert "cookies" not in cleaned.lower()
    assert "skip to" not in cleaned.lower()
    assert "back to top" not in cleaned.lower()
    assert "2024" not in cleaned


def test_applies_platform_rules() -> None:
    raw = "# Config\n\nSet the option.\n\nEdit this page\nLast updated on March 3, 2024 by someone\n"
    cleaned = clean_markdown(raw)
    assert "Set the option." in cleaned
    assert "Edit this page" not in cleaned
    assert "Last updated" not in cleaned


def test_normalizes_whitespace_and_separators() -> None:
    raw = "# Title   \n\n\n\n\n\nBody text.\n\n---\n\nMore text.  "
    cleaned = clean_markdown(raw)
    assert "\n\n\n\n" not in cleaned
    assert "---" not in cleaned
    assert "Title   " not in cleaned
    assert cleaned.endswith("More text.")


def test_keeps_table_separators() -> None:
    raw = "| Name | Value |\n|------|-------|\n| a | 1 |"
    assert "|------|-------|" in clean_markdown(raw)


def test_unescapes_punctuation_outside_code_only() -> None:
    raw = "Use the \\_private\\_ flag \\(optional\\).\n\n```python\nx = a\\_b\n```"
    cleaned = clean_markdown(raw)
    assert "Use the _private_ flag (optional)." in cleaned
    assert "x = a\\_b" in cleaned


def test_output_is_never_longer_than_input() -> None:
    samples = [
        "Skip to content\n# Docs\n\nText \\* here.\n\n\n\n\n",
        "Plain text without any boilerplate at all.",
        "",
        "Powered by Mintlify\nWas this page helpful?\nYes\nNo\n## API\nCall it.",
    ]
    for raw in samples:
        assert len(clean_markdown(raw)) <= len(raw)


def test_code_blocks_are_not_cleaned() -> None:
    raw = (
        "# Config\n\n"
        "Copyright 2024 Example Inc.\n\n"
        "```yaml\n"
        "# Copyright 2024 Example Inc.\n"
        "---\n"
        "name: app   \n"
        "```\n\n"
        "---\n"
    )
    cleaned = clean_markdown(raw)
    assert "```yaml\n# Copyright 2024 Example Inc.\n---\nname: app   \n```" in cleaned
    assert cleaned.split("```yaml")[0].strip() == "# Config"
    assert cleaned.endswith("```")
