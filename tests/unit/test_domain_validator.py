"""Tests for documentation URL validation."""

import pytest

from docchat.domain_validator import check_url, is_documentation_url, validate_url
from docchat.errors import BlockedDomain, GenericPattern, InvalidUrl


@pytest.mark.parametrize("url", ["", "not a url", "ftp://docs.example.com", "https://"])
def test_unparseable_urls_are_invalid(url: str) -> None:
    result = validate_url(url)
    assert result.is_valid is False
    assert result.error_type == "InvalidUrl"


@pytest.mark.parametrize(
    "url",
    ["https://www.google.com/search?q=docs", "https://github.com/org/repo", "https://reddit.com/r/python"],
)
def test_blocklisted_platforms_are_rejected(url: str) -> None:
    result = validate_url(url)
    assert result.is_valid is False
    assert result.error_type == "BlockedDomain"
    assert "generic platform" in result.error


@pytest.mark.parametrize(
    "url",
    [
        "https://login.example.com",
        "https://shop.example.com/docs",
        "https://staging.example.com",
        "https://docs.example.tk",
        "http://192.168.0.10/docs",
    ],
)
def test_generic_hostnames_are_rejected(url: str) -> None:
    result = validate_url(url)
    assert result.is_valid is False
    assert result.error_type == "GenericPattern"


def test_huge_documentation_domain_is_valid_with_warning() -> None:
    result = validate_url("https://developer.mozilla.org/en-US/docs/Web")
    assert result.is_valid is True
    assert result.warning is not None


def test_regular_documentation_site_is_valid() -> None:
    result = validate_url("https://docs.example.com/getting-started")
    assert result.is_valid is True
    assert result.warning is None
    assert result.error is None


def test_check_url_raises_matching_exception() -> None:
    with pytest.raises(InvalidUrl):
        check_url("nope")
    with pytest.raises(BlockedDomain):
        check_url("https://www.youtube.com")
    with pytest.raises(GenericPattern):
        check_url("https://mail.example.com")


def test_check_url_errors_are_permanent() -> None:
    with pytest.raises(BlockedDomain) as exc_info:
        check_url("https://facebook.com")
    assert exc_info.value.retryable is False


def test_is_documentation_url() -> None:
    assert is_documentation_url("https://docs.example.com")
    assert is_documentation_url("https://example.com/docs/intro")
    assert is_documentation_url("https://example.com/api")
    assert not is_documentation_url("https://example.com/about")
