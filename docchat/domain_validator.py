"""Domain validation to keep crawls on documentation sites.

Provides:
- validate_url: blocklist/heuristic check returning a ValidationResult
- check_url: same check, raising the matching UrlValidationError
- is_documentation_url: informational docs-likeness heuristic

Pure functions, no I/O.
"""
import ipaddress
import re
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urlparse

from docchat.errors import BlockedDomain, GenericPattern, InvalidUrl, UrlValidationError

BLOCKED_DOMAINS = frozenset({
    # Search engines
    "google.com", "bing.com", "yahoo.com", "duckduckgo.com", "baidu.com", "yandex.com",
    # Social media
    "facebook.com", "twitter.com", "x.com", "instagram.com", "linkedin.com", "youtube.com",
    "tiktok.com", "snapchat.com", "pinterest.com", "reddit.com", "discord.com", "telegram.org",
    # E-commerce
    "amazon.com", "ebay.com", "aliexpress.com", "shopify.com", "etsy.com", "walmart.com", "target.com",
    # General platforms
    "github.com", "stackoverflow.com", "wikipedia.org", "medium.com", "wordpress.com",
    "blogger.com", "tumblr.com", "wix.com", "squarespace.com",
    # News & media
    "cnn.com", "bbc.com", "nytimes.com", "washingtonpost.com", "theguardian.com",
    "reuters.com", "bloomberg.com", "techcrunch.com",
    # Cloud platforms (root domains)
    "aws.amazon.com", "cloud.google.com", "azure.microsoft.com", "digitalocean.com",
    "heroku.com", "vercel.com", "netlify.com", "cloudflare.com",
    # General websites
    "apple.com", "microsoft.com", "oracle.com", "ibm.com", "netflix.com", "spotify.com",
    "paypal.com", "stripe.com",
    # Forums
    "discourse.org", "phpbb.com", "vbulletin.com", "fandom.com", "wikia.com",
    # File hosting
    "dropbox.com", "drive.google.com", "onedrive.live.com", "box.com", "mega.nz",
    # Adult / gambling
    "pornhub.com", "xvideos.com", "xhamster.com", "redtube.com",
    "bet365.com", "888.com", "pokerstars.com",
    # Registrars / hosting landing pages
    "godaddy.com", "namecheap.com", "bluehost.com", "hostgator.com",
})

# Valid, but crawling will be truncated
WARNING_DOMAINS = (
    "docs.aws.amazon.com",
    "docs.microsoft.com",
    "learn.microsoft.com",
    "developers.google.com",
    "developer.mozilla.org",
    "nodejs.org",
    "python.org",
)

GENERIC_PATTERNS: List[re.Pattern] = [
    re.compile(r"^(shop|store|buy|sell|pay|checkout|cart|order)\."),
    re.compile(r"^(login|signin|signup|register|auth|account)\."),
    re.compile(r"^(mail|email|webmail|smtp|pop|imap)\."),
    re.compile(r"^(ftp|files|download|upload|cdn|static|assets)\."),
    re.compile(r"^(admin|panel|dashboard|console|control)\."),
    # ephemeral environments
    re.compile(r"^(test|testing|staging|dev|development|beta|alpha|preview)\."),
    re.compile(r"^(blog|news|press|media|marketing)\."),
    # throwaway TLDs
    re.compile(r"\.(tk|ml|ga|cf|gq)$"),
    # IP-like labels, e.g. 10-0-0-1.example.com
    re.compile(r"\d{1,3}-\d{1,3}-\d{1,3}-\d{1,3}"),
    re.compile(r"^[a-z]\.[a-z]+$"),
]

DOC_HOST_PATTERN = re.compile(
    r"^(docs?|documentation|api|developers?|dev|help|support|guides?|manual|reference|wiki)\."
)
DOC_PATH_PATTERN = re.compile(
    r"^/(docs?|documentation|api|help|support|guides?|manual|reference|wiki|kb|knowledge)(/|$)"
)

INVALID_URL_MESSAGE = "Please provide a valid URL (including https://)"


@dataclass
class ValidationResult:
    """Outcome of validate_url.

    Attributes:
        is_valid: Whether the URL may be crawled.
        error: Human-readable reason when not valid.
        error_type: Exception class name describing the failure.
        warning: Set for valid but known-huge documentation domains.
    """
    is_valid: bool
    error: Optional[str] = None
    error_type: Optional[str] = None
    warning: Optional[str] = None


def _is_ip_address(hostname: str) -> bool:
    try:
        ipaddress.ip_address(hostname.strip("[]"))
    except ValueError:
        return False
    return True


def _is_generic_pattern(hostname: str) -> bool:
    if _is_ip_address(hostname):
        return True
    return any(p.search(hostname) for p in GENERIC_PATTERNS)


def _invalid(exc_type: type, message: str) -> ValidationResult:
    return ValidationResult(is_valid=False, error=message, error_type=exc_type.__name__)


def validate_url(url: str) -> ValidationResult:
    """Check that a URL plausibly points at a documentation site.

    Args:
        url: Absolute http(s) URL submitted by the user.

    Returns:
        ValidationResult: is_valid False with an error for unparseable URLs,
        blocked platforms and generic hostnames; is_valid True with a warning for
        very large documentation domains.
    """
    try:
        parsed = urlparse((url or "").strip())
    except ValueError:
        return _invalid(InvalidUrl, INVALID_URL_MESSAGE)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return _invalid(InvalidUrl, INVALID_URL_MESSAGE)

    hostname = parsed.hostname.lower()
    clean_hostname = re.sub(r"^www\.", "", hostname)

    if clean_hostname in BLOCKED_DOMAINS:
        return _invalid(
            BlockedDomain,
            f"Cannot crawl {hostname} - this is a generic platform. "
            "Please provide a specific documentation URL.",
        )

    if any(clean_hostname == d or clean_hostname.endswith("." + d) for d in WARNING_DOMAINS):
        return ValidationResult(
            is_valid=True,
            warning="This documentation site is very large. Crawling will be limited. Try with subpages.",
        )

    if _is_generic_pattern(clean_hostname):
        return _invalid(
            GenericPattern,
            "This appears to be a generic website. Please provide a specific documentation URL "
            "like docs.example.com or example.com/docs",
        )

    return ValidationResult(is_valid=True)


_ERRORS = {cls.__name__: cls for cls in (InvalidUrl, BlockedDomain, GenericPattern)}


def check_url(url: str) -> ValidationResult:
    """Validate a URL and raise the matching UrlValidationError when it is rejected."""
    result = validate_url(url)
    if not result.is_valid:
        exc_type = _ERRORS.get(result.error_type or "", UrlValidationError)
        raise exc_type(result.error or INVALID_URL_MESSAGE)
    return result


def is_documentation_url(url: str) -> bool:
    """Heuristic: hostname or path looks like documentation (docs., /docs/, /api/ ...)."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    hostname = (parsed.hostname or "").lower()
    if DOC_HOST_PATTERN.search(hostname):
        return True
    return bool(DOC_PATH_PATTERN.search(parsed.path.lower()))
