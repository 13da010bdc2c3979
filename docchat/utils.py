"""Utility helpers for URL normalization, hashing, and small text helpers.

This module provides:
- stable_doc_id: stable SHA-1 based identifier for documents/URLs/content
- normalize_url: normalization to make URLs consistent for deduplication
- extract_title: best-effort title from markdown (H1, H2, first line)
- preview: short single-line preview of a text
- month_period: "YYYY-MM" key used by usage counters
"""
import hashlib
import re
from datetime import datetime
from typing import Optional


def stable_doc_id(s: str) -> str:
    """Compute a stable 40-char SHA-1 hex identifier for a string.

    Args:
        s: Input string (e.g., normalized URL or page content).

    Returns:
        str: First 40 hex characters of the SHA-1 digest.
    """
    return hashlib.sha1(s.encode("utf-8")).hexdigest()[:40]


def normalize_url(u: str) -> str:
    """Normalize URLs by removing fragments and trailing slashes.

    Args:
        u: Raw URL.

    Returns:
        str: Normalized URL suitable for stable IDs and deduplication.
    """
    u = re.sub(r"#.*$", "", u.strip())
    if len(u) > 1 and u.endswith("/"):
        u = u[:-1]
    return u


def extract_title(content: str) -> Optional[str]:
    """Extract a title from markdown: first H1, then first H2, then first non-empty line."""
    h1 = re.search(r"^#\s+(.+)$", content, re.M)
    if h1:
        return h1.group(1).strip()
    h2 = re.search(r"^##\s+(.+)$", content, re.M)
    if h2:
        return h2.group(1).strip()
    for line in content.splitlines():
        if line.strip():
            return line.strip()[:100]
    return None


def preview(text: str, max_chars: int) -> str:
    """Collapse whitespace and cut text to max_chars."""
    return re.sub(r"\s+", " ", text).strip()[:max_chars]


def month_period(now: datetime) -> str:
    """Calendar-month key for usage counters, e.g. "2026-10"."""
    return now.strftime("%Y-%m")
