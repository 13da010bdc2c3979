"""Markdown cleanup for crawled documentation pages.

Provides:
- detect_platform: fingerprint the static-site generator from marker phrases
- clean_markdown: universal removals, platform removals, whitespace normalization
  and un-escaping of markdown-escaped punctuation

Every rule deletes text or replaces it in place with something no longer, so the
output is never longer than the input. Fenced code blocks are copied through
unchanged; every rule applies only to the prose between them.
"""
import re
from typing import Callable, Dict, List, Tuple

Rule = Tuple[re.Pattern, str]

GENERIC = "generic"

# Literal markers, lower-cased; first platform with a hit wins
PLATFORM_MARKERS: Dict[str, Tuple[str, ...]] = {
    "docusaurus": ("docusaurus", "edit this page", "last updated on"),
    "gitbook": ("powered by gitbook", "gitbook"),
    "mkdocs": ("made with material for mkdocs", "mkdocs"),
    "sphinx": ("built with sphinx", "read the docs", "view page source"),
    "mintlify": ("powered by mintlify", "mintlify", "was this page helpful?"),
    "readme": ("powered by readme", "readme.io", "updated about"),
    "vitepress": ("vitepress", "previous page", "next page"),
    "nextra": ("nextra", "powered by vercel"),
}


def _rules(*pairs: Tuple[str, str]) -> List[Rule]:
    return [(re.compile(p, re.I | re.M), r) for p, r in pairs]


UNIVERSAL_RULES: List[Rule] = _rules(
    # navigation boilerplate
    (r"^\s*\[?skip to (main )?content\]?(\([^)]*\))?\s*$", ""),
    (r"\bskip to (main )?content\b", ""),
    (r"\bback to top\b", ""),
    (r"^\s*(on this page|table of contents)\s*$", ""),
    (r"\bprevious\s+next\b", ""),
    (r"\*\*advertisement\*\*", ""),
    # cookie / consent banners
    (r"^.*\b(we use cookies|this (web)?site uses cookies|accept (all )?cookies|cookie (policy|settings|preferences))\b.*$", ""),
    # reCAPTCHA notices
    (r"^.*\bprotected by recaptcha\b.*$", ""),
    (r"^.*google privacy policy and terms of service apply.*$", ""),
    # copyright footers
    (r"(©|\(c\)|copyright)\s*\d{4}.*$", ""),
    (r"all rights reserved.*$", ""),
    # social-share prompts
    (r"^.*\bshare (this|on) (page|article|twitter|x|facebook|linkedin)\b.*$", ""),
    (r"^\s*(tweet|share)\s*$", ""),
)

PLATFORM_RULES: Dict[str, List[Rule]] = {
    "docusaurus": _rules(
        (r"^\s*\[?edit this page\]?(\([^)]*\))?\s*$", ""),
        (r"^\s*last updated on .*$", ""),
        (r"^\s*\[?(previous|next)\s*«?»?.*\]\([^)]*\)\s*$", ""),
    ),
    "gitbook": _rules(
        (r"^.*powered by gitbook.*$", ""),
        (r"^\s*last updated .*$", ""),
        (r"^\s*was this helpful\??\s*$", ""),
    ),
    "mkdocs": _rules(
        (r"^.*made with material for mkdocs.*$", ""),
        (r"^\s*(back to top|initializing search)\s*$", ""),
    ),
    "sphinx": _rules(
        (r"^.*built with sphinx.*$", ""),
        (r"^\s*\[?view page source\]?(\([^)]*\))?\s*$", ""),
        (r"\[¶\]\([^)]*\)", ""),
        (r"¶", ""),
    ),
    "mintlify": _rules(
        (r"^.*powered by mintlify.*$", ""),
        (r"^\s*was this page helpful\??\s*$", ""),
        (r"^\s*(yes|no)\s*$", ""),
        (r"^\s*(suggest edits|raise issue)\s*$", ""),
    ),
    "readme": _rules(
        (r"^.*powered by readme.*$", ""),
        (r"^\s*updated about .*$", ""),
        (r"^\s*did this page help you\??\s*$", ""),
    ),
    "vitepress": _rules(
        (r"^\s*(previous|next) page\s*$", ""),
        (r"^\s*\[?edit this page on github\]?(\([^)]*\))?\s*$", ""),
    ),
    "nextra": _rules(
        (r"^.*powered by (nextra|vercel).*$", ""),
        (r"^\s*question\? give us feedback.*$", ""),
    ),
    GENERIC: [],
}

CODE_FENCE = re.compile(r"```[\s\S]*?```")
ESCAPED_PUNCT = re.compile(r"\\([\\`*_{}\[\]()#+\-.!|>~<])")
# Markdown table separators (|---|) are kept
SEPARATOR_LINE = re.compile(r"^[ \t]*([-=_*][ \t]*){3,}$", re.M)


def detect_platform(markdown: str) -> str:
    """Return the documentation platform fingerprint, or "generic"."""
    lowered = markdown.lower()
    for platform, markers in PLATFORM_MARKERS.items():
        if any(m in lowered for m in markers):
            return platform
    return GENERIC


def _apply(rules: List[Rule], text: str) -> str:
    for pattern, repl in rules:
        text = pattern.sub(repl, text)
    return text


def _outside_code(text: str, fn: Callable[[str], str]) -> str:
    parts: List[str] = []
    last = 0
    for m in CODE_FENCE.finditer(text):
        parts.append(fn(text[last:m.start()]))
        parts.append(m.group(0))
        last = m.end()
    parts.append(fn(text[last:]))
    return "".join(parts)


def _normalize_whitespace(text: str) -> str:
    text = re.sub(r"[ \t]+$", "", text, flags=re.M)
    text = SEPARATOR_LINE.sub("", text)
    return re.sub(r"\n{4,}", "\n\n\n", text)


def clean_markdown(raw: str) -> str:
    """Strip boilerplate from crawled markdown.

    Args:
        raw: Markdown as returned by the crawl service.

    Returns:
        str: Cleaned markdown (never longer than the input).
    """
    if not raw:
        return ""
    rules = UNIVERSAL_RULES + PLATFORM_RULES[detect_platform(raw)]

    def clean_prose(segment: str) -> str:
        segment = _normalize_whitespace(_apply(rules, segment))
        return ESCAPED_PUNCT.sub(r"\1", segment)

    return _outside_code(raw, clean_prose).strip()
