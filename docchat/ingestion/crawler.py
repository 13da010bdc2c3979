"""Documentation crawler backed by the Firecrawl REST API (v1).

Starts a crawl job for a documentation URL, polls it until completion (following
``next`` pagination links), then post-processes the returned markdown pages:

- pages shorter than MIN_PAGE_CONTENT_LENGTH are dropped
- markdown is cleaned with docchat.cleaner.clean_markdown
- title comes from page metadata, else the first H1/H2, else the first line
- has_code / has_images / content_length are recorded
- duplicates by normalized URL or by identical cleaned content are dropped

HTTP calls are made with requests and run off the event loop with
asyncio.to_thread. Crawl depth and page ceiling come from the plan tier.

Configuration:
- API: docchat.config.settings.FIRECRAWL_API_KEY, FIRECRAWL_API_URL
- Polling: CRAWL_POLL_INTERVAL_SECONDS, CRAWL_MAX_POLL_ATTEMPTS
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import requests

from docchat.cleaner import clean_markdown
from docchat.config import settings
from docchat.errors import CRAWL_TIMEOUT_MESSAGE, CrawlError, CrawlTimeout
from docchat.utils import extract_title, normalize_url, stable_doc_id

logger = logging.getLogger(__name__)

HEADERS = {
    "User-Agent": "DocChat-Crawler/1.0",
    "Content-Type": "application/json",
}

DEFAULT_EXCLUDE_PATHS = [
    "^/blog/.*$",
    "^/news/.*$",
    "^/community/.*$",
    "^/forum/.*$",
    "^/pricing/.*$",
    "^/careers/.*$",
    "^/legal/.*$",
    "^/privacy/.*$",
    "^/terms/.*$",
    "^/changelog/.*$",
]
REMOVE_TAGS = ["nav", "footer", "header", "aside", ".sidebar", "#toc"]
WAIT_FOR_MS = 1000

CODE_FENCE = re.compile(r"```[\s\S]*?```")
IMAGE = re.compile(r"!\[.*?\]\(.*?\)")


@dataclass
class CrawlPage:
    url: str
    title: str
    content: str
    description: Optional[str] = None
    has_code: bool = False
    has_images: bool = False
    content_length: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "title": self.title, "content": self.content}


class FirecrawlClient:
    """Thin synchronous client for the Firecrawl crawl endpoints."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.FIRECRAWL_API_KEY
        self.base_url = (base_url or settings.FIRECRAWL_API_URL).rstrip("/")
        self.session = session or requests.Session()

    def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        headers = dict(HEADERS)
        headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            resp = self.session.request(
                method, url, headers=headers, timeout=settings.CRAWL_REQUEST_TIMEOUT_SECONDS, **kwargs
            )
        except requests.RequestException as e:
            raise CrawlError(f"Crawl request failed: {e}") from e
        logger.debug("HTTP %d from %s %s", resp.status_code, method, url)
        if resp.status_code == 429:
            raise CrawlError(f"Crawl service rate limit exceeded (429): {resp.text[:200]}")
        if resp.status_code >= 400:
            raise CrawlError(f"Crawl service error {resp.status_code}: {resp.text[:200]}")
        try:
            return resp.json()
        except ValueError as e:
            raise CrawlError(f"Crawl service returned invalid JSON from {url}") from e

    def start_crawl(self, url: str, options: Dict[str, Any]) -> Dict[str, Any]:
        body = {"url": url, **options}
        return self._request("POST", f"{self.base_url}/v1/crawl", json=body)

    def get_status(self, job_id_or_url: str) -> Dict[str, Any]:
        """Fetch a crawl status page by job id or by a ``next`` URL."""
        if job_id_or_url.startswith("http"):
            url = job_id_or_url
        else:
            url = f"{self.base_url}/v1/crawl/{job_id_or_url}"
        return self._request("GET", url)


def build_crawl_options(plan: str, exclude_paths: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """Firecrawl crawl body (minus url) for a plan tier."""
    limits = settings.crawl_limits(plan)
    return {
        "limit": limits["limit"],
        "maxDepth": limits["max_depth"],
        "excludePaths": DEFAULT_EXCLUDE_PATHS + list(exclude_paths or []),
        "scrapeOptions": {
            "formats": ["markdown"],
            "onlyMainContent": True,
            "excludeTags": REMOVE_TAGS,
            "waitFor": WAIT_FOR_MS,
        },
    }


def _page_url(page: Dict[str, Any]) -> str:
    meta = page.get("metadata") or {}
    return page.get("sourceURL") or page.get("url") or meta.get("sourceURL") or meta.get("url") or ""


def process_pages(raw_pages: Iterable[Dict[str, Any]]) -> List[CrawlPage]:
    """Filter, clean, title and deduplicate raw crawl results."""
    pages: List[CrawlPage] = []
    seen_urls = set()
    seen_hashes = set()
    for raw in raw_pages:
        markdown = raw.get("markdown") or ""
        if len(markdown) < settings.MIN_PAGE_CONTENT_LENGTH:
            continue
        content = clean_markdown(markdown)
        if not content:
            continue
        url = _page_url(raw)
        norm = normalize_url(url) if url else ""
        digest = stable_doc_id(content)
        if (norm and norm in seen_urls) or digest in seen_hashes:
            logger.debug("Skipping duplicate page %s", url)
            continue
        if norm:
            seen_urls.add(norm)
        seen_hashes.add(digest)

        meta = raw.get("metadata") or {}
        pages.append(
            CrawlPage(
                url=url,
                title=meta.get("title") or extract_title(content) or "Untitled",
                content=content,
                description=meta.get("description"),
                has_code=bool(CODE_FENCE.search(content)),
                has_images=bool(IMAGE.search(content)),
                content_length=len(content),
            )
        )
    return pages


async def _collect_pages(client: FirecrawlClient, status: Dict[str, Any]) -> List[Dict[str, Any]]:
    data = list(status.get("data") or [])
    next_url = status.get("next")
    while next_url:
        page = await asyncio.to_thread(client.get_status, next_url)
        data.extend(page.get("data") or [])
        next_url = page.get("next")
    return data


async def poll_for_results(client: FirecrawlClient, job_id: str) -> List[Dict[str, Any]]:
    """Poll a crawl job until completed.

    Raises:
        CrawlError: the job reported failure.
        CrawlTimeout: still running after CRAWL_MAX_POLL_ATTEMPTS polls.
    """
    for attempt in range(settings.CRAWL_MAX_POLL_ATTEMPTS):
        await asyncio.sleep(settings.CRAWL_POLL_INTERVAL_SECONDS)
        status = await asyncio.to_thread(client.get_status, job_id)
        state = status.get("status")
        if state == "completed":
            return await _collect_pages(client, status)
        if state == "failed":
            raise CrawlError(f"Crawl failed: {status.get('error') or 'Unknown error'}")
        if attempt % 30 == 0:
            logger.info(
                "Crawl %s %s (%s/%s pages)", job_id, state, status.get("completed", 0), status.get("total", "?")
            )
    raise CrawlTimeout(CRAWL_TIMEOUT_MESSAGE)


async def crawl_documentation(
    url: str,
    plan: str = "free",
    exclude_paths: Optional[Iterable[str]] = None,
    client: Optional[FirecrawlClient] = None,
) -> List[CrawlPage]:
    """Crawl a documentation site and return cleaned, deduplicated pages."""
    client = client or FirecrawlClient()
    options = build_crawl_options(plan, exclude_paths)
    logger.info("Starting crawl of %s (plan=%s, limit=%d)", url, plan, options["limit"])
    resp = await asyncio.to_thread(client.start_crawl, url, options)

    if resp.get("status") == "completed" and resp.get("data"):
        raw = await _collect_pages(client, resp)
    elif resp.get("id") or resp.get("jobId"):
        raw = await poll_for_results(client, resp.get("id") or resp.get("jobId"))
    else:
        raise CrawlError("Unexpected crawl response format")

    pages = process_pages(raw)
    logger.info("Crawl of %s returned %d raw pages, %d usable", url, len(raw), len(pages))
    return pages
