"""Error taxonomy and error-message classification.

Exceptions carry a ``retryable`` flag read by the crawl queue:
- permanent errors (``retryable = False``) fail a queue item immediately;
- everything else is retried with backoff, using the longer rate-limit regime
  when ``is_rate_limit_error`` matches the message.

``classify_error`` maps a raw error message (as stored on an assistant) to a
user-facing category with a title, description and suggestions.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple


CRAWL_TIMEOUT_MESSAGE = (
    "Documentation crawling timed out. The website might be too slow or unresponsive. "
    "Please try with a more specific URL or contact support."
)
MONTHLY_LIMIT_MESSAGE = "Monthly question limit reached. Upgrade to Pro for unlimited questions."
ASSISTANT_LIMIT_FREE_MESSAGE = "Free plan limited to {limit} assistants. Upgrade to Pro for more assistants."
ASSISTANT_LIMIT_PRO_MESSAGE = "Pro plan limited to {limit} assistants total."

RATE_LIMIT_PATTERNS: Tuple[str, ...] = ("rate limit", "429", "too many requests")


class DocChatError(Exception):
    """Base class for all application errors."""

    retryable: bool = True


class InvalidTransition(DocChatError):
    """Illegal lifecycle status change."""

    retryable = False


# URL validation (permanent)
class UrlValidationError(DocChatError):
    retryable = False


class InvalidUrl(UrlValidationError):
    pass


class BlockedDomain(UrlValidationError):
    pass


class GenericPattern(UrlValidationError):
    pass


# Plan limits (permanent)
class PlanLimitReached(DocChatError):
    retryable = False


class AssistantLimitReached(PlanLimitReached):
    pass


class QuestionLimitReached(PlanLimitReached):
    def __init__(self, message: str, used: int = 0, limit: int = 0):
        super().__init__(message)
        self.used = used
        self.limit = limit


# Lookups
class AssistantNotFound(DocChatError):
    retryable = False


class AssistantNotReady(DocChatError):
    retryable = False


# Ingestion
class DocumentationTooLarge(DocChatError):
    """A single crawled page exceeds the per-document token ceiling."""

    retryable = False

    def __init__(self, url: str, estimated_tokens: int, limit: int):
        super().__init__(
            f"DOCUMENTATION_TOO_LARGE: page {url} has ~{estimated_tokens} tokens "
            f"(limit {limit}). Try a more specific documentation URL."
        )
        self.url = url
        self.estimated_tokens = estimated_tokens
        self.limit = limit


class CrawlError(DocChatError):
    pass


class CrawlTimeout(CrawlError):
    pass


class NoDocumentsFound(DocChatError):
    pass


# External services
class EmbeddingServiceError(DocChatError):
    pass


class IndexProvisioningTimeout(DocChatError):
    pass


class GenerationError(DocChatError):
    pass


def is_rate_limit_error(message: Optional[str]) -> bool:
    """True when an error message looks like an upstream rate-limit response."""
    if not message:
        return False
    lowered = message.lower()
    return any(p in lowered for p in RATE_LIMIT_PATTERNS)


def is_permanent_error(exc: BaseException) -> bool:
    """True for errors the queue must not retry."""
    return not getattr(exc, "retryable", True)


class ErrorType(str, Enum):
    DOCUMENTATION_TOO_LARGE = "documentation_too_large"
    ASSISTANT_LIMIT = "assistant_limit"
    QUESTION_LIMIT = "question_limit"
    INVALID_URL = "invalid_url"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    GENERIC = "generic"


@dataclass(frozen=True)
class ErrorDetails:
    title: str
    description: str
    suggestions: List[str] = field(default_factory=list)


# Checked in order; GENERIC is the fallback
ERROR_PATTERNS: Dict[ErrorType, Tuple[str, ...]] = {
    ErrorType.DOCUMENTATION_TOO_LARGE: (
        "documentation_too_large",
        "maximum context length",
        "token limit",
        "too large",
        "too complex",
    ),
    ErrorType.ASSISTANT_LIMIT: ("assistant limit", "assistant_limit", "limited to"),
    ErrorType.QUESTION_LIMIT: ("question limit", "question_limit", "monthly question limit"),
    ErrorType.INVALID_URL: ("invalid url", "invalid_url", "please provide a valid url", "generic platform"),
    ErrorType.RATE_LIMIT: RATE_LIMIT_PATTERNS,
    ErrorType.TIMEOUT: ("timed out", "timeout"),
}

ERROR_DETAILS: Dict[ErrorType, ErrorDetails] = {
    ErrorType.DOCUMENTATION_TOO_LARGE: ErrorDetails(
        title="Documentation too extensive",
        description="The document structure is too complex or contains very large pages.",
        suggestions=[
            "Try more specific subpages like /getting-started",
            "Use API documentation sections like /api/reference",
            "Focus on individual guides instead of the entire site",
        ],
    ),
    ErrorType.ASSISTANT_LIMIT: ErrorDetails(
        title="Assistant limit reached",
        description="You have reached the maximum number of assistants for your plan.",
        suggestions=["Upgrade to Pro for more assistants", "Delete unused assistants to free up space"],
    ),
    ErrorType.QUESTION_LIMIT: ErrorDetails(
        title="Monthly question limit reached",
        description="You have used all your questions for this month.",
        suggestions=["Upgrade to Pro for unlimited questions", "Wait until next month for the limit to reset"],
    ),
    ErrorType.INVALID_URL: ErrorDetails(
        title="Invalid URL",
        description="The provided URL is not valid or accessible.",
        suggestions=[
            "Ensure the URL includes https://",
            "Check that the URL is publicly accessible",
            "Try a different documentation URL",
        ],
    ),
    ErrorType.RATE_LIMIT: ErrorDetails(
        title="Service busy",
        description="An upstream service is rate limiting requests. The crawl will be retried automatically.",
    ),
    ErrorType.TIMEOUT: ErrorDetails(
        title="Crawl timed out",
        description="The documentation site took too long to crawl.",
        suggestions=["Try a more specific documentation URL"],
    ),
    ErrorType.GENERIC: ErrorDetails(
        title="Assistant creation failed",
        description="An unexpected error occurred during assistant creation.",
        suggestions=["Please try again", "Contact support if the problem persists"],
    ),
}


def classify_error(message: Optional[str]) -> ErrorType:
    """Classify a raw error message into an ErrorType by substring patterns."""
    if not message:
        return ErrorType.GENERIC
    lowered = message.lower()
    for error_type, patterns in ERROR_PATTERNS.items():
        if any(p in lowered for p in patterns):
            return error_type
    return ErrorType.GENERIC


def error_details(message: Optional[str]) -> ErrorDetails:
    """User-facing details for a raw error message."""
    return ERROR_DETAILS[classify_error(message)]
