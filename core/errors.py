# core/errors.py
"""Error taxonomy for AI provider failures.

Every transport or adapter failure is normalized into a ``ClassifiedError``
before it leaves the adapter layer. ``classify`` is a pure function of the
HTTP status and vendor message.
"""

from __future__ import annotations

import json
import re
from enum import Enum
from typing import Any

import httpx
import structlog

logger = structlog.get_logger(__name__)


class ErrorCategory(str, Enum):
    API_KEY_MISSING = "api_key_missing"
    API_KEY_INVALID = "api_key_invalid"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    NETWORK = "network"
    QUOTA_EXCEEDED = "quota_exceeded"
    MODEL_NOT_FOUND = "model_not_found"
    INVALID_REQUEST = "invalid_request"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown"


RETRYABLE_CATEGORIES = frozenset(
    {
        ErrorCategory.RATE_LIMIT,
        ErrorCategory.TIMEOUT,
        ErrorCategory.NETWORK,
        ErrorCategory.SERVER_ERROR,
    }
)

ERROR_TITLES: dict[ErrorCategory, str] = {
    ErrorCategory.API_KEY_MISSING: "API key is not configured",
    ErrorCategory.API_KEY_INVALID: "API key is invalid",
    ErrorCategory.RATE_LIMIT: "Rate limit reached",
    ErrorCategory.TIMEOUT: "Request timed out",
    ErrorCategory.NETWORK: "Network error",
    ErrorCategory.QUOTA_EXCEEDED: "Usage limit reached",
    ErrorCategory.MODEL_NOT_FOUND: "Model not found",
    ErrorCategory.INVALID_REQUEST: "Invalid request",
    ErrorCategory.SERVER_ERROR: "Server error",
    ErrorCategory.UNKNOWN: "An error occurred",
}

ERROR_SOLUTIONS: dict[ErrorCategory, str] = {
    ErrorCategory.API_KEY_MISSING: (
        "Open the AI settings and configure an API key for the selected provider."
    ),
    ErrorCategory.API_KEY_INVALID: (
        "Open the AI settings and reconfigure a valid API key."
    ),
    ErrorCategory.RATE_LIMIT: (
        "Wait a few minutes and retry. If you use the service heavily, "
        "consider upgrading your API plan."
    ),
    ErrorCategory.TIMEOUT: (
        "Check your network connection, wait a moment and retry."
    ),
    ErrorCategory.NETWORK: (
        "Check your internet connection and retry once it is restored."
    ),
    ErrorCategory.QUOTA_EXCEEDED: (
        "Check the credit balance of your provider account and top it up if needed."
    ),
    ErrorCategory.MODEL_NOT_FOUND: (
        "Select a different model in the AI settings or check the model name."
    ),
    ErrorCategory.INVALID_REQUEST: (
        "Check your input and try again. If the problem persists, reload the page."
    ),
    ErrorCategory.SERVER_ERROR: (
        "Wait a moment and retry. If the problem persists, check the provider's "
        "status page."
    ),
    ErrorCategory.UNKNOWN: "Reload the page or wait a moment and try again.",
}

# A 429 caused by an exhausted quota (Gemini reports "Resource has been
# exhausted") does not clear by simply waiting a few minutes.
QUOTA_RATE_LIMIT_SOLUTION = (
    "The provider reports that your quota is exhausted. Check the usage limits "
    "and billing settings of your API account, wait for the quota to reset, or "
    "switch to another model or provider."
)

_QUOTA_RE = re.compile(r"quota|billing", re.IGNORECASE)
_EXHAUSTED_RE = re.compile(r"quota|exhausted|billing", re.IGNORECASE)


class ClassifiedError(Exception):
    """A normalized provider failure. Treat instances as immutable."""

    def __init__(
        self,
        category: ErrorCategory,
        message: str,
        code: str,
        cause: Any = None,
        partial_content: str = "",
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.message = message
        self.code = code
        self.cause = cause
        self.partial_content = partial_content
        self.status = status

    @property
    def retryable(self) -> bool:
        return self.category in RETRYABLE_CATEGORIES

    @property
    def title(self) -> str:
        return ERROR_TITLES[self.category]

    @property
    def solution(self) -> str:
        if self.category is ErrorCategory.RATE_LIMIT and _EXHAUSTED_RE.search(
            self.message
        ):
            return QUOTA_RATE_LIMIT_SOLUTION
        return ERROR_SOLUTIONS[self.category]

    def with_partial(self, content: str) -> ClassifiedError:
        """Return a copy that carries streamed content received before failing."""
        return ClassifiedError(
            self.category,
            self.message,
            self.code,
            cause=self.cause,
            partial_content=content,
            status=self.status,
        )

    def user_message(self) -> str:
        return f"{self.title}: {self.message}\n{self.solution}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "title": self.title,
            "message": self.message,
            "code": self.code,
            "retryable": self.retryable,
            "solution": self.solution,
        }

    def __repr__(self) -> str:
        return (
            f"ClassifiedError(category={self.category.value!r}, "
            f"code={self.code!r}, message={self.message!r})"
        )


def classify(
    status: int, vendor_message: str = "", cause: Any = None
) -> ClassifiedError:
    """Map an HTTP status and vendor message onto the error taxonomy."""
    message = vendor_message or f"HTTP error {status}"
    if status in (401, 402, 403):
        category = (
            ErrorCategory.QUOTA_EXCEEDED
            if _QUOTA_RE.search(vendor_message or "")
            else ErrorCategory.API_KEY_INVALID
        )
    elif status == 429:
        category = ErrorCategory.RATE_LIMIT
    elif status == 404:
        category = ErrorCategory.MODEL_NOT_FOUND
    elif status == 400:
        category = ErrorCategory.INVALID_REQUEST
    elif status >= 500:
        category = ErrorCategory.SERVER_ERROR
    else:
        category = ErrorCategory.UNKNOWN
    return ClassifiedError(
        category, message, f"HTTP_{status}", cause=cause, status=status
    )


def extract_vendor_message(body: str) -> str:
    """Pull the human readable message out of a vendor error body."""
    if not body:
        return ""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, ValueError):
        return body.strip()[:500]

    if isinstance(data, list) and data and isinstance(data[0], dict):
        # Gemini sometimes wraps the error object in a list
        data = data[0]
    if not isinstance(data, dict):
        return body.strip()[:500]

    error = data.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str) and error:
        return error
    for key in ("message", "detail"):
        if data.get(key):
            return str(data[key])
    return body.strip()[:500]


def from_transport_exception(exc: Exception) -> ClassifiedError:
    """Normalize an httpx exception raised below the adapter boundary."""
    if isinstance(exc, ClassifiedError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return ClassifiedError(
            ErrorCategory.TIMEOUT, f"Request timed out: {exc}", "TIMEOUT", cause=exc
        )
    if isinstance(exc, httpx.RequestError):
        return ClassifiedError(
            ErrorCategory.NETWORK,
            f"Network request failed: {exc}",
            "NETWORK_ERROR",
            cause=exc,
        )
    if isinstance(exc, httpx.HTTPStatusError):
        return classify(
            exc.response.status_code, extract_vendor_message(exc.response.text), exc
        )
    return ClassifiedError(
        ErrorCategory.UNKNOWN,
        str(exc) or type(exc).__name__,
        "HTTP_ERROR",
        cause=exc,
    )


def missing_api_key(provider: str) -> ClassifiedError:
    return ClassifiedError(
        ErrorCategory.API_KEY_MISSING,
        f"No API key configured for provider '{provider}'.",
        "API_KEY_MISSING",
    )


def invalid_request(message: str, code: str = "VALIDATION_ERROR") -> ClassifiedError:
    return ClassifiedError(ErrorCategory.INVALID_REQUEST, message, code)


def user_friendly_error(exc: Exception) -> str:
    """Render any failure as a short, user-presentable message."""
    return from_transport_exception(exc).user_message()
