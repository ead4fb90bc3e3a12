"""
Upstream feed error classification.

Every failure talking to a source feed (TIGERweb, Census ACS, SBA) is
mapped onto one of these types, and the type alone decides whether the
download is attempted again.
"""

from typing import Optional, Dict, Any


class APIError(Exception):
    """
    Base exception for all upstream feed errors.

    Attributes:
        message: Human-readable error description
        source: Source identifier (e.g., 'tiger_tracts', 'census_acs')
        status_code: HTTP status code if applicable
        retryable: Whether this error should trigger another attempt
    """

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.source = source
        self.status_code = status_code
        self.retryable = retryable

    def __str__(self) -> str:
        parts = [self.message]
        if self.source:
            parts.insert(0, f"[{self.source}]")
        if self.status_code:
            parts.append(f"(HTTP {self.status_code})")
        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "source": self.source,
            "status_code": self.status_code,
            "retryable": self.retryable,
        }


class RetryableError(APIError):
    """
    Transient errors that should trigger a retry.

    Examples:
    - HTTP 500-599 server errors
    - Network timeouts and connection resets
    """

    def __init__(self, message: str, source: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message=message, source=source, status_code=status_code, retryable=True)


class RateLimitError(RetryableError):
    """
    HTTP 429. Retryable, but only after the advertised wait.
    """

    def __init__(self, message: str, source: Optional[str] = None, retry_after: Optional[float] = None):
        super().__init__(message=message, source=source, status_code=429)
        self.retry_after = retry_after


class CorruptPayloadError(RetryableError):
    """
    Payload arrived but failed validation (bad JSON, truncated body,
    checksum mismatch). Re-downloading may fix it.
    """


class FatalError(APIError):
    """
    Non-retryable errors that indicate a permanent problem.

    Examples:
    - Invalid API key (401/403)
    - Unknown dataset or vintage (404)
    - Malformed query (400)
    """

    def __init__(self, message: str, source: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message=message, source=source, status_code=status_code, retryable=False)


class NotFoundError(FatalError):
    """Requested dataset does not exist upstream (HTTP 404)."""

    def __init__(self, message: str = "Dataset not found", source: Optional[str] = None):
        super().__init__(message=message, source=source, status_code=404)


def classify_http_error(
    status_code: int, response_text: str = "", source: Optional[str] = None
) -> APIError:
    """
    Classify an HTTP error into the appropriate APIError subclass.

    Args:
        status_code: HTTP status code
        response_text: Response body text
        source: Source identifier

    Returns:
        Appropriate APIError subclass instance
    """
    snippet = response_text[:200]
    if status_code == 429:
        return RateLimitError(message=f"Rate limited: {snippet}", source=source)
    elif status_code in (401, 403):
        return FatalError(
            message=f"Access denied: {snippet}", source=source, status_code=status_code
        )
    elif status_code == 404:
        return NotFoundError(message=f"Not found: {snippet}", source=source)
    elif status_code == 400:
        return FatalError(message=f"Bad request: {snippet}", source=source, status_code=400)
    elif 500 <= status_code < 600:
        return RetryableError(
            message=f"Server error: {snippet}", source=source, status_code=status_code
        )
    else:
        return APIError(
            message=f"HTTP error {status_code}: {snippet}",
            source=source,
            status_code=status_code,
            retryable=False,
        )
