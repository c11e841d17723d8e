"""
ReelProxy — Custom Exception Hierarchy
=======================================

What:  Application-specific exceptions for every way a proxied request can fail.
How:   Each exception carries a client-safe message, an optional context dict,
       the HTTP status it maps to, a machine-readable error code and any
       response headers the status requires (Allow, Retry-After).
Who:   Raised by pipeline stages and the upstream client; converted to
       responses by ErrorResponseHandler (inside the pipeline) and by the
       FastAPI exception handlers registered in main.py (outside it).

Exception Hierarchy:
    ReelProxyError (base)                  → 500
    ├── InternalError                      → 500 Internal Server Error
    ├── InvalidPathError                   → 400 Bad Request
    ├── InvalidBodyError                   → 400 Bad Request
    ├── MethodNotAllowedError              → 405 Method Not Allowed
    ├── PayloadTooLargeError               → 413 Payload Too Large
    ├── UnsupportedMediaTypeError          → 415 Unsupported Media Type
    ├── RateLimitExceededError             → 429 Too Many Requests
    ├── UpstreamUnavailableError           → 502 Bad Gateway
    ├── CircuitBreakerOpenError            → 503 Service Unavailable
    └── UpstreamTimeoutError               → 504 Gateway Timeout
"""

from typing import Any, Dict, Iterable, Optional


class ReelProxyError(Exception):
    """
    Base exception for all ReelProxy errors.

    Attributes:
        message:     User-facing error description (safe to return in API response)
        context:     Additional details returned as "details" in the error body
        status_code: HTTP status the error maps to
        error_code:  Stable snake_case identifier for clients
        headers:     Extra response headers
    """

    status_code: int = 500
    error_code: str = "proxy_error"

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.message = message
        self.context = context or {}
        self.headers = headers or {}
        super().__init__(self.message)


class InternalError(ReelProxyError):
    """Unexpected failure; the cause is logged server-side, never returned."""

    status_code = 500
    error_code = "internal_server_error"

    def __init__(self):
        super().__init__(message="An unexpected error occurred. Please try again later.")


class InvalidPathError(ReelProxyError):
    """
    Raised when the `path` query parameter is missing or does not resolve to
    the configured upstream host.

    The rejected value is kept on `path` for logging only; it is not echoed
    back to the client.
    """

    status_code = 400
    error_code = "invalid_path"

    def __init__(self, path: Optional[str] = None):
        super().__init__(message='Invalid or missing "path" parameter')
        self.path = path


class InvalidBodyError(ReelProxyError):
    """Raised when a mutating request carries a body that is not valid JSON."""

    status_code = 400
    error_code = "invalid_body"

    def __init__(
        self,
        message: str = "Invalid JSON body",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class MethodNotAllowedError(ReelProxyError):
    """
    Raised when the request verb is not in the configured allow-list.

    HTTP:    405 Method Not Allowed, with an `Allow` header listing the
             accepted verbs.
    """

    status_code = 405
    error_code = "method_not_allowed"

    def __init__(self, method: str, allowed_methods: Iterable[str]):
        allowed = list(allowed_methods)
        super().__init__(
            message=f"Method {method} not allowed",
            context={"allowed_methods": allowed},
            headers={"Allow": ", ".join(allowed)},
        )
        self.method = method


class PayloadTooLargeError(ReelProxyError):
    """Raised when a request body (declared or actual) exceeds max_body_size."""

    status_code = 413
    error_code = "payload_too_large"

    def __init__(self, max_size: int, actual_size: Optional[int] = None):
        ctx: Dict[str, Any] = {"max_size": max_size}
        if actual_size is not None:
            ctx["size"] = actual_size
        super().__init__(
            message=f"Payload too large, max {max_size} bytes allowed",
            context=ctx,
        )
        self.max_size = max_size


class UnsupportedMediaTypeError(ReelProxyError):
    """Raised when a mutating request is not declared as application/json."""

    status_code = 415
    error_code = "unsupported_media_type"

    def __init__(self, content_type: Optional[str] = None):
        super().__init__(
            message="Content-Type must be application/json",
            context={"content_type": content_type} if content_type else None,
        )


class RateLimitExceededError(ReelProxyError):
    """
    Raised when a client exceeds the per-IP request rate limit.

    Response includes:
        - retry_after: Seconds until the oldest request leaves the window
        - Retry-After header for HTTP-compliant clients
    """

    status_code = 429
    error_code = "rate_limit_exceeded"

    def __init__(self, retry_after: int = 60):
        super().__init__(
            message=(
                f"Too many requests. Please wait {retry_after} seconds before retrying."
            ),
            context={"retry_after": retry_after},
            headers={"Retry-After": str(retry_after)},
        )
        self.retry_after = retry_after


class UpstreamUnavailableError(ReelProxyError):
    """
    Raised when the upstream API could not be reached (DNS, connect, reset)
    after all retry attempts.

    HTTP:    502 Bad Gateway
    """

    status_code = 502
    error_code = "upstream_unavailable"

    def __init__(
        self,
        message: str = "Upstream API is unreachable",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class CircuitBreakerOpenError(ReelProxyError):
    """
    Raised when the upstream circuit breaker is in OPEN state.

    How circuit breaker works:
        CLOSED (normal) → failures increment counter
        → After N failures → OPEN (reject all calls for recovery_time seconds)
        → After recovery_time → HALF-OPEN (allow one test call)
        → If test succeeds → CLOSED, if it fails → OPEN again
    """

    status_code = 503
    error_code = "service_unavailable"

    def __init__(self, recovery_time: int = 30):
        super().__init__(
            message=(
                "Upstream API is temporarily unavailable due to repeated failures. "
                f"Retry in approximately {recovery_time} seconds."
            ),
            context={"recovery_time": recovery_time},
            headers={"Retry-After": str(recovery_time)},
        )
        self.recovery_time = recovery_time


class UpstreamTimeoutError(ReelProxyError):
    """Raised when the upstream call does not finish within api_timeout."""

    status_code = 504
    error_code = "upstream_timeout"

    def __init__(self, timeout: Optional[float] = None):
        super().__init__(
            message="API request timeout",
            context={"timeout": timeout} if timeout is not None else None,
        )
        self.timeout = timeout
