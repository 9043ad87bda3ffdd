"""
Gateway error taxonomy.

Every failure the gateway surfaces to a caller is a GatewayError subclass
carrying its HTTP status and a stable machine-readable error_code. The
exception handler in main.py renders them as the ErrorResponse envelope.

  ConfigurationError      500  missing upstream credential, never retried
  InvalidRequestError     400  missing messages / prompt, malformed payload
  UnsupportedFileTypeError 400 rejected at the upload boundary
  FileTooLargeError       400  rejected at the upload boundary
  UpstreamUnavailable     500  retries exhausted (network / rate limit)

Internal-only signals (never reach the HTTP layer as-is):

  UpstreamTransientError  one failed attempt inside the retry transport
  UpstreamError           non-200 provider response, passed through verbatim
  ModerationUnavailable   converted to the fail-open bypass response
  ExtractionError         converted to placeholder text for that file
"""

from __future__ import annotations

from fastapi import status


class GatewayError(Exception):
    """Base class for errors rendered as a structured ErrorResponse."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code:  str = "INTERNAL_ERROR"

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field   = field


class ConfigurationError(GatewayError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code  = "CONFIGURATION_ERROR"


class InvalidRequestError(GatewayError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_code  = "VALIDATION_ERROR"


class UnsupportedFileTypeError(GatewayError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_code  = "UNSUPPORTED_FILE_TYPE"


class FileTooLargeError(GatewayError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_code  = "FILE_TOO_LARGE"


class UpstreamUnavailable(GatewayError):
    """Raised by the retry transport once every attempt has failed."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code  = "UPSTREAM_UNAVAILABLE"

    def __init__(self, message: str, *, attempts: int = 0, last_error: Exception | None = None) -> None:
        super().__init__(message)
        self.attempts   = attempts
        self.last_error = last_error


class UpstreamTransientError(Exception):
    """One retryable failure: network error or HTTP 429."""

    def __init__(self, message: str, *, rate_limited: bool = False) -> None:
        super().__init__(message)
        self.rate_limited = rate_limited


class UpstreamError(Exception):
    """Non-200 response from the provider. Body and status are relayed as-is."""

    def __init__(self, status_code: int, body: bytes, content_type: str = "application/json") -> None:
        super().__init__(f"Upstream responded with HTTP {status_code}")
        self.status_code  = status_code
        self.body         = body
        self.content_type = content_type


class ModerationUnavailable(Exception):
    """Moderation check could not run; callers degrade to a bypass response."""


class ExtractionError(Exception):
    """A single file could not be parsed; callers substitute placeholder text."""
