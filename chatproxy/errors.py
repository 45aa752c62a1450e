"""Error codes and exception classes."""
from enum import Enum
from typing import Dict, Any, Optional
from chatproxy.constants import (
    MSG_METHOD_NOT_ALLOWED,
    MSG_FORBIDDEN,
    MSG_SERVICE_UNAVAILABLE,
    MSG_DAILY_LIMIT,
    MSG_HOURLY_LIMIT,
    MSG_UPSTREAM_TIMEOUT,
    MSG_MALFORMED_RESPONSE,
    UPSTREAM_STATUS_MESSAGES,
)


class ErrorCode(str, Enum):
    """Standardized error codes."""
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
    FORBIDDEN = "FORBIDDEN"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    DAILY_LIMIT_EXCEEDED = "DAILY_LIMIT_EXCEEDED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    INVALID_REQUEST = "INVALID_REQUEST"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    UPSTREAM_TIMEOUT = "UPSTREAM_TIMEOUT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ChatProxyException(Exception):
    """Base exception for proxy errors."""

    def __init__(
        self,
        error_code: ErrorCode,
        message: str,
        status_code: int = 500,
        extra: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.status_code = status_code
        self.extra = extra or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API response."""
        body = {
            "error": self.error_code.value,
            "message": self.message,
        }
        body.update(self.extra)
        return body


class MethodNotAllowed(ChatProxyException):
    def __init__(self, method: str):
        self.method = method
        super().__init__(ErrorCode.METHOD_NOT_ALLOWED, MSG_METHOD_NOT_ALLOWED, status_code=405)


class OriginRejected(ChatProxyException):
    def __init__(self, origin: str):
        self.origin = origin
        super().__init__(ErrorCode.FORBIDDEN, MSG_FORBIDDEN, status_code=403)


class ConfigError(ChatProxyException):
    """Raised when the upstream credential is not configured."""

    def __init__(self, setting: str):
        self.setting = setting
        super().__init__(ErrorCode.SERVICE_UNAVAILABLE, MSG_SERVICE_UNAVAILABLE, status_code=500)


class StoreUnavailable(ChatProxyException):
    """Raised when an external usage store cannot be reached."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(ErrorCode.SERVICE_UNAVAILABLE, MSG_SERVICE_UNAVAILABLE, status_code=503)


class QuotaExceeded(ChatProxyException):
    """Base class for free tier quota rejections."""

    def __init__(
        self,
        error_code: ErrorCode,
        message: str,
        remaining_count: int,
        total_free_count: int,
        reset_time: str
    ):
        self.reset_time = reset_time
        super().__init__(
            error_code,
            message,
            status_code=429,
            extra={
                "remainingCount": remaining_count,
                "totalFreeCount": total_free_count,
                "resetTime": reset_time,
            }
        )


class DailyLimitExceeded(QuotaExceeded):
    def __init__(self, total_free_count: int, reset_time: str):
        super().__init__(
            ErrorCode.DAILY_LIMIT_EXCEEDED,
            MSG_DAILY_LIMIT,
            remaining_count=0,
            total_free_count=total_free_count,
            reset_time=reset_time
        )


class HourlyLimitExceeded(QuotaExceeded):
    def __init__(self, remaining_daily: int, total_free_count: int, reset_time: str):
        super().__init__(
            ErrorCode.RATE_LIMIT_EXCEEDED,
            MSG_HOURLY_LIMIT,
            remaining_count=remaining_daily,
            total_free_count=total_free_count,
            reset_time=reset_time
        )


class InvalidContent(ChatProxyException):
    """Raised when the inbound message list fails validation."""

    def __init__(self, message: str, status_code: int = 400):
        error_code = ErrorCode.INVALID_REQUEST if status_code < 500 else ErrorCode.INTERNAL_ERROR
        super().__init__(error_code, message, status_code=status_code)

    def with_status(self, status_code: int) -> "InvalidContent":
        return InvalidContent(self.message, status_code=status_code)


class UpstreamError(ChatProxyException):
    """Raised when the upstream answers with a non-2xx status or cannot be reached."""

    def __init__(self, upstream_status: int, body: str = ""):
        self.upstream_status = upstream_status
        self.body = body
        super().__init__(
            ErrorCode.UPSTREAM_ERROR,
            UPSTREAM_STATUS_MESSAGES.get(upstream_status, MSG_SERVICE_UNAVAILABLE),
            status_code=upstream_status
        )


class UpstreamTimeout(ChatProxyException):
    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(ErrorCode.UPSTREAM_TIMEOUT, MSG_UPSTREAM_TIMEOUT, status_code=504)


class MalformedUpstreamResponse(ChatProxyException):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(ErrorCode.INTERNAL_ERROR, MSG_MALFORMED_RESPONSE, status_code=500)


class CircuitBreakerOpenError(ChatProxyException):
    """Raised when circuit breaker is open."""

    def __init__(self, service: str):
        self.service = service
        super().__init__(ErrorCode.SERVICE_UNAVAILABLE, MSG_SERVICE_UNAVAILABLE, status_code=503)
