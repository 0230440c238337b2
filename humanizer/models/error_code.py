from enum import Enum


class ErrorCode(str, Enum):
    """Stable machine-readable codes returned next to ``error`` messages."""

    BAD_REQUEST = "BAD_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    PER_REQUEST_LIMIT = "PER_REQUEST_LIMIT"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    TOO_MANY_REQUESTS = "TOO_MANY_REQUESTS"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


__all__ = ["ErrorCode"]
