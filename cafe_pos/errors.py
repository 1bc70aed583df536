from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    REMOTE = "remote"
    CONFLICT = "conflict"
    INVALID_TRANSITION = "invalid_transition"
    NOT_FOUND = "not_found"
    AUTH = "auth"
    RATE_LIMITED = "rate_limited"


HTTP_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.AUTH: 401,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INVALID_TRANSITION: 409,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.REMOTE: 502,
}


class DomainError(Exception):
    kind = ErrorKind.REMOTE

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_KIND[self.kind]


class ValidationFailed(DomainError):
    kind = ErrorKind.VALIDATION


class InvalidTransition(DomainError):
    kind = ErrorKind.INVALID_TRANSITION


class AuthError(DomainError):
    kind = ErrorKind.AUTH


class RateLimitedError(AuthError):
    kind = ErrorKind.RATE_LIMITED


@dataclass
class Result:
    """Outcome of a store or provider call: either a value or an error."""

    error: Optional[DomainError] = None
    message: str = ""
    value: Any = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, message: str = "", value: Any = None) -> "Result":
        return cls(error=None, message=message, value=value)

    @classmethod
    def failure(cls, error: DomainError, message: Optional[str] = None) -> "Result":
        return cls(error=error, message=message or error.message)
