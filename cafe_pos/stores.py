"""
Base for the data-access facades. Every public store call returns a Result;
database errors are logged and converted, never raised to the caller.
"""
import logging

from pydantic import ValidationError

from cafe_pos.errors import DomainError, ErrorKind, Result, ValidationFailed

logger = logging.getLogger(__name__)


class RemoteStore:
    """Wraps a SQLAlchemy session factory bound to the hosted database."""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self.loading = True

    def _failure(self, message: str, exc: Exception, kind: ErrorKind = ErrorKind.REMOTE) -> Result:
        logger.error(f"{message}: {exc}")
        return Result.failure(DomainError(message, kind), message)

    def _invalid(self, exc) -> Result:
        if isinstance(exc, ValidationError):
            detail = "; ".join(err["msg"] for err in exc.errors())
        else:
            detail = str(exc)
        logger.info(f"Rejected invalid input: {detail}")
        return Result.failure(ValidationFailed(detail))

    def _not_found(self, message: str) -> Result:
        return Result.failure(DomainError(message, ErrorKind.NOT_FOUND))
