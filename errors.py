"""
Error taxonomy for the Campus Quest API.

Every failure the services raise is a ServiceError tagged with an ErrorKind.
The kind alone decides the HTTP status (see STATUS_BY_KIND); message text is
for humans and is never inspected to choose a status.
"""

from contextlib import contextmanager
from enum import Enum
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    INTERNAL = "internal"


STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.VALIDATION: 400,
    ErrorKind.CONFLICT: 400,
    ErrorKind.INTERNAL: 500,
}


class ServiceError(Exception):
    """A failure with an explicit kind, raised where it happens."""

    def __init__(self, kind: ErrorKind, message: str, details: Optional[str] = None):
        self.kind = kind
        self.message = message
        self.details = details
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body

    def __repr__(self) -> str:
        return f"ServiceError(kind={self.kind.value!r}, message={self.message!r})"


# ---------- Shorthand constructors ----------

def unauthorized(message: str = "Unauthorized: Missing or invalid token") -> ServiceError:
    return ServiceError(ErrorKind.UNAUTHORIZED, message)


def forbidden(message: str) -> ServiceError:
    return ServiceError(ErrorKind.FORBIDDEN, f"Forbidden: {message}")


def not_found(message: str) -> ServiceError:
    return ServiceError(ErrorKind.NOT_FOUND, message)


def invalid(message: str, details: Optional[str] = None) -> ServiceError:
    return ServiceError(ErrorKind.VALIDATION, message, details)


def conflict(message: str, details: Optional[str] = None) -> ServiceError:
    return ServiceError(ErrorKind.CONFLICT, message, details)


@contextmanager
def internal_errors(message: str):
    """Turn anything that is not already a ServiceError into an Internal one.

    ``message`` becomes the user-facing ``error`` text and the original
    exception text goes into ``details``.
    """
    try:
        yield
    except ServiceError:
        raise
    except Exception as exc:
        logger.exception(message)
        raise ServiceError(ErrorKind.INTERNAL, message, details=str(exc)) from exc
