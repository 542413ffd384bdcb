"""
Structured authorization errors returned to callers.

Every error carries a machine-readable ``code``; the HTTP layer maps codes
to status codes and nothing inside the engine downgrades them.
"""

from typing import Any, Dict


class AuthzError(Exception):
    """Base class for all errors raised by the authorization engine."""
    code = "ERROR"
    status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class Unauthorized(AuthzError):
    """No, expired, or orphaned session (authentication failure)."""
    code = "UNAUTHORIZED"
    status = 401


class Forbidden(AuthzError):
    """Authenticated, but missing a capability, outside the org, or an illegal transition."""
    code = "FORBIDDEN"
    status = 403


class NotFound(AuthzError):
    code = "NOT_FOUND"
    status = 404


class Conflict(AuthzError):
    code = "CONFLICT"
    status = 409


class TooEarly(AuthzError):
    code = "TOO_EARLY"
    status = 425


class Expired(AuthzError):
    code = "EXPIRED"
    status = 410
