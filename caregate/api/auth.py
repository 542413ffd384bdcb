"""
Bearer-token authentication and capability decorators for the Flask API.

The token is opaque: it is taken from the ``Authorization: Bearer`` header
and handed to the session validator unchanged.
"""

from functools import wraps
from typing import Optional

from flask import current_app, request

from caregate.enforcement import require_cap
from caregate.errors import Unauthorized
from caregate.sessions import validate_session


def get_engine():
    return current_app.config["ENGINE"]


def extract_token() -> Optional[str]:
    """Return the bearer token from the request, or ``None`` if absent."""
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        return None
    parts = auth_header.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
        raise Unauthorized("Invalid authorization header format")
    return parts[1]


def token_required(f):
    """Decorator that protects endpoints with session authentication."""
    @wraps(f)
    def decorated(*args, **kwargs):
        token = extract_token()
        member = validate_session(get_engine(), token)

        # Attach the caller to the request context
        request.member = member
        request.token = token

        return f(*args, **kwargs)

    return decorated


def requires_cap(cap: str):
    """Decorator: authenticate, then require *cap* before the view runs."""
    def decorator(f):
        @wraps(f)
        @token_required
        def decorated(*args, **kwargs):
            require_cap(get_engine(), request.member, cap)
            return f(*args, **kwargs)

        return decorated

    return decorator
