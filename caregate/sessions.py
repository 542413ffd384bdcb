"""
Session Validator – resolves an opaque bearer token to an authenticated member.

Tokens are random strings with no structure; the only thing done with one
is an exact-match lookup. A session is valid while ``now < expires_at`` and
its member still exists and is active. Validation refreshes
``last_used_at`` but never ``expires_at``.

This module answers "who is calling", never "what may they do".
"""

import hashlib
import logging
import secrets
import string
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from caregate.config import API_KEY_PREFIX, SESSION_TTL_MS
from caregate.database import (
    begin,
    get_member,
    get_member_by_api_key_hash,
    get_session,
    now_ms,
)
from caregate.errors import Unauthorized
from caregate.models import Member

logger = logging.getLogger(__name__)


# ── Validation ───────────────────────────────────────────────────────

def validate_session(engine, token: Optional[str], now: Optional[int] = None, touch: bool = True) -> Member:
    """Return the member behind *token* or raise ``Unauthorized``."""
    if not token:
        raise Unauthorized("Authentication required.")

    now = now if now is not None else now_ms()
    session = get_session(engine, token)
    if session is None:
        raise Unauthorized("Session not found or expired.")

    if not session.is_valid_at(now):
        raise Unauthorized("Session expired. Please log in again.")

    member = get_member(engine, session.member_id)
    if member is None or not member.is_active:
        raise Unauthorized("Member not found.")

    if touch:
        _touch_session(engine, token, now)
    return member


def _touch_session(engine, token: str, now: int) -> None:
    """Best-effort ``last_used_at`` refresh; failures never affect the caller."""
    try:
        with engine.begin() as conn:
            conn.execute(
                text("UPDATE sessions SET last_used_at = :now WHERE token = :t"),
                {"now": now, "t": token},
            )
    except SQLAlchemyError as e:
        logger.warning("Could not refresh last_used_at for a session: %s", e)


# ── Lifecycle ────────────────────────────────────────────────────────

def create_session(
    engine,
    member_id: str,
    user_agent: Optional[str] = None,
    ip_address: Optional[str] = None,
    now: Optional[int] = None,
    ttl_ms: int = SESSION_TTL_MS,
) -> str:
    """Create a session for an authenticated member and return its token."""
    now = now if now is not None else now_ms()
    token = secrets.token_urlsafe(32)
    with begin(engine) as conn:
        conn.execute(
            text("""
                INSERT INTO sessions
                    (token, member_id, issued_at, expires_at, last_used_at, user_agent, ip_address)
                VALUES
                    (:token, :member_id, :now, :expires_at, :now, :user_agent, :ip_address)
            """),
            {
                "token": token, "member_id": member_id, "now": now,
                "expires_at": now + ttl_ms, "user_agent": user_agent, "ip_address": ip_address,
            },
        )
    logger.info("Session created for member %s", member_id)
    return token


def revoke_session(engine, token: str) -> bool:
    """Delete a session (logout). Returns whether a row was removed."""
    with begin(engine) as conn:
        result = conn.execute(text("DELETE FROM sessions WHERE token = :t"), {"t": token})
    return result.rowcount > 0


def revoke_all_member_sessions(engine, member_id: str) -> int:
    with begin(engine) as conn:
        result = conn.execute(text("DELETE FROM sessions WHERE member_id = :m"), {"m": member_id})
    if result.rowcount:
        logger.info("Revoked %d session(s) for member %s", result.rowcount, member_id)
    return result.rowcount


def cleanup_expired_sessions(engine, now: Optional[int] = None) -> int:
    """Remove sessions past their expiry."""
    now = now if now is not None else now_ms()
    with begin(engine) as conn:
        result = conn.execute(text("DELETE FROM sessions WHERE expires_at <= :now"), {"now": now})
    if result.rowcount:
        logger.info("Removed %d expired session(s)", result.rowcount)
    return result.rowcount


# ── API-key login ────────────────────────────────────────────────────

def generate_api_key(prefix: str = API_KEY_PREFIX, length: int = 32) -> str:
    """Generate a secure random API key."""
    chars = string.ascii_letters + string.digits
    random_part = "".join(secrets.choice(chars) for _ in range(length))
    return f"{prefix}_{random_part}"


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def login_with_api_key(
    engine,
    api_key: str,
    user_agent: Optional[str] = None,
    ip_address: Optional[str] = None,
):
    """Look up an active member by API key and open a session for them."""
    api_key = (api_key or "").strip()
    if not api_key:
        raise Unauthorized("api_key is required.")

    member = get_member_by_api_key_hash(engine, hash_api_key(api_key))
    if member is None:
        raise Unauthorized("Invalid key or member inactive.")

    token = create_session(engine, member.id, user_agent=user_agent, ip_address=ip_address)
    return member, token
