"""
Platform-owner administration.

``is_platform_owner`` bypasses every capability and tenancy check, so it is
only ever set here and only through audited steps:

    seed             one-time bootstrap, open only while no owner exists
    request_grant    owner asks to promote a member (typed phrase required)
    confirm_grant    same owner confirms after a cooldown, inside a window
    cancel_grant     requester or any owner withdraws a pending request
    revoke           owner removes the flag from another owner

Every attempt, successful or not, is recorded to the security log. The
bypass is never derived from an email address or any other attribute.
"""

import logging
import math
from typing import List, Optional

from sqlalchemy import text

from caregate import audit
from caregate.config import (
    DEFAULT_EVENT_LIMIT,
    GRANT_COOLDOWN_MS,
    GRANT_PHRASE,
    GRANT_WINDOW_MS,
    REVOKE_PHRASE,
)
from caregate.database import (
    begin,
    get_grant,
    get_member,
    get_member_by_email,
    list_platform_owners,
    new_id,
    now_ms,
)
from caregate.enforcement import load_principal, principal_id
from caregate.errors import AuthzError, Conflict, Expired, Forbidden, NotFound, TooEarly
from caregate.models import Member, PendingOwnerGrant, SecurityEvent

logger = logging.getLogger(__name__)


def require_platform_owner(bind, caller) -> Member:
    member = load_principal(bind, caller)
    if not member.is_platform_owner:
        raise Forbidden("Only a platform owner may perform this action.")
    return member


def _set_grant_status(engine, grant_id: str, status: str) -> None:
    with begin(engine) as conn:
        conn.execute(
            text("UPDATE pending_owner_grants SET status = :s WHERE id = :id AND status = 'pending'"),
            {"s": status, "id": grant_id},
        )


# ── Bootstrap ────────────────────────────────────────────────────────

def seed(engine, email: str) -> Member:
    """Make the member with *email* the first platform owner. Disabled once any owner exists."""
    email = (email or "").strip().lower()
    try:
        with engine.begin() as conn:
            owners = conn.execute(
                text("SELECT COUNT(*) FROM members WHERE is_platform_owner = :flag"), {"flag": True}
            ).scalar()
            if owners:
                raise Forbidden("Bootstrap already completed. Use request_grant.")
            member = get_member_by_email(conn, email)
            if member is None:
                raise NotFound(f"No member with email {email}. Create the member first.")
            conn.execute(
                text("UPDATE members SET is_platform_owner = :flag, role = 'admin' WHERE id = :id"),
                {"flag": True, "id": member.id},
            )
    except AuthzError as e:
        audit.log_security_event(
            engine, audit.PLATFORM_OWNER_SEED, success=False,
            target_id=email, target_type="platform", reason=e.message,
        )
        raise

    audit.log_security_event(
        engine, audit.PLATFORM_OWNER_SEED, success=True,
        actor_id=member.id, target_id=member.id, target_type="member",
        diff={"is_platform_owner": {"from": False, "to": True}},
        reason="Bootstrap seed: first platform owner established.",
    )
    member.is_platform_owner = True
    member.role = "admin"
    return member


# ── Two-step grant ───────────────────────────────────────────────────

def request_grant(engine, caller, target_member_id: str, phrase: str, now: Optional[int] = None) -> PendingOwnerGrant:
    """Step 1: open a pending grant that can be confirmed after the cooldown."""
    now = now if now is not None else now_ms()
    try:
        if phrase != GRANT_PHRASE:
            raise Forbidden(f'Confirmation phrase must be exactly "{GRANT_PHRASE}".')
        actor = require_platform_owner(engine, caller)
        target = get_member(engine, target_member_id)
        if target is None:
            raise NotFound("Target member not found.")
        if target.is_platform_owner:
            raise Conflict("Target is already a platform owner.")
    except AuthzError as e:
        audit.log_security_event(
            engine, audit.PLATFORM_OWNER_GRANT_REQUESTED, success=False,
            actor_id=principal_id(caller), target_id=target_member_id, target_type="member",
            reason=e.message,
        )
        raise

    grant = PendingOwnerGrant(
        id=new_id(),
        requested_by=actor.id,
        target_member_id=target.id,
        requested_at=now,
        confirms_after=now + GRANT_COOLDOWN_MS,
        expires_at=now + GRANT_COOLDOWN_MS + GRANT_WINDOW_MS,
    )
    with begin(engine) as conn:
        conn.execute(
            text("""
                INSERT INTO pending_owner_grants
                    (id, requested_by, target_member_id, requested_at, confirms_after, expires_at, status)
                VALUES
                    (:id, :requested_by, :target, :requested_at, :confirms_after, :expires_at, :status)
            """),
            {
                "id": grant.id, "requested_by": grant.requested_by, "target": grant.target_member_id,
                "requested_at": grant.requested_at, "confirms_after": grant.confirms_after,
                "expires_at": grant.expires_at, "status": grant.status,
            },
        )

    audit.log_security_event(
        engine, audit.PLATFORM_OWNER_GRANT_REQUESTED, success=True,
        actor_id=actor.id, actor_org_id=actor.org_id, target_id=target.id, target_type="member",
        diff={"request_id": grant.id, "confirms_after": grant.confirms_after},
        reason=f"Grant requested. Confirm after {GRANT_COOLDOWN_MS // 1000}s.",
        now=now,
    )
    return grant


def confirm_grant(engine, caller, grant_id: str, now: Optional[int] = None) -> Member:
    """Step 2: apply a pending grant. Same requester, after the cooldown, before expiry."""
    now = now if now is not None else now_ms()
    grant = None
    try:
        actor = load_principal(engine, caller)
        grant = get_grant(engine, grant_id)
        if grant is None:
            raise NotFound("Grant request not found.")
        if grant.status != "pending":
            raise Conflict(f"Grant request is already {grant.status}.")
        if actor.id != grant.requested_by:
            raise Forbidden("Only the original requester may confirm this grant.")
        if not actor.is_platform_owner:
            raise Forbidden("Only a platform owner may perform this action.")
        if now < grant.confirms_after:
            remaining = math.ceil((grant.confirms_after - now) / 1000)
            raise TooEarly(f"Cooldown not elapsed. Wait {remaining} more seconds.")
        if now > grant.expires_at:
            _set_grant_status(engine, grant.id, "expired")
            raise Expired("Grant confirmation window has expired. Submit a new request.")

        with engine.begin() as conn:
            result = conn.execute(
                text("UPDATE pending_owner_grants SET status = 'confirmed' WHERE id = :id AND status = 'pending'"),
                {"id": grant.id},
            )
            if result.rowcount != 1:
                raise Conflict("Grant request was resolved concurrently.")
            result = conn.execute(
                text("""
                    UPDATE members SET is_platform_owner = :flag, role = 'admin'
                    WHERE id = :id AND status = 'active'
                """),
                {"flag": True, "id": grant.target_member_id},
            )
            if result.rowcount != 1:
                raise NotFound("Target member not found.")
    except AuthzError as e:
        audit.log_security_event(
            engine, audit.PLATFORM_OWNER_GRANT_CONFIRMED, success=False,
            actor_id=principal_id(caller),
            target_id=grant.target_member_id if grant else grant_id, target_type="member",
            reason=e.message, now=now,
        )
        raise

    audit.log_security_event(
        engine, audit.PLATFORM_OWNER_GRANT_CONFIRMED, success=True,
        actor_id=actor.id, actor_org_id=actor.org_id, target_id=grant.target_member_id, target_type="member",
        diff={"is_platform_owner": {"from": False, "to": True}},
        reason="Platform owner grant confirmed after cooldown.",
        now=now,
    )
    logger.warning("Member %s is now a platform owner (granted by %s)", grant.target_member_id, actor.id)
    return get_member(engine, grant.target_member_id)


def cancel_grant(engine, caller, grant_id: str) -> PendingOwnerGrant:
    """Withdraw a pending grant. Allowed for the requester or any platform owner."""
    grant = get_grant(engine, grant_id)
    if grant is None or grant.status != "pending":
        raise NotFound("No pending grant request found with that ID.")

    try:
        actor = load_principal(engine, caller)
        if not actor.is_platform_owner and actor.id != grant.requested_by:
            raise Forbidden("Only the original requester or a platform owner may cancel.")
    except AuthzError as e:
        audit.log_security_event(
            engine, audit.PLATFORM_OWNER_GRANT_CANCELLED, success=False,
            actor_id=principal_id(caller), target_id=grant.target_member_id, target_type="member",
            reason=e.message,
        )
        raise

    _set_grant_status(engine, grant.id, "cancelled")
    audit.log_security_event(
        engine, audit.PLATFORM_OWNER_GRANT_CANCELLED, success=True,
        actor_id=actor.id, actor_org_id=actor.org_id, target_id=grant.target_member_id, target_type="member",
        reason="Grant request cancelled before confirmation.",
    )
    grant.status = "cancelled"
    return grant


# ── Revoke ───────────────────────────────────────────────────────────

def revoke(engine, caller, target_member_id: str, phrase: str) -> Member:
    """Remove platform-owner status from another owner. Self-revoke is refused."""
    try:
        if phrase != REVOKE_PHRASE:
            raise Forbidden(f'Confirmation phrase must be exactly "{REVOKE_PHRASE}".')
        actor = require_platform_owner(engine, caller)
        if actor.id == target_member_id:
            raise Forbidden("Cannot revoke your own platform owner status.")
        target = get_member(engine, target_member_id)
        if target is None or not target.is_platform_owner:
            raise NotFound("Target is not a platform owner.")
    except AuthzError as e:
        audit.log_security_event(
            engine, audit.PLATFORM_OWNER_REVOKE, success=False,
            actor_id=principal_id(caller), target_id=target_member_id, target_type="member",
            reason=e.message,
        )
        raise

    with begin(engine) as conn:
        conn.execute(
            text("UPDATE members SET is_platform_owner = :flag WHERE id = :id"),
            {"flag": False, "id": target.id},
        )

    audit.log_security_event(
        engine, audit.PLATFORM_OWNER_REVOKE, success=True,
        actor_id=actor.id, actor_org_id=actor.org_id, target_id=target.id, target_type="member",
        diff={"is_platform_owner": {"from": True, "to": False}},
        reason="Platform owner revoked.",
    )
    target.is_platform_owner = False
    return target


# ── Listings ─────────────────────────────────────────────────────────

def list_owners(engine, caller) -> List[Member]:
    require_platform_owner(engine, caller)
    return list_platform_owners(engine)


def list_security_events(engine, caller, limit: int = DEFAULT_EVENT_LIMIT,
                         action: Optional[str] = None) -> List[SecurityEvent]:
    """Recent security events, newest first. Platform owners only."""
    require_platform_owner(engine, caller)
    return audit.list_security_events(engine, limit=limit, action=action)
