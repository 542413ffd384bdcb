"""
Member management – onboarding, role changes, overrides, deactivation.

Role and override changes go through the PEP (``user:manage``) and the
tenancy guard on the *target's* organization, and every attempt is written
to the security log, including the ones that are refused. Nothing here can
touch ``is_platform_owner``; that flag belongs to ``caregate.platform_admin``.
"""

import logging
from typing import Iterable, Optional, Tuple

from sqlalchemy import text

from caregate import audit
from caregate.capabilities import ALL_CAPABILITIES, CAP, ROLES, normalize_caps
from caregate.database import (
    begin,
    encode_caps,
    get_member,
    get_member_by_email,
    insert_member,
    insert_patient,
    load_role_table,
)
from caregate.enforcement import effective_caps_for, principal_id, require_cap, require_org_member
from caregate.errors import AuthzError, Forbidden, NotFound
from caregate.models import Member
from caregate.sessions import revoke_all_member_sessions

logger = logging.getLogger(__name__)


def validate_caps(values: Optional[Iterable[str]]) -> Tuple[str, ...]:
    """Normalize an override list and reject tags that are not capabilities."""
    caps = normalize_caps(values)
    unknown = [c for c in caps if c not in ALL_CAPABILITIES]
    if unknown:
        raise ValueError(f"Unknown capabilities: {', '.join(unknown)}")
    return caps


def check_grantable(bind, actor: Member, cap_allow: Iterable[str]) -> None:
    """A non-owner may only hand out capabilities they hold themselves."""
    if actor.is_platform_owner:
        return
    held = effective_caps_for(bind, actor)
    missing = sorted(set(cap_allow) - held)
    if missing:
        raise Forbidden(f"Cannot grant capabilities you do not hold: {', '.join(missing)}")


def check_role_grantable(bind, actor: Member, role: str) -> None:
    """Assigning a role hands out its whole bundle; only owners may assign ``admin``."""
    if actor.is_platform_owner:
        return
    if role == "admin":
        raise Forbidden("Only a platform owner may assign the admin role.")
    check_grantable(bind, actor, load_role_table(bind).get(role, frozenset()))


def _load_target(engine, actor: Member, member_id: str) -> Member:
    target = get_member(engine, member_id)
    if target is None:
        raise NotFound("Member not found.")
    require_org_member(engine, actor, target.org_id)
    if target.id == actor.id and not actor.is_platform_owner:
        raise Forbidden("Cannot modify yourself; ask another administrator.")
    if target.is_platform_owner and not actor.is_platform_owner:
        raise Forbidden("Only a platform owner may modify a platform owner.")
    return target


# ── Onboarding ───────────────────────────────────────────────────────

def get_or_create_patient_member(engine, email: str, name: Optional[str] = None) -> Tuple[Member, bool]:
    """
    Return the member for *email*, creating a ``patient`` member (and its
    patient record) if none exists. Returns ``(member, created)``.
    """
    email = (email or "").strip().lower()
    if not email or "@" not in email:
        raise ValueError("A valid email is required")

    existing = get_member_by_email(engine, email)
    if existing is not None:
        return existing, False

    display_name = name or email.split("@")[0]
    with begin(engine) as conn:
        member = insert_member(conn, email=email, name=display_name, role="patient")
        insert_patient(conn, member_id=member.id)
    logger.info("Onboarded patient member %s", member.id)
    return member, True


# ── Role ─────────────────────────────────────────────────────────────

def update_role(engine, caller, member_id: str, role: str) -> Member:
    """
    Change a member's role. Only platform owners may assign ``admin``; other
    callers may only assign roles whose bundle they hold in full.
    """
    role = (role or "").strip().lower()
    if role not in ROLES:
        raise ValueError(f"Unknown role '{role}'. Expected one of: {', '.join(ROLES)}")

    target = None
    try:
        actor = require_cap(engine, caller, CAP.USER_MANAGE)
        target = _load_target(engine, actor, member_id)
        check_role_grantable(engine, actor, role)
    except AuthzError as e:
        audit.log_security_event(
            engine, audit.ROLE_CHANGE, success=False,
            actor_id=principal_id(caller), target_id=member_id, target_type="member",
            diff={"role": {"from": target.role if target else None, "to": role}},
            reason=e.message,
        )
        raise

    with begin(engine) as conn:
        conn.execute(text("UPDATE members SET role = :role WHERE id = :id"), {"role": role, "id": target.id})

    audit.log_security_event(
        engine, audit.ROLE_CHANGE, success=True,
        actor_id=actor.id, actor_org_id=actor.org_id, target_id=target.id, target_type="member",
        diff={"role": {"from": target.role, "to": role}},
    )
    target.role = role
    return target


# ── Overrides ────────────────────────────────────────────────────────

def update_cap_overrides(
    engine,
    caller,
    member_id: str,
    cap_allow: Optional[Iterable[str]] = None,
    cap_deny: Optional[Iterable[str]] = None,
) -> Member:
    """Replace a member's allow and/or deny list. ``None`` leaves a list unchanged."""
    new_allow = validate_caps(cap_allow) if cap_allow is not None else None
    new_deny = validate_caps(cap_deny) if cap_deny is not None else None

    target = None
    try:
        actor = require_cap(engine, caller, CAP.USER_MANAGE)
        target = _load_target(engine, actor, member_id)
        if new_allow is not None:
            check_grantable(engine, actor, new_allow)
        if new_deny is not None:
            # Lifting a deny hands the capability back.
            check_grantable(engine, actor, set(target.cap_deny) - set(new_deny))
    except AuthzError as e:
        audit.log_security_event(
            engine, audit.MEMBER_CAP_OVERRIDE_CHANGE, success=False,
            actor_id=principal_id(caller), target_id=member_id, target_type="member",
            reason=e.message,
        )
        raise

    allow = new_allow if new_allow is not None else target.cap_allow
    deny = new_deny if new_deny is not None else target.cap_deny
    with begin(engine) as conn:
        conn.execute(
            text("UPDATE members SET cap_allow = :allow, cap_deny = :deny WHERE id = :id"),
            {"allow": encode_caps(allow), "deny": encode_caps(deny), "id": target.id},
        )

    audit.log_security_event(
        engine, audit.MEMBER_CAP_OVERRIDE_CHANGE, success=True,
        actor_id=actor.id, actor_org_id=actor.org_id, target_id=target.id, target_type="member",
        diff={
            "cap_allow": {"from": list(target.cap_allow), "to": list(allow)},
            "cap_deny": {"from": list(target.cap_deny), "to": list(deny)},
        },
    )
    target.cap_allow, target.cap_deny = allow, deny
    return target


# ── Deactivation ─────────────────────────────────────────────────────

def deactivate_member(engine, caller, member_id: str) -> Member:
    """Mark a member deactivated and end all of their sessions. Members are never deleted."""
    try:
        actor = require_cap(engine, caller, CAP.USER_MANAGE)
        target = _load_target(engine, actor, member_id)
        if target.id == actor.id:
            raise Forbidden("Cannot deactivate yourself.")
    except AuthzError as e:
        audit.log_security_event(
            engine, audit.MEMBER_DEACTIVATED, success=False,
            actor_id=principal_id(caller), target_id=member_id, target_type="member",
            reason=e.message,
        )
        raise

    with begin(engine) as conn:
        conn.execute(text("UPDATE members SET status = 'deactivated' WHERE id = :id"), {"id": target.id})
    revoked = revoke_all_member_sessions(engine, target.id)

    audit.log_security_event(
        engine, audit.MEMBER_DEACTIVATED, success=True,
        actor_id=actor.id, actor_org_id=actor.org_id, target_id=target.id, target_type="member",
        diff={"status": {"from": target.status, "to": "deactivated"}, "sessions_revoked": revoked},
    )
    target.status = "deactivated"
    return target
