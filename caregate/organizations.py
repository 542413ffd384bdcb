"""
Organization management – creation, org-level overrides, membership.

An organization's ``cap_allow`` / ``cap_deny`` apply to every member whose
``org_id`` points at it. Membership changes and override changes are
org-scoped: the caller must belong to the organization (platform owners
excepted).
"""

import logging
import re
from typing import Iterable, List, Optional

from sqlalchemy import text

from caregate import audit
from caregate.capabilities import CAP, ROLES
from caregate.database import (
    begin,
    connect,
    encode_caps,
    get_member,
    get_member_by_email,
    get_organization,
    insert_member,
    insert_organization,
    member_from_row,
)
from caregate.enforcement import principal_id, require_cap, require_org_member
from caregate.errors import AuthzError, Conflict, Forbidden, NotFound
from caregate.members import check_grantable, check_role_grantable, validate_caps
from caregate.models import Member, Organization
from caregate.sessions import revoke_all_member_sessions

logger = logging.getLogger(__name__)

ORG_TYPES = ("clinic", "pharmacy", "hospital", "admin")

_SLUG = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


def create_organization(
    engine,
    caller,
    name: str,
    slug: str,
    type: str = "clinic",
    cap_allow: Optional[Iterable[str]] = None,
    cap_deny: Optional[Iterable[str]] = None,
) -> Organization:
    """Create a tenant. Requires ``settings:manage``."""
    actor = require_cap(engine, caller, CAP.SETTINGS_MANAGE)

    slug = (slug or "").strip().lower()
    if not name or not name.strip():
        raise ValueError("name is required")
    if not _SLUG.match(slug):
        raise ValueError(f"Invalid slug '{slug}'")
    if type not in ORG_TYPES:
        raise ValueError(f"Unknown organization type '{type}'. Expected one of: {', '.join(ORG_TYPES)}")

    allow = validate_caps(cap_allow)
    deny = validate_caps(cap_deny)
    check_grantable(engine, actor, allow)

    with connect(engine) as conn:
        taken = conn.execute(text("SELECT 1 FROM organizations WHERE slug = :s"), {"s": slug}).first()
    if taken:
        raise Conflict(f"Organization slug '{slug}' is already taken.")

    org = insert_organization(engine, name=name.strip(), slug=slug, type=type, cap_allow=allow, cap_deny=deny)
    logger.info("Organization %s (%s) created by %s", org.id, org.slug, actor.id)
    return org


def update_cap_overrides(
    engine,
    caller,
    org_id: str,
    cap_allow: Optional[Iterable[str]] = None,
    cap_deny: Optional[Iterable[str]] = None,
) -> Organization:
    """Replace the org's allow and/or deny list. ``None`` leaves a list unchanged."""
    new_allow = validate_caps(cap_allow) if cap_allow is not None else None
    new_deny = validate_caps(cap_deny) if cap_deny is not None else None

    try:
        actor = require_cap(engine, caller, CAP.SETTINGS_MANAGE)
        require_org_member(engine, actor, org_id)
        org = get_organization(engine, org_id)
        if org is None:
            raise NotFound("Organization not found.")
        if new_allow is not None:
            check_grantable(engine, actor, new_allow)
        if new_deny is not None:
            check_grantable(engine, actor, set(org.cap_deny) - set(new_deny))
    except AuthzError as e:
        audit.log_security_event(
            engine, audit.ORG_CAP_OVERRIDE_CHANGE, success=False,
            actor_id=principal_id(caller), target_id=org_id, target_type="org",
            reason=e.message,
        )
        raise

    allow = new_allow if new_allow is not None else org.cap_allow
    deny = new_deny if new_deny is not None else org.cap_deny
    with begin(engine) as conn:
        conn.execute(
            text("UPDATE organizations SET cap_allow = :allow, cap_deny = :deny WHERE id = :id"),
            {"allow": encode_caps(allow), "deny": encode_caps(deny), "id": org.id},
        )

    audit.log_security_event(
        engine, audit.ORG_CAP_OVERRIDE_CHANGE, success=True,
        actor_id=actor.id, actor_org_id=actor.org_id, target_id=org.id, target_type="org",
        diff={
            "cap_allow": {"from": list(org.cap_allow), "to": list(allow)},
            "cap_deny": {"from": list(org.cap_deny), "to": list(deny)},
        },
    )
    org.cap_allow, org.cap_deny = allow, deny
    return org


# ── Membership ───────────────────────────────────────────────────────

def list_members(engine, caller, org_id: str) -> List[Member]:
    actor = require_cap(engine, caller, CAP.USER_VIEW)
    require_org_member(engine, actor, org_id)
    with connect(engine) as conn:
        rows = conn.execute(
            text("SELECT * FROM members WHERE org_id = :org ORDER BY joined_at"),
            {"org": org_id},
        ).mappings().all()
    return [member_from_row(r) for r in rows]


def add_member(
    engine,
    caller,
    org_id: str,
    email: str,
    name: str,
    role: str,
    api_key_hash: Optional[str] = None,
) -> Member:
    """Create a member inside *org_id*. Only platform owners may add an ``admin``."""
    role = (role or "").strip().lower()
    if role not in ROLES:
        raise ValueError(f"Unknown role '{role}'. Expected one of: {', '.join(ROLES)}")
    email = (email or "").strip().lower()
    if not email or "@" not in email:
        raise ValueError("A valid email is required")

    try:
        actor = require_cap(engine, caller, CAP.USER_MANAGE)
        require_org_member(engine, actor, org_id)
        if get_organization(engine, org_id) is None:
            raise NotFound("Organization not found.")
        check_role_grantable(engine, actor, role)
        if get_member_by_email(engine, email) is not None:
            raise Conflict("A member with this email already exists.")
    except AuthzError as e:
        audit.log_security_event(
            engine, audit.ORG_MEMBERSHIP_CHANGE, success=False,
            actor_id=principal_id(caller), target_id=org_id, target_type="org",
            diff={"added": email, "role": role}, reason=e.message,
        )
        raise

    member = insert_member(engine, email=email, name=name, role=role, org_id=org_id, api_key_hash=api_key_hash)
    audit.log_security_event(
        engine, audit.ORG_MEMBERSHIP_CHANGE, success=True,
        actor_id=actor.id, actor_org_id=actor.org_id, target_id=org_id, target_type="org",
        diff={"added": member.id, "role": role},
    )
    return member


def remove_member(engine, caller, org_id: str, member_id: str) -> Member:
    """Deactivate a member of *org_id* and end their sessions."""
    try:
        actor = require_cap(engine, caller, CAP.USER_MANAGE)
        require_org_member(engine, actor, org_id)
        member = get_member(engine, member_id)
        if member is None or member.org_id != org_id:
            raise NotFound("Member does not belong to this organization.")
        if member.id == actor.id:
            raise Forbidden("Cannot remove yourself.")
        if member.is_platform_owner and not actor.is_platform_owner:
            raise Forbidden("Only a platform owner may modify a platform owner.")
    except AuthzError as e:
        audit.log_security_event(
            engine, audit.ORG_MEMBERSHIP_CHANGE, success=False,
            actor_id=principal_id(caller), target_id=org_id, target_type="org",
            diff={"removed": member_id}, reason=e.message,
        )
        raise

    with begin(engine) as conn:
        conn.execute(text("UPDATE members SET status = 'deactivated' WHERE id = :id"), {"id": member.id})
    revoke_all_member_sessions(engine, member.id)

    audit.log_security_event(
        engine, audit.ORG_MEMBERSHIP_CHANGE, success=True,
        actor_id=actor.id, actor_org_id=actor.org_id, target_id=org_id, target_type="org",
        diff={"removed": member.id},
    )
    member.status = "deactivated"
    return member
