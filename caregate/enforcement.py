"""
Policy Enforcement Point and Tenancy Guard.

Every operation that reads or mutates capability- or tenant-scoped data
calls ``require_cap`` / ``require_any_cap`` and, for org-scoped records,
``require_org_member`` before touching the store. The guards raise and
never return a "denied" value, so the write that follows them is reached
only when every guard has passed.

A principal may be passed as a loaded ``Member`` or as a member id.
"""

import logging
from typing import FrozenSet, Iterable, Optional, Union

from caregate.capabilities import resolve_effective_capabilities
from caregate.database import get_member, get_organization, load_role_table
from caregate.errors import Forbidden, Unauthorized
from caregate.models import Member

logger = logging.getLogger(__name__)

Principal = Union[Member, str, None]


def principal_id(principal: Principal) -> Optional[str]:
    """The member id behind *principal* without touching the store; for audit attribution."""
    if isinstance(principal, Member):
        return principal.id
    return principal or None


def load_principal(bind, principal: Principal) -> Member:
    """Turn a member or member id into a ``Member``; absent identities are ``Unauthorized``."""
    if principal is None or principal == "":
        raise Unauthorized("Authentication required.")
    if isinstance(principal, Member):
        return principal

    member = get_member(bind, str(principal))
    if member is None or not member.is_active:
        raise Unauthorized("Member not found.")
    return member


def effective_caps_for(bind, member: Member) -> FrozenSet[str]:
    """Load the member's organization and the role table, then resolve."""
    role_table = load_role_table(bind)
    if member.is_platform_owner:
        return resolve_effective_capabilities(member, None, role_table)

    organization = None
    if member.org_id is not None:
        organization = get_organization(bind, member.org_id)
        if organization is None:
            # Overrides for a missing org are unknown; refuse rather than drop its deny list.
            logger.error("Member %s references missing organization %s", member.id, member.org_id)
            raise Forbidden("Organization for this member could not be loaded.")
    return resolve_effective_capabilities(member, organization, role_table)


def get_member_effective_caps(bind, principal: Principal) -> FrozenSet[str]:
    return effective_caps_for(bind, load_principal(bind, principal))


def member_has_cap(bind, principal: Principal, cap: str) -> bool:
    """Whether *principal* holds *cap*. A missing principal is an input error."""
    if principal is None or principal == "":
        raise ValueError("principal is required; an absent caller has no capability set")
    return cap in get_member_effective_caps(bind, principal)


# ── Guards ───────────────────────────────────────────────────────────

def require_cap(bind, principal: Principal, cap: str) -> Member:
    """Raise ``Unauthorized`` without an identity, ``Forbidden`` without *cap*."""
    member = load_principal(bind, principal)
    if cap not in effective_caps_for(bind, member):
        raise Forbidden(f"Missing required capability: {cap}")
    return member


def require_any_cap(bind, principal: Principal, caps: Iterable[str]) -> Member:
    caps = list(caps)
    member = load_principal(bind, principal)
    effective = effective_caps_for(bind, member)
    if not any(c in effective for c in caps):
        raise Forbidden(f"Missing one of: {', '.join(caps)}")
    return member


def require_org_member(bind, principal: Principal, org_id: Optional[str]) -> Member:
    """
    Require the principal to belong to *org_id* exactly.

    Platform owners pass unconditionally. ``None`` only matches ``None``.
    """
    member = load_principal(bind, principal)
    if member.is_platform_owner:
        return member
    if member.org_id != org_id:
        raise Forbidden("Not a member of this organization.")
    return member


def require_any_org_member(bind, principal: Principal, org_ids: Iterable[Optional[str]]) -> Member:
    """Like ``require_org_member`` for records scoped to several orgs (clinic and pharmacy)."""
    member = load_principal(bind, principal)
    scopes = {org_id for org_id in org_ids if org_id is not None}
    if member.is_platform_owner or not scopes:
        return member
    if member.org_id not in scopes:
        raise Forbidden("Not a member of an organization this record belongs to.")
    return member
