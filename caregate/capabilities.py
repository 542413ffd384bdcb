"""
Capability tags, role bundles, and the effective-capability resolver.

Resolution order for a member:

    platform owner  -> every capability, nothing else evaluated
    role bundle     -> baseline set for member.role
    + org allow     -> organization.cap_allow
    + member allow  -> member.cap_allow
    - org deny      -> organization.cap_deny
    - member deny   -> member.cap_deny

Deny lists are subtracted last, so a denied capability can never be
re-added by any allow list at any layer.

Everything here is pure: the role table and both override layers are passed
in explicitly. Loading them from the store is the job of
``caregate.database`` and ``caregate.enforcement``.
"""

from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from caregate.models import Member, Organization


# ── Capability identifiers ───────────────────────────────────────────

class CAP:
    """Stable capability tags. Callers reference these, never role names."""
    VIEW_DASHBOARD = "view:dashboard"
    INTAKE_SELF = "intake:self"
    INTAKE_REVIEW = "intake:review"
    RX_VIEW = "rx:view"
    RX_WRITE = "rx:write"
    RX_SIGN = "rx:sign"
    RX_REFILL = "rx:refill"
    CONSULT_START = "consult:start"
    CONSULT_JOIN = "consult:join"
    CONSULT_HISTORY = "consult:history"
    WORKFLOW_VIEW = "workflow:view"
    WORKFLOW_MANAGE = "workflow:manage"
    MSG_VIEW = "msg:view"
    MSG_SEND = "msg:send"
    PHARMACY_QUEUE = "pharmacy:queue"
    PHARMACY_FILL = "pharmacy:fill"
    PHARMACY_VERIFY = "pharmacy:verify"
    PATIENT_VIEW = "patient:view"
    PATIENT_MANAGE = "patient:manage"
    PROVIDER_MANAGE = "provider:manage"
    REPORT_VIEW = "report:view"
    REPORT_EXPORT = "report:export"
    AUDIT_VIEW = "audit:view"
    USER_VIEW = "user:view"
    USER_MANAGE = "user:manage"
    SETTINGS_VIEW = "settings:view"
    SETTINGS_MANAGE = "settings:manage"
    AGENTS_VIEW = "agents:view"
    AGENTS_MANAGE = "agents:manage"
    INTEGRATIONS_VIEW = "integrations:view"
    INTEGRATIONS_MANAGE = "integrations:manage"


ALL_CAPABILITIES: FrozenSet[str] = frozenset(
    value for name, value in vars(CAP).items() if name.isupper()
)

# Bump when a tag is added or removed so consumers can detect drift.
CAPABILITY_SET_VERSION = 1


# ── Role bundles ─────────────────────────────────────────────────────

ROLES: Tuple[str, ...] = ("unverified", "patient", "nurse", "provider", "pharmacy", "admin")

DEFAULT_ROLE_CAPS: Dict[str, FrozenSet[str]] = {
    "unverified": frozenset(),
    "patient": frozenset({
        CAP.VIEW_DASHBOARD,
        CAP.INTAKE_SELF,
        CAP.RX_VIEW,
        CAP.RX_REFILL,
        CAP.CONSULT_JOIN,
        CAP.CONSULT_HISTORY,
        CAP.MSG_VIEW,
        CAP.MSG_SEND,
    }),
    "nurse": frozenset({
        CAP.VIEW_DASHBOARD,
        CAP.INTAKE_REVIEW,
        CAP.RX_VIEW,
        CAP.CONSULT_JOIN,
        CAP.CONSULT_HISTORY,
        CAP.WORKFLOW_VIEW,
        CAP.MSG_VIEW,
        CAP.MSG_SEND,
        CAP.PATIENT_VIEW,
        CAP.PATIENT_MANAGE,
    }),
    "provider": frozenset({
        CAP.VIEW_DASHBOARD,
        CAP.INTAKE_REVIEW,
        CAP.RX_VIEW,
        CAP.RX_WRITE,
        CAP.RX_SIGN,
        CAP.RX_REFILL,
        CAP.CONSULT_START,
        CAP.CONSULT_JOIN,
        CAP.CONSULT_HISTORY,
        CAP.WORKFLOW_VIEW,
        CAP.WORKFLOW_MANAGE,
        CAP.MSG_VIEW,
        CAP.MSG_SEND,
        CAP.PATIENT_VIEW,
        CAP.PATIENT_MANAGE,
    }),
    "pharmacy": frozenset({
        CAP.VIEW_DASHBOARD,
        CAP.RX_VIEW,
        CAP.MSG_VIEW,
        CAP.MSG_SEND,
        CAP.PHARMACY_QUEUE,
        CAP.PHARMACY_FILL,
        CAP.PHARMACY_VERIFY,
    }),
    "admin": ALL_CAPABILITIES,
}


# ── Helpers ──────────────────────────────────────────────────────────

def normalize_caps(values: Optional[Iterable[str]]) -> Tuple[str, ...]:
    """Turn an optional list of tags into an ordered, de-duplicated tuple."""
    if not values:
        return ()
    seen = []
    for value in values:
        tag = str(value).strip()
        if tag and tag not in seen:
            seen.append(tag)
    return tuple(seen)


def pin_role_table(
    table: Mapping[str, Iterable[str]],
    universe: FrozenSet[str] = ALL_CAPABILITIES,
) -> Dict[str, FrozenSet[str]]:
    """
    Return a copy of *table* with the fixed bundles enforced.

    ``admin`` always resolves to the whole universe and ``unverified`` to
    nothing, whatever the stored rows say. Tags outside the universe are
    dropped and every known role gets an entry.
    """
    pinned = {role: frozenset(caps) & universe for role, caps in table.items()}
    for role in ROLES:
        pinned.setdefault(role, frozenset())
    pinned["admin"] = universe
    pinned["unverified"] = frozenset()
    return pinned


# ── Resolver ─────────────────────────────────────────────────────────

def resolve_effective_capabilities(
    member: Member,
    organization: Optional[Organization],
    role_table: Mapping[str, FrozenSet[str]],
    universe: FrozenSet[str] = ALL_CAPABILITIES,
) -> FrozenSet[str]:
    """Compute the effective capability set for *member*."""
    if member is None:
        raise ValueError("member is required to resolve capabilities")

    if member.is_platform_owner is True:
        return frozenset(universe)

    if organization is not None and organization.id != member.org_id:
        raise ValueError(
            f"Organization '{organization.id}' is not the member's organization "
            f"('{member.org_id}')."
        )

    effective = set(role_table.get(member.role, frozenset()))

    if organization is not None:
        effective |= set(organization.cap_allow or ()) & universe
    effective |= set(member.cap_allow or ()) & universe

    if organization is not None:
        effective -= set(organization.cap_deny or ())
    effective -= set(member.cap_deny or ())

    return frozenset(effective)
