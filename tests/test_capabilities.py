"""
Unit tests for the capability resolver – role bundles, overrides, deny-wins.
"""

import pytest

from caregate.capabilities import (
    ALL_CAPABILITIES,
    CAP,
    DEFAULT_ROLE_CAPS,
    ROLES,
    normalize_caps,
    pin_role_table,
    resolve_effective_capabilities,
)
from caregate.models import Member, Organization


# ── Helpers ──────────────────────────────────────────────────────────

def make_member(role="provider", org_id="org-1", allow=(), deny=(), owner=False, email="m@clinic.test"):
    return Member(
        id="m-1", email=email, name="Test Member", role=role, org_id=org_id,
        cap_allow=tuple(allow), cap_deny=tuple(deny), is_platform_owner=owner,
    )


def make_org(org_id="org-1", allow=(), deny=()):
    return Organization(id=org_id, name="Clinic", slug="clinic", cap_allow=tuple(allow), cap_deny=tuple(deny))


def resolve(member, org=None):
    return resolve_effective_capabilities(member, org, DEFAULT_ROLE_CAPS)


# ── Tests: role bundles ──────────────────────────────────────────────

@pytest.mark.parametrize("role", ROLES)
def test_role_without_overrides_equals_bundle(role):
    assert resolve(make_member(role=role), make_org()) == DEFAULT_ROLE_CAPS[role]


def test_unverified_is_empty_and_admin_is_universe():
    assert resolve(make_member(role="unverified")) == frozenset()
    assert resolve(make_member(role="admin")) == ALL_CAPABILITIES


def test_unknown_role_resolves_to_nothing():
    assert resolve(make_member(role="janitor")) == frozenset()


def test_bundles_stay_inside_universe():
    for role, caps in DEFAULT_ROLE_CAPS.items():
        assert caps <= ALL_CAPABILITIES, role


def test_universe_matches_constants():
    names = [n for n in vars(CAP) if n.isupper()]
    assert len(ALL_CAPABILITIES) == len(names)
    assert CAP.RX_WRITE == "rx:write"


def test_bundle_shape():
    assert CAP.RX_WRITE not in DEFAULT_ROLE_CAPS["patient"]
    assert CAP.PHARMACY_FILL not in DEFAULT_ROLE_CAPS["patient"]
    assert CAP.PHARMACY_FILL in DEFAULT_ROLE_CAPS["pharmacy"]
    assert CAP.RX_WRITE not in DEFAULT_ROLE_CAPS["pharmacy"]
    assert {CAP.RX_WRITE, CAP.RX_SIGN} <= DEFAULT_ROLE_CAPS["provider"]
    assert CAP.USER_MANAGE not in DEFAULT_ROLE_CAPS["provider"]
    assert CAP.RX_WRITE not in DEFAULT_ROLE_CAPS["nurse"]


# ── Tests: overrides and deny-wins ───────────────────────────────────

def test_org_and_member_allow_add_capabilities():
    caps = resolve(
        make_member(role="nurse", allow=[CAP.REPORT_EXPORT]),
        make_org(allow=[CAP.REPORT_VIEW]),
    )
    assert {CAP.REPORT_VIEW, CAP.REPORT_EXPORT} <= caps


@pytest.mark.parametrize("member_allow,member_deny,org_allow,org_deny", [
    ([CAP.AUDIT_VIEW], [CAP.AUDIT_VIEW], [], []),          # same member layer
    ([], [], [CAP.AUDIT_VIEW], [CAP.AUDIT_VIEW]),          # same org layer
    ([], [CAP.AUDIT_VIEW], [CAP.AUDIT_VIEW], []),          # member deny over org allow
    ([CAP.AUDIT_VIEW], [], [], [CAP.AUDIT_VIEW]),          # org deny over member allow
])
def test_deny_wins_across_layers(member_allow, member_deny, org_allow, org_deny):
    caps = resolve(
        make_member(role="nurse", allow=member_allow, deny=member_deny),
        make_org(allow=org_allow, deny=org_deny),
    )
    assert CAP.AUDIT_VIEW not in caps


def test_deny_removes_role_capability():
    assert CAP.RX_WRITE not in resolve(make_member(deny=[CAP.RX_WRITE]), make_org())
    assert CAP.RX_WRITE not in resolve(make_member(), make_org(deny=[CAP.RX_WRITE]))


def test_deny_applies_to_admin():
    caps = resolve(make_member(role="admin", deny=[CAP.SETTINGS_MANAGE]), make_org())
    assert CAP.SETTINGS_MANAGE not in caps
    assert CAP.USER_MANAGE in caps


def test_absent_and_empty_overrides_are_equivalent():
    bare = resolve(make_member(), None)
    empty = resolve(make_member(allow=[], deny=[]), make_org())
    assert bare == empty == DEFAULT_ROLE_CAPS["provider"]


def test_allow_tags_outside_universe_are_ignored():
    caps = resolve(make_member(allow=["root:everything"]), make_org(allow=["rx:*"]))
    assert caps == DEFAULT_ROLE_CAPS["provider"]


# ── Tests: platform owner ────────────────────────────────────────────

def test_platform_owner_gets_every_capability_despite_denies():
    member = make_member(role="patient", deny=list(ALL_CAPABILITIES), owner=True)
    assert resolve(member, make_org(deny=[CAP.RX_WRITE])) == ALL_CAPABILITIES


def test_owner_like_email_grants_nothing():
    member = make_member(role="patient", email="owner@platform.test", owner=False)
    assert resolve(member) == DEFAULT_ROLE_CAPS["patient"]


# ── Tests: input validation ──────────────────────────────────────────

def test_missing_member_is_an_input_error():
    with pytest.raises(ValueError, match="member is required"):
        resolve_effective_capabilities(None, None, DEFAULT_ROLE_CAPS)


def test_foreign_organization_is_rejected():
    with pytest.raises(ValueError, match="not the member's organization"):
        resolve(make_member(org_id="org-1"), make_org(org_id="org-2"))


def test_resolver_uses_injected_role_table():
    table = {"provider": frozenset({CAP.VIEW_DASHBOARD})}
    caps = resolve_effective_capabilities(make_member(), None, table)
    assert caps == frozenset({CAP.VIEW_DASHBOARD})


# ── Tests: helpers ───────────────────────────────────────────────────

def test_normalize_caps_dedupes_and_keeps_order():
    assert normalize_caps([" rx:view", "rx:write", "rx:view", ""]) == ("rx:view", "rx:write")
    assert normalize_caps(None) == ()


def test_pin_role_table_fixes_admin_and_unverified():
    pinned = pin_role_table({
        "admin": {CAP.VIEW_DASHBOARD},
        "unverified": {CAP.RX_WRITE},
        "patient": {CAP.RX_VIEW, "not:a-cap"},
    })
    assert pinned["admin"] == ALL_CAPABILITIES
    assert pinned["unverified"] == frozenset()
    assert pinned["patient"] == frozenset({CAP.RX_VIEW})
    assert pinned["nurse"] == frozenset()
