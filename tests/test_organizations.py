"""
Tests for organization creation, org-level overrides and membership.
"""

import pytest

from caregate import audit
from caregate.capabilities import CAP
from caregate.database import get_member, get_member_by_email, get_organization, insert_member
from caregate.enforcement import member_has_cap
from caregate.errors import Conflict, Forbidden, NotFound, Unauthorized
from caregate.organizations import (
    add_member,
    create_organization,
    list_members,
    remove_member,
    update_cap_overrides,
)
from caregate.sessions import create_session, validate_session


# ── Tests: create_organization ───────────────────────────────────────

def test_owner_creates_organization(engine, owner):
    org = create_organization(engine, owner, " Lakeside Clinic ", "Lakeside-Clinic",
                              cap_deny=[CAP.REPORT_EXPORT])
    assert org.slug == "lakeside-clinic"
    assert org.name == "Lakeside Clinic"
    stored = get_organization(engine, org.id)
    assert stored.cap_deny == (CAP.REPORT_EXPORT,)
    assert stored.type == "clinic"


def test_create_requires_settings_manage(engine, provider):
    with pytest.raises(Forbidden, match="settings:manage"):
        create_organization(engine, provider, "Rogue Clinic", "rogue")


@pytest.mark.parametrize("name,slug,org_type", [
    ("", "empty-name", "clinic"),
    ("Bad Slug", "bad slug!", "clinic"),
    ("Bad Type", "bad-type", "spaceship"),
])
def test_create_validates_input(engine, owner, name, slug, org_type):
    with pytest.raises(ValueError):
        create_organization(engine, owner, name, slug, type=org_type)


def test_duplicate_slug_conflicts(engine, owner, clinic):
    with pytest.raises(Conflict) as e:
        create_organization(engine, owner, "Again", clinic.slug)
    assert e.value.status == 409


def test_admin_cannot_seed_org_with_unheld_allow(engine, admin, clinic):
    update_cap_overrides(engine, admin, clinic.id, cap_deny=[CAP.REPORT_EXPORT])
    with pytest.raises(Forbidden, match="do not hold"):
        create_organization(engine, admin, "Spinoff", "spinoff", cap_allow=[CAP.REPORT_EXPORT])


# ── Tests: update_cap_overrides ──────────────────────────────────────

def test_org_deny_applies_to_every_member(engine, admin, clinic, provider, nurse):
    update_cap_overrides(engine, admin, clinic.id, cap_deny=[CAP.MSG_SEND])
    assert not member_has_cap(engine, provider.id, CAP.MSG_SEND)
    assert not member_has_cap(engine, nurse.id, CAP.MSG_SEND)

    [event] = audit.list_security_events(engine, action=audit.ORG_CAP_OVERRIDE_CHANGE)
    assert event.success is True
    assert event.target_type == "org"
    assert event.diff["cap_deny"] == {"from": [], "to": [CAP.MSG_SEND]}


def test_org_override_needs_membership(engine, admin, other_clinic):
    with pytest.raises(Forbidden):
        update_cap_overrides(engine, admin, other_clinic.id, cap_deny=[CAP.MSG_SEND])
    assert get_organization(engine, other_clinic.id).cap_deny == ()
    [event] = audit.list_security_events(engine, action=audit.ORG_CAP_OVERRIDE_CHANGE)
    assert event.success is False


def test_org_deny_can_only_be_lifted_by_a_holder(engine, admin, owner, clinic):
    update_cap_overrides(engine, admin, clinic.id, cap_deny=[CAP.REPORT_EXPORT])
    with pytest.raises(Forbidden, match="do not hold: report:export"):
        update_cap_overrides(engine, admin, clinic.id, cap_deny=[])
    assert get_organization(engine, clinic.id).cap_deny == (CAP.REPORT_EXPORT,)

    update_cap_overrides(engine, owner, clinic.id, cap_deny=[])
    assert member_has_cap(engine, admin.id, CAP.REPORT_EXPORT)


def test_org_override_unknown_org(engine, owner):
    with pytest.raises(NotFound, match="Organization not found"):
        update_cap_overrides(engine, owner, "no-such-org", cap_deny=[])


# ── Tests: membership ────────────────────────────────────────────────

def test_list_members_is_org_scoped(engine, admin, provider, nurse, other_provider, clinic, other_clinic):
    ids = {m.id for m in list_members(engine, admin, clinic.id)}
    assert {admin.id, provider.id, nurse.id} <= ids
    assert other_provider.id not in ids
    with pytest.raises(Forbidden):
        list_members(engine, admin, other_clinic.id)


def test_add_member(engine, admin, clinic):
    member = add_member(engine, admin, clinic.id, "New.Nurse@Clinic.test", "New Nurse", "nurse")
    assert member.org_id == clinic.id
    assert member.email == "new.nurse@clinic.test"
    assert member.role == "nurse"

    [event] = audit.list_security_events(engine, action=audit.ORG_MEMBERSHIP_CHANGE)
    assert event.diff == {"added": member.id, "role": "nurse"}


def test_add_member_duplicate_email(engine, admin, clinic, provider):
    with pytest.raises(Conflict, match="already exists"):
        add_member(engine, admin, clinic.id, provider.email, "Dup", "nurse")


def test_add_admin_needs_owner(engine, admin, owner, clinic):
    with pytest.raises(Forbidden, match="admin role"):
        add_member(engine, admin, clinic.id, "second-admin@clinic.test", "Second", "admin")
    assert add_member(engine, owner, clinic.id, "second-admin@clinic.test", "Second", "admin").role == "admin"


@pytest.mark.parametrize("role", ["provider", "pharmacy"])
def test_add_member_role_bundle_must_be_held(engine, clinic, role):
    manager = insert_member(engine, "mgr@clinic.test", "Mgr", "nurse", org_id=clinic.id,
                            cap_allow=[CAP.USER_MANAGE])
    with pytest.raises(Forbidden, match="do not hold"):
        add_member(engine, manager, clinic.id, "hire@clinic.test", "Hire", role)
    assert get_member_by_email(engine, "hire@clinic.test") is None

    [event] = audit.list_security_events(engine, action=audit.ORG_MEMBERSHIP_CHANGE)
    assert event.success is False
    assert add_member(engine, manager, clinic.id, "hire@clinic.test", "Hire", "nurse").role == "nurse"


def test_add_member_input_errors(engine, admin, clinic):
    with pytest.raises(ValueError):
        add_member(engine, admin, clinic.id, "x@clinic.test", "X", "wizard")
    with pytest.raises(ValueError):
        add_member(engine, admin, clinic.id, "no-at-sign", "X", "nurse")


def test_add_member_unauthenticated(engine, clinic):
    with pytest.raises(Unauthorized):
        add_member(engine, None, clinic.id, "x@clinic.test", "X", "nurse")


def test_remove_member(engine, admin, clinic, nurse):
    token = create_session(engine, nurse.id)
    removed = remove_member(engine, admin, clinic.id, nurse.id)
    assert removed.status == "deactivated"
    assert not get_member(engine, nurse.id).is_active
    with pytest.raises(Unauthorized):
        validate_session(engine, token)


def test_remove_member_of_other_org_is_not_found(engine, admin, clinic, other_provider):
    with pytest.raises(NotFound):
        remove_member(engine, admin, clinic.id, other_provider.id)
    assert get_member(engine, other_provider.id).is_active


def test_remove_self_is_forbidden(engine, admin, clinic):
    with pytest.raises(Forbidden, match="yourself"):
        remove_member(engine, admin, clinic.id, admin.id)
