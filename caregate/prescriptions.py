"""
Prescriptions – the reference governed resource.

Two transition tables share one status column:

    authoring    draft -> pending_review -> signed -> sent   (any of them -> cancelled)
    fulfillment  sent -> filling -> ready -> picked_up | shipped -> delivered

Every operation runs PEP first (capability), then loads the record
(``NotFound``), then the tenancy/ownership guard, then the transition
table, and only then writes. Denials and illegal transitions are recorded
to the security log with ``success=False``.

Reads require ``rx:view`` plus a relationship to the record: the patient
themself, the prescriber, clinical staff of the prescribing org holding
``patient:view``, or staff of the dispensing pharmacy holding
``pharmacy:queue``. Knowing an identifier is never enough.
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import text

from caregate import audit
from caregate.capabilities import CAP
from caregate.database import (
    begin,
    connect,
    get_organization,
    get_patient,
    get_prescription as load_prescription,
    new_id,
    now_ms,
    prescription_from_row,
)
from caregate.enforcement import (
    effective_caps_for,
    principal_id,
    require_any_cap,
    require_any_org_member,
    require_cap,
    require_org_member,
)
from caregate.errors import Forbidden, NotFound
from caregate.lifecycle import StateMachine, transition_record
from caregate.models import Member, Prescription

logger = logging.getLogger(__name__)


# ── Transition tables ────────────────────────────────────────────────

PRESCRIPTION_STATUSES = (
    "draft", "pending_review", "signed", "sent",
    "filling", "ready", "picked_up", "shipped", "delivered",
    "cancelled",
)

FULFILLMENT = StateMachine(
    "prescription fulfillment",
    {
        "sent": {"filling"},
        "filling": {"ready"},
        "ready": {"picked_up", "shipped"},
        "shipped": {"delivered"},
    },
    terminal=("picked_up", "delivered", "cancelled"),
)

AUTHORING = StateMachine(
    "prescription authoring",
    {
        "draft": {"pending_review", "cancelled"},
        "pending_review": {"signed", "cancelled"},
        "signed": {"sent", "cancelled"},
        "sent": {"cancelled"},
    },
    terminal=("cancelled",),
)

# Pharmacy fulfillment, or the prescriber-side override.
FULFILLMENT_CAPS = (CAP.PHARMACY_FILL, CAP.RX_WRITE)


# ── Helpers ──────────────────────────────────────────────────────────

def _audit_status(engine, caller, prescription_id: str, success: bool, diff: Any, reason: str,
                  actor_org_id: Optional[str] = None) -> None:
    audit.log_security_event(
        engine,
        audit.PRESCRIPTION_STATUS_CHANGE,
        success=success,
        actor_id=principal_id(caller),
        actor_org_id=actor_org_id,
        target_id=prescription_id,
        target_type="prescription",
        diff=diff,
        reason=reason,
    )


def _scope_guard(member: Member) -> Callable[[Mapping[str, Any]], None]:
    def guard(row):
        require_any_org_member(None, member, (row["org_id"], row["pharmacy_id"]))
    return guard


def _prescriber_guard(member: Member) -> Callable[[Mapping[str, Any]], None]:
    def guard(row):
        require_org_member(None, member, row["org_id"])
        if not member.is_platform_owner and row["provider_id"] != member.id:
            raise Forbidden("Only the prescribing provider may perform this action.")
    return guard


def _apply_transition(
    engine,
    caller,
    prescription_id: str,
    requested: str,
    machine: StateMachine,
    caps: Iterable[str],
    guard_factory: Callable[[Member], Callable[[Mapping[str, Any]], None]],
    extra_updates=None,
    now: Optional[int] = None,
) -> Prescription:
    """PEP, then the atomic transition; audit both outcomes."""
    try:
        member = require_any_cap(engine, caller, caps)
    except Forbidden as e:
        _audit_status(engine, caller, prescription_id, False, {"status": {"to": requested}}, e.message)
        raise

    try:
        previous, written = transition_record(
            engine,
            "prescriptions",
            prescription_id,
            requested,
            machine,
            guard=guard_factory(member),
            extra_updates=extra_updates,
            now=now,
        )
    except Forbidden as e:
        _audit_status(engine, member, prescription_id, False, {"status": {"to": requested}},
                      e.message, actor_org_id=member.org_id)
        raise

    _audit_status(engine, member, prescription_id, True, {"status": {"from": previous, "to": requested}},
                  f"{machine.name}: {previous} -> {requested}", actor_org_id=member.org_id)
    return prescription_from_row(written)


def _stamp_filled_at(row: Mapping[str, Any], requested: str, now: int) -> Dict[str, Any]:
    if requested == "ready" and row["filled_at"] is None:
        return {"filled_at": now}
    return {}


# ── Fulfillment ──────────────────────────────────────────────────────

def update_status(engine, caller, prescription_id: str, status: str, now: Optional[int] = None) -> Prescription:
    """
    Advance a prescription along the fulfillment table.

    Requires ``pharmacy:fill`` or ``rx:write``. Entering ``ready`` stamps
    ``filled_at`` once; every success refreshes ``updated_at``.
    """
    return _apply_transition(
        engine, caller, prescription_id, status, FULFILLMENT,
        FULFILLMENT_CAPS, _scope_guard, extra_updates=_stamp_filled_at, now=now,
    )


# ── Authoring ────────────────────────────────────────────────────────

def create_prescription(
    engine,
    caller,
    patient_id: str,
    medication_name: str,
    dosage: str,
    quantity: int,
    directions: str,
    refills_authorized: int = 0,
    now: Optional[int] = None,
) -> Prescription:
    """Create a draft prescription. The prescriber is the caller; the org is the patient's."""
    member = require_cap(engine, caller, CAP.RX_WRITE)

    patient = get_patient(engine, patient_id)
    if patient is None:
        raise NotFound("Patient not found.")
    require_org_member(engine, member, patient.org_id)

    if int(quantity) <= 0:
        raise ValueError("quantity must be positive")
    if int(refills_authorized) < 0:
        raise ValueError("refills_authorized cannot be negative")

    now = now if now is not None else now_ms()
    rx = Prescription(
        id=new_id(),
        patient_id=patient.id,
        provider_id=member.id,
        org_id=patient.org_id,
        medication_name=medication_name,
        dosage=dosage,
        quantity=int(quantity),
        refills_authorized=int(refills_authorized),
        directions=directions,
        status="draft",
        created_at=now,
        updated_at=now,
    )
    with begin(engine) as conn:
        conn.execute(
            text("""
                INSERT INTO prescriptions
                    (id, patient_id, provider_id, pharmacy_id, org_id, medication_name, dosage,
                     quantity, refills_authorized, directions, status, created_at, updated_at)
                VALUES
                    (:id, :patient_id, :provider_id, NULL, :org_id, :medication_name, :dosage,
                     :quantity, :refills_authorized, :directions, :status, :created_at, :updated_at)
            """),
            {
                "id": rx.id, "patient_id": rx.patient_id, "provider_id": rx.provider_id,
                "org_id": rx.org_id, "medication_name": rx.medication_name, "dosage": rx.dosage,
                "quantity": rx.quantity, "refills_authorized": rx.refills_authorized,
                "directions": rx.directions, "status": rx.status,
                "created_at": rx.created_at, "updated_at": rx.updated_at,
            },
        )
    logger.info("Prescription %s drafted by %s for patient %s", rx.id, member.id, patient.id)
    return rx


def submit_for_review(engine, caller, prescription_id: str, now: Optional[int] = None) -> Prescription:
    return _apply_transition(
        engine, caller, prescription_id, "pending_review", AUTHORING,
        (CAP.RX_WRITE,), _prescriber_guard, now=now,
    )


def sign_prescription(engine, caller, prescription_id: str, now: Optional[int] = None) -> Prescription:
    """Only the prescribing provider may sign."""
    return _apply_transition(
        engine, caller, prescription_id, "signed", AUTHORING,
        (CAP.RX_SIGN,), _prescriber_guard, now=now,
    )


def send_to_pharmacy(engine, caller, prescription_id: str, pharmacy_id: str, now: Optional[int] = None) -> Prescription:
    """Route a signed prescription to an existing organization of type ``pharmacy``."""
    if not pharmacy_id:
        raise ValueError("pharmacy_id is required")

    def route(row, requested, ts):
        pharmacy = get_organization(engine, pharmacy_id)
        if pharmacy is None:
            raise NotFound("Pharmacy not found.")
        if pharmacy.type != "pharmacy":
            raise Forbidden("Prescriptions can only be sent to a pharmacy organization.")
        return {"pharmacy_id": pharmacy_id, "sent_to_pharmacy_at": ts}

    return _apply_transition(
        engine, caller, prescription_id, "sent", AUTHORING,
        (CAP.RX_WRITE,), _prescriber_guard, extra_updates=route, now=now,
    )


def cancel_prescription(engine, caller, prescription_id: str, now: Optional[int] = None) -> Prescription:
    """Cancel before fulfillment starts; terminal."""
    return _apply_transition(
        engine, caller, prescription_id, "cancelled", AUTHORING,
        (CAP.RX_WRITE,), _prescriber_guard, now=now,
    )


# ── Reads ────────────────────────────────────────────────────────────

def _check_read_access(engine, member: Member, rx: Prescription) -> None:
    if member.is_platform_owner or member.id == rx.provider_id:
        return

    patient = get_patient(engine, rx.patient_id)
    if patient is not None and patient.member_id == member.id:
        return

    caps = effective_caps_for(engine, member)
    if CAP.PATIENT_VIEW in caps and member.org_id == rx.org_id:
        return
    if CAP.PHARMACY_QUEUE in caps and rx.pharmacy_id is not None and member.org_id == rx.pharmacy_id:
        return
    raise Forbidden("No relationship to this prescription.")


def get_prescription(engine, caller, prescription_id: str) -> Prescription:
    member = require_cap(engine, caller, CAP.RX_VIEW)
    rx = load_prescription(engine, prescription_id)
    if rx is None:
        raise NotFound("Prescription not found.")
    _check_read_access(engine, member, rx)
    return rx


def list_for_patient(engine, caller, patient_id: str) -> List[Prescription]:
    """A patient's prescriptions, newest first; the patient themself or in-org clinical staff only."""
    member = require_cap(engine, caller, CAP.RX_VIEW)
    patient = get_patient(engine, patient_id)
    if patient is None:
        raise NotFound("Patient not found.")

    if not (member.is_platform_owner or patient.member_id == member.id):
        require_cap(engine, member, CAP.PATIENT_VIEW)
        require_org_member(engine, member, patient.org_id)

    with connect(engine) as conn:
        rows = conn.execute(
            text("SELECT * FROM prescriptions WHERE patient_id = :p ORDER BY created_at DESC"),
            {"p": patient.id},
        ).mappings().all()
    return [prescription_from_row(r) for r in rows]


def list_for_pharmacy(engine, caller, pharmacy_id: str, status: Optional[str] = None) -> List[Prescription]:
    """The fulfillment queue of one pharmacy organization."""
    member = require_cap(engine, caller, CAP.PHARMACY_QUEUE)
    require_org_member(engine, member, pharmacy_id)
    if status is not None and status not in PRESCRIPTION_STATUSES:
        raise ValueError(f"Unknown prescription status '{status}'")

    sql = "SELECT * FROM prescriptions WHERE pharmacy_id = :ph"
    params = {"ph": pharmacy_id}
    if status:
        sql += " AND status = :status"
        params["status"] = status
    sql += " ORDER BY updated_at DESC"
    with connect(engine) as conn:
        rows = conn.execute(text(sql), params).mappings().all()
    return [prescription_from_row(r) for r in rows]
