"""
Shared fixtures: a throwaway SQLite database, a small multi-tenant world,
and a write counter hooked into SQLAlchemy's cursor events.
"""

import re

import pytest
from sqlalchemy import create_engine, event, text

from caregate.database import init_schema, insert_member, insert_organization, insert_patient, new_id
from caregate.platform_admin import seed
from caregate.sessions import hash_api_key

_WRITE = re.compile(r"^\s*(?:INSERT\s+INTO|UPDATE|DELETE\s+FROM)\s+(\w+)", re.IGNORECASE)


class WriteCounter:
    """Records every INSERT/UPDATE/DELETE issued through an engine."""
    def __init__(self):
        self.tables = []

    def __call__(self, conn, cursor, statement, parameters, context, executemany):
        m = _WRITE.match(statement)
        if m:
            self.tables.append(m.group(1).lower())

    def count(self, table):
        return self.tables.count(table)

    def reset(self):
        self.tables = []


# ── Engine ───────────────────────────────────────────────────────────

@pytest.fixture
def engine(tmp_path):
    eng = create_engine(f"sqlite:///{tmp_path / 'caregate.db'}", future=True)
    init_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def writes(engine):
    counter = WriteCounter()
    event.listen(engine, "before_cursor_execute", counter)
    yield counter
    event.remove(engine, "before_cursor_execute", counter)


# ── Tenants ──────────────────────────────────────────────────────────

@pytest.fixture
def clinic(engine):
    return insert_organization(engine, name="Downtown Clinic", slug="downtown-clinic")


@pytest.fixture
def other_clinic(engine):
    return insert_organization(engine, name="Uptown Clinic", slug="uptown-clinic")


@pytest.fixture
def pharmacy_org(engine):
    return insert_organization(engine, name="Corner Pharmacy", slug="corner-pharmacy", type="pharmacy")


@pytest.fixture
def other_pharmacy_org(engine):
    return insert_organization(engine, name="Harbour Pharmacy", slug="harbour-pharmacy", type="pharmacy")


# ── Members ──────────────────────────────────────────────────────────

@pytest.fixture
def provider(engine, clinic):
    return insert_member(engine, "provider@clinic.test", "Dr Provider", "provider", org_id=clinic.id)


@pytest.fixture
def other_provider(engine, other_clinic):
    return insert_member(engine, "provider@uptown.test", "Dr Elsewhere", "provider", org_id=other_clinic.id)


@pytest.fixture
def nurse(engine, clinic):
    return insert_member(engine, "nurse@clinic.test", "Nurse Joy", "nurse", org_id=clinic.id)


@pytest.fixture
def admin(engine, clinic):
    return insert_member(engine, "admin@clinic.test", "Clinic Admin", "admin", org_id=clinic.id)


@pytest.fixture
def pharmacist(engine, pharmacy_org):
    return insert_member(engine, "rx@corner.test", "Pat Pharmacist", "pharmacy", org_id=pharmacy_org.id)


@pytest.fixture
def other_pharmacist(engine, other_pharmacy_org):
    return insert_member(engine, "rx@harbour.test", "Hal Harbour", "pharmacy", org_id=other_pharmacy_org.id)


@pytest.fixture
def patient_member(engine, clinic):
    return insert_member(engine, "patient@mail.test", "Pat Ient", "patient", org_id=clinic.id)


@pytest.fixture
def patient(engine, patient_member, clinic):
    return insert_patient(engine, member_id=patient_member.id, org_id=clinic.id)


@pytest.fixture
def other_patient_member(engine, clinic):
    return insert_member(engine, "other@mail.test", "Otto Ther", "patient", org_id=clinic.id)


@pytest.fixture
def owner(engine):
    ops = insert_organization(engine, name="Platform Ops", slug="platform-ops", type="admin")
    member = insert_member(engine, "owner@platform.test", "Olive Owner", "admin", org_id=ops.id)
    return seed(engine, member.email)


@pytest.fixture
def member_with_key(engine):
    """Factory: insert a member with a known API key and return ``(member, api_key)``."""
    def _make(email, role, org_id=None, api_key=None):
        api_key = api_key or f"cg_{new_id()}"
        member = insert_member(engine, email, email.split("@")[0], role, org_id=org_id,
                               api_key_hash=hash_api_key(api_key))
        return member, api_key
    return _make


# ── Prescriptions ────────────────────────────────────────────────────

@pytest.fixture
def make_rx(engine, provider, patient, clinic, pharmacy_org):
    """Factory: insert a prescription row directly at any status and return its id."""
    def _make(status="sent", **overrides):
        values = {
            "id": new_id(),
            "patient_id": patient.id,
            "provider_id": provider.id,
            "pharmacy_id": pharmacy_org.id,
            "org_id": clinic.id,
            "medication_name": "Doxycycline",
            "dosage": "100 mg",
            "quantity": 30,
            "refills_authorized": 0,
            "directions": "Take one capsule daily with water.",
            "status": status,
            "sent_to_pharmacy_at": None,
            "filled_at": None,
            "created_at": 1_000,
            "updated_at": 1_000,
        }
        values.update(overrides)
        with engine.begin() as conn:
            conn.execute(
                text("""
                    INSERT INTO prescriptions
                        (id, patient_id, provider_id, pharmacy_id, org_id, medication_name, dosage,
                         quantity, refills_authorized, directions, status, sent_to_pharmacy_at,
                         filled_at, created_at, updated_at)
                    VALUES
                        (:id, :patient_id, :provider_id, :pharmacy_id, :org_id, :medication_name, :dosage,
                         :quantity, :refills_authorized, :directions, :status, :sent_to_pharmacy_at,
                         :filled_at, :created_at, :updated_at)
                """),
                values,
            )
        return values["id"]
    return _make


@pytest.fixture
def stored(engine):
    """Read a row back straight from the store, bypassing every guard."""
    def _get(table, record_id):
        with engine.connect() as conn:
            return conn.execute(
                text(f"SELECT * FROM {table} WHERE id = :id"), {"id": record_id}
            ).mappings().first()
    return _get
