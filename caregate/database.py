"""
Database engine initialisation, schema creation, and row loaders.

All statements are plain SQL through SQLAlchemy ``text()`` so the same
code runs against SQLite (tests, local) and PostgreSQL (deployments).
Capability override lists are stored as JSON arrays in TEXT columns.
"""

import json
import logging
import sys
import time
import uuid
from contextlib import contextmanager
from typing import Any, Dict, FrozenSet, Iterator, List, Mapping, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine

from caregate.capabilities import DEFAULT_ROLE_CAPS, normalize_caps, pin_role_table
from caregate.config import get_env
from caregate.models import (
    Member,
    Organization,
    Patient,
    PendingOwnerGrant,
    Prescription,
    SecurityEvent,
    Session,
)

logger = logging.getLogger(__name__)


# ── Engine ───────────────────────────────────────────────────────────

def init_engine(db_uri: Optional[str] = None) -> Engine:
    """Create a SQLAlchemy engine and verify the connection."""
    db_uri = db_uri or get_env("DB_URI")
    engine = create_engine(db_uri, echo=False, future=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        print("ERROR: could not connect to DB:", e, file=sys.stderr)
        sys.exit(1)
    logger.info("Connected to DB (%s)", engine.url.get_backend_name())
    return engine


@contextmanager
def connect(bind) -> Iterator[Connection]:
    """Yield a connection for *bind*, reusing it when it already is one."""
    if isinstance(bind, Connection):
        yield bind
    else:
        with bind.connect() as conn:
            yield conn


@contextmanager
def begin(bind) -> Iterator[Connection]:
    """Yield a connection inside a transaction; an existing connection is used as-is."""
    if isinstance(bind, Connection):
        yield bind
    else:
        with bind.begin() as conn:
            yield conn


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex


# ── Schema ───────────────────────────────────────────────────────────

_DDL = [
    """
    CREATE TABLE IF NOT EXISTS organizations (
        id          VARCHAR(64)  PRIMARY KEY,
        name        VARCHAR(255) NOT NULL,
        slug        VARCHAR(255) NOT NULL UNIQUE,
        type        VARCHAR(32)  NOT NULL,
        status      VARCHAR(32)  NOT NULL,
        cap_allow   TEXT,
        cap_deny    TEXT,
        created_at  BIGINT       NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS members (
        id                 VARCHAR(64)  PRIMARY KEY,
        email              VARCHAR(320) NOT NULL UNIQUE,
        name               VARCHAR(255) NOT NULL,
        role               VARCHAR(32)  NOT NULL,
        org_id             VARCHAR(64)  REFERENCES organizations(id),
        cap_allow          TEXT,
        cap_deny           TEXT,
        is_platform_owner  BOOLEAN      NOT NULL DEFAULT FALSE,
        status             VARCHAR(32)  NOT NULL,
        api_key_hash       VARCHAR(64)  UNIQUE,
        joined_at          BIGINT       NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_members_org_id ON members (org_id)",
    """
    CREATE TABLE IF NOT EXISTS sessions (
        token         VARCHAR(128) PRIMARY KEY,
        member_id     VARCHAR(64)  NOT NULL,
        issued_at     BIGINT       NOT NULL,
        expires_at    BIGINT       NOT NULL,
        last_used_at  BIGINT       NOT NULL,
        user_agent    TEXT,
        ip_address    VARCHAR(64)
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_sessions_member_id ON sessions (member_id)",
    """
    CREATE TABLE IF NOT EXISTS role_capabilities (
        role        VARCHAR(32) NOT NULL,
        capability  VARCHAR(64) NOT NULL,
        PRIMARY KEY (role, capability)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS patients (
        id         VARCHAR(64) PRIMARY KEY,
        member_id  VARCHAR(64),
        org_id     VARCHAR(64)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS prescriptions (
        id                   VARCHAR(64)  PRIMARY KEY,
        patient_id           VARCHAR(64)  NOT NULL,
        provider_id          VARCHAR(64)  NOT NULL,
        pharmacy_id          VARCHAR(64),
        org_id               VARCHAR(64),
        medication_name      VARCHAR(255) NOT NULL,
        dosage               VARCHAR(255) NOT NULL,
        quantity             INTEGER      NOT NULL,
        refills_authorized   INTEGER      NOT NULL DEFAULT 0,
        directions           TEXT         NOT NULL,
        status               VARCHAR(32)  NOT NULL,
        sent_to_pharmacy_at  BIGINT,
        filled_at            BIGINT,
        created_at           BIGINT       NOT NULL,
        updated_at           BIGINT       NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_prescriptions_patient_id ON prescriptions (patient_id)",
    "CREATE INDEX IF NOT EXISTS ix_prescriptions_pharmacy_id ON prescriptions (pharmacy_id)",
    """
    CREATE TABLE IF NOT EXISTS security_events (
        id            VARCHAR(64)  PRIMARY KEY,
        action        VARCHAR(64)  NOT NULL,
        actor_id      VARCHAR(64),
        actor_org_id  VARCHAR(64),
        target_id     VARCHAR(320),
        target_type   VARCHAR(32),
        diff          TEXT,
        success       BOOLEAN      NOT NULL,
        reason        TEXT,
        timestamp     BIGINT       NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_security_events_timestamp ON security_events (timestamp)",
    """
    CREATE TABLE IF NOT EXISTS pending_owner_grants (
        id                VARCHAR(64) PRIMARY KEY,
        requested_by      VARCHAR(64) NOT NULL,
        target_member_id  VARCHAR(64) NOT NULL,
        requested_at      BIGINT      NOT NULL,
        confirms_after    BIGINT      NOT NULL,
        expires_at        BIGINT      NOT NULL,
        status            VARCHAR(16) NOT NULL
    )
    """,
]


def init_schema(engine: Engine, role_caps: Optional[Mapping[str, FrozenSet[str]]] = None) -> None:
    """
    Create all tables if they do not already exist and seed the role table.

    Safe to call repeatedly. The role table is only seeded when it is empty,
    so edits made to it as data survive restarts.
    """
    with engine.begin() as conn:
        for statement in _DDL:
            conn.execute(text(statement))
        count = conn.execute(text("SELECT COUNT(*) FROM role_capabilities")).scalar()
        if not count:
            replace_role_table(conn, role_caps or DEFAULT_ROLE_CAPS)
    logger.info("Schema ready")


def replace_role_table(bind, role_caps: Mapping[str, FrozenSet[str]]) -> None:
    """Overwrite the stored role -> capability rows."""
    rows = [
        {"role": role, "capability": cap}
        for role, caps in role_caps.items()
        for cap in sorted(caps)
    ]
    with begin(bind) as conn:
        conn.execute(text("DELETE FROM role_capabilities"))
        if rows:
            conn.execute(
                text("INSERT INTO role_capabilities (role, capability) VALUES (:role, :capability)"),
                rows,
            )


def load_role_table(bind) -> Dict[str, FrozenSet[str]]:
    """Read the role table back, with admin/unverified pinned."""
    with connect(bind) as conn:
        rows = conn.execute(text("SELECT role, capability FROM role_capabilities")).mappings().all()
    table: Dict[str, set] = {}
    for row in rows:
        table.setdefault(row["role"], set()).add(row["capability"])
    return pin_role_table(table)


# ── Encoding helpers ─────────────────────────────────────────────────

def encode_caps(values) -> Optional[str]:
    caps = normalize_caps(values)
    return json.dumps(list(caps)) if caps else None


def decode_caps(raw: Optional[str]):
    if not raw:
        return ()
    return normalize_caps(json.loads(raw))


def _opt_int(value) -> Optional[int]:
    return int(value) if value is not None else None


# ── Row -> model ─────────────────────────────────────────────────────

def member_from_row(row: Mapping[str, Any]) -> Member:
    return Member(
        id=str(row["id"]),
        email=str(row["email"]),
        name=str(row["name"]),
        role=str(row["role"]).strip().lower(),
        org_id=row["org_id"],
        cap_allow=decode_caps(row["cap_allow"]),
        cap_deny=decode_caps(row["cap_deny"]),
        is_platform_owner=bool(row["is_platform_owner"]),
        status=str(row["status"]),
        joined_at=_opt_int(row["joined_at"]),
    )


def organization_from_row(row: Mapping[str, Any]) -> Organization:
    return Organization(
        id=str(row["id"]),
        name=str(row["name"]),
        slug=str(row["slug"]),
        type=str(row["type"]),
        status=str(row["status"]),
        cap_allow=decode_caps(row["cap_allow"]),
        cap_deny=decode_caps(row["cap_deny"]),
        created_at=_opt_int(row["created_at"]),
    )


def session_from_row(row: Mapping[str, Any]) -> Session:
    return Session(
        token=str(row["token"]),
        member_id=str(row["member_id"]),
        issued_at=int(row["issued_at"]),
        expires_at=int(row["expires_at"]),
        last_used_at=int(row["last_used_at"]),
        user_agent=row["user_agent"],
        ip_address=row["ip_address"],
    )


def prescription_from_row(row: Mapping[str, Any]) -> Prescription:
    return Prescription(
        id=str(row["id"]),
        patient_id=str(row["patient_id"]),
        provider_id=str(row["provider_id"]),
        pharmacy_id=row["pharmacy_id"],
        org_id=row["org_id"],
        medication_name=str(row["medication_name"]),
        dosage=str(row["dosage"]),
        quantity=int(row["quantity"]),
        refills_authorized=int(row["refills_authorized"]),
        directions=str(row["directions"]),
        status=str(row["status"]),
        sent_to_pharmacy_at=_opt_int(row["sent_to_pharmacy_at"]),
        filled_at=_opt_int(row["filled_at"]),
        created_at=int(row["created_at"]),
        updated_at=int(row["updated_at"]),
    )


def security_event_from_row(row: Mapping[str, Any]) -> SecurityEvent:
    return SecurityEvent(
        id=str(row["id"]),
        action=str(row["action"]),
        actor_id=row["actor_id"],
        actor_org_id=row["actor_org_id"],
        target_id=row["target_id"],
        target_type=row["target_type"],
        diff=json.loads(row["diff"]) if row["diff"] else None,
        success=bool(row["success"]),
        reason=row["reason"],
        timestamp=int(row["timestamp"]),
    )


def grant_from_row(row: Mapping[str, Any]) -> PendingOwnerGrant:
    return PendingOwnerGrant(
        id=str(row["id"]),
        requested_by=str(row["requested_by"]),
        target_member_id=str(row["target_member_id"]),
        requested_at=int(row["requested_at"]),
        confirms_after=int(row["confirms_after"]),
        expires_at=int(row["expires_at"]),
        status=str(row["status"]),
    )


# ── Loaders ──────────────────────────────────────────────────────────

def _fetch_one(bind, sql: str, params: Dict[str, Any]):
    with connect(bind) as conn:
        return conn.execute(text(sql), params).mappings().first()


def get_member(bind, member_id: str) -> Optional[Member]:
    row = _fetch_one(bind, "SELECT * FROM members WHERE id = :id", {"id": member_id})
    return member_from_row(row) if row else None


def get_member_by_email(bind, email: str) -> Optional[Member]:
    row = _fetch_one(bind, "SELECT * FROM members WHERE email = :email", {"email": email.strip().lower()})
    return member_from_row(row) if row else None


def get_member_by_api_key_hash(bind, api_key_hash: str) -> Optional[Member]:
    row = _fetch_one(
        bind,
        "SELECT * FROM members WHERE api_key_hash = :k AND status = 'active'",
        {"k": api_key_hash},
    )
    return member_from_row(row) if row else None


def list_platform_owners(bind) -> List[Member]:
    with connect(bind) as conn:
        rows = conn.execute(
            text("SELECT * FROM members WHERE is_platform_owner = :flag ORDER BY joined_at"),
            {"flag": True},
        ).mappings().all()
    return [member_from_row(r) for r in rows]


def get_organization(bind, org_id: str) -> Optional[Organization]:
    row = _fetch_one(bind, "SELECT * FROM organizations WHERE id = :id", {"id": org_id})
    return organization_from_row(row) if row else None


def get_session(bind, token: str) -> Optional[Session]:
    row = _fetch_one(bind, "SELECT * FROM sessions WHERE token = :t", {"t": token})
    return session_from_row(row) if row else None


def get_patient(bind, patient_id: str) -> Optional[Patient]:
    row = _fetch_one(bind, "SELECT * FROM patients WHERE id = :id", {"id": patient_id})
    if not row:
        return None
    return Patient(id=str(row["id"]), member_id=row["member_id"], org_id=row["org_id"])


def get_prescription(bind, prescription_id: str) -> Optional[Prescription]:
    row = _fetch_one(bind, "SELECT * FROM prescriptions WHERE id = :id", {"id": prescription_id})
    return prescription_from_row(row) if row else None


def get_grant(bind, grant_id: str) -> Optional[PendingOwnerGrant]:
    row = _fetch_one(bind, "SELECT * FROM pending_owner_grants WHERE id = :id", {"id": grant_id})
    return grant_from_row(row) if row else None


# ── Writers used by onboarding and seeding ───────────────────────────

def insert_organization(
    bind,
    name: str,
    slug: str,
    type: str = "clinic",
    cap_allow=None,
    cap_deny=None,
    org_id: Optional[str] = None,
) -> Organization:
    org = Organization(
        id=org_id or new_id(),
        name=name,
        slug=slug,
        type=type,
        status="active",
        cap_allow=normalize_caps(cap_allow),
        cap_deny=normalize_caps(cap_deny),
        created_at=now_ms(),
    )
    with begin(bind) as conn:
        conn.execute(
            text("""
                INSERT INTO organizations (id, name, slug, type, status, cap_allow, cap_deny, created_at)
                VALUES (:id, :name, :slug, :type, :status, :cap_allow, :cap_deny, :created_at)
            """),
            {
                "id": org.id, "name": org.name, "slug": org.slug, "type": org.type,
                "status": org.status, "cap_allow": encode_caps(org.cap_allow),
                "cap_deny": encode_caps(org.cap_deny), "created_at": org.created_at,
            },
        )
    return org


def insert_member(
    bind,
    email: str,
    name: str,
    role: str,
    org_id: Optional[str] = None,
    cap_allow=None,
    cap_deny=None,
    api_key_hash: Optional[str] = None,
    member_id: Optional[str] = None,
) -> Member:
    """
    Insert a member row. ``is_platform_owner`` is always written as false;
    only ``caregate.platform_admin`` may set it.
    """
    member = Member(
        id=member_id or new_id(),
        email=email.strip().lower(),
        name=name,
        role=role,
        org_id=org_id,
        cap_allow=normalize_caps(cap_allow),
        cap_deny=normalize_caps(cap_deny),
        is_platform_owner=False,
        status="active",
        joined_at=now_ms(),
    )
    with begin(bind) as conn:
        conn.execute(
            text("""
                INSERT INTO members
                    (id, email, name, role, org_id, cap_allow, cap_deny,
                     is_platform_owner, status, api_key_hash, joined_at)
                VALUES
                    (:id, :email, :name, :role, :org_id, :cap_allow, :cap_deny,
                     :owner, :status, :api_key_hash, :joined_at)
            """),
            {
                "id": member.id, "email": member.email, "name": member.name,
                "role": member.role, "org_id": member.org_id,
                "cap_allow": encode_caps(member.cap_allow),
                "cap_deny": encode_caps(member.cap_deny),
                "owner": False, "status": member.status,
                "api_key_hash": api_key_hash, "joined_at": member.joined_at,
            },
        )
    return member


def insert_patient(bind, member_id: Optional[str] = None, org_id: Optional[str] = None,
                   patient_id: Optional[str] = None) -> Patient:
    patient = Patient(id=patient_id or new_id(), member_id=member_id, org_id=org_id)
    with begin(bind) as conn:
        conn.execute(
            text("INSERT INTO patients (id, member_id, org_id) VALUES (:id, :member_id, :org_id)"),
            {"id": patient.id, "member_id": patient.member_id, "org_id": patient.org_id},
        )
    return patient
