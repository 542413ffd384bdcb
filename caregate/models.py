"""
Domain dataclasses used across the application.
"""

from dataclasses import dataclass
from typing import Any, Optional, Tuple


@dataclass
class Member:
    """An authenticated actor; the principal every capability check runs against."""
    id: str
    email: str
    name: str
    role: str                              # "patient", "provider", "nurse", "pharmacy", "admin", "unverified"
    org_id: Optional[str] = None
    cap_allow: Tuple[str, ...] = ()        # absent and empty are equivalent
    cap_deny: Tuple[str, ...] = ()
    is_platform_owner: bool = False        # set only through platform_admin
    status: str = "active"                 # "active" or "deactivated"
    joined_at: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass
class Organization:
    """Tenant boundary whose overrides apply to every member scoped to it."""
    id: str
    name: str
    slug: str
    type: str = "clinic"                   # "clinic", "pharmacy", "hospital", "admin"
    status: str = "active"
    cap_allow: Tuple[str, ...] = ()
    cap_deny: Tuple[str, ...] = ()
    created_at: Optional[int] = None


@dataclass
class Session:
    token: str
    member_id: str
    issued_at: int
    expires_at: int
    last_used_at: int
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    def is_valid_at(self, now: int) -> bool:
        return now < self.expires_at


@dataclass
class Patient:
    id: str
    member_id: Optional[str] = None        # the patient's own login, if any
    org_id: Optional[str] = None


@dataclass
class Prescription:
    """Governed resource: identity and ownership are fixed, ``status`` follows a transition table."""
    id: str
    patient_id: str
    provider_id: str                       # member id of the prescriber
    medication_name: str
    dosage: str
    quantity: int
    status: str
    created_at: int
    updated_at: int
    pharmacy_id: Optional[str] = None
    org_id: Optional[str] = None
    refills_authorized: int = 0
    directions: str = ""
    sent_to_pharmacy_at: Optional[int] = None
    filled_at: Optional[int] = None


@dataclass(frozen=True)
class SecurityEvent:
    """Immutable audit row."""
    action: str
    success: bool
    timestamp: int
    actor_id: Optional[str] = None
    actor_org_id: Optional[str] = None
    target_id: Optional[str] = None
    target_type: Optional[str] = None     # "member", "org", "platform", "prescription"
    diff: Any = None
    reason: Optional[str] = None
    id: Optional[str] = None


@dataclass
class PendingOwnerGrant:
    id: str
    requested_by: str
    target_member_id: str
    requested_at: int
    confirms_after: int
    expires_at: int
    status: str = "pending"                # "pending", "confirmed", "cancelled", "expired"
