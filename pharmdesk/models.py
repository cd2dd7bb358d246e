"""
Core data models for PharmDesk.

Two public submission kinds flow through the desk: rare-drug *sourcing
requests* and *consultation* bookings.  Both carry a status driven by the
lifecycle engine and an administrator-settable lock flag.  Staff users
and the ``AuthContext`` that identifies the acting user on every engine
call are defined here as well.

Attachments travel inline: the file body is base64 text, the same shape
the intake forms submit.
"""

from __future__ import annotations

import base64
import binascii
import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class UserRole(str, enum.Enum):
    """Staff roles.

    ``SUPER_ADMIN`` is the top-privilege role: exempt from record locks and
    the only role allowed to toggle locks or provision staff.  ``GUEST`` is
    never persisted; it is the role of an unauthenticated visitor.
    """

    SUPER_ADMIN = "SUPER_ADMIN"
    DOCTOR = "DOCTOR"
    PHARMACIST = "PHARMACIST"
    GUEST = "GUEST"


class UserStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class RequesterType(str, enum.Enum):
    PATIENT = "PATIENT"
    CLINIC = "CLINIC"
    HOSPITAL = "HOSPITAL"
    OTHER = "OTHER"


class Urgency(str, enum.Enum):
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class RequestStatus(str, enum.Enum):
    """Lifecycle states for a sourcing request.

    ``PROCESSING`` is normally entered through enrichment.  ``FULFILLED``
    and ``REJECTED`` are terminal.
    """

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    FULFILLED = "FULFILLED"
    REJECTED = "REJECTED"


class ConsultStatus(str, enum.Enum):
    """Lifecycle states for a consultation.  Only ``SCHEDULED`` is open."""

    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class RecordKind(str, enum.Enum):
    """Lockable record kinds.  The value is the label used in audit text."""

    REQUEST = "Request"
    CONSULTATION = "Consult"


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------

class Attachment(BaseModel):
    """A single uploaded file carried inline with a submission."""

    file_name: str = Field(..., min_length=1)
    data: str = Field(..., description="Base64-encoded file body.")
    mime_type: str = Field(default="application/octet-stream")

    @field_validator("data")
    @classmethod
    def data_is_base64(cls, v: str) -> str:
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("attachment data must be base64-encoded")
        return v

    @property
    def size_bytes(self) -> int:
        """Decoded size of the file body."""
        return len(base64.b64decode(self.data))


class EnrichmentSource(BaseModel):
    """A citation returned alongside an enrichment assessment."""

    title: str = "Source"
    uri: str


# ---------------------------------------------------------------------------
# Submissions (public form payloads)
# ---------------------------------------------------------------------------

class RequestSubmission(BaseModel):
    """Fields a requester supplies when asking for a drug to be sourced."""

    model_config = ConfigDict(extra="ignore")

    requester_name: str = Field(..., min_length=1)
    requester_type: RequesterType = RequesterType.PATIENT
    requester_type_other: Optional[str] = None
    contact_email: str = Field(..., min_length=3)
    contact_phone: Optional[str] = None
    generic_name: str = Field(..., min_length=1)
    brand_name: Optional[str] = None
    dosage_strength: Optional[str] = None
    quantity: str = Field(..., min_length=1)
    urgency: Urgency = Urgency.NORMAL
    notes: str = ""
    prescription: Optional[Attachment] = None


class ConsultationSubmission(BaseModel):
    """Fields a patient supplies when booking a consultation."""

    model_config = ConfigDict(extra="ignore")

    patient_name: str = Field(..., min_length=1)
    contact_email: str = Field(..., min_length=3)
    contact_phone: str = ""
    preferred_date: str = Field(..., min_length=1)
    reason: str = ""
    attachment: Optional[Attachment] = None


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------

class SourcingRequest(RequestSubmission):
    """A persisted sourcing request."""

    id: str = Field(default_factory=_new_id)
    created_at: datetime = Field(default_factory=_utcnow)
    status: RequestStatus = RequestStatus.PENDING
    ai_analysis: Optional[str] = None
    ai_sources: Optional[list[EnrichmentSource]] = None
    is_locked: bool = False

    @field_validator("is_locked", mode="before")
    @classmethod
    def missing_lock_is_unlocked(cls, v):
        # Rows written before the lock column existed come back as None.
        return bool(v) if v is not None else False


class Consultation(ConsultationSubmission):
    """A persisted consultation booking."""

    id: str = Field(default_factory=_new_id)
    created_at: datetime = Field(default_factory=_utcnow)
    status: ConsultStatus = ConsultStatus.SCHEDULED
    doctor_notes: Optional[str] = None
    is_locked: bool = False

    @field_validator("is_locked", mode="before")
    @classmethod
    def missing_lock_is_unlocked(cls, v):
        return bool(v) if v is not None else False


# ---------------------------------------------------------------------------
# Staff and identity
# ---------------------------------------------------------------------------

class StaffUser(BaseModel):
    """A staff account.  The credential hash never leaves the directory."""

    id: str = Field(default_factory=_new_id)
    username: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    role: UserRole
    created_at: datetime = Field(default_factory=_utcnow)
    status: UserStatus = UserStatus.ACTIVE


class AuthContext(BaseModel):
    """The acting identity passed into every lifecycle operation.

    Built from the logged-in ``StaffUser`` by the session, or via
    ``AuthContext.guest()`` for public submissions.
    """

    model_config = ConfigDict(frozen=True)

    user_id: Optional[str] = None
    username: Optional[str] = None
    display_name: str = "System"
    role: UserRole = UserRole.GUEST

    @classmethod
    def guest(cls) -> AuthContext:
        return cls()

    @classmethod
    def for_user(cls, user: StaffUser) -> AuthContext:
        return cls(
            user_id=user.id,
            username=user.username,
            display_name=user.name,
            role=user.role,
        )

    @property
    def is_authenticated(self) -> bool:
        return self.role != UserRole.GUEST

    @property
    def is_top_privilege(self) -> bool:
        return self.role == UserRole.SUPER_ADMIN

    @property
    def audit_name(self) -> str:
        """Name written to the audit ledger for this actor."""
        if not self.is_authenticated:
            return "System"
        return self.display_name or self.username or "System"
